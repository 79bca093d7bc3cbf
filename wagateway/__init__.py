"""WhatsApp session lifecycle gateway."""

from .api import create_app
from .lifecycle import SessionLifecycleManager

__all__ = ["create_app", "SessionLifecycleManager"]
