from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Base class for session gateway failures."""


class SessionNotFoundError(GatewayError):
    """Raised when a session identifier is unknown or already logged out."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session_not_found: {session_id}")
        self.session_id = session_id


class DuplicateSessionError(GatewayError):
    """Raised when a session identifier is already registered or was retired."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session_exists: {session_id}")
        self.session_id = session_id


class InvalidInputError(GatewayError):
    def __init__(self, field: str, detail: str = "missing") -> None:
        super().__init__(f"invalid_input: {field} {detail}")
        self.field = field
        self.detail = detail


class SessionNotReadyError(GatewayError):
    def __init__(self, session_id: str, state: str) -> None:
        super().__init__(f"session_not_ready: {session_id} state={state}")
        self.session_id = session_id
        self.state = state


class InvalidTransitionError(GatewayError):
    def __init__(self, session_id: str, state: str, event: str) -> None:
        super().__init__(f"invalid_transition: {session_id} state={state} event={event}")
        self.session_id = session_id
        self.state = state
        self.event = event


class ClientError(GatewayError):
    """Raised when the underlying messaging client fails."""

    def __init__(self, operation: str, detail: Optional[str] = None) -> None:
        message = f"client_error: {operation}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.operation = operation
        self.detail = detail


class TeardownError(GatewayError):
    """Raised when logout cleanup fails; the session stays registered."""

    def __init__(self, session_id: str, step: str, detail: Optional[str] = None) -> None:
        message = f"teardown_failed: {session_id} step={step}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.session_id = session_id
        self.step = step
        self.detail = detail


__all__ = [
    "GatewayError",
    "SessionNotFoundError",
    "DuplicateSessionError",
    "InvalidInputError",
    "SessionNotReadyError",
    "InvalidTransitionError",
    "ClientError",
    "TeardownError",
]
