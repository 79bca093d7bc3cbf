from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from .errors import DuplicateSessionError, SessionNotFoundError


STATE_CREATED = "created"
STATE_AWAITING_SCAN = "awaiting_scan"
STATE_AUTHENTICATED = "authenticated"
STATE_READY = "ready"
STATE_FAILED = "failed"
STATE_DISCONNECTED = "disconnected"
STATE_LOGGED_OUT = "logged_out"

ALL_STATES = (
    STATE_CREATED,
    STATE_AWAITING_SCAN,
    STATE_AUTHENTICATED,
    STATE_READY,
    STATE_FAILED,
    STATE_DISCONNECTED,
    STATE_LOGGED_OUT,
)
TERMINAL_STATES = frozenset({STATE_LOGGED_OUT})


@dataclass(slots=True, eq=False)
class SessionRecord:
    session_id: str
    client: Any
    auth_store: Path
    state: str = STATE_CREATED
    qr_payload: Optional[str] = None
    last_error: Optional[str] = None
    torn_down: bool = False
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    events: "asyncio.Queue[Any]" = field(default_factory=asyncio.Queue)
    consumer: Optional["asyncio.Task[Any]"] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class SessionRegistry:
    """In-memory ``session_id -> SessionRecord`` store.

    The registry knows nothing about the state machine; it only guarantees one
    record per identifier and that identifiers are never handed out twice.
    """

    def __init__(self) -> None:
        self._records: Dict[str, SessionRecord] = {}
        self._retired: set[str] = set()
        self._lock = threading.Lock()

    def create(self, record: SessionRecord) -> SessionRecord:
        """Register a record the caller has already built.

        The caller owns id generation and client construction; the registry
        only refuses identifiers that are live or were deleted before.
        """
        with self._lock:
            session_id = record.session_id
            if session_id in self._records or session_id in self._retired:
                raise DuplicateSessionError(session_id)
            self._records[session_id] = record
            return record

    def get(self, session_id: str) -> SessionRecord:
        with self._lock:
            record = self._records.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    def find(self, session_id: str) -> Optional[SessionRecord]:
        with self._lock:
            return self._records.get(session_id)

    def delete(self, session_id: str) -> SessionRecord:
        with self._lock:
            record = self._records.pop(session_id, None)
            if record is None:
                raise SessionNotFoundError(session_id)
            self._retired.add(session_id)
            return record

    def is_retired(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._retired

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._records)

    def records(self) -> list[SessionRecord]:
        with self._lock:
            return list(self._records.values())

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __iter__(self) -> Iterator[SessionRecord]:
        return iter(self.records())


__all__ = [
    "STATE_CREATED",
    "STATE_AWAITING_SCAN",
    "STATE_AUTHENTICATED",
    "STATE_READY",
    "STATE_FAILED",
    "STATE_DISCONNECTED",
    "STATE_LOGGED_OUT",
    "ALL_STATES",
    "TERMINAL_STATES",
    "SessionRecord",
    "SessionRegistry",
]
