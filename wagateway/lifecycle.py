from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import secrets
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .bus import NotificationBus
from .client import (
    EVENT_AUTH_FAILURE,
    EVENT_AUTHENTICATED,
    EVENT_DISCONNECTED,
    EVENT_QR,
    EVENT_READY,
    ClientEvent,
    ClientFactory,
    EventSink,
)
from .errors import (
    ClientError,
    InvalidInputError,
    InvalidTransitionError,
    SessionNotFoundError,
    SessionNotReadyError,
    TeardownError,
)
from .metrics import (
    WA_CALLBACK_ERRORS_TOTAL,
    WA_CLIENT_EVENTS_TOTAL,
    WA_LOGOUT_TOTAL,
    WA_MESSAGES_SENT_TOTAL,
    WA_SESSION_START_TOTAL,
    WA_SESSIONS,
    WA_TRANSITIONS_REJECTED_TOTAL,
)
from .qr import qr_data_url
from .registry import (
    ALL_STATES,
    STATE_AUTHENTICATED,
    STATE_AWAITING_SCAN,
    STATE_CREATED,
    STATE_DISCONNECTED,
    STATE_FAILED,
    STATE_LOGGED_OUT,
    STATE_READY,
    SessionRecord,
    SessionRegistry,
)


LOGGER = logging.getLogger("wagateway")


TRANSITIONS: Dict[tuple[str, str], str] = {
    (STATE_CREATED, EVENT_QR): STATE_AWAITING_SCAN,
    (STATE_AWAITING_SCAN, EVENT_QR): STATE_AWAITING_SCAN,
    (STATE_AWAITING_SCAN, EVENT_AUTHENTICATED): STATE_AUTHENTICATED,
    (STATE_AUTHENTICATED, EVENT_READY): STATE_READY,
    (STATE_AWAITING_SCAN, EVENT_AUTH_FAILURE): STATE_FAILED,
    (STATE_AUTHENTICATED, EVENT_AUTH_FAILURE): STATE_FAILED,
    (STATE_READY, EVENT_DISCONNECTED): STATE_DISCONNECTED,
}

_NON_DIGITS = re.compile(r"\D")


def normalize_address(number: str, suffix: str = "@c.us") -> str:
    """Turn a free-form phone number into a chat address (``628123@c.us``)."""
    digits = _NON_DIGITS.sub("", number or "")
    if not digits:
        raise InvalidInputError("number", "no_digits")
    return f"{digits}{suffix}"


@dataclass(slots=True)
class SessionSnapshot:
    """Read-only view of a session used by the polling endpoints."""

    session_id: str
    state: str
    qr_payload: Optional[str]
    last_error: Optional[str]
    created_at: float
    updated_at: float

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionSnapshot":
        return cls(
            session_id=record.session_id,
            state=record.state,
            qr_payload=record.qr_payload,
            last_error=record.last_error,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    @property
    def is_ready(self) -> bool:
        return self.state == STATE_READY

    def to_payload(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state,
            "qr_available": bool(self.qr_payload),
            "qr_code_data": self.qr_payload,
            "last_error": self.last_error,
            "created_at": int(self.created_at * 1000),
            "updated_at": int(self.updated_at * 1000),
        }


@dataclass(slots=True)
class _Envelope:
    event: ClientEvent
    done: Optional["asyncio.Future[bool]"] = None

    def resolve(self, applied: bool) -> None:
        if self.done is not None and not self.done.done():
            self.done.set_result(applied)


def _as_client_error(operation: str, exc: Exception) -> ClientError:
    if isinstance(exc, ClientError):
        return exc
    return ClientError(operation, str(exc) or exc.__class__.__name__)


class SessionLifecycleManager:
    """Own every session's state machine and the client bound to it.

    Client events arrive on a per-session queue and are applied by a single
    consumer task. Event application, sending and logout for one session
    id all run under that id's lock, so they never interleave.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        *,
        sessions_dir: Path,
        registry: Optional[SessionRegistry] = None,
        bus: Optional[NotificationBus] = None,
        address_suffix: str = "@c.us",
        qr_encoder: Callable[[str], str] = qr_data_url,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._client_factory = client_factory
        self._sessions_dir = sessions_dir
        self._sessions_dir.mkdir(parents=True, exist_ok=True)
        self._registry = registry if registry is not None else SessionRegistry()
        self._bus = bus if bus is not None else NotificationBus()
        self._address_suffix = address_suffix
        self._qr_encoder = qr_encoder
        self._id_factory = id_factory or (lambda: secrets.token_hex(15))
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def bus(self) -> NotificationBus:
        return self._bus

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _new_session_id(self) -> str:
        while True:
            candidate = self._id_factory()
            if candidate not in self._registry and not self._registry.is_retired(candidate):
                return candidate
            LOGGER.warning("event=session_id_collision session_id=%s", candidate)

    def auth_store_for(self, session_id: str) -> Path:
        return self._sessions_dir / f"session-{session_id}"

    def _set_state(self, record: SessionRecord, state: str, *, reason: str | None = None) -> None:
        previous = record.state
        if previous != state:
            if reason:
                LOGGER.info(
                    "stage=state_transition session_id=%s from=%s to=%s reason=%s",
                    record.session_id,
                    previous,
                    state,
                    reason,
                )
            else:
                LOGGER.info(
                    "stage=state_transition session_id=%s from=%s to=%s",
                    record.session_id,
                    previous,
                    state,
                )
        record.state = state
        if state != STATE_AWAITING_SCAN:
            record.qr_payload = None
        record.updated_at = time.time()
        self._update_metrics()

    def _emitter(self, record: SessionRecord) -> EventSink:
        def _emit(event: ClientEvent) -> None:
            if record.is_terminal:
                LOGGER.debug(
                    "event=client_event_dropped session_id=%s kind=%s reason=logged_out",
                    record.session_id,
                    event.kind,
                )
                return
            record.events.put_nowait(_Envelope(event))

        return _emit

    async def start_session(self) -> SessionSnapshot:
        session_id = self._new_session_id()
        record = SessionRecord(
            session_id=session_id,
            client=None,
            auth_store=self.auth_store_for(session_id),
        )
        record.client = self._client_factory(session_id, record.auth_store, self._emitter(record))

        async with self._session_lock(session_id):
            self._registry.create(record)
            record.consumer = asyncio.create_task(
                self._consume_events(record), name=f"wa-session-{session_id}"
            )
            self._update_metrics()
            LOGGER.info(
                "stage=session_created session_id=%s auth_store=%s",
                session_id,
                record.auth_store,
            )

        # Runs unlocked: the bridge may report qr while start is still pending.
        try:
            await record.client.initialize()
        except Exception as exc:
            WA_SESSION_START_TOTAL.labels("failed").inc()
            LOGGER.error(
                "stage=initialize_failed session_id=%s error=%s",
                session_id,
                exc,
            )
            async with self._session_lock(session_id):
                if not record.is_terminal:
                    await self._discard(record)
            self._locks.pop(session_id, None)
            raise _as_client_error("initialize", exc) from exc

        WA_SESSION_START_TOTAL.labels("ok").inc()
        return SessionSnapshot.from_record(record)

    async def _discard(self, record: SessionRecord) -> None:
        consumer, record.consumer = record.consumer, None
        if consumer is not None:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
        with contextlib.suppress(Exception):
            await record.client.destroy()
        record.torn_down = True
        self._set_state(record, STATE_LOGGED_OUT, reason="initialize_failed")
        with contextlib.suppress(SessionNotFoundError):
            self._registry.delete(record.session_id)
        self._drain(record)
        self._locks.pop(record.session_id, None)
        self._update_metrics()

    @staticmethod
    def _drain(record: SessionRecord) -> None:
        while True:
            try:
                envelope = record.events.get_nowait()
            except asyncio.QueueEmpty:
                return
            envelope.resolve(False)
            record.events.task_done()

    async def deliver_event(self, session_id: str, event: ClientEvent) -> bool:
        """Queue ``event`` for the session and wait until it has been handled.

        Returns ``True`` when the event moved the session along an edge and
        ``False`` when it was rejected or failed.
        """
        record = self._registry.get(session_id)
        if record.is_terminal:
            raise SessionNotFoundError(session_id)
        done: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        record.events.put_nowait(_Envelope(event, done))
        return await done

    async def wait_idle(self, session_id: str) -> None:
        record = self._registry.get(session_id)
        await record.events.join()

    async def _consume_events(self, record: SessionRecord) -> None:
        queue = record.events
        while True:
            envelope = await queue.get()
            try:
                applied = await self._handle_envelope(record, envelope.event)
            except asyncio.CancelledError:
                envelope.resolve(False)
                queue.task_done()
                raise
            envelope.resolve(applied)
            queue.task_done()

    async def _handle_envelope(self, record: SessionRecord, event: ClientEvent) -> bool:
        session_id = record.session_id
        async with self._session_lock(session_id):
            if record.is_terminal or session_id not in self._registry:
                return False
            try:
                await self._apply_event(record, event)
            except InvalidTransitionError as exc:
                WA_TRANSITIONS_REJECTED_TOTAL.labels(exc.state, exc.event).inc()
                LOGGER.warning(
                    "stage=transition_rejected session_id=%s state=%s event=%s",
                    session_id,
                    exc.state,
                    exc.event,
                )
                return False
            except Exception:
                WA_CALLBACK_ERRORS_TOTAL.labels(event.kind).inc()
                LOGGER.exception(
                    "stage=event_handler_error session_id=%s event=%s",
                    session_id,
                    event.kind,
                )
                return False
        return True

    async def _apply_event(self, record: SessionRecord, event: ClientEvent) -> None:
        session_id = record.session_id
        target = TRANSITIONS.get((record.state, event.kind))
        if target is None:
            raise InvalidTransitionError(session_id, record.state, event.kind)

        if event.kind == EVENT_QR:
            LOGGER.info("event=qr_received session_id=%s", session_id)
            encoded = await asyncio.to_thread(self._qr_encoder, event.data or "")
            if not encoded:
                raise ValueError("qr_encoder_returned_empty_payload")
            record.qr_payload = encoded
            self._set_state(record, target, reason="qr")
            payload: Dict[str, Any] = {"sessionId": session_id, "qrCodeData": encoded}
        elif event.kind == EVENT_AUTH_FAILURE:
            message = event.data or "auth_failure"
            record.last_error = message
            self._set_state(record, target, reason="auth_failure")
            payload = {"sessionId": session_id, "message": message}
        elif event.kind == EVENT_DISCONNECTED:
            reason = event.data or "unknown"
            record.last_error = reason
            self._set_state(record, target, reason="disconnected")
            payload = {"sessionId": session_id, "reason": reason}
        else:
            self._set_state(record, target, reason=event.kind)
            payload = {"sessionId": session_id}

        WA_CLIENT_EVENTS_TOTAL.labels(event.kind).inc()
        self._bus.publish(session_id, event.kind, payload)

    async def send_message(self, session_id: str, destination: str, body: str) -> str:
        """Send ``body`` to ``destination`` and return the normalized address."""
        self._registry.get(session_id)
        if not (destination or "").strip():
            raise InvalidInputError("number")
        if not (body or "").strip():
            raise InvalidInputError("message")
        address = normalize_address(destination, self._address_suffix)

        async with self._session_lock(session_id):
            record = self._registry.get(session_id)
            if record.state != STATE_READY:
                WA_MESSAGES_SENT_TOTAL.labels("rejected").inc()
                raise SessionNotReadyError(session_id, record.state)
            try:
                await record.client.send_message(address, body)
            except Exception as exc:
                WA_MESSAGES_SENT_TOTAL.labels("failed").inc()
                LOGGER.error(
                    "stage=send_fail session_id=%s address=%s error=%s",
                    session_id,
                    address,
                    exc,
                )
                raise _as_client_error("send_message", exc) from exc

        WA_MESSAGES_SENT_TOTAL.labels("ok").inc()
        LOGGER.info("stage=send_ok session_id=%s address=%s", session_id, address)
        return address

    async def logout(self, session_id: str) -> bool:
        """Tear the session down and forget it.

        Returns whether an auth store directory was removed. On failure the
        record stays registered in its current state and the call may be
        retried; client teardown is not repeated once it has succeeded.
        """
        self._registry.get(session_id)
        async with self._session_lock(session_id):
            record = self._registry.get(session_id)
            if not record.torn_down:
                try:
                    try:
                        await record.client.logout()
                    finally:
                        await record.client.destroy()
                except Exception as exc:
                    WA_LOGOUT_TOTAL.labels("failed").inc()
                    LOGGER.error(
                        "stage=logout_failed session_id=%s step=client error=%s",
                        session_id,
                        exc,
                    )
                    raise TeardownError(session_id, "client", str(exc) or None) from exc
                record.torn_down = True

            try:
                removed = await asyncio.to_thread(self._purge_auth_store, record.auth_store)
            except OSError as exc:
                WA_LOGOUT_TOTAL.labels("failed").inc()
                LOGGER.error(
                    "stage=logout_failed session_id=%s step=auth_store path=%s error=%s",
                    session_id,
                    record.auth_store,
                    exc,
                )
                raise TeardownError(session_id, "auth_store", str(exc) or None) from exc

            self._set_state(record, STATE_LOGGED_OUT, reason="manual_logout")
            consumer, record.consumer = record.consumer, None
            self._registry.delete(session_id)
            self._drain(record)
            self._update_metrics()

        self._locks.pop(session_id, None)
        if consumer is not None:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer

        WA_LOGOUT_TOTAL.labels("ok").inc()
        LOGGER.info(
            "stage=logout session_id=%s removed_auth_store=%s",
            session_id,
            removed,
        )
        return removed

    @staticmethod
    def _purge_auth_store(path: Path) -> bool:
        if path.is_dir():
            shutil.rmtree(path)
            return True
        if path.exists():
            path.unlink()
            return True
        return False

    def snapshot(self, session_id: str) -> SessionSnapshot:
        return SessionSnapshot.from_record(self._registry.get(session_id))

    def stats_snapshot(self) -> Dict[str, int]:
        counts = {state: 0 for state in ALL_STATES if state != STATE_LOGGED_OUT}
        for record in self._registry.records():
            if record.state in counts:
                counts[record.state] += 1
        return counts

    def _update_metrics(self) -> None:
        snapshot = self.stats_snapshot()
        for state, count in snapshot.items():
            WA_SESSIONS.labels(state).set(count)

    async def shutdown(self) -> None:
        for record in self._registry.records():
            consumer, record.consumer = record.consumer, None
            if consumer is not None and not consumer.done():
                consumer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await consumer
            if not record.torn_down:
                with contextlib.suppress(Exception):
                    await record.client.destroy()
                record.torn_down = True
        LOGGER.info("stage=shutdown sessions=%s", len(self._registry))


__all__ = [
    "TRANSITIONS",
    "SessionLifecycleManager",
    "SessionSnapshot",
    "normalize_address",
]
