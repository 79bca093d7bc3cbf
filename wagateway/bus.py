from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .metrics import WA_NOTIFICATIONS_DROPPED_TOTAL


LOGGER = logging.getLogger("wagateway.bus")


@dataclass(frozen=True, slots=True)
class Notification:
    session_id: str
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)


class Subscription:
    """One live listener on the bus with its own bounded queue."""

    def __init__(
        self,
        bus: "NotificationBus",
        *,
        session_id: Optional[str] = None,
        maxsize: int = 100,
    ) -> None:
        self._bus = bus
        self._queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=maxsize)
        self.session_id = session_id
        self.closed = False

    def matches(self, notification: Notification) -> bool:
        return self.session_id is None or self.session_id == notification.session_id

    def offer(self, notification: Notification) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(notification)
        except asyncio.QueueFull:
            return False
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    def get_nowait(self) -> Optional[Notification]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def get(self, timeout: Optional[float] = None) -> Optional[Notification]:
        """Wait for the next notification; ``None`` when ``timeout`` elapses."""
        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._bus._detach(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Notification:
        if self.closed:
            raise StopAsyncIteration
        return await self._queue.get()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


class NotificationBus:
    """Fan-out broadcaster for session lifecycle events.

    Delivery is best-effort and live only: subscribers see events published
    after they joined, and a subscriber whose queue is full misses the event.
    """

    def __init__(self, *, queue_size: int = 100) -> None:
        self._queue_size = max(int(queue_size), 1)
        self._subscribers: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, session_id: Optional[str] = None) -> Subscription:
        subscription = Subscription(self, session_id=session_id, maxsize=self._queue_size)
        self._subscribers.append(subscription)
        LOGGER.debug(
            "event=subscribe session_id=%s subscribers=%s",
            session_id or "*",
            len(self._subscribers),
        )
        return subscription

    def _detach(self, subscription: Subscription) -> None:
        try:
            self._subscribers.remove(subscription)
        except ValueError:
            return
        LOGGER.debug(
            "event=unsubscribe session_id=%s subscribers=%s",
            subscription.session_id or "*",
            len(self._subscribers),
        )

    def publish(
        self,
        session_id: str,
        kind: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        notification = Notification(session_id=session_id, kind=kind, payload=dict(payload or {}))
        delivered = 0
        for subscription in list(self._subscribers):
            if not subscription.matches(notification):
                continue
            if subscription.offer(notification):
                delivered += 1
                continue
            WA_NOTIFICATIONS_DROPPED_TOTAL.inc()
            LOGGER.warning(
                "event=notification_dropped session_id=%s kind=%s reason=queue_full",
                session_id,
                kind,
            )
        return delivered


__all__ = ["Notification", "Subscription", "NotificationBus"]
