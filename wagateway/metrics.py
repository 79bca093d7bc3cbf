from __future__ import annotations

from prometheus_client import Counter, Gauge


WA_SESSIONS = Gauge(
    "wa_sessions",
    "Number of registered WhatsApp sessions grouped by lifecycle state",
    labelnames=("state",),
)
WA_SESSION_START_TOTAL = Counter(
    "wa_session_start_total",
    "Session start attempts grouped by outcome",
    labelnames=("status",),
)
WA_CLIENT_EVENTS_TOTAL = Counter(
    "wa_client_events_total",
    "Client events applied to sessions",
    labelnames=("event",),
)
WA_TRANSITIONS_REJECTED_TOTAL = Counter(
    "wa_transitions_rejected_total",
    "Client events that did not match a lifecycle edge",
    labelnames=("state", "event"),
)
WA_CALLBACK_ERRORS_TOTAL = Counter(
    "wa_callback_errors_total",
    "Errors raised while handling client callbacks",
    labelnames=("reason",),
)
WA_MESSAGES_SENT_TOTAL = Counter(
    "wa_messages_sent_total",
    "Outbound messages grouped by result",
    labelnames=("status",),
)
WA_LOGOUT_TOTAL = Counter(
    "wa_logout_total",
    "Logout attempts grouped by result",
    labelnames=("status",),
)
WA_NOTIFICATIONS_DROPPED_TOTAL = Counter(
    "wa_notifications_dropped_total",
    "Notifications dropped because a subscriber queue was full",
)

__all__ = [
    "WA_SESSIONS",
    "WA_SESSION_START_TOTAL",
    "WA_CLIENT_EVENTS_TOTAL",
    "WA_TRANSITIONS_REJECTED_TOTAL",
    "WA_CALLBACK_ERRORS_TOTAL",
    "WA_MESSAGES_SENT_TOTAL",
    "WA_LOGOUT_TOTAL",
    "WA_NOTIFICATIONS_DROPPED_TOTAL",
]
