"""Lightweight configuration helpers for the session gateway."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_WA_BRIDGE_URL = "http://waweb:9001"
DEFAULT_APP_INTERNAL_URL = "http://app:4000"
DEFAULT_ADDRESS_SUFFIX = "@c.us"


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _normalize_url(raw: str | None, default: str) -> str:
    if not raw:
        return default
    cleaned = raw.strip()
    if not cleaned:
        return default
    return cleaned.rstrip("/") or default


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        return float(cleaned)
    except ValueError:
        return default


def _resolve_sessions_dir(raw: str | None) -> Path:
    candidate = Path(raw or "/app/wa-sessions")
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        alt = Path("/tmp/wa-sessions")
        alt.mkdir(parents=True, exist_ok=True)
        return alt
    return candidate


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    sessions_dir: Path
    bridge_url: str
    bridge_token: str | None
    bridge_timeout: float
    public_url: str
    webhook_token: str | None
    port: int
    address_suffix: str
    qr_refresh_seconds: int
    events_heartbeat: float
    events_queue_size: int


def gateway_config() -> GatewayConfig:
    sessions_dir = _resolve_sessions_dir(os.getenv("WA_SESSIONS_DIR"))
    bridge_url = _normalize_url(os.getenv("WA_BRIDGE_URL"), DEFAULT_WA_BRIDGE_URL)
    bridge_token = (os.getenv("WA_BRIDGE_TOKEN") or "").strip() or None
    public_url = _normalize_url(os.getenv("APP_INTERNAL_URL"), DEFAULT_APP_INTERNAL_URL)
    webhook_token = (os.getenv("WEBHOOK_SECRET") or "").strip() or None

    suffix = (os.getenv("WA_ADDRESS_SUFFIX") or "").strip() or DEFAULT_ADDRESS_SUFFIX
    if not suffix.startswith("@"):
        suffix = f"@{suffix}"

    return GatewayConfig(
        sessions_dir=sessions_dir,
        bridge_url=bridge_url,
        bridge_token=bridge_token,
        bridge_timeout=_parse_duration(os.getenv("WA_BRIDGE_TIMEOUT"), default=10.0),
        public_url=public_url,
        webhook_token=webhook_token,
        port=_coerce_int(os.getenv("PORT"), 4000) or 4000,
        address_suffix=suffix,
        qr_refresh_seconds=max(_coerce_int(os.getenv("QR_REFRESH_SECONDS"), 5), 1),
        events_heartbeat=_parse_duration(os.getenv("EVENTS_HEARTBEAT"), default=15.0),
        events_queue_size=max(_coerce_int(os.getenv("EVENTS_QUEUE_SIZE"), 100), 1),
    )


__all__ = [
    "GatewayConfig",
    "DEFAULT_WA_BRIDGE_URL",
    "DEFAULT_APP_INTERNAL_URL",
    "DEFAULT_ADDRESS_SUFFIX",
    "gateway_config",
]
