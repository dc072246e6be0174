"""Runtime settings for the synchronization engine."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache
from urllib.parse import urlsplit, urlunsplit

from .exceptions import ConfigurationError

DEFAULT_API_BASE_URL = "http://localhost:8080"


@dataclasses.dataclass(frozen=True)
class SyncSettings:
    """Endpoints and timing constants shared by every session."""

    api_base_url: str = DEFAULT_API_BASE_URL
    ws_url: str = "ws://localhost:8080/ws"
    request_timeout: float = 10.0
    reconnect_delay: float = 3.0
    max_reconnect_attempts: int = 5
    mark_read_debounce: float = 0.5
    mark_read_min_interval: float = 2.0
    search_debounce: float = 0.3
    near_bottom_px: int = 100
    highlight_clear_delay: float = 3.0
    presence_ttl: float = 10.0


def derive_ws_url(api_base_url: str) -> str:
    """Swap ``http``/``https`` for ``ws``/``wss`` and point at ``/ws``."""

    parts = urlsplit(api_base_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    path = parts.path.rstrip("/") + "/ws"
    return urlunsplit((scheme, parts.netloc, path, "", ""))


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {raw!r}")
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {raw!r}")
    return value


@lru_cache(maxsize=1)
def get_sync_settings() -> SyncSettings:
    """Load settings from ``CHATSYNC_*`` environment variables."""

    api_base_url = (os.getenv("CHATSYNC_API_BASE_URL") or DEFAULT_API_BASE_URL).rstrip("/")
    if urlsplit(api_base_url).scheme not in ("http", "https"):
        raise ConfigurationError(
            f"CHATSYNC_API_BASE_URL must be an http(s) URL, got {api_base_url!r}"
        )
    ws_url = os.getenv("CHATSYNC_WS_URL") or derive_ws_url(api_base_url)
    return SyncSettings(
        api_base_url=api_base_url,
        ws_url=ws_url,
        request_timeout=_env_float("CHATSYNC_REQUEST_TIMEOUT", 10.0),
        reconnect_delay=_env_float("CHATSYNC_RECONNECT_DELAY", 3.0),
        max_reconnect_attempts=_env_int("CHATSYNC_MAX_RECONNECT_ATTEMPTS", 5),
        mark_read_debounce=_env_float("CHATSYNC_MARK_READ_DEBOUNCE", 0.5),
        mark_read_min_interval=_env_float("CHATSYNC_MARK_READ_MIN_INTERVAL", 2.0),
        search_debounce=_env_float("CHATSYNC_SEARCH_DEBOUNCE", 0.3),
        near_bottom_px=_env_int("CHATSYNC_NEAR_BOTTOM_PX", 100),
        highlight_clear_delay=_env_float("CHATSYNC_HIGHLIGHT_CLEAR_DELAY", 3.0),
        presence_ttl=_env_float("CHATSYNC_PRESENCE_TTL", 10.0),
    )


def reset_sync_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_sync_settings.cache_clear()
