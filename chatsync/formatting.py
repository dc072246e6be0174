"""Small presentation helpers shared by the index and the sessions."""

from __future__ import annotations

from datetime import datetime, timezone

PREVIEW_MAX_LENGTH = 50
PRESENCE_TTL_SECONDS = 10.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_message_preview(content: str | None, max_length: int = PREVIEW_MAX_LENGTH) -> str:
    """Truncate ``content`` for the conversation list preview."""

    if not content:
        return ""
    if len(content) <= max_length:
        return content
    return f"{content[:max_length]}..."


def is_visitor_online(
    last_seen_at: datetime | None,
    *,
    now: datetime | None = None,
    ttl_seconds: float = PRESENCE_TTL_SECONDS,
) -> bool:
    """Presence is "online" only while ``last_seen_at`` stays fresh."""

    if last_seen_at is None:
        return False
    current = as_utc(now) if now is not None else utcnow()
    return (current - as_utc(last_seen_at)).total_seconds() < ttl_seconds
