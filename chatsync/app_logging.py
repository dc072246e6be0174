"""Engine and wire logging setup.

This module centralizes logging configuration for chatsync. It provides:

- A simple JSON formatter (opt-in via LOG_JSON) or a human-readable formatter.
- Timed rotation of log files for both engine logs (chatsync.log) and wire
  logs (wire.log), honoring retention and timezone options.
- ``log_wire`` which records outbound requests and inbound push frames with
  basic PII scrubbing.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_RETENTION_DAYS,
LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
from logging.handlers import TimedRotatingFileHandler
from typing import Any

ENGINE_LOGGER = "chatsync"
WIRE_LOGGER = "chatsync.wire"


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - simple
        log_record = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_record["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(log_record)


def _get_formatter(log_json: bool) -> logging.Formatter:
    if log_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


SENSITIVE_FIELDS = {
    "authorization",
    "cookie",
    "set-cookie",
    "password",
    "token",
    "access_token",
    "refresh_token",
    "email",
    "phone",
    "ip_address",
}


def _scrub(data: object) -> object:
    """Recursively scrub sensitive fields from dictionaries and lists."""

    if isinstance(data, dict):
        return {
            k: ("***" if str(k).lower() in SENSITIVE_FIELDS else _scrub(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [_scrub(v) for v in data]
    return data


def log_wire(direction: str, channel: str, payload: Any = None, **fields: Any) -> None:
    """Record one wire exchange on the ``chatsync.wire`` logger at DEBUG."""

    wire_logger = logging.getLogger(WIRE_LOGGER)
    if not wire_logger.isEnabledFor(logging.DEBUG):
        return
    log_data: dict[str, Any] = {"direction": direction, "channel": channel, **fields}
    if payload is not None:
        log_data["payload"] = _scrub(payload)
    wire_logger.debug(json.dumps(log_data, default=str))


def _rotating_handler(
    path: str, formatter: logging.Formatter, retention_days: int, rotate_utc: bool
) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        path,
        when="midnight",
        backupCount=retention_days,
        utc=rotate_utc,
    )
    handler.setFormatter(formatter)
    return handler


def init_logging() -> None:
    """Initialise the engine and wire loggers."""

    log_dir = os.getenv("LOG_DIR", "logs")
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_json = os.getenv("LOG_JSON", "false").lower() == "true"
    retention_days = int(os.getenv("LOG_RETENTION_DAYS", "7"))
    rotate_utc = os.getenv("LOG_ROTATE_UTC", "false").lower() == "true"

    os.makedirs(log_dir, exist_ok=True)

    formatter = _get_formatter(log_json)
    log_level = getattr(logging, log_level_str, logging.INFO)

    engine_logger = logging.getLogger(ENGINE_LOGGER)
    if not engine_logger.handlers:
        engine_logger.addHandler(
            _rotating_handler(
                os.path.join(log_dir, "chatsync.log"), formatter, retention_days, rotate_utc
            )
        )
    engine_logger.setLevel(log_level)

    # Wire traffic goes to its own file only.
    wire_logger = logging.getLogger(WIRE_LOGGER)
    wire_logger.handlers.clear()
    wire_logger.propagate = False
    wire_logger.addHandler(
        _rotating_handler(os.path.join(log_dir, "wire.log"), formatter, retention_days, rotate_utc)
    )
    wire_logger.setLevel(log_level)
