"""Push-channel transports and the connection manager."""

from .aiohttp_ws import AiohttpPushConnection, AiohttpPushTransport
from .base import CloseInfo, ConnectionTarget, PushConnection, PushTransport
from .connection import ConnectionManager, ConnectionState

__all__ = [
    "AiohttpPushConnection",
    "AiohttpPushTransport",
    "CloseInfo",
    "ConnectionManager",
    "ConnectionState",
    "ConnectionTarget",
    "PushConnection",
    "PushTransport",
]
