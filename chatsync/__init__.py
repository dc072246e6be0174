"""Real-time conversation synchronization engine for a customer-support client."""

from .__version__ import __version__
from .exceptions import (
    ChatSyncError,
    ConfigurationError,
    EventDecodeError,
    ReconnectExhaustedError,
    RequestApiError,
    SendFailedError,
    TransportError,
)

__all__ = [
    "ChatSyncError",
    "ConfigurationError",
    "EventDecodeError",
    "ReconnectExhaustedError",
    "RequestApiError",
    "SendFailedError",
    "TransportError",
    "__version__",
]
