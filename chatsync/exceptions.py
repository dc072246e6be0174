"""Error taxonomy shared by the synchronization engine."""

from __future__ import annotations


class ChatSyncError(Exception):
    """Base class for all errors raised by chatsync."""


class ConfigurationError(ChatSyncError):
    """Raised when environment configuration cannot be parsed."""


class RequestApiError(ChatSyncError):
    """Raised when the Request API answers with an error or is unreachable."""

    def __init__(self, message: str, *, status_code: int | None = None, detail: str | None = None):
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class SendFailedError(ChatSyncError):
    """Raised when a message could not be sent; carries the draft to restore."""

    def __init__(self, draft: str, *, conversation_id: int | None = None):
        self.draft = draft
        self.conversation_id = conversation_id
        super().__init__(f"Failed to send message to conversation {conversation_id}")


class TransportError(ChatSyncError):
    """Raised by push transports when a connection cannot be used."""


class ReconnectExhaustedError(ChatSyncError):
    """Reported (not raised) once the push connection stops retrying."""

    def __init__(self, attempts: int, *, conversation_id: int | None = None):
        self.attempts = attempts
        self.conversation_id = conversation_id
        super().__init__(
            f"Push connection for conversation {conversation_id} gave up after {attempts} reconnect attempts"
        )


class EventDecodeError(ChatSyncError):
    """Raised when a push frame is not a valid event envelope."""
