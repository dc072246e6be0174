"""Pydantic schemas for messages, conversations and push events."""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import EventDecodeError
from .formatting import PRESENCE_TTL_SECONDS, as_utc, build_message_preview, is_visitor_online

# Locally synthesized ids are millisecond timestamps, far above any server id.
PROVISIONAL_ID_FLOOR = 1_000_000_000_000

# AI replies are stored as agent messages with sender id 0.
AI_SENDER_ID = 0


class ViewerRole(str, Enum):
    AGENT = "agent"
    VISITOR = "visitor"

    @property
    def is_agent(self) -> bool:
        return self is ViewerRole.AGENT


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    SYSTEM = "system"


class ChatMode(str, Enum):
    HUMAN = "human"
    AI = "ai"


_LEGACY_MESSAGE_TYPES = {
    "user_message": MessageType.TEXT.value,
    "system_message": MessageType.SYSTEM.value,
}


def _drop_blank(data: dict[str, Any], *keys: str) -> dict[str, Any]:
    for key in keys:
        if key in data and data[key] in (None, ""):
            del data[key]
    return data


def _normalise_message_type(data: dict[str, Any]) -> dict[str, Any]:
    raw_type = data.get("message_type")
    if raw_type in _LEGACY_MESSAGE_TYPES:
        data["message_type"] = _LEGACY_MESSAGE_TYPES[raw_type]
    return _drop_blank(data, "message_type")


class FileDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    name: str | None = None
    size: int | None = None
    mime_type: str | None = None
    kind: Literal["image", "document"] | None = None


class Message(BaseModel):
    """A chat message, either confirmed by the server or provisional."""

    model_config = ConfigDict(frozen=True)

    id: int
    conversation_id: int
    sender_id: int = 0
    sender_is_agent: bool = False
    content: str = ""
    created_at: datetime
    message_type: MessageType = MessageType.TEXT
    chat_mode: ChatMode = ChatMode.HUMAN
    is_read: bool = False
    read_at: datetime | None = None
    file: FileDescriptor | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalise_wire(cls, data: Any) -> Any:
        """Fold the flat wire representation into the model fields."""

        if not isinstance(data, Mapping):
            return data
        data = _normalise_message_type(dict(data))
        file_kind = data.pop("file_type", None) or None
        file_fields = {
            "url": data.pop("file_url", None),
            "name": data.pop("file_name", None),
            "size": data.pop("file_size", None),
            "mime_type": data.pop("mime_type", None),
            "kind": file_kind,
        }
        if data.get("file") is None:
            data.pop("file", None)
            if file_fields["url"]:
                data["file"] = file_fields
        if file_kind in ("image", "document") and data.get("message_type", "text") == "text":
            data["message_type"] = file_kind
        return _drop_blank(data, "sender_id", "content", "chat_mode", "is_read", "read_at")

    @field_validator("created_at", "read_at")
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    @property
    def is_provisional(self) -> bool:
        return self.id >= PROVISIONAL_ID_FLOOR

    @property
    def is_system(self) -> bool:
        return self.message_type is MessageType.SYSTEM

    @property
    def is_from_ai(self) -> bool:
        return (
            self.sender_is_agent
            and self.chat_mode is ChatMode.AI
            and self.sender_id == AI_SENDER_ID
        )

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.created_at, self.id)


class LastMessage(BaseModel):
    """Denormalized preview of a conversation's newest message."""

    model_config = ConfigDict(frozen=True)

    id: int
    content: str = ""
    sender_is_agent: bool = False
    message_type: MessageType = MessageType.TEXT
    is_read: bool = False
    read_at: datetime | None = None
    created_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalise_wire(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = _normalise_message_type(dict(data))
        return _drop_blank(data, "content", "is_read", "read_at", "created_at")

    @field_validator("created_at", "read_at")
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    @classmethod
    def from_message(cls, message: Message) -> "LastMessage":
        return cls(
            id=message.id,
            content=build_message_preview(message.content),
            sender_is_agent=message.sender_is_agent,
            message_type=message.message_type,
            is_read=message.is_read,
            read_at=message.read_at,
            created_at=message.created_at,
        )


class ConversationSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    visitor_id: int = 0
    agent_id: int = 0
    status: str = "open"
    conversation_type: str = "visitor"
    chat_mode: ChatMode | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    unread_count: int = Field(default=0, ge=0)
    last_message: LastMessage | None = None
    last_seen_at: datetime | None = None
    has_participated: bool = False

    @model_validator(mode="before")
    @classmethod
    def _normalise_wire(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        return _drop_blank(
            dict(data),
            "unread_count",
            "conversation_type",
            "chat_mode",
            "created_at",
            "updated_at",
            "last_message",
            "last_seen_at",
            "has_participated",
        )

    @field_validator("created_at", "updated_at", "last_seen_at")
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None

    @property
    def is_internal(self) -> bool:
        return self.conversation_type == "internal"

    def is_visitor_online(
        self, now: datetime | None = None, *, ttl_seconds: float = PRESENCE_TTL_SECONDS
    ) -> bool:
        return is_visitor_online(self.last_seen_at, now=now, ttl_seconds=ttl_seconds)


class ConversationDetail(ConversationSummary):
    website: str | None = None
    referrer: str | None = None
    browser: str | None = None
    os: str | None = None
    language: str | None = None
    ip_address: str | None = None
    location: str | None = None
    email: str | None = None
    phone: str | None = None
    notes: str | None = None

    def to_summary(self) -> ConversationSummary:
        fields = {name: getattr(self, name) for name in ConversationSummary.model_fields}
        return ConversationSummary(**fields)


class ReadReceiptEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    conversation_id: int | None = None
    message_ids: list[int] = Field(default_factory=list)
    read_at: datetime | None = None
    reader_is_agent: bool = False
    unread_count: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalise_wire(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        return _drop_blank(dict(data), "message_ids", "read_at", "reader_is_agent")

    @field_validator("read_at")
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


class MarkReadResult(BaseModel):
    """Authoritative answer of a ``markRead`` request."""

    model_config = ConfigDict(frozen=True)

    message_ids: list[int] = Field(default_factory=list)
    unread_count: int = 0
    read_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _normalise_wire(cls, data: Any) -> Any:
        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        if not isinstance(data.get("message_ids"), list):
            data.pop("message_ids", None)
        if not isinstance(data.get("unread_count"), int):
            data.pop("unread_count", None)
        if not isinstance(data.get("read_at"), str):
            data.pop("read_at", None)
        return _drop_blank(data, "read_at")

    @field_validator("read_at")
    @classmethod
    def _to_utc(cls, value: datetime | None) -> datetime | None:
        return as_utc(value) if value is not None else None


class VisitorStatusUpdate(BaseModel):
    model_config = ConfigDict(frozen=True)

    conversation_id: int | None = None
    is_online: bool | None = None
    visitor_count: int | None = None


class SendMessagePayload(BaseModel):
    conversation_id: int
    content: str
    sender_id: int = 0
    sender_is_agent: bool = True
    file: FileDescriptor | None = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "conversation_id": self.conversation_id,
            "content": self.content,
            "sender_is_agent": self.sender_is_agent,
            "sender_id": self.sender_id,
        }
        if self.file is not None and self.file.url:
            payload["file_url"] = self.file.url
            if self.file.kind:
                payload["file_type"] = self.file.kind
            if self.file.name:
                payload["file_name"] = self.file.name
            if self.file.size:
                payload["file_size"] = self.file.size
            if self.file.mime_type:
                payload["mime_type"] = self.file.mime_type
        return payload


# ----------------------------------------------------------------------
# Push events


class _Envelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    conversation_id: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _backfill_conversation_id(cls, data: Any) -> Any:
        """Payloads may omit ``conversation_id``; the envelope carries it."""

        if not isinstance(data, Mapping):
            return data
        data = dict(data)
        payload = data.get("data")
        envelope_id = data.get("conversation_id")
        if isinstance(payload, Mapping) and envelope_id is not None:
            if payload.get("conversation_id") is None:
                data["data"] = {**payload, "conversation_id": envelope_id}
        return data


class NewMessageEvent(_Envelope):
    type: Literal["new_message"] = "new_message"
    data: Message


class MessagesReadEvent(_Envelope):
    type: Literal["messages_read"] = "messages_read"
    data: ReadReceiptEvent


class VisitorStatusEvent(_Envelope):
    type: Literal["visitor_status_update"] = "visitor_status_update"
    data: VisitorStatusUpdate


PushEvent = Annotated[
    Union[NewMessageEvent, MessagesReadEvent, VisitorStatusEvent],
    Field(discriminator="type"),
]

PUSH_EVENT_TYPES = frozenset({"new_message", "messages_read", "visitor_status_update"})

_PUSH_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(PushEvent)


def decode_push_event(frame: str | bytes | Mapping[str, Any]) -> NewMessageEvent | MessagesReadEvent | VisitorStatusEvent:
    """Decode one push frame into its typed event.

    Raises:
        EventDecodeError: If the frame is not JSON, names an unsupported
            event type or carries an invalid payload.
    """

    if isinstance(frame, (str, bytes, bytearray)):
        try:
            payload = json.loads(frame)
        except ValueError as exc:
            raise EventDecodeError("Push frame is not valid JSON") from exc
    else:
        payload = dict(frame)
    if not isinstance(payload, dict):
        raise EventDecodeError("Push frame must be a JSON object")
    event_type = payload.get("type")
    if event_type not in PUSH_EVENT_TYPES:
        raise EventDecodeError(f"Unsupported push event type {event_type!r}")
    try:
        return _PUSH_EVENT_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise EventDecodeError(
            f"Invalid {event_type} payload: {exc.error_count()} validation error(s)"
        ) from exc
