"""In-memory collaborators for driving the engine without network or real time."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any

from chatsync.exceptions import TransportError
from chatsync.schemas import (
    ChatMode,
    ConversationDetail,
    ConversationSummary,
    LastMessage,
    MarkReadResult,
    Message,
    MessageType,
    SendMessagePayload,
)
from chatsync.sync.session import SessionListener
from chatsync.transport.base import CloseInfo, ConnectionTarget

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    return BASE_TIME + timedelta(seconds=seconds)


def make_message(
    message_id: int,
    conversation_id: int = 1,
    *,
    sender_is_agent: bool = False,
    content: str | None = None,
    seconds: float | None = None,
    is_read: bool = False,
    message_type: MessageType = MessageType.TEXT,
    chat_mode: ChatMode = ChatMode.HUMAN,
    sender_id: int | None = None,
) -> Message:
    return Message(
        id=message_id,
        conversation_id=conversation_id,
        sender_id=sender_id if sender_id is not None else (7 if sender_is_agent else 42),
        sender_is_agent=sender_is_agent,
        content=content if content is not None else f"message {message_id}",
        created_at=at(seconds if seconds is not None else message_id),
        message_type=message_type,
        chat_mode=chat_mode,
        is_read=is_read,
    )


def make_summary(
    conversation_id: int,
    *,
    seconds: float = 0,
    unread: int = 0,
    has_participated: bool = False,
    last_message: Message | None = None,
    conversation_type: str = "visitor",
) -> ConversationSummary:
    return ConversationSummary(
        id=conversation_id,
        visitor_id=100 + conversation_id,
        agent_id=7,
        updated_at=at(seconds),
        unread_count=unread,
        has_participated=has_participated,
        last_message=LastMessage.from_message(last_message) if last_message else None,
        conversation_type=conversation_type,
    )


async def settle(rounds: int = 20) -> None:
    """Let spawned tasks run until they block."""

    for _ in range(rounds):
        await asyncio.sleep(0)


# ----------------------------------------------------------------------
# Clock


class FakeHandle:
    def __init__(self, when: float, seq: int, callback) -> None:
        self.when = when
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    """Manual clock: callbacks only run inside ``advance``."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self._handles: list[FakeHandle] = []
        self._seq = 0

    def time(self) -> float:
        return self.now

    def call_later(self, delay: float, callback) -> FakeHandle:
        self._seq += 1
        handle = FakeHandle(self.now + delay, self._seq, callback)
        self._handles.append(handle)
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for handle in self._handles if not handle.cancelled)

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = [h for h in self._handles if not h.cancelled and h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: (h.when, h.seq))
            self._handles.remove(handle)
            self.now = max(self.now, handle.when)
            handle.callback()
        self.now = target
        self._handles = [h for h in self._handles if not h.cancelled]


# ----------------------------------------------------------------------
# Request API


class FakeRequestApi:
    def __init__(self) -> None:
        self.conversations: list[ConversationSummary] = []
        self.search_results: dict[str, list[ConversationSummary]] = {}
        self.details: dict[int, ConversationDetail] = {}
        self.messages: dict[int, list[Message]] = {}
        self.mark_read_results: deque[MarkReadResult | None] = deque()
        self.search_gates: dict[str, asyncio.Event] = {}
        self.message_gates: dict[int, asyncio.Event] = {}
        self.mark_read_gate: asyncio.Event | None = None
        self.search_error: Exception | None = None
        self.send_error: Exception | None = None
        self.mark_read_error: Exception | None = None
        self.list_calls = 0
        self.search_calls: list[str] = []
        self.detail_calls: list[int] = []
        self.message_calls: list[tuple[int, bool]] = []
        self.sent: list[SendMessagePayload] = []
        self.mark_read_calls: list[tuple[int, bool]] = []

    async def list_conversations(self) -> list[ConversationSummary]:
        self.list_calls += 1
        return list(self.conversations)

    async def search_conversations(self, query: str) -> list[ConversationSummary]:
        self.search_calls.append(query)
        gate = self.search_gates.get(query)
        if gate is not None:
            await gate.wait()
        if self.search_error is not None:
            raise self.search_error
        return list(self.search_results.get(query, []))

    async def get_conversation_detail(self, conversation_id: int) -> ConversationDetail | None:
        self.detail_calls.append(conversation_id)
        return self.details.get(conversation_id)

    async def list_messages(
        self, conversation_id: int, *, include_ai_messages: bool = False
    ) -> list[Message]:
        self.message_calls.append((conversation_id, include_ai_messages))
        gate = self.message_gates.get(conversation_id)
        if gate is not None:
            await gate.wait()
        return list(self.messages.get(conversation_id, []))

    async def send_message(self, payload: SendMessagePayload) -> None:
        self.sent.append(payload)
        if self.send_error is not None:
            raise self.send_error

    async def mark_read(
        self, conversation_id: int, *, reader_is_agent: bool
    ) -> MarkReadResult | None:
        self.mark_read_calls.append((conversation_id, reader_is_agent))
        if self.mark_read_gate is not None:
            await self.mark_read_gate.wait()
        if self.mark_read_error is not None:
            raise self.mark_read_error
        if self.mark_read_results:
            return self.mark_read_results.popleft()
        return MarkReadResult(message_ids=[], unread_count=0)


# ----------------------------------------------------------------------
# Push transport


class FakeConnection:
    def __init__(self, target: ConnectionTarget) -> None:
        self.target = target
        self.closed = False
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._close_info: CloseInfo | None = None

    @property
    def close_info(self) -> CloseInfo | None:
        return self._close_info

    def push(self, frame: dict[str, Any] | str) -> None:
        self._queue.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def push_message(self, message: Message) -> None:
        self.push(
            {
                "type": "new_message",
                "conversation_id": message.conversation_id,
                "data": message.model_dump(mode="json"),
            }
        )

    def drop(self, code: int = 1006) -> None:
        self._queue.put_nowait(CloseInfo(clean=False, code=code))

    def finish(self) -> None:
        self._queue.put_nowait(CloseInfo(clean=True, code=1000))

    async def frames(self):
        while True:
            item = await self._queue.get()
            if isinstance(item, CloseInfo):
                self._close_info = item
                return
            yield item

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(CloseInfo(clean=True, code=1000))


class FakeTransport:
    def __init__(self) -> None:
        self.targets: list[ConnectionTarget] = []
        self.connections: list[FakeConnection] = []
        self.failures = 0

    @property
    def latest(self) -> FakeConnection:
        return self.connections[-1]

    async def connect(self, target: ConnectionTarget) -> FakeConnection:
        self.targets.append(target)
        if self.failures:
            self.failures -= 1
            raise TransportError("connection refused")
        connection = FakeConnection(target)
        self.connections.append(connection)
        return connection


# ----------------------------------------------------------------------
# Session listener


class RecordingListener(SessionListener):
    def __init__(self) -> None:
        self.changes: list[tuple[list[Message], Any]] = []
        self.details: list[ConversationDetail | None] = []
        self.disconnects: list[Exception] = []
        self.notified: list[Message] = []

    @property
    def decisions(self) -> list[Any]:
        return [decision for _, decision in self.changes if decision is not None]

    def on_messages_changed(self, messages, decision) -> None:
        self.changes.append((messages, decision))

    def on_detail_changed(self, detail) -> None:
        self.details.append(detail)

    def on_disconnected(self, error) -> None:
        self.disconnects.append(error)

    def on_notify(self, message) -> None:
        self.notified.append(message)
