"""Decide when the viewer has seen a conversation and keep read flags in sync."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from ..api.client import RequestApi
from ..exceptions import RequestApiError
from ..formatting import utcnow
from ..schemas import ChatMode, ConversationSummary, MarkReadResult, Message, ReadReceiptEvent
from .reconciler import MessageReconciler
from .timers import BackgroundTasks, Scheduler, Timer

if TYPE_CHECKING:
    from .index import ConversationIndex

logger = logging.getLogger(__name__)

ReadStateCallback = Callable[[int, list[int]], None]


class ReadState(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    MARKED = "marked"


@dataclass
class _ConversationReadState:
    timer: Timer
    state: ReadState = ReadState.IDLE
    near_bottom: bool = False
    internal: bool = False
    in_flight: bool = False
    last_marked_at: float | None = None

    def move(self, state: ReadState) -> None:
        self.state = state


class ReadReceiptTracker:
    """Per-conversation ``Idle -> Pending -> Marked`` state machine.

    A conversation enters ``Pending`` while the viewport sits near the bottom
    and the active sequence holds an unread message from the other party.
    When the debounce expires the condition is checked again and a single
    ``markRead`` is issued; actual calls are spaced by ``min_interval``.
    The ``markRead`` response, never the request, is applied locally.
    """

    def __init__(
        self,
        api: RequestApi,
        reconciler: MessageReconciler,
        *,
        viewer_is_agent: bool,
        scheduler: Scheduler,
        tasks: BackgroundTasks,
        index: ConversationIndex | None = None,
        debounce: float = 0.5,
        min_interval: float = 2.0,
        on_read_state: ReadStateCallback | None = None,
    ) -> None:
        self.api = api
        self.reconciler = reconciler
        self.viewer_is_agent = viewer_is_agent
        self.scheduler = scheduler
        self.tasks = tasks
        self.index = index
        self.debounce = debounce
        self.min_interval = min_interval
        self.on_read_state = on_read_state
        self._states: dict[int, _ConversationReadState] = {}

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------

    def _state(self, conversation_id: int) -> _ConversationReadState:
        state = self._states.get(conversation_id)
        if state is None:
            timer = Timer(self.scheduler, self.debounce, lambda: self._on_timer(conversation_id))
            state = _ConversationReadState(timer=timer)
            self._states[conversation_id] = state
        return state

    def state_of(self, conversation_id: int) -> ReadState:
        state = self._states.get(conversation_id)
        return state.state if state is not None else ReadState.IDLE

    def set_internal(self, conversation_id: int, internal: bool) -> None:
        self._state(conversation_id).internal = internal

    def is_internal(self, conversation_id: int) -> bool:
        if self.index is not None:
            summary = self.index.get(conversation_id)
            if summary is not None:
                return summary.is_internal
        return self._state(conversation_id).internal

    def is_other_party(self, message: Message, *, internal: bool = False) -> bool:
        if message.is_system:
            return False
        if internal:
            return message.sender_is_agent and message.chat_mode is ChatMode.AI
        return message.sender_is_agent != self.viewer_is_agent

    def has_unread_from_other_party(self, conversation_id: int) -> bool:
        if conversation_id != self.reconciler.conversation_id:
            return False
        internal = self.is_internal(conversation_id)
        return any(
            not message.is_read and self.is_other_party(message, internal=internal)
            for message in self.reconciler.messages
        )

    def _should_mark(self, conversation_id: int) -> bool:
        return self._state(conversation_id).near_bottom and self.has_unread_from_other_party(
            conversation_id
        )

    def _arm(self, conversation_id: int, *, restart: bool) -> None:
        state = self._state(conversation_id)
        if not self._should_mark(conversation_id):
            if state.state is ReadState.PENDING:
                state.timer.cancel()
                state.move(ReadState.IDLE)
            return
        if state.state is ReadState.PENDING and not restart:
            return
        state.move(ReadState.PENDING)
        state.timer.start()

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def note_viewport_near_bottom(self, conversation_id: int, is_near: bool) -> None:
        self._state(conversation_id).near_bottom = is_near
        self._arm(conversation_id, restart=False)

    def note_incoming_message(self, conversation_id: int, message: Message) -> None:
        state = self._state(conversation_id)
        internal = self.is_internal(conversation_id)
        qualifying = not message.is_read and self.is_other_party(message, internal=internal)
        if qualifying and state.state is ReadState.MARKED:
            state.move(ReadState.IDLE)
        self._arm(conversation_id, restart=qualifying)

    def cancel(self, conversation_id: int) -> None:
        """Drop timers for a conversation the viewer navigated away from."""

        state = self._states.pop(conversation_id, None)
        if state is not None:
            state.timer.cancel()

    def cancel_all(self) -> None:
        for conversation_id in list(self._states):
            self.cancel(conversation_id)

    # ------------------------------------------------------------------
    # markRead
    # ------------------------------------------------------------------

    def _on_timer(self, conversation_id: int) -> None:
        state = self._state(conversation_id)
        if not self._should_mark(conversation_id):
            state.move(ReadState.IDLE)
            return
        now = self.scheduler.time()
        if state.in_flight:
            state.timer.start(self.debounce)
            return
        if state.last_marked_at is not None:
            elapsed = now - state.last_marked_at
            if elapsed < self.min_interval:
                state.timer.start(self.min_interval - elapsed)
                return
        state.last_marked_at = now
        state.in_flight = True
        self.tasks.spawn(self._mark(conversation_id, state), name=f"mark-read-{conversation_id}")

    async def mark_now(self, conversation_id: int) -> MarkReadResult | None:
        """Mark read immediately, ignoring debounce and rate limit.

        Returns ``None`` without calling the server while a ``markRead`` for
        the same conversation is still outstanding.
        """

        state = self._state(conversation_id)
        state.timer.cancel()
        if state.in_flight:
            logger.debug("markRead for conversation %s already in flight", conversation_id)
            return None
        state.last_marked_at = self.scheduler.time()
        state.in_flight = True
        return await self._mark(conversation_id, state)

    async def _mark(
        self, conversation_id: int, state: _ConversationReadState
    ) -> MarkReadResult | None:
        try:
            result = await self.api.mark_read(
                conversation_id, reader_is_agent=self.viewer_is_agent
            )
        except RequestApiError as exc:
            state.in_flight = False
            state.move(ReadState.IDLE)
            logger.warning("markRead for conversation %s failed: %s", conversation_id, exc)
            return None
        state.in_flight = False
        if result is None:
            state.move(ReadState.IDLE)
            return None
        self.apply_mark_result(conversation_id, result)
        state.move(ReadState.MARKED)
        return result

    def apply_mark_result(self, conversation_id: int, result: MarkReadResult) -> list[int]:
        read_at = result.read_at or utcnow()
        flipped = self.reconciler.mark_read(conversation_id, result.message_ids, read_at)
        if self.index is not None:
            marked = set(result.message_ids)

            def _mutate(item: ConversationSummary) -> ConversationSummary:
                updates: dict[str, object] = {"unread_count": max(result.unread_count, 0)}
                preview = item.last_message
                if preview is not None and preview.id in marked and not preview.is_read:
                    updates["last_message"] = preview.model_copy(
                        update={"is_read": True, "read_at": read_at}
                    )
                return item.model_copy(update=updates)

            self.index.update(conversation_id, _mutate, skip_resort=True)
        self._notify(conversation_id, flipped)
        return flipped

    # ------------------------------------------------------------------
    # Inbound receipts
    # ------------------------------------------------------------------

    def apply_receipt(self, event: ReadReceiptEvent) -> list[int]:
        """Apply a ``messages_read`` push event; returns the flipped message ids."""

        conversation_id = event.conversation_id
        if conversation_id is None:
            logger.debug("Ignoring read receipt without conversation id")
            return []

        if event.reader_is_agent:
            if self.viewer_is_agent:
                if event.unread_count is not None and self.index is not None:
                    unread = max(event.unread_count, 0)
                    self.index.update(
                        conversation_id,
                        lambda item: item.model_copy(update={"unread_count": unread}),
                        skip_resort=True,
                    )
                return []
            authored_by_agent = False
        else:
            if not self.viewer_is_agent:
                return []
            authored_by_agent = True

        read_at = event.read_at or utcnow()
        flipped = self.reconciler.mark_read(
            conversation_id, event.message_ids, read_at, sender_is_agent=authored_by_agent
        )
        if self.index is not None:
            self._flip_preview(conversation_id, event, read_at, authored_by_agent)
        self._notify(conversation_id, flipped)
        return flipped

    def _flip_preview(
        self,
        conversation_id: int,
        event: ReadReceiptEvent,
        read_at: datetime,
        authored_by_agent: bool,
    ) -> None:
        marked = set(event.message_ids)
        visitor_reader = not event.reader_is_agent

        def _mutate(item: ConversationSummary) -> ConversationSummary:
            updates: dict[str, object] = {}
            preview = item.last_message
            if (
                preview is not None
                and preview.id in marked
                and preview.sender_is_agent == authored_by_agent
                and not preview.is_read
            ):
                updates["last_message"] = preview.model_copy(
                    update={"is_read": True, "read_at": read_at}
                )
            if visitor_reader:
                updates["last_seen_at"] = read_at
            return item.model_copy(update=updates) if updates else item

        self.index.update(conversation_id, _mutate, skip_resort=True)

    def _notify(self, conversation_id: int, flipped: list[int]) -> None:
        if flipped and self.on_read_state is not None:
            self.on_read_state(conversation_id, flipped)
