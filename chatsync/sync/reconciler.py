"""Merge provisional, confirmed and pushed messages into one ordered sequence."""

from __future__ import annotations

import bisect
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from ..formatting import utcnow
from ..schemas import PROVISIONAL_ID_FLOOR, ConversationSummary, LastMessage, Message

if TYPE_CHECKING:
    from .index import ConversationIndex

logger = logging.getLogger(__name__)

SUMMARIZED_IDS_PER_CONVERSATION = 500


class ReconcileAction(str, Enum):
    INSERTED = "inserted"
    MERGED = "merged"
    CONFIRMED = "confirmed"
    UNCHANGED = "unchanged"
    EXTERNAL = "external"


@dataclass(frozen=True)
class ReconcileResult:
    messages: list[Message]
    action: ReconcileAction


@dataclass(frozen=True)
class InboundOutcome:
    """What ``MessageReconciler.apply_inbound`` did with one pushed message."""

    message: Message
    action: ReconcileAction
    unread_incremented: bool = False

    @property
    def in_active(self) -> bool:
        return self.action is not ReconcileAction.EXTERNAL

    @property
    def sequence_changed(self) -> bool:
        return self.action not in (ReconcileAction.UNCHANGED, ReconcileAction.EXTERNAL)


def _newest(left: datetime | None, right: datetime | None) -> datetime | None:
    if left is None:
        return right
    if right is None:
        return left
    return max(left, right)


def merge_message(existing: Message, inbound: Message) -> Message:
    """Overlay the fields ``inbound`` actually carries; read state never regresses."""

    updates = {
        name: getattr(inbound, name)
        for name in inbound.model_fields_set
        if name != "id"
    }
    updates["is_read"] = existing.is_read or inbound.is_read
    updates["read_at"] = _newest(existing.read_at, inbound.read_at)
    return existing.model_copy(update=updates)


def _insert_sorted(messages: list[Message], message: Message) -> None:
    bisect.insort(messages, message, key=lambda item: item.sort_key)


def reconcile(
    sequence: Sequence[Message], inbound: Message, *, viewer_is_agent: bool
) -> ReconcileResult:
    """Return the sequence after applying one inbound message.

    ``sequence`` is left untouched. Applying the same message twice yields
    ``UNCHANGED`` the second time.
    """

    messages = list(sequence)
    for index, existing in enumerate(messages):
        if existing.id == inbound.id:
            merged = merge_message(existing, inbound)
            if merged == existing:
                return ReconcileResult(messages, ReconcileAction.UNCHANGED)
            del messages[index]
            _insert_sorted(messages, merged)
            return ReconcileResult(messages, ReconcileAction.MERGED)

    self_originated = inbound.sender_is_agent == viewer_is_agent
    if self_originated and not inbound.is_system:
        remaining = [
            item
            for item in messages
            if not (item.is_provisional and item.conversation_id == inbound.conversation_id)
        ]
        if len(remaining) != len(messages):
            _insert_sorted(remaining, inbound)
            return ReconcileResult(remaining, ReconcileAction.CONFIRMED)

    _insert_sorted(messages, inbound)
    return ReconcileResult(messages, ReconcileAction.INSERTED)


class MessageReconciler:
    """Owns the active conversation's message sequence."""

    def __init__(self, *, viewer_is_agent: bool, index: ConversationIndex | None = None) -> None:
        self.viewer_is_agent = viewer_is_agent
        self.index = index
        self.conversation_id: int | None = None
        self._messages: list[Message] = []
        self._last_provisional_id = PROVISIONAL_ID_FLOOR - 1
        # Ids already folded into each conversation's summary, oldest first.
        self._summarized: dict[int, dict[int, None]] = {}

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def provisional_messages(self) -> list[Message]:
        return [message for message in self._messages if message.is_provisional]

    @property
    def newest(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def get(self, message_id: int) -> Message | None:
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def reset(self, conversation_id: int | None = None) -> None:
        self.conversation_id = conversation_id
        self._messages = []

    # ------------------------------------------------------------------
    # Local writes
    # ------------------------------------------------------------------

    def next_provisional_id(self) -> int:
        now_ms = int(utcnow().timestamp() * 1000)
        self._last_provisional_id = max(self._last_provisional_id + 1, now_ms)
        return self._last_provisional_id

    def append_provisional(self, message: Message) -> None:
        if not message.is_provisional:
            raise ValueError(f"Message id {message.id} is not in the provisional range")
        _insert_sorted(self._messages, message)

    def remove_provisional(self, message_id: int) -> bool:
        for index, message in enumerate(self._messages):
            if message.id == message_id and message.is_provisional:
                del self._messages[index]
                return True
        return False

    # ------------------------------------------------------------------
    # Server state
    # ------------------------------------------------------------------

    def replace_all(self, conversation_id: int, messages: Iterable[Message]) -> list[Message]:
        """Install a fetched snapshot, keeping pending provisionals and read flags."""

        previous = self._messages if self.conversation_id == conversation_id else []
        known = {message.id: message for message in previous}
        merged: dict[int, Message] = {}
        for message in messages:
            prior = merged.get(message.id) or known.get(message.id)
            merged[message.id] = merge_message(prior, message) if prior else message
        for message in previous:
            if message.is_provisional and message.id not in merged:
                merged[message.id] = message
        self.conversation_id = conversation_id
        self._messages = sorted(merged.values(), key=lambda item: item.sort_key)
        return self.messages

    def apply_inbound(self, message: Message) -> InboundOutcome:
        """Apply a pushed message for any conversation."""

        if message.conversation_id == self.conversation_id:
            known = any(item.id == message.id for item in self._messages)
            result = reconcile(self._messages, message, viewer_is_agent=self.viewer_is_agent)
            self._messages = result.messages
            action = result.action
            if action is ReconcileAction.MERGED:
                message = self.get(message.id) or message
        else:
            known = False
            action = ReconcileAction.EXTERNAL
        incremented = self._update_summary(message, known_in_sequence=known)
        return InboundOutcome(message=message, action=action, unread_incremented=incremented)

    def mark_read(
        self,
        conversation_id: int,
        message_ids: Iterable[int] | None,
        read_at: datetime | None,
        *,
        sender_is_agent: bool | None = None,
    ) -> list[int]:
        """Flip read flags in the active sequence; returns the ids that changed.

        ``message_ids=None`` flips every unread message of the selected side.
        """

        if conversation_id != self.conversation_id:
            return []
        wanted = set(message_ids) if message_ids is not None else None
        flipped: list[int] = []
        updated: list[Message] = []
        for message in self._messages:
            eligible = (
                (wanted is None or message.id in wanted)
                and (sender_is_agent is None or message.sender_is_agent == sender_is_agent)
                and not message.is_read
            )
            if eligible:
                message = message.model_copy(
                    update={"is_read": True, "read_at": _newest(message.read_at, read_at)}
                )
                flipped.append(message.id)
            updated.append(message)
        self._messages = updated
        return flipped

    # ------------------------------------------------------------------
    # Summary bookkeeping
    # ------------------------------------------------------------------

    def counts_as_unread(self, message: Message) -> bool:
        return (
            not message.is_system
            and not message.is_read
            and message.sender_is_agent != self.viewer_is_agent
        )

    def _update_summary(self, message: Message, *, known_in_sequence: bool) -> bool:
        if self.index is None:
            return False
        summary = self.index.get(message.conversation_id)
        if summary is None:
            logger.debug(
                "Message %s for unknown conversation %s", message.id, message.conversation_id
            )
            return False
        preview = summary.last_message
        already_summarized = self._remember_summarized(message.conversation_id, message.id)
        if (
            known_in_sequence
            or already_summarized
            or (preview is not None and preview.id == message.id)
        ):
            if preview is not None and preview.id == message.id and message.is_read and not preview.is_read:
                self.index.update(
                    message.conversation_id,
                    lambda item: _with_preview_read(item, message.read_at),
                    skip_resort=True,
                )
            return False

        counts = self.counts_as_unread(message)

        def _mutate(item: ConversationSummary) -> ConversationSummary:
            updated_at = item.updated_at
            if updated_at is None or message.created_at > updated_at:
                updated_at = message.created_at
            last = item.last_message
            if last is None or last.created_at is None or (
                (message.created_at, message.id) >= (last.created_at, last.id)
            ):
                last = LastMessage.from_message(message)
            return item.model_copy(
                update={
                    "updated_at": updated_at,
                    "last_message": last,
                    "unread_count": item.unread_count + (1 if counts else 0),
                }
            )

        self.index.update(message.conversation_id, _mutate)
        return counts

    def _remember_summarized(self, conversation_id: int, message_id: int) -> bool:
        """Record ``message_id``; True if it had already been applied to the summary."""

        seen = self._summarized.setdefault(conversation_id, {})
        if message_id in seen:
            return True
        seen[message_id] = None
        if len(seen) > SUMMARIZED_IDS_PER_CONVERSATION:
            del seen[next(iter(seen))]
        return False


def _with_preview_read(item: ConversationSummary, read_at: datetime | None) -> ConversationSummary:
    if item.last_message is None:
        return item
    preview = item.last_message.model_copy(
        update={"is_read": True, "read_at": _newest(item.last_message.read_at, read_at)}
    )
    return item.model_copy(update={"last_message": preview})
