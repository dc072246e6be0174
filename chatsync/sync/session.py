"""One active conversation for one viewer: the agent console or the visitor widget."""

from __future__ import annotations

import logging

from ..api.client import RequestApi
from ..config import SyncSettings, get_sync_settings
from ..exceptions import ReconnectExhaustedError, RequestApiError, SendFailedError
from ..formatting import utcnow
from ..schemas import (
    ChatMode,
    ConversationDetail,
    FileDescriptor,
    MarkReadResult,
    Message,
    MessagesReadEvent,
    MessageType,
    NewMessageEvent,
    PushEvent,
    ReadReceiptEvent,
    SendMessagePayload,
    ViewerRole,
    VisitorStatusEvent,
    VisitorStatusUpdate,
)
from ..transport.base import ConnectionTarget, PushTransport
from ..transport.connection import ConnectionManager
from .index import ConversationIndex
from .read_receipts import ReadReceiptTracker
from .reconciler import MessageReconciler, ReconcileAction
from .timers import BackgroundTasks, LoopScheduler, Scheduler, Timer
from .viewport import AnchorDecision, ViewportAnchor

logger = logging.getLogger(__name__)


class SessionListener:
    """Receives UI-facing notifications; override what you need."""

    def on_messages_changed(self, messages: list[Message], decision: AnchorDecision | None) -> None:
        pass

    def on_detail_changed(self, detail: ConversationDetail | None) -> None:
        pass

    def on_disconnected(self, error: ReconnectExhaustedError) -> None:
        pass

    def on_notify(self, message: Message) -> None:
        pass


class ConversationSession:
    """Wires connection, reconciler, tracker, index and viewport together."""

    def __init__(
        self,
        api: RequestApi,
        transport: PushTransport,
        *,
        role: ViewerRole | str,
        viewer_id: int = 0,
        agent_id: int | None = None,
        index: ConversationIndex | None = None,
        settings: SyncSettings | None = None,
        scheduler: Scheduler | None = None,
        tasks: BackgroundTasks | None = None,
        listener: SessionListener | None = None,
        chat_mode: ChatMode | str = ChatMode.HUMAN,
        notifications_enabled: bool = True,
    ) -> None:
        self.api = api
        self.role = ViewerRole(role)
        self.viewer_is_agent = self.role.is_agent
        self.viewer_id = viewer_id
        self.agent_id = agent_id
        self.index = index
        self.settings = settings or get_sync_settings()
        self.scheduler = scheduler or LoopScheduler()
        self.tasks = tasks or BackgroundTasks()
        self.listener = listener or SessionListener()
        self.chat_mode = ChatMode(chat_mode)
        self.notifications_enabled = notifications_enabled

        self.conversation_id: int | None = None
        self.detail: ConversationDetail | None = None
        self.draft = ""
        self.sending = False
        self.ai_typing = False
        self.disconnected = False
        self._load_generation = 0

        self.reconciler = MessageReconciler(viewer_is_agent=self.viewer_is_agent, index=index)
        self.tracker = ReadReceiptTracker(
            api,
            self.reconciler,
            viewer_is_agent=self.viewer_is_agent,
            scheduler=self.scheduler,
            tasks=self.tasks,
            index=index,
            debounce=self.settings.mark_read_debounce,
            min_interval=self.settings.mark_read_min_interval,
            on_read_state=self._on_read_state,
        )
        self.viewport = ViewportAnchor(
            viewer_is_agent=self.viewer_is_agent,
            scheduler=self.scheduler,
            near_bottom_px=self.settings.near_bottom_px,
            highlight_clear_delay=self.settings.highlight_clear_delay,
        )
        self.connection = ConnectionManager(
            transport,
            on_event=self.handle_event,
            scheduler=self.scheduler,
            tasks=self.tasks,
            on_open=self._on_open,
            on_terminal_error=self._on_terminal_error,
            reconnect_delay=self.settings.reconnect_delay,
            max_attempts=self.settings.max_reconnect_attempts,
        )
        self._read_check = Timer(self.scheduler, 0.0, self._sample_viewport)

    @property
    def messages(self) -> list[Message]:
        return self.reconciler.messages

    @property
    def include_ai_messages(self) -> bool:
        return not self.viewer_is_agent and self.chat_mode is ChatMode.AI

    def is_visitor_online(self) -> bool:
        """Presence of the selected conversation's visitor under the configured TTL."""

        summary = self.detail
        if self.index is not None and self.conversation_id is not None:
            summary = self.index.get(self.conversation_id) or summary
        return summary is not None and summary.is_visitor_online(
            ttl_seconds=self.settings.presence_ttl
        )

    # ------------------------------------------------------------------
    # Selection and loading
    # ------------------------------------------------------------------

    def select(self, conversation_id: int, *, highlight: str | None = None) -> None:
        """Switch the active conversation; pending work for the old one is dropped."""

        previous = self.conversation_id
        if previous is not None and previous != conversation_id:
            self.tracker.cancel(previous)
        self._read_check.cancel()
        self._load_generation += 1
        self.conversation_id = conversation_id
        self.detail = None
        self.ai_typing = False
        self.disconnected = False
        self.reconciler.reset(conversation_id)
        self.viewport.reset(highlight)
        if self.index is not None:
            self.index.select(conversation_id)
        self.connection.open(conversation_id, self.role, self.agent_id)
        self.tasks.spawn(self._refresh_in_background(), name=f"load-{conversation_id}")

    async def refresh(self) -> list[Message]:
        """Re-fetch messages and detail; a response for a stale selection is dropped."""

        conversation_id = self.conversation_id
        if conversation_id is None:
            return []
        self._load_generation += 1
        generation = self._load_generation
        messages = await self.api.list_messages(
            conversation_id, include_ai_messages=self.include_ai_messages
        )
        if generation != self._load_generation or conversation_id != self.conversation_id:
            logger.debug("Discarding stale message load for conversation %s", conversation_id)
            return self.messages
        self.reconciler.replace_all(conversation_id, messages)
        self._after_sequence_change()
        await self.refresh_detail(conversation_id)
        return self.messages

    async def _refresh_in_background(self) -> None:
        try:
            await self.refresh()
        except RequestApiError as exc:
            logger.warning("Loading conversation %s failed: %s", self.conversation_id, exc)

    async def refresh_detail(self, conversation_id: int) -> ConversationDetail | None:
        detail = await self.api.get_conversation_detail(conversation_id)
        if conversation_id != self.conversation_id:
            return None
        self.detail = detail
        if detail is not None:
            self.tracker.set_internal(conversation_id, detail.is_internal)
            if self.index is not None and detail.last_seen_at is not None:
                last_seen_at = detail.last_seen_at
                self.index.update(
                    conversation_id,
                    lambda item: item.model_copy(update={"last_seen_at": last_seen_at}),
                    skip_resort=True,
                )
        self.listener.on_detail_changed(detail)
        return detail

    async def _refresh_detail_in_background(self, conversation_id: int) -> None:
        try:
            await self.refresh_detail(conversation_id)
        except RequestApiError as exc:
            logger.warning("Refreshing detail of conversation %s failed: %s", conversation_id, exc)

    # ------------------------------------------------------------------
    # Push events
    # ------------------------------------------------------------------

    def handle_event(self, event: PushEvent) -> None:
        if isinstance(event, NewMessageEvent):
            self._on_new_message(event.data)
        elif isinstance(event, MessagesReadEvent):
            self._on_messages_read(event.data)
        elif isinstance(event, VisitorStatusEvent):
            self._on_visitor_status(event.data)
        else:
            logger.warning("Unhandled push event %s", type(event).__name__)

    def _on_new_message(self, message: Message) -> None:
        if not self.viewer_is_agent and message.conversation_id != self.conversation_id:
            return
        if self.ai_typing and message.sender_is_agent:
            self.ai_typing = False
        outcome = self.reconciler.apply_inbound(message)
        if not outcome.in_active:
            return
        if outcome.action in (ReconcileAction.INSERTED, ReconcileAction.CONFIRMED):
            if self.should_notify(outcome.message):
                self.listener.on_notify(outcome.message)
        if outcome.sequence_changed:
            self._after_sequence_change()
            self.tracker.note_incoming_message(message.conversation_id, outcome.message)

    def _on_messages_read(self, receipt: ReadReceiptEvent) -> None:
        self.tracker.apply_receipt(receipt)

    def _on_visitor_status(self, update: VisitorStatusUpdate) -> None:
        conversation_id = update.conversation_id
        if conversation_id is None:
            return
        if update.is_online and self.index is not None:
            seen_at = utcnow()
            self.index.update(
                conversation_id,
                lambda item: item.model_copy(update={"last_seen_at": seen_at}),
                skip_resort=True,
            )
        if conversation_id == self.conversation_id:
            self.tasks.spawn(
                self._refresh_detail_in_background(conversation_id),
                name=f"detail-{conversation_id}",
            )

    def should_notify(self, message: Message) -> bool:
        """Whether an inbound message should trigger the sound alert."""

        if not self.notifications_enabled or message.conversation_id != self.conversation_id:
            return False
        internal = self.tracker.is_internal(message.conversation_id)
        return self.tracker.is_other_party(message, internal=internal)

    # ------------------------------------------------------------------
    # Viewport
    # ------------------------------------------------------------------

    def _after_sequence_change(self) -> AnchorDecision | None:
        conversation_id = self.conversation_id
        if conversation_id is None:
            return None
        messages = self.reconciler.messages
        decision = self.viewport.decide(messages)
        self.tracker.note_viewport_near_bottom(conversation_id, decision.near_bottom)
        if decision.mark_read_delay is not None:
            self._read_check.start(decision.mark_read_delay)
        self.listener.on_messages_changed(messages, decision)
        return decision

    def _sample_viewport(self) -> None:
        if self.conversation_id is not None:
            self.tracker.note_viewport_near_bottom(self.conversation_id, self.viewport.near_bottom)

    def on_scroll(self, distance_to_bottom: float) -> None:
        near = self.viewport.observe_scroll(distance_to_bottom)
        if self.conversation_id is not None:
            self.tracker.note_viewport_near_bottom(self.conversation_id, near)

    def _on_read_state(self, conversation_id: int, message_ids: list[int]) -> None:
        if conversation_id == self.conversation_id:
            self.listener.on_messages_changed(self.reconciler.messages, None)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def send(self, content: str, file: FileDescriptor | None = None) -> Message | None:
        """Send a message; visitors see it immediately as a provisional entry.

        Returns the provisional message, if one was created. Raises
        ``SendFailedError`` with the draft to restore when the request fails.
        """

        conversation_id = self.conversation_id
        if conversation_id is None:
            logger.debug("Ignoring send without a selected conversation")
            return None
        text = content.strip()
        if not text and file is None:
            return None
        if self.sending:
            logger.info("Send already in flight for conversation %s", conversation_id)
            return None

        provisional: Message | None = None
        if not self.viewer_is_agent:
            provisional = Message(
                id=self.reconciler.next_provisional_id(),
                conversation_id=conversation_id,
                sender_id=self.viewer_id,
                sender_is_agent=False,
                content=text,
                created_at=utcnow(),
                message_type=MessageType(file.kind) if file is not None and file.kind else MessageType.TEXT,
                chat_mode=self.chat_mode,
                file=file,
            )
            self.reconciler.append_provisional(provisional)
            self._after_sequence_change()
            if self.chat_mode is ChatMode.AI:
                self.ai_typing = True

        self.sending = True
        self.draft = ""
        payload = SendMessagePayload(
            conversation_id=conversation_id,
            content=text,
            sender_id=self.viewer_id,
            sender_is_agent=self.viewer_is_agent,
            file=file,
        )
        try:
            await self.api.send_message(payload)
        except RequestApiError as exc:
            if provisional is not None and self.reconciler.remove_provisional(provisional.id):
                self.listener.on_messages_changed(self.reconciler.messages, None)
            self.ai_typing = False
            self.draft = text
            logger.warning("Sending to conversation %s failed: %s", conversation_id, exc)
            raise SendFailedError(text, conversation_id=conversation_id) from exc
        finally:
            self.sending = False
        return provisional

    async def mark_all_read(self) -> MarkReadResult | None:
        if self.conversation_id is None:
            return None
        return await self.tracker.mark_now(self.conversation_id)

    # ------------------------------------------------------------------
    # Connection callbacks
    # ------------------------------------------------------------------

    def _on_open(self, target: ConnectionTarget, reconnected: bool) -> None:
        self.disconnected = False
        if not reconnected:
            return
        logger.info("Push channel restored for conversation %s; reloading", target.conversation_id)
        self.tasks.spawn(self._refresh_in_background(), name=f"reload-{target.conversation_id}")
        if self.index is not None:
            self.tasks.spawn(self._refresh_index(), name="reload-index")

    async def _refresh_index(self) -> None:
        assert self.index is not None
        try:
            await self.index.refresh()
        except RequestApiError as exc:
            logger.warning("Reloading conversation list failed: %s", exc)

    def _on_terminal_error(self, error: ReconnectExhaustedError) -> None:
        self.disconnected = True
        self.listener.on_disconnected(error)

    def close(self) -> None:
        self._read_check.cancel()
        self.tracker.cancel_all()
        self.viewport.clear_highlight()
        self.connection.close()

    async def aclose(self) -> None:
        self._read_check.cancel()
        self.tracker.cancel_all()
        self.viewport.clear_highlight()
        await self.connection.aclose()
