"""The agent console's conversation list: ordering, filters, live search."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..api.client import RequestApi
from ..exceptions import RequestApiError
from ..schemas import ConversationSummary
from .timers import BackgroundTasks, Scheduler, Timer

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

IndexListener = Callable[[list[ConversationSummary]], None]
SummaryMutator = Callable[[ConversationSummary], ConversationSummary]


class ConversationFilter(str, Enum):
    ALL = "all"
    MINE = "mine"
    OTHERS = "others"


@dataclass
class IndexViewState:
    """Serializable view state of the conversation list."""

    filter: ConversationFilter = ConversationFilter.ALL
    search_query: str = ""
    selected_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "filter": self.filter.value,
            "search_query": self.search_query,
            "selected_id": self.selected_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IndexViewState":
        selected = data.get("selected_id")
        return cls(
            filter=ConversationFilter(data.get("filter") or ConversationFilter.ALL.value),
            search_query=str(data.get("search_query") or ""),
            selected_id=int(selected) if selected is not None else None,
        )


def _recency(summary: ConversationSummary) -> datetime:
    return summary.updated_at or summary.created_at or _EPOCH


def sort_by_recency(items: Iterable[ConversationSummary]) -> list[ConversationSummary]:
    """Most recently updated first; ties keep their incoming order."""

    return sorted(items, key=_recency, reverse=True)


class ConversationIndex:
    """Canonical set of conversation summaries plus derived views."""

    def __init__(
        self,
        api: RequestApi,
        *,
        scheduler: Scheduler,
        tasks: BackgroundTasks,
        search_debounce: float = 0.3,
        view_state: IndexViewState | None = None,
    ) -> None:
        self.api = api
        self.tasks = tasks
        self.view = view_state or IndexViewState()
        self._conversations: list[ConversationSummary] = []
        self._search_results: list[ConversationSummary] | None = None
        self._search_generation = 0
        self._search_timer = Timer(scheduler, search_debounce, self._run_search)
        self._listeners: list[IndexListener] = []
        self._poll_task: asyncio.Task[Any] | None = None

    # ------------------------------------------------------------------
    # Canonical set
    # ------------------------------------------------------------------

    @property
    def conversations(self) -> list[ConversationSummary]:
        return list(self._conversations)

    @property
    def searching(self) -> bool:
        return bool(self.view.search_query)

    @property
    def total_unread(self) -> int:
        return sum(item.unread_count for item in self._conversations)

    def get(self, conversation_id: int) -> ConversationSummary | None:
        for item in self._conversations:
            if item.id == conversation_id:
                return item
        return None

    def ingest_snapshot(self, items: Iterable[ConversationSummary]) -> None:
        self._conversations = sort_by_recency(items)
        if self.view.selected_id is None and self._conversations:
            self.view.selected_id = self._conversations[0].id
        if self.searching:
            self._canonical_changed()
        self._emit()

    async def refresh(self) -> list[ConversationSummary]:
        self.ingest_snapshot(await self.api.list_conversations())
        return self.visible

    def update(
        self, conversation_id: int, mutator: SummaryMutator, *, skip_resort: bool = False
    ) -> bool:
        """Apply ``mutator`` to one summary; unknown ids are a no-op."""

        for position, item in enumerate(self._conversations):
            if item.id == conversation_id:
                break
        else:
            logger.debug("Ignoring update for unknown conversation %s", conversation_id)
            return False

        updated = mutator(item)
        self._conversations[position] = updated
        if not skip_resort:
            self._conversations = sort_by_recency(self._conversations)
        if self.searching:
            if self._search_results is not None:
                results = [
                    updated if result.id == conversation_id else result
                    for result in self._search_results
                ]
                self._search_results = results if skip_resort else sort_by_recency(results)
            self._canonical_changed()
        self._emit()
        return True

    def select(self, conversation_id: int | None) -> ConversationSummary | None:
        self.view.selected_id = conversation_id
        return self.get(conversation_id) if conversation_id is not None else None

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    @property
    def visible(self) -> list[ConversationSummary]:
        if self.searching:
            return list(self._search_results or [])
        if self.view.filter is ConversationFilter.MINE:
            return [item for item in self._conversations if item.has_participated]
        if self.view.filter is ConversationFilter.OTHERS:
            return [item for item in self._conversations if not item.has_participated]
        return list(self._conversations)

    def set_filter(self, conversation_filter: ConversationFilter | str) -> None:
        self.view.filter = ConversationFilter(conversation_filter)
        self._emit()

    def set_search_query(self, query: str) -> None:
        query = query.strip()
        self.view.search_query = query
        if not query:
            self._search_timer.cancel()
            self._search_generation += 1
            self._search_results = None
            self._emit()
            return
        self._search_timer.start()

    def _canonical_changed(self) -> None:
        # Search results are re-fetched after every change to the canonical set.
        if self.searching:
            self._search_timer.start()

    def _run_search(self) -> None:
        self.tasks.spawn(self._search(self.view.search_query), name="conversation-search")

    async def _search(self, query: str) -> None:
        self._search_generation += 1
        generation = self._search_generation
        try:
            results = await self.api.search_conversations(query)
        except RequestApiError as exc:
            logger.warning("Conversation search for %r failed: %s", query, exc)
            results = []
        if generation != self._search_generation:
            logger.debug("Discarding stale search results for %r", query)
            return
        if query != self.view.search_query:
            return
        canonical = {item.id: item for item in self._conversations}
        self._search_results = sort_by_recency(
            canonical.get(result.id, result) for result in results
        )
        self._emit()

    # ------------------------------------------------------------------
    # Listeners and polling
    # ------------------------------------------------------------------

    def add_listener(self, listener: IndexListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: IndexListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self) -> None:
        visible = self.visible
        for listener in list(self._listeners):
            listener(visible)

    def start_polling(self, interval: float) -> None:
        self.stop_polling()
        self._poll_task = self.tasks.spawn(self._poll(interval), name="conversation-poll")

    def stop_polling(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    async def _poll(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.refresh()
            except RequestApiError as exc:
                logger.warning("Conversation list refresh failed: %s", exc)
