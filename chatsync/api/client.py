"""HTTP client for the customer-support Request API."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, TypeVar
from urllib.parse import urljoin

import requests
from pydantic import BaseModel, ValidationError

from ..app_logging import log_wire
from ..exceptions import RequestApiError
from ..schemas import (
    ConversationDetail,
    ConversationSummary,
    MarkReadResult,
    Message,
    SendMessagePayload,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class RequestApi(Protocol):
    """Operations the synchronization engine consumes from the backend."""

    async def list_conversations(self) -> list[ConversationSummary]: ...

    async def search_conversations(self, query: str) -> list[ConversationSummary]: ...

    async def get_conversation_detail(self, conversation_id: int) -> ConversationDetail | None: ...

    async def list_messages(
        self, conversation_id: int, *, include_ai_messages: bool = False
    ) -> list[Message]: ...

    async def send_message(self, payload: SendMessagePayload) -> None: ...

    async def mark_read(
        self, conversation_id: int, *, reader_is_agent: bool
    ) -> MarkReadResult | None: ...


class HttpRequestApi:
    """``RequestApi`` backed by ``requests``; blocking calls run in a worker thread."""

    def __init__(
        self,
        base_url: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 10.0,
        user_id: int | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") + "/"
        self.session = session or requests.Session()
        self.timeout = timeout
        self.user_id = user_id

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return urljoin(self.base_url, path.lstrip("/"))

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> requests.Response:
        url = self._url(path)
        log_wire("out", "http", json, method=method, url=url, params=params)
        try:
            return self.session.request(
                method, url, params=params, json=json, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise RequestApiError(f"{method} {path} failed: {exc}") from exc

    @staticmethod
    def _error_detail(response: requests.Response) -> str | None:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
        return None

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        response = self._send(method, path, params=params, json=json)
        if response.status_code >= 400:
            detail = self._error_detail(response)
            raise RequestApiError(
                f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
                detail=detail,
            )
        if not response.text:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise RequestApiError(
                f"{method} {path} returned a non-JSON body",
                status_code=response.status_code,
            ) from exc

    @staticmethod
    def _parse_list(payload: Any, model: type[ModelT]) -> list[ModelT]:
        if not isinstance(payload, list):
            return []
        items: list[ModelT] = []
        for raw in payload:
            try:
                items.append(model.model_validate(raw))
            except ValidationError as exc:
                logger.warning(
                    "Skipping invalid %s record: %s", model.__name__, exc.error_count()
                )
        return items

    def _conversation_params(self) -> dict[str, Any]:
        return {"user_id": self.user_id} if self.user_id is not None else {}

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------

    def list_conversations_sync(self) -> list[ConversationSummary]:
        payload = self._request("GET", "/conversations", params=self._conversation_params())
        return self._parse_list(payload, ConversationSummary)

    def search_conversations_sync(self, query: str) -> list[ConversationSummary]:
        params = {"q": query, **self._conversation_params()}
        payload = self._request("GET", "/conversations/search", params=params)
        return self._parse_list(payload, ConversationSummary)

    def get_conversation_detail_sync(self, conversation_id: int) -> ConversationDetail | None:
        try:
            payload = self._request("GET", f"/conversations/{conversation_id}")
        except RequestApiError as exc:
            if exc.status_code is None:
                raise
            return None
        if not isinstance(payload, dict):
            return None
        return ConversationDetail.model_validate(payload)

    def list_messages_sync(
        self, conversation_id: int, *, include_ai_messages: bool = False
    ) -> list[Message]:
        params = {
            "conversation_id": conversation_id,
            "include_ai_messages": "true" if include_ai_messages else "false",
        }
        payload = self._request("GET", "/messages", params=params)
        return self._parse_list(payload, Message)

    def send_message_sync(self, payload: SendMessagePayload) -> None:
        self._request("POST", "/messages", json=payload.to_wire())

    def mark_read_sync(
        self, conversation_id: int, *, reader_is_agent: bool
    ) -> MarkReadResult | None:
        body = {"conversation_id": conversation_id, "reader_is_agent": reader_is_agent}
        response = self._send("PUT", "/messages/read", json=body)
        if response.status_code >= 300:
            logger.info(
                "markRead for conversation %s answered HTTP %s",
                conversation_id,
                response.status_code,
            )
            return None
        try:
            data = response.json()
        except ValueError:
            data = {}
        return MarkReadResult.model_validate(data if isinstance(data, dict) else {})

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def list_conversations(self) -> list[ConversationSummary]:
        return await asyncio.to_thread(self.list_conversations_sync)

    async def search_conversations(self, query: str) -> list[ConversationSummary]:
        return await asyncio.to_thread(self.search_conversations_sync, query)

    async def get_conversation_detail(self, conversation_id: int) -> ConversationDetail | None:
        return await asyncio.to_thread(self.get_conversation_detail_sync, conversation_id)

    async def list_messages(
        self, conversation_id: int, *, include_ai_messages: bool = False
    ) -> list[Message]:
        return await asyncio.to_thread(
            self.list_messages_sync, conversation_id, include_ai_messages=include_ai_messages
        )

    async def send_message(self, payload: SendMessagePayload) -> None:
        await asyncio.to_thread(self.send_message_sync, payload)

    async def mark_read(
        self, conversation_id: int, *, reader_is_agent: bool
    ) -> MarkReadResult | None:
        return await asyncio.to_thread(
            self.mark_read_sync, conversation_id, reader_is_agent=reader_is_agent
        )

    def close(self) -> None:
        self.session.close()
