from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

import pytest
import requests

from chatsync.api import HttpRequestApi
from chatsync.exceptions import RequestApiError
from chatsync.schemas import SendMessagePayload


class _FakeResponse:
    def __init__(self, payload: Any = None, status_code: int = 200, text: str | None = None):
        self._payload = payload
        self.status_code = status_code
        if text is None:
            text = "" if payload is None else json.dumps(payload)
        self.text = text

    def json(self) -> Any:
        return json.loads(self.text)


class _FakeSession:
    def __init__(self, responses: List[Any]):
        self._responses = responses
        self.requests: List[Dict[str, Any]] = []
        self.closed = False

    def request(self, method: str, url: str, **kwargs: Any) -> _FakeResponse:
        self.requests.append({"method": method, "url": url, **kwargs})
        if not self._responses:
            raise AssertionError("no more responses queued")
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self) -> None:
        self.closed = True


def _client(*responses: Any, user_id: int | None = None) -> tuple[HttpRequestApi, _FakeSession]:
    session = _FakeSession(list(responses))
    client = HttpRequestApi(
        "https://support.example.com/api/", session=session, timeout=5, user_id=user_id
    )
    return client, session


def _summary(conversation_id: int) -> Dict[str, Any]:
    return {
        "id": conversation_id,
        "visitor_id": 100 + conversation_id,
        "agent_id": 7,
        "status": "open",
        "updated_at": "2024-01-01T12:00:00Z",
        "unread_count": 1,
    }


def test_list_conversations_passes_user_and_skips_invalid_rows():
    client, session = _client(
        _FakeResponse([_summary(1), {"visitor_id": "no id"}, _summary(2)]), user_id=7
    )

    conversations = client.list_conversations_sync()

    assert [item.id for item in conversations] == [1, 2]
    request = session.requests[0]
    assert request["method"] == "GET"
    assert request["url"] == "https://support.example.com/api/conversations"
    assert request["params"] == {"user_id": 7}
    assert request["timeout"] == 5


def test_search_sends_query_parameter():
    client, session = _client(_FakeResponse([_summary(4)]))

    results = client.search_conversations_sync("refund")

    assert [item.id for item in results] == [4]
    assert session.requests[0]["url"].endswith("/conversations/search")
    assert session.requests[0]["params"] == {"q": "refund"}


def test_list_messages_flags_ai_messages():
    message = {
        "id": 11,
        "conversation_id": 3,
        "sender_is_agent": True,
        "content": "hello",
        "created_at": "2024-01-01T12:00:00Z",
    }
    client, session = _client(_FakeResponse([message]), _FakeResponse([]))

    messages = client.list_messages_sync(3, include_ai_messages=True)
    client.list_messages_sync(3)

    assert [m.id for m in messages] == [11]
    assert session.requests[0]["params"] == {"conversation_id": 3, "include_ai_messages": "true"}
    assert session.requests[1]["params"]["include_ai_messages"] == "false"


def test_error_status_raises_with_server_detail():
    client, _ = _client(_FakeResponse({"error": "conversation closed"}, status_code=409))

    with pytest.raises(RequestApiError) as excinfo:
        client.send_message_sync(
            SendMessagePayload(conversation_id=3, content="hi", sender_id=42, sender_is_agent=False)
        )

    assert excinfo.value.status_code == 409
    assert excinfo.value.detail == "conversation closed"


def test_send_posts_flat_payload():
    client, session = _client(_FakeResponse({"id": 90}))

    client.send_message_sync(
        SendMessagePayload(conversation_id=3, content="hi", sender_id=42, sender_is_agent=False)
    )

    request = session.requests[0]
    assert request["method"] == "POST"
    assert request["url"] == "https://support.example.com/api/messages"
    assert request["json"] == {
        "conversation_id": 3,
        "content": "hi",
        "sender_is_agent": False,
        "sender_id": 42,
    }


def test_network_failure_becomes_request_api_error():
    client, _ = _client(requests.ConnectionError("refused"))

    with pytest.raises(RequestApiError) as excinfo:
        client.list_conversations_sync()

    assert excinfo.value.status_code is None


def test_non_json_body_is_an_error():
    client, _ = _client(_FakeResponse(text="<html>oops</html>"))

    with pytest.raises(RequestApiError):
        client.list_conversations_sync()


def test_missing_detail_returns_none():
    client, _ = _client(_FakeResponse({"error": "not found"}, status_code=404))

    assert client.get_conversation_detail_sync(99) is None


def test_detail_network_failure_propagates():
    client, _ = _client(requests.Timeout("slow"))

    with pytest.raises(RequestApiError):
        client.get_conversation_detail_sync(99)


def test_mark_read_parses_result_and_tolerates_rejections():
    client, session = _client(
        _FakeResponse(
            {"message_ids": [1, 2], "unread_count": 0, "read_at": "2024-01-01T12:01:00Z"}
        ),
        _FakeResponse({"error": "forbidden"}, status_code=403),
    )

    result = client.mark_read_sync(3, reader_is_agent=True)
    rejected = client.mark_read_sync(3, reader_is_agent=True)

    assert result.message_ids == [1, 2]
    assert result.unread_count == 0
    assert rejected is None
    assert session.requests[0]["method"] == "PUT"
    assert session.requests[0]["json"] == {"conversation_id": 3, "reader_is_agent": True}


def test_async_wrappers_run_blocking_calls():
    client, session = _client(_FakeResponse([_summary(5)]))

    conversations = asyncio.run(client.list_conversations())

    assert [item.id for item in conversations] == [5]
    client.close()
    assert session.closed
