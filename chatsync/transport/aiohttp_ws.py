"""WebSocket push transport built on ``aiohttp``."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

import aiohttp
from aiohttp import WSMsgType

from ..exceptions import TransportError
from .base import CLEAN_CLOSE_CODE, CloseInfo, ConnectionTarget

logger = logging.getLogger(__name__)

_CLOSED_TYPES = (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED)


class AiohttpPushConnection:
    def __init__(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._ws = ws
        self._close_info: CloseInfo | None = None
        self._closing = False

    @property
    def close_info(self) -> CloseInfo | None:
        return self._close_info

    async def frames(self) -> AsyncIterator[str]:
        while True:
            try:
                msg = await self._ws.receive()
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                self._close_info = CloseInfo(clean=False, reason=str(exc))
                return
            if msg.type == WSMsgType.TEXT:
                yield msg.data
            elif msg.type == WSMsgType.BINARY:
                yield msg.data.decode("utf-8", errors="replace")
            elif msg.type == WSMsgType.ERROR:
                self._close_info = CloseInfo(
                    clean=False, code=self._ws.close_code, reason=str(self._ws.exception())
                )
                return
            elif msg.type in _CLOSED_TYPES:
                break

        code = self._ws.close_code
        self._close_info = CloseInfo(
            clean=self._closing or code == CLEAN_CLOSE_CODE,
            code=code,
            reason=msg.extra if isinstance(msg.extra, str) else None,
        )

    async def close(self) -> None:
        self._closing = True
        if not self._ws.closed:
            await self._ws.close(code=CLEAN_CLOSE_CODE)


class AiohttpPushTransport:
    """Opens ``<ws_url>?conversation_id=..&is_visitor=..[&agent_id=..]``."""

    def __init__(
        self,
        ws_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        heartbeat: float | None = 30.0,
    ) -> None:
        self.ws_url = ws_url
        self.heartbeat = heartbeat
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def connect(self, target: ConnectionTarget) -> AiohttpPushConnection:
        session = self._get_session()
        try:
            ws = await session.ws_connect(
                self.ws_url, params=target.query_params(), heartbeat=self.heartbeat
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransportError(
                f"Could not open push channel for conversation {target.conversation_id}: {exc}"
            ) from exc
        logger.debug("Push channel open for conversation %s", target.conversation_id)
        return AiohttpPushConnection(ws)

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
