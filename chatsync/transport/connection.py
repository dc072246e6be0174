"""One push connection per owner, reconnected after unclean closes."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from ..app_logging import log_wire
from ..exceptions import EventDecodeError, ReconnectExhaustedError, TransportError
from ..schemas import PushEvent, ViewerRole, decode_push_event
from ..sync.timers import BackgroundTasks, Scheduler, Timer
from .base import CloseInfo, ConnectionTarget, PushConnection, PushTransport

logger = logging.getLogger(__name__)

EventCallback = Callable[[PushEvent], None]
OpenCallback = Callable[[ConnectionTarget, bool], None]
CloseCallback = Callable[[ConnectionTarget, CloseInfo], None]
TerminalErrorCallback = Callable[[ReconnectExhaustedError], None]


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"
    FAILED = "failed"


class ConnectionManager:
    """Keeps at most one live push connection and delivers its events in order.

    An unclean close schedules a reconnect after ``reconnect_delay`` until
    ``max_attempts`` consecutive attempts have been spent; the manager then
    reports ``ReconnectExhaustedError`` to ``on_terminal_error``. A successful
    open resets the attempt counter. ``close()`` never triggers a reconnect.
    """

    def __init__(
        self,
        transport: PushTransport,
        *,
        on_event: EventCallback,
        scheduler: Scheduler,
        tasks: BackgroundTasks | None = None,
        on_open: OpenCallback | None = None,
        on_close: CloseCallback | None = None,
        on_terminal_error: TerminalErrorCallback | None = None,
        reconnect_delay: float = 3.0,
        max_attempts: int = 5,
    ) -> None:
        self.transport = transport
        self.on_event = on_event
        self.on_open = on_open
        self.on_close = on_close
        self.on_terminal_error = on_terminal_error
        self.max_attempts = max_attempts
        self.tasks = tasks or BackgroundTasks()
        self.state = ConnectionState.IDLE
        self.target: ConnectionTarget | None = None
        self.attempts = 0
        self._generation = 0
        self._connection: PushConnection | None = None
        self._task: asyncio.Task[Any] | None = None
        self._reconnect_timer = Timer(scheduler, reconnect_delay, self._reconnect)

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer.pending

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def open(
        self, conversation_id: int, role: ViewerRole | str, agent_id: int | None = None
    ) -> None:
        target = ConnectionTarget(conversation_id, ViewerRole(role), agent_id)
        self._teardown()
        self.attempts = 0
        self.target = target
        self._start(reconnected=False)

    def close(self) -> None:
        """Clean shutdown: no reconnect, attempt counter reset."""

        self._teardown()
        self.attempts = 0
        self.state = ConnectionState.CLOSED

    async def aclose(self) -> None:
        connection = self._connection
        self.close()
        if connection is not None:
            await connection.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _teardown(self) -> None:
        self._generation += 1
        self._reconnect_timer.cancel()
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        connection, self._connection = self._connection, None
        if connection is not None:
            self.tasks.spawn(connection.close(), name="push-close")

    def _start(self, *, reconnected: bool) -> None:
        assert self.target is not None
        self._generation += 1
        self.state = ConnectionState.RECONNECTING if reconnected else ConnectionState.CONNECTING
        self._task = self.tasks.spawn(
            self._run(self._generation, self.target, reconnected),
            name=f"push-{self.target.conversation_id}",
        )

    def _reconnect(self) -> None:
        if self.target is None:
            return
        logger.info(
            "Reconnecting push channel for conversation %s (attempt %s/%s)",
            self.target.conversation_id,
            self.attempts,
            self.max_attempts,
        )
        self._start(reconnected=True)

    async def _run(self, generation: int, target: ConnectionTarget, reconnected: bool) -> None:
        try:
            connection = await self.transport.connect(target)
        except TransportError as exc:
            if generation != self._generation:
                return
            logger.warning("Push connect failed: %s", exc)
            self._handle_unclean(target, CloseInfo(clean=False, reason=str(exc)))
            return
        if generation != self._generation:
            await connection.close()
            return

        self._connection = connection
        self.state = ConnectionState.OPEN
        self.attempts = 0
        if self.on_open is not None:
            self.on_open(target, reconnected)

        try:
            async for frame in connection.frames():
                if generation != self._generation:
                    break
                self._dispatch(frame)
        except TransportError as exc:
            info = CloseInfo(clean=False, reason=str(exc))
        else:
            info = connection.close_info or CloseInfo(clean=False)

        if generation != self._generation:
            return
        self._connection = None
        if self.on_close is not None:
            self.on_close(target, info)
        if info.clean:
            logger.info("Push channel for conversation %s closed", target.conversation_id)
            self.state = ConnectionState.CLOSED
            return
        logger.warning(
            "Push channel for conversation %s dropped (code=%s, reason=%s)",
            target.conversation_id,
            info.code,
            info.reason,
        )
        self._handle_unclean(target, info)

    def _handle_unclean(self, target: ConnectionTarget, info: CloseInfo) -> None:
        if self.attempts >= self.max_attempts:
            self.state = ConnectionState.FAILED
            error = ReconnectExhaustedError(self.attempts, conversation_id=target.conversation_id)
            logger.error("%s", error)
            if self.on_terminal_error is not None:
                self.on_terminal_error(error)
            return
        self.attempts += 1
        self.state = ConnectionState.RECONNECTING
        self._reconnect_timer.start()

    def _dispatch(self, frame: str) -> None:
        try:
            event = decode_push_event(frame)
        except EventDecodeError as exc:
            logger.warning("Skipping push frame: %s", exc)
            return
        log_wire("in", "ws", event.model_dump(mode="json"), type=event.type)
        try:
            self.on_event(event)
        except Exception:
            logger.exception("Push event handler failed for %s", event.type)
