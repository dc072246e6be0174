"""Push-channel abstractions shared by transports and the connection manager."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol

from ..schemas import ViewerRole

CLEAN_CLOSE_CODE = 1000


@dataclass(frozen=True)
class ConnectionTarget:
    """One conversation context seen by one role."""

    conversation_id: int
    role: ViewerRole
    agent_id: int | None = None

    def query_params(self) -> dict[str, str]:
        params = {
            "conversation_id": str(self.conversation_id),
            "is_visitor": "true" if self.role is ViewerRole.VISITOR else "false",
        }
        if self.agent_id is not None:
            params["agent_id"] = str(self.agent_id)
        return params


@dataclass(frozen=True)
class CloseInfo:
    clean: bool
    code: int | None = None
    reason: str | None = None


class PushConnection(Protocol):
    """A live push channel; ``frames`` ends when the peer closes."""

    @property
    def close_info(self) -> CloseInfo | None: ...

    def frames(self) -> AsyncIterator[str]: ...

    async def close(self) -> None: ...


class PushTransport(Protocol):
    async def connect(self, target: ConnectionTarget) -> PushConnection:
        """Open a connection or raise ``TransportError``."""
        ...
