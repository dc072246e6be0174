"""Decide whether a message-list update follows the newest message."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from ..schemas import Message
from .timers import Scheduler, Timer


class AnchorAction(str, Enum):
    STICK_TO_BOTTOM = "stick_to_bottom"
    HOLD = "hold"
    CENTER_ON_MATCH = "center_on_match"


@dataclass(frozen=True)
class AnchorDecision:
    action: AnchorAction
    target_message_id: int | None = None
    mark_read_delay: float | None = None
    near_bottom: bool = False


class ViewportAnchor:
    """Tracks scroll proximity and the newest rendered message of one view."""

    def __init__(
        self,
        *,
        viewer_is_agent: bool,
        scheduler: Scheduler,
        near_bottom_px: int = 100,
        highlight_clear_delay: float = 3.0,
        stick_read_delay: float = 0.8,
        hold_read_delay: float = 0.3,
    ) -> None:
        self.viewer_is_agent = viewer_is_agent
        self.near_bottom_px = near_bottom_px
        self.stick_read_delay = stick_read_delay
        self.hold_read_delay = hold_read_delay
        self.highlight: str | None = None
        self._highlight_timer = Timer(scheduler, highlight_clear_delay, self.clear_highlight)
        self._first_render = True
        self._newest_id: int | None = None
        self._distance = 0.0

    @property
    def distance_to_bottom(self) -> float:
        return self._distance

    @property
    def near_bottom(self) -> bool:
        return self._distance < self.near_bottom_px

    def reset(self, highlight: str | None = None) -> None:
        """Start over for a newly selected conversation."""

        self._first_render = True
        self._newest_id = None
        self._distance = 0.0
        self.set_highlight(highlight)

    def set_highlight(self, keyword: str | None) -> None:
        self._highlight_timer.cancel()
        self.highlight = keyword.strip() if keyword and keyword.strip() else None

    def clear_highlight(self) -> None:
        self._highlight_timer.cancel()
        self.highlight = None

    def observe_scroll(self, distance_to_bottom: float) -> bool:
        self._distance = max(0.0, float(distance_to_bottom))
        return self.near_bottom

    def _find_match(self, messages: Sequence[Message]) -> Message | None:
        needle = (self.highlight or "").lower()
        for message in messages:
            if needle and needle in message.content.lower():
                return message
        return None

    def decide(self, messages: Sequence[Message]) -> AnchorDecision:
        """Anchor decision for the sequence as it stands after an update."""

        was_near = self.near_bottom
        newest = messages[-1] if messages else None
        newest_changed = newest is not None and newest.id != self._newest_id
        self._newest_id = newest.id if newest is not None else None

        if self.highlight and messages:
            match = self._find_match(messages)
            if match is not None:
                self._first_render = False
                if not self._highlight_timer.pending:
                    self._highlight_timer.start()
                return AnchorDecision(
                    AnchorAction.CENTER_ON_MATCH,
                    target_message_id=match.id,
                    mark_read_delay=self.hold_read_delay,
                    near_bottom=was_near,
                )
            self.clear_highlight()

        if newest is None:
            return AnchorDecision(AnchorAction.HOLD, near_bottom=was_near)

        first_render = self._first_render
        self._first_render = False
        own_message = not newest.is_system and newest.sender_is_agent == self.viewer_is_agent
        if first_render or (newest_changed and (own_message or was_near)):
            self._distance = 0.0
            return AnchorDecision(
                AnchorAction.STICK_TO_BOTTOM,
                target_message_id=newest.id,
                mark_read_delay=self.stick_read_delay,
                near_bottom=True,
            )
        return AnchorDecision(
            AnchorAction.HOLD, mark_read_delay=self.hold_read_delay, near_bottom=was_near
        )
