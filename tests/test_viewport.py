from chatsync.schemas import MessageType
from chatsync.sync.viewport import AnchorAction, ViewportAnchor
from fakes import FakeScheduler, make_message


def _anchor(viewer_is_agent=True, scheduler=None):
    return ViewportAnchor(viewer_is_agent=viewer_is_agent, scheduler=scheduler or FakeScheduler())


def test_first_render_sticks_to_bottom():
    anchor = _anchor()

    decision = anchor.decide([make_message(1), make_message(2)])

    assert decision.action is AnchorAction.STICK_TO_BOTTOM
    assert decision.target_message_id == 2
    assert decision.mark_read_delay == 0.8
    assert decision.near_bottom is True


def test_other_party_message_holds_when_scrolled_up():
    anchor = _anchor()
    messages = [make_message(1)]
    anchor.decide(messages)

    assert anchor.observe_scroll(500) is False
    decision = anchor.decide(messages + [make_message(2)])

    assert decision.action is AnchorAction.HOLD
    assert decision.near_bottom is False
    assert decision.mark_read_delay == 0.3
    assert anchor.distance_to_bottom == 500


def test_own_message_always_sticks():
    anchor = _anchor(viewer_is_agent=True)
    messages = [make_message(1)]
    anchor.decide(messages)
    anchor.observe_scroll(800)

    decision = anchor.decide(messages + [make_message(2, sender_is_agent=True)])

    assert decision.action is AnchorAction.STICK_TO_BOTTOM
    assert anchor.distance_to_bottom == 0


def test_near_bottom_threshold_is_strict():
    anchor = _anchor()
    messages = [make_message(1)]
    anchor.decide(messages)

    anchor.observe_scroll(99)
    assert anchor.decide(messages + [make_message(2)]).action is AnchorAction.STICK_TO_BOTTOM

    assert anchor.observe_scroll(100) is False
    assert anchor.decide(messages + [make_message(2), make_message(3)]).action is AnchorAction.HOLD


def test_status_only_update_holds_position():
    anchor = _anchor()
    messages = [make_message(1), make_message(2)]
    anchor.decide(messages)

    decision = anchor.decide([messages[0], messages[1].model_copy(update={"is_read": True})])

    assert decision.action is AnchorAction.HOLD
    assert decision.near_bottom is True


def test_system_message_does_not_count_as_own():
    anchor = _anchor(viewer_is_agent=True)
    messages = [make_message(1)]
    anchor.decide(messages)
    anchor.observe_scroll(400)

    notice = make_message(2, sender_is_agent=True, message_type=MessageType.SYSTEM)
    decision = anchor.decide(messages + [notice])

    assert decision.action is AnchorAction.HOLD


def test_empty_sequence_holds():
    decision = _anchor().decide([])

    assert decision.action is AnchorAction.HOLD
    assert decision.target_message_id is None


def test_highlight_centers_on_match_then_clears():
    scheduler = FakeScheduler()
    anchor = _anchor(scheduler=scheduler)
    anchor.reset(highlight="Refund")
    messages = [
        make_message(1, content="hello"),
        make_message(2, content="about my refund please"),
        make_message(3, content="thanks"),
    ]

    decision = anchor.decide(messages)

    assert decision.action is AnchorAction.CENTER_ON_MATCH
    assert decision.target_message_id == 2

    scheduler.advance(2.9)
    assert anchor.highlight == "Refund"
    scheduler.advance(0.2)
    assert anchor.highlight is None
    assert anchor.decide(messages).action is AnchorAction.HOLD


def test_highlight_without_match_is_dropped():
    anchor = _anchor()
    anchor.reset(highlight="invoice")

    decision = anchor.decide([make_message(1, content="hello")])

    assert decision.action is AnchorAction.STICK_TO_BOTTOM
    assert anchor.highlight is None
