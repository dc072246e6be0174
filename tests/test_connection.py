import asyncio

from chatsync.exceptions import ReconnectExhaustedError
from chatsync.schemas import NewMessageEvent
from chatsync.transport.connection import ConnectionManager, ConnectionState
from fakes import FakeScheduler, FakeTransport, make_message, settle


class _Recorder:
    def __init__(self) -> None:
        self.events = []
        self.opens = []
        self.closes = []
        self.errors = []

    def manager(self, transport, scheduler, **kwargs):
        return ConnectionManager(
            transport,
            on_event=self.events.append,
            scheduler=scheduler,
            on_open=lambda target, reconnected: self.opens.append((target, reconnected)),
            on_close=lambda target, info: self.closes.append(info),
            on_terminal_error=self.errors.append,
            **kwargs,
        )


def test_open_connects_with_conversation_context():
    async def scenario():
        transport = FakeTransport()
        recorder = _Recorder()
        manager = recorder.manager(transport, FakeScheduler())

        manager.open(5, "agent", agent_id=7)
        await settle()

        assert transport.targets[0].query_params() == {
            "conversation_id": "5",
            "is_visitor": "false",
            "agent_id": "7",
        }
        assert manager.state is ConnectionState.OPEN
        assert [reconnected for _, reconnected in recorder.opens] == [False]
        manager.close()

    asyncio.run(scenario())


def test_visitor_target_params():
    async def scenario():
        transport = FakeTransport()
        manager = _Recorder().manager(transport, FakeScheduler())

        manager.open(9, "visitor")
        await settle()

        assert transport.targets[0].query_params() == {"conversation_id": "9", "is_visitor": "true"}
        manager.close()

    asyncio.run(scenario())


def test_frames_are_dispatched_in_order_and_bad_frames_skipped():
    async def scenario():
        transport = FakeTransport()
        recorder = _Recorder()
        manager = recorder.manager(transport, FakeScheduler())
        manager.open(1, "agent")
        await settle()

        connection = transport.latest
        connection.push_message(make_message(1))
        connection.push("not json at all")
        connection.push({"type": "typing", "conversation_id": 1, "data": {}})
        connection.push_message(make_message(2))
        await settle()

        assert all(isinstance(event, NewMessageEvent) for event in recorder.events)
        assert [event.data.id for event in recorder.events] == [1, 2]
        assert manager.state is ConnectionState.OPEN
        manager.close()

    asyncio.run(scenario())


def test_handler_failure_does_not_stop_delivery():
    async def scenario():
        transport = FakeTransport()
        scheduler = FakeScheduler()
        received = []

        def on_event(event):
            received.append(event.data.id)
            if event.data.id == 1:
                raise RuntimeError("listener bug")

        manager = ConnectionManager(transport, on_event=on_event, scheduler=scheduler)
        manager.open(1, "agent")
        await settle()
        transport.latest.push_message(make_message(1))
        transport.latest.push_message(make_message(2))
        await settle()

        assert received == [1, 2]
        manager.close()

    asyncio.run(scenario())


def test_reconnects_after_delay_and_succeeds_on_third_attempt():
    async def scenario():
        transport = FakeTransport()
        transport.failures = 2
        scheduler = FakeScheduler()
        recorder = _Recorder()
        manager = recorder.manager(transport, scheduler)

        manager.open(3, "agent")
        await settle()
        assert len(transport.targets) == 1
        assert manager.state is ConnectionState.RECONNECTING
        assert manager.reconnect_pending

        scheduler.advance(3.1)
        await settle()
        assert len(transport.targets) == 2
        assert manager.attempts == 2

        scheduler.advance(2.9)
        await settle()
        assert len(transport.targets) == 2

        scheduler.advance(0.2)
        await settle()
        assert len(transport.targets) == 3
        assert manager.state is ConnectionState.OPEN
        assert manager.attempts == 0
        assert recorder.opens[-1][1] is True
        assert recorder.errors == []
        manager.close()

    asyncio.run(scenario())


def test_close_cancels_pending_reconnect():
    async def scenario():
        transport = FakeTransport()
        scheduler = FakeScheduler()
        manager = _Recorder().manager(transport, scheduler)
        manager.open(3, "agent")
        await settle()

        transport.latest.drop()
        await settle()
        assert manager.reconnect_pending

        manager.close()
        scheduler.advance(10)
        await settle()

        assert not manager.reconnect_pending
        assert len(transport.targets) == 1
        assert manager.state is ConnectionState.CLOSED
        assert manager.attempts == 0

    asyncio.run(scenario())


def test_gives_up_after_max_attempts():
    async def scenario():
        transport = FakeTransport()
        transport.failures = 10
        scheduler = FakeScheduler()
        recorder = _Recorder()
        manager = recorder.manager(transport, scheduler, max_attempts=2)

        manager.open(4, "visitor")
        await settle()
        for _ in range(2):
            scheduler.advance(3.1)
            await settle()

        assert len(transport.targets) == 3
        assert manager.state is ConnectionState.FAILED
        assert len(recorder.errors) == 1
        error = recorder.errors[0]
        assert isinstance(error, ReconnectExhaustedError)
        assert error.attempts == 2
        assert error.conversation_id == 4

        scheduler.advance(10)
        await settle()
        assert len(transport.targets) == 3

    asyncio.run(scenario())


def test_clean_close_from_server_does_not_reconnect():
    async def scenario():
        transport = FakeTransport()
        scheduler = FakeScheduler()
        recorder = _Recorder()
        manager = recorder.manager(transport, scheduler)
        manager.open(2, "agent")
        await settle()

        transport.latest.finish()
        await settle()

        assert manager.state is ConnectionState.CLOSED
        assert not manager.reconnect_pending
        assert [info.clean for info in recorder.closes] == [True]

    asyncio.run(scenario())


def test_drop_then_reconnect_reports_reconnected_open():
    async def scenario():
        transport = FakeTransport()
        scheduler = FakeScheduler()
        recorder = _Recorder()
        manager = recorder.manager(transport, scheduler)
        manager.open(2, "agent")
        await settle()

        transport.latest.drop(code=1006)
        await settle()
        scheduler.advance(3.1)
        await settle()

        assert [reconnected for _, reconnected in recorder.opens] == [False, True]
        assert len(transport.connections) == 2
        assert recorder.closes[0].code == 1006
        manager.close()

    asyncio.run(scenario())


def test_opening_another_conversation_replaces_connection():
    async def scenario():
        transport = FakeTransport()
        recorder = _Recorder()
        manager = recorder.manager(transport, FakeScheduler())
        manager.open(1, "agent")
        await settle()
        first = transport.latest

        manager.open(2, "agent")
        await settle()
        first.push_message(make_message(1))
        transport.latest.push_message(make_message(5, conversation_id=2))
        await settle()

        assert first.closed
        assert [target.conversation_id for target in transport.targets] == [1, 2]
        assert [event.data.id for event in recorder.events] == [5]
        assert recorder.closes == []
        manager.close()

    asyncio.run(scenario())
