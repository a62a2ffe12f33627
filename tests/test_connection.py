"""
Tests for ConnectionManager.

Covers:
- Open, clean close, abnormal close and the state each one lands in
- Reconnect spacing: base * 2^(attempt-1), bounded by the attempt budget
- Exhaustion: reported once, further connect() calls refused
- Timer ownership: disconnect() cancels a pending reconnect
- A disconnect that lands mid-handshake closes the late socket
- send() only while open
"""

import asyncio

import pytest

from mycelial_sync.client.connection import ConnectionManager
from mycelial_sync.shared.errors import ExhaustedRetries, TransportError
from mycelial_sync.shared.models import ConnectionState
from tests.conftest import FakeConnector, wait_for


def make_manager(connector, scheduler, **kwargs) -> ConnectionManager:
    kwargs.setdefault("base_interval_s", 1.0)
    kwargs.setdefault("max_attempts", 3)
    return ConnectionManager("test", "ws://node.test/ws", connector=connector, scheduler=scheduler, **kwargs)


class TestOpenAndClose:
    @pytest.mark.asyncio
    async def test_open_then_clean_close(self, connector, scheduler):
        opened, closed, states = [], [], []
        manager = make_manager(
            connector,
            scheduler,
            on_open=lambda: opened.append(True),
            on_close=closed.append,
            on_state_change=states.append,
        )
        connector.prepare().feed({"type": "peer_left", "peer_id": "a"}).drop(1000)

        await manager.connect()

        assert opened == [True]
        assert closed == [1000]
        assert manager.state is ConnectionState.IDLE
        assert states == [ConnectionState.CONNECTING, ConnectionState.OPEN, ConnectionState.IDLE]
        assert scheduler.pending == []
        assert manager.stats["events_received"] == 1

    @pytest.mark.asyncio
    async def test_messages_reach_handler_in_order(self, connector, scheduler):
        received = []

        async def on_message(raw):
            received.append(raw)

        manager = make_manager(connector, scheduler, on_message=on_message)
        connector.prepare().feed("one").feed("two").feed("three").drop(1000)

        await manager.connect()
        assert received == ["one", "two", "three"]

    @pytest.mark.asyncio
    async def test_connect_is_idempotent_while_connecting(self, connector, scheduler):
        connector.gate = asyncio.Event()
        manager = make_manager(connector, scheduler)

        task = manager.connect()
        assert manager.state is ConnectionState.CONNECTING
        assert manager.connect() is None

        connector.gate.set()
        await wait_for(lambda: manager.is_open)
        assert manager.connect() is None
        assert len(connector.calls) == 1

        await manager.aclose()
        await task

    @pytest.mark.asyncio
    async def test_abnormal_close_schedules_reconnect(self, connector, scheduler):
        errors = []
        manager = make_manager(connector, scheduler, on_error=errors.append)
        connector.prepare().drop(1006)

        await manager.connect()

        assert manager.state is ConnectionState.CLOSED_ABNORMAL
        assert manager.reconnect_pending
        assert [t.delay for t in scheduler.pending] == [1.0]
        assert isinstance(errors[0], TransportError)
        assert manager.stats["last_close_code"] == 1006

    @pytest.mark.asyncio
    async def test_going_away_close_reconnects(self, connector, scheduler):
        manager = make_manager(connector, scheduler)
        connector.prepare().drop(1001)

        await manager.connect()

        assert manager.state is ConnectionState.CLOSED_ABNORMAL
        assert manager.reconnect_pending
        assert [t.delay for t in scheduler.pending] == [1.0]


class TestReconnectBudget:
    @pytest.mark.asyncio
    async def test_exponential_spacing_until_exhausted(self, scheduler):
        connector = FakeConnector(failures=10)
        errors = []
        manager = make_manager(connector, scheduler, on_error=errors.append)

        await manager.connect()
        delays = []
        while scheduler.pending:
            timer = scheduler.fire_next()
            delays.append(timer.delay)
            if manager._task is not None:
                await manager._task

        assert delays == [1.0, 2.0, 4.0]
        assert len(connector.calls) == 3
        assert manager.state is ConnectionState.EXHAUSTED
        exhausted = [e for e in errors if isinstance(e, ExhaustedRetries)]
        assert len(exhausted) == 1
        assert exhausted[0].attempts == 3
        assert "Connection failed after 3 attempts" in exhausted[0].message

    @pytest.mark.asyncio
    async def test_exhausted_channel_refuses_connect(self, scheduler):
        connector = FakeConnector(failures=10)
        errors = []
        manager = make_manager(connector, scheduler, max_attempts=1, on_error=errors.append)

        await manager.connect()
        scheduler.fire_next()

        assert manager.state is ConnectionState.EXHAUSTED
        assert manager.connect() is None
        assert len(connector.calls) == 1
        assert len([e for e in errors if isinstance(e, ExhaustedRetries)]) == 1

    @pytest.mark.asyncio
    async def test_successful_open_refills_budget(self, scheduler):
        connector = FakeConnector(failures=2)
        manager = make_manager(connector, scheduler)

        await manager.connect()
        scheduler.fire_next()
        await manager._task
        assert manager.attempts == 2

        scheduler.fire_next()
        await wait_for(lambda: manager.is_open)
        assert manager.attempts == 0

        connector.sockets[0].drop(1006)
        await manager._task
        assert [t.delay for t in scheduler.pending] == [1.0]

    @pytest.mark.asyncio
    async def test_disconnect_resets_exhausted_budget(self, scheduler):
        connector = FakeConnector(failures=1)
        manager = make_manager(connector, scheduler, max_attempts=1)

        await manager.connect()
        scheduler.fire_next()
        assert manager.state is ConnectionState.EXHAUSTED

        manager.disconnect()
        assert manager.attempts == 0
        task = manager.connect()
        assert task is not None
        await wait_for(lambda: manager.is_open)
        await manager.aclose()


class TestTimerOwnership:
    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_reconnect(self, connector, scheduler):
        manager = make_manager(connector, scheduler)
        connector.prepare().drop(1006)
        await manager.connect()
        assert manager.reconnect_pending

        manager.disconnect()
        scheduler.advance(100)

        assert not manager.reconnect_pending
        assert manager.state is ConnectionState.IDLE
        assert len(connector.calls) == 1

    @pytest.mark.asyncio
    async def test_loop_timer_never_fires_after_disconnect(self):
        connector = FakeConnector()
        manager = ConnectionManager("test", "ws://node.test/ws", base_interval_s=0.01, connector=connector)
        connector.prepare().drop(1006)

        await manager.connect()
        manager.disconnect()
        await asyncio.sleep(0.05)

        assert len(connector.calls) == 1
        assert manager.state is ConnectionState.IDLE

    @pytest.mark.asyncio
    async def test_reset_connection_schedules_fresh_attempt(self, connector, scheduler):
        manager = make_manager(connector, scheduler, reset_delay_s=0.1)
        manager.connect()
        await wait_for(lambda: manager.is_open)

        manager.reset_connection()
        assert manager.state is ConnectionState.IDLE
        assert [t.delay for t in scheduler.pending] == [0.1]

        scheduler.fire_next()
        await wait_for(lambda: manager.is_open)
        assert len(connector.calls) == 2
        await manager.aclose()

    @pytest.mark.asyncio
    async def test_disconnect_during_handshake_closes_late_socket(self, connector, scheduler):
        opened = []
        connector.gate = asyncio.Event()
        manager = make_manager(connector, scheduler, on_open=lambda: opened.append(True))

        task = manager.connect()
        await asyncio.sleep(0)
        manager.disconnect()
        connector.gate.set()
        await task
        await manager.aclose()

        assert opened == []
        assert connector.sockets[0].closed
        assert manager.state is ConnectionState.IDLE


class TestSend:
    @pytest.mark.asyncio
    async def test_send_while_closed_is_dropped(self, connector, scheduler):
        manager = make_manager(connector, scheduler)
        assert await manager.send({"type": "send_chat", "content": "hi"}) is False

    @pytest.mark.asyncio
    async def test_send_while_open(self, connector, scheduler):
        manager = make_manager(connector, scheduler)
        manager.connect()
        await wait_for(lambda: manager.is_open)

        assert await manager.send({"type": "subscribe", "topic": "nodes"}) is True
        assert connector.sockets[0].sent == [{"type": "subscribe", "topic": "nodes"}]

        await manager.aclose()
        assert connector.sockets[0].closed
        assert manager.state is ConnectionState.IDLE

    @pytest.mark.asyncio
    async def test_unserializable_payload_is_dropped(self, connector, scheduler):
        manager = make_manager(connector, scheduler)
        manager.connect()
        await wait_for(lambda: manager.is_open)

        assert await manager.send({"type": "workload_cancel", "data": object()}) is False
        assert connector.sockets[0].sent == []
        assert manager.is_open

        await manager.aclose()
