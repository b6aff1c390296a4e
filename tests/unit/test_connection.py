"""Unit tests for the agent connection manager and supervisor."""

import asyncio

import pytest

from browser_relay.channel import (
    BackoffState,
    ConnectionManager,
    ConnectionState,
    ConnectionSupervisor,
    Dialer,
    InboundDialer,
)
from browser_relay.errors import NotConnected
from tests.fakes import FakeChannel, wait_for_condition


class ScriptedDialer(Dialer):
    """Dialer that fails a set number of times, then hands out fresh channels."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.attempts = 0
        self.channels = []

    async def dial(self):
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise ConnectionRefusedError("agent not listening")
        channel = FakeChannel()
        self.channels.append(channel)
        return channel


class TestConnectionManager:
    """Tests for ConnectionManager."""

    @pytest.mark.asyncio
    async def test_connect_marks_connected(self, connected_manager):
        manager, channel = connected_manager

        assert manager.is_connected
        assert manager.state == ConnectionState.CONNECTED
        assert manager.connection.channel is channel
        assert manager.connection.is_open

    @pytest.mark.asyncio
    async def test_connect_is_idempotent_while_live(self, connected_manager):
        manager, _ = connected_manager
        first = manager.connection

        again = await manager.connect()

        assert again is first

    @pytest.mark.asyncio
    async def test_concurrent_connect_is_rejected(self):
        manager = ConnectionManager(InboundDialer())
        pending = asyncio.create_task(manager.connect())
        await asyncio.sleep(0)

        with pytest.raises(RuntimeError):
            await manager.connect()

        pending.cancel()
        await asyncio.gather(pending, return_exceptions=True)
        assert manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_timeout(self):
        manager = ConnectionManager(InboundDialer(), connect_timeout=0.05)

        with pytest.raises(asyncio.TimeoutError):
            await manager.connect()

        assert manager.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_messages_delivered_in_order(self, connected_manager):
        manager, channel = connected_manager
        sync_seen = []
        async_seen = []

        async def async_handler(message):
            await asyncio.sleep(0)
            async_seen.append(message["n"])

        manager.on_message(lambda message: sync_seen.append(message["n"]))
        manager.on_message(async_handler)

        for n in range(20):
            channel.push({"type": "console-log", "n": n})

        await wait_for_condition(lambda: len(async_seen) == 20)
        assert sync_seen == list(range(20))
        assert async_seen == list(range(20))

    @pytest.mark.asyncio
    async def test_unsubscribe(self, connected_manager):
        manager, channel = connected_manager
        seen = []
        unsubscribe = manager.on_message(seen.append)
        unsubscribe()
        marker = []
        manager.on_message(marker.append)

        channel.push({"type": "console-log"})

        await wait_for_condition(lambda: marker)
        assert seen == []

    @pytest.mark.asyncio
    async def test_heartbeat_answered_and_not_forwarded(self, connected_manager):
        manager, channel = connected_manager
        seen = []
        manager.on_message(seen.append)

        channel.push({"type": "heartbeat"})
        reply = await channel.next_sent()

        assert reply == {"type": "heartbeat-response"}
        assert seen == []

    @pytest.mark.asyncio
    async def test_handshake_records_agent_info(self, connected_manager):
        manager, channel = connected_manager

        channel.push({"type": "extension-handshake", "payload": {"version": "1.2.0"}})

        await wait_for_condition(lambda: manager.connection.agent_info)
        assert manager.connection.agent_info == {"version": "1.2.0"}

    @pytest.mark.asyncio
    async def test_invalid_frames_are_skipped(self, connected_manager):
        manager, channel = connected_manager
        seen = []
        manager.on_message(seen.append)

        channel.push_raw("not json {")
        channel.push_raw("[1, 2, 3]")
        channel.push({"type": "console-log", "message": "ok"})

        await wait_for_condition(lambda: seen)
        assert seen == [{"type": "console-log", "message": "ok"}]
        assert manager.is_connected

    @pytest.mark.asyncio
    async def test_remote_close_after_pending_messages(self, connected_manager):
        manager, channel = connected_manager
        events = []
        manager.on_message(lambda message: events.append(("message", message["n"])))
        manager.on_close(lambda reason: events.append(("close", reason)))

        channel.push({"type": "console-log", "n": 1})
        channel.push({"type": "console-log", "n": 2})
        channel.remote_close()

        await asyncio.wait_for(manager.wait_closed(), timeout=2.0)
        assert events == [("message", 1), ("message", 2), ("close", "remote_closed")]
        assert manager.state == ConnectionState.DISCONNECTED
        assert manager.connection is None

    @pytest.mark.asyncio
    async def test_send_without_connection_raises(self):
        manager = ConnectionManager(InboundDialer())

        with pytest.raises(NotConnected):
            await manager.send({"type": "get-cookies"})

    @pytest.mark.asyncio
    async def test_send_writes_json_envelope(self, connected_manager):
        manager, channel = connected_manager

        await manager.send({"type": "get-cookies", "correlationId": "abc", "payload": {}})

        assert await channel.next_sent() == {"type": "get-cookies", "correlationId": "abc", "payload": {}}

    @pytest.mark.asyncio
    async def test_close_runs_close_handlers(self, connected_manager):
        manager, channel = connected_manager
        reasons = []
        manager.on_close(reasons.append)

        await manager.close("shutdown")

        assert reasons == ["shutdown"]
        assert channel.closed
        assert channel.close_reason == "shutdown"
        assert not manager.is_connected

    @pytest.mark.asyncio
    async def test_liveness_timeout_closes_silent_channel(self):
        dialer = InboundDialer()
        channel = FakeChannel()
        await dialer.offer(channel)
        manager = ConnectionManager(dialer, liveness_timeout=0.2)
        reasons = []
        manager.on_close(reasons.append)

        await manager.connect()
        await asyncio.wait_for(manager.wait_closed(), timeout=2.0)

        assert reasons == ["liveness_timeout"]
        assert channel.closed

    @pytest.mark.asyncio
    async def test_traffic_keeps_channel_alive(self):
        dialer = InboundDialer()
        channel = FakeChannel()
        await dialer.offer(channel)
        manager = ConnectionManager(dialer, liveness_timeout=0.3)
        await manager.connect()

        for _ in range(6):
            channel.push({"type": "heartbeat"})
            await asyncio.sleep(0.1)

        assert manager.is_connected
        await manager.close()

    @pytest.mark.asyncio
    async def test_handler_exception_is_isolated(self, connected_manager):
        manager, channel = connected_manager
        seen = []

        def broken(message):
            raise ValueError("handler bug")

        manager.on_message(broken)
        manager.on_message(seen.append)

        channel.push({"type": "console-log", "n": 1})
        channel.push({"type": "console-log", "n": 2})

        await wait_for_condition(lambda: len(seen) == 2)
        assert manager.is_connected

    @pytest.mark.asyncio
    async def test_reconnect_after_close(self):
        dialer = InboundDialer()
        manager = ConnectionManager(dialer)
        first = FakeChannel()
        await dialer.offer(first)
        await manager.connect()
        first.remote_close()
        await asyncio.wait_for(manager.wait_closed(), timeout=2.0)

        second = FakeChannel()
        await dialer.offer(second)
        connection = await manager.connect()

        assert connection.channel is second
        assert manager.is_connected
        await manager.close()


class TestInboundDialer:
    """Tests for InboundDialer."""

    @pytest.mark.asyncio
    async def test_newer_socket_supersedes_queued_one(self):
        dialer = InboundDialer()
        older = FakeChannel()
        newer = FakeChannel()

        await dialer.offer(older)
        await dialer.offer(newer)

        assert older.closed
        assert older.close_code == 1001
        assert older.close_reason == "superseded"
        assert await dialer.dial() is newer

    @pytest.mark.asyncio
    async def test_skips_channels_closed_while_queued(self):
        dialer = InboundDialer()
        gone = FakeChannel()
        await dialer.offer(gone)
        await gone.close()
        live = FakeChannel()
        dialer._queue.put_nowait(live)

        assert await dialer.dial() is live


class TestConnectionSupervisor:
    """Tests for ConnectionSupervisor."""

    @pytest.mark.asyncio
    async def test_retries_failed_connects_with_backoff(self):
        dialer = ScriptedDialer(failures=3)
        manager = ConnectionManager(dialer)
        backoff = BackoffState(base_delay=0.01, max_delay=0.05)
        supervisor = ConnectionSupervisor(manager, backoff=backoff)

        supervisor.start()
        try:
            await wait_for_condition(lambda: manager.is_connected)
            assert dialer.attempts == 4
            assert backoff.consecutive_failures == 3
            assert backoff.last_reason == "ConnectionRefusedError"
        finally:
            await supervisor.stop()
            await manager.close()

    @pytest.mark.asyncio
    async def test_reconnects_after_drop(self):
        dialer = ScriptedDialer()
        manager = ConnectionManager(dialer)
        supervisor = ConnectionSupervisor(
            manager,
            backoff=BackoffState(base_delay=0.01, max_delay=0.05)
        )

        supervisor.start()
        try:
            await wait_for_condition(lambda: manager.is_connected)
            dialer.channels[0].remote_close()

            await wait_for_condition(lambda: len(dialer.channels) == 2 and manager.is_connected)
            assert manager.connection.channel is dialer.channels[1]
            assert supervisor.backoff.consecutive_failures == 1
        finally:
            await supervisor.stop()
            await manager.close()

    @pytest.mark.asyncio
    async def test_handover_does_not_back_off(self):
        dialer = InboundDialer()
        manager = ConnectionManager(dialer)
        backoff = BackoffState(base_delay=5.0, max_delay=5.0)
        supervisor = ConnectionSupervisor(manager, backoff=backoff)
        first = FakeChannel()
        await dialer.offer(first)

        supervisor.start()
        try:
            await wait_for_condition(lambda: manager.is_connected)
            second = FakeChannel()
            await manager.close("superseded")
            await dialer.offer(second)

            await wait_for_condition(
                lambda: manager.is_connected and manager.connection.channel is second
            )
            assert backoff.consecutive_failures == 0
        finally:
            await supervisor.stop()
            await manager.close()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        supervisor = ConnectionSupervisor(ConnectionManager(InboundDialer()))
        supervisor.start()
        assert supervisor.running

        await supervisor.stop()
        await supervisor.stop()

        assert not supervisor.running
