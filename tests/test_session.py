import asyncio
import json
from types import SimpleNamespace

import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock

from conftest import FakeWebSocket
from core.registry import AccountRegistry
from core.retry import ErrorType
from ledger.session import ChannelEvent, ChannelState, ConnectionSession, next_state


def text(data):
    return SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=data)


@pytest.fixture
def client():
    c = MagicMock()
    c.proxy = None
    c.ws_connect = AsyncMock()
    return c


def make_session(client, account, assignments, settings, rng, sleep, registry=None):
    return ConnectionSession(
        0, account, client, assignments, settings, registry, sleep=sleep, rng=rng,
    )


class TestTransitions:
    @pytest.mark.parametrize("state,event,expected", [
        (ChannelState.CONNECTING, ChannelEvent.CONNECTED, ChannelState.OPEN),
        (ChannelState.CONNECTING, ChannelEvent.CONNECT_FAILED, ChannelState.CLOSED),
        (ChannelState.CONNECTING, ChannelEvent.ERROR, ChannelState.CLOSED),
        (ChannelState.OPEN, ChannelEvent.MESSAGE, ChannelState.OPEN),
        (ChannelState.OPEN, ChannelEvent.CONNECTED, ChannelState.OPEN),
        (ChannelState.OPEN, ChannelEvent.ERROR, ChannelState.CLOSED),
        (ChannelState.OPEN, ChannelEvent.CLOSED, ChannelState.CLOSED),
        (ChannelState.CLOSED, ChannelEvent.CONNECTED, ChannelState.CLOSED),
        (ChannelState.CLOSED, ChannelEvent.MESSAGE, ChannelState.CLOSED),
        (ChannelState.CLOSED, ChannelEvent.ERROR, ChannelState.CLOSED),
    ])
    def test_next_state(self, state, event, expected):
        assert next_state(state, event) is expected


class TestReconnect:
    async def test_one_reconnect_per_close(self, client, account, assignments, settings, rng, make_sleep):
        sockets = []

        def new_socket(url):
            ws = FakeWebSocket([text('{"status":"ok"}')], close_code=1006)
            sockets.append(ws)
            return ws

        client.ws_connect.side_effect = new_socket
        holder = {}
        sleep = make_sleep(on_sleep=lambda n: n >= 3 and holder["session"].stop())
        session = make_session(client, account, assignments, settings, rng, sleep)
        holder["session"] = session

        await session.run()

        assert len(sockets) == 3
        assert session.reconnects == 3
        assert len(sleep.delays) == 3
        assert all(30 <= d <= 60 for d in sleep.delays)
        assert session.max_open_channels == 1
        assert session.max_pending_timers == 1
        assert session.open_channels == 0
        assert session.pending_timers == 0

    async def test_register_sent_once_per_channel(self, client, account, assignments, settings, rng, make_sleep):
        sockets = []

        def new_socket(url):
            ws = FakeWebSocket([text("a"), text("b")])
            sockets.append(ws)
            return ws

        client.ws_connect.side_effect = new_socket
        holder = {}
        sleep = make_sleep(on_sleep=lambda n: n >= 2 and holder["session"].stop())
        session = make_session(client, account, assignments, settings, rng, sleep)
        holder["session"] = session

        await session.run()

        for ws in sockets:
            registers = ws.of_type("REGISTER")
            assert len(registers) == 1
            assert registers[0]["message"]["id"] == account.session_id
            assert ws.closed
        assert client.ws_connect.call_args.args[0] == settings.channel_url(account.token)
        assert session.channel.error_type is None

    async def test_connect_failure_schedules_reconnect(self, client, account, assignments, settings, rng, make_sleep):
        ws = FakeWebSocket([text("hi")])
        client.ws_connect.side_effect = [aiohttp.ClientConnectionError("refused"), ws]
        holder = {}
        sleep = make_sleep(on_sleep=lambda n: n >= 2 and holder["session"].stop())
        session = make_session(client, account, assignments, settings, rng, sleep)
        holder["session"] = session

        await session.run()

        assert client.ws_connect.await_count == 2
        assert session.reconnects == 2
        assert session.generation == 2
        assert session.max_open_channels == 1
        assert len(ws.of_type("REGISTER")) == 1
        assert ws.closed

    async def test_error_frame_closes_channel(self, client, account, assignments, settings, rng, make_sleep):
        error_frame = SimpleNamespace(type=aiohttp.WSMsgType.ERROR, data=None)
        ws = FakeWebSocket([error_frame, text("never read")], error=RuntimeError("bad frame"))
        client.ws_connect.return_value = ws
        holder = {}
        sleep = make_sleep(on_sleep=lambda n: holder["session"].stop())
        session = make_session(client, account, assignments, settings, rng, sleep)
        holder["session"] = session

        await session.run()

        assert session.channel.state is ChannelState.CLOSED
        assert session.channel.close_reason == "bad frame"
        assert session.channel.error_type is ErrorType.CHANNEL
        assert session.channel.messages_received == 0
        assert session.reconnects == 1

    async def test_stop_before_reconnect(self, client, account, assignments, settings, rng, sleep):
        holder = {}

        def new_socket(url):
            holder["session"].stop()
            return FakeWebSocket([text("x")])

        client.ws_connect.side_effect = new_socket
        session = make_session(client, account, assignments, settings, rng, sleep)
        holder["session"] = session

        await session.run()

        assert session.reconnects == 0
        assert sleep.delays == []

    def test_single_pending_reconnect(self, client, account, assignments, settings, rng, sleep):
        session = make_session(client, account, assignments, settings, rng, sleep)
        first = session.schedule_reconnect()
        assert 30 <= first <= 60
        assert session.schedule_reconnect() is None
        assert session.reconnects == 1
        session._begin_connecting()
        assert session.pending_reconnect is False
        assert session.schedule_reconnect() is not None


class TestHeartbeats:
    async def test_heartbeats_use_stable_assignment(self, client, account, assignments, settings, rng, sleep):
        settings.heartbeat_interval_seconds = 0.01
        holder = {}

        def on_send(ws, payload):
            if len(ws.of_type("HEARTBEAT")) >= 3:
                holder["session"].stop()
                ws.closed = True
                ws._closed_event.set()

        ws = FakeWebSocket(hold=True, close_code=1000, on_send=on_send)
        client.ws_connect.return_value = ws
        session = make_session(client, account, assignments, settings, rng, sleep)
        holder["session"] = session

        await asyncio.wait_for(session.run(), timeout=5)

        heartbeats = ws.of_type("HEARTBEAT")
        assert len(heartbeats) == 3
        capacities = [h["message"]["Capacity"] for h in heartbeats]
        assert len({c["AvailableGPU"] for c in capacities}) == 1
        assert len({c["AvailableStorage"] for c in capacities}) == 1
        assert all(0 <= float(c["AvailableMemory"]) <= settings.max_memory_gb for c in capacities)
        assert heartbeats[0]["workerID"] == account.worker_id
        assert heartbeats[0]["message"]["Worker"]["ownerAddress"] == account.owner_address

        with open(settings.assignments_file, encoding="utf-8") as fh:
            stored = json.load(fh)
        assert stored[account.worker_id]["gpu"] == capacities[0]["AvailableGPU"]
        assert session.channel._heartbeat_task is None

    async def test_failed_heartbeat_send_closes_channel(self, client, account, assignments, settings, rng, make_sleep):
        settings.heartbeat_interval_seconds = 0.01

        def on_send(ws, payload):
            if payload.get("msgType") == "REGISTER":
                # Any later send fails
                ws.send_json.side_effect = ConnectionResetError("peer gone")

        ws = FakeWebSocket(hold=True, on_send=on_send)
        client.ws_connect.return_value = ws
        holder = {}
        sleep = make_sleep(on_sleep=lambda n: holder["session"].stop())
        session = make_session(client, account, assignments, settings, rng, sleep)
        holder["session"] = session

        await asyncio.wait_for(session.run(), timeout=5)

        assert session.channel.state is ChannelState.CLOSED
        assert "heartbeat send failed" in session.channel.close_reason
        assert session.reconnects == 1
        assert session.max_open_channels == 1


class TestPrefix:
    def test_prefix_includes_registered_id(self, client, account, assignments, settings, rng, sleep):
        registry = AccountRegistry()
        session = make_session(client, account, assignments, settings, rng, sleep, registry)
        assert session.prefix == "[Account 0]"
        registry.register(account.token, 99)
        assert session.prefix == "[Account 0 #99]"
        assert session.proxy_label == "direct connection"
