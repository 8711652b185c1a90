import asyncio
import random

import pytest
from unittest.mock import AsyncMock

from core.config import BotSettings
from core.registry import AccountRegistry
from ledger.accounts import Account
from ledger.assignments import AssignmentStore
from ledger.pipeline import RunContext


class SleepRecorder:
    """Awaitable stand-in for ``asyncio.sleep`` that records every delay.

    ``on_sleep`` (if set) is called after each recorded delay, which lets a
    test stop a loop after N waits.
    """

    def __init__(self, on_sleep=None):
        self.delays = []
        self.on_sleep = on_sleep

    async def __call__(self, delay):
        self.delays.append(delay)
        if self.on_sleep is not None:
            self.on_sleep(len(self.delays))


class FakeWebSocket:
    """Minimal ``ClientWebSocketResponse`` double.

    Yields *messages* and then either ends (remote close) or, with
    ``hold=True``, stays open until :meth:`close` is called.
    """

    def __init__(self, messages=(), hold=False, close_code=1006, error=None, on_send=None):
        self.messages = list(messages)
        self.hold = hold
        self.close_code = close_code
        self.error = error
        self.on_send = on_send
        self.sent = []
        self.closed = False
        self._closed_event = asyncio.Event()
        self.send_json = AsyncMock(side_effect=self._record)

    async def _record(self, payload):
        if self.closed:
            raise ConnectionResetError("send on closed socket")
        self.sent.append(payload)
        if self.on_send is not None:
            self.on_send(self, payload)

    async def close(self):
        self.closed = True
        self._closed_event.set()

    def exception(self):
        return self.error

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.messages:
            yield message
        if self.hold:
            await self._closed_event.wait()
        self.closed = True

    def of_type(self, msg_type):
        return [p for p in self.sent if p.get("msgType") == msg_type]


@pytest.fixture
def settings(tmp_path):
    return BotSettings(
        _env_file=None,
        accounts_file=str(tmp_path / "accounts.txt"),
        proxies_file=str(tmp_path / "proxies.txt"),
        assignments_file=str(tmp_path / "assignments.json"),
        api_base_url="https://api.test/api/v1",
        rewards_base_url="https://rewards.test/api/v1",
        ws_url="wss://api.test/ws/v1/orch",
    )


@pytest.fixture
def account():
    return Account(owner_address="0xabc123", token="tok-secret-1")


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest.fixture
def make_sleep():
    return SleepRecorder


@pytest.fixture
def assignments(settings, rng):
    return AssignmentStore(settings.assignments_file, settings.gpu_catalog, rng=rng)


@pytest.fixture
def context(settings, assignments, sleep, rng):
    return RunContext(
        settings=settings,
        assignments=assignments,
        registry=AccountRegistry(),
        sleep=sleep,
        rng=rng,
    )
