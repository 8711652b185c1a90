"""Persistent worker channel for one account.

A :class:`ConnectionSession` keeps one WebSocket per account alive for the
life of the process.  Each connection attempt is a separate :class:`Channel`
instance that moves through an explicit state machine::

    CONNECTING --CONNECTED--> OPEN --ERROR/CLOSED--> CLOSED
        \\--CONNECT_FAILED-------------------------> CLOSED

``CLOSED`` is terminal for that instance.  The session reacts to it by
scheduling exactly one reconnect (uniform 30-60 s by default) and then
creating a *new* ``Channel``; the old one is never reopened, so a stale
heartbeat can never write to a new socket.

On entering ``OPEN`` the channel sends REGISTER once and starts a heartbeat
task whose lifetime is scoped to the channel: it is cancelled and awaited
before the channel reports ``CLOSED``.

Instrumentation counters (``open_channels``/``max_open_channels`` and
``pending_timers``/``max_pending_timers``) make the "at most one live channel
and one pending reconnect per account" invariant observable.
"""

import asyncio
import logging
import random
from enum import Enum
from typing import Any, Optional

import aiohttp

from core.config import BotSettings
from core.registry import AccountRegistry
from core.retry import ErrorType, RetryPolicy, Sleep
from ledger.accounts import Account
from ledger.api import LedgerClient
from ledger.assignments import AssignmentStore
from ledger.messages import build_heartbeat_message, build_register_message

logger = logging.getLogger(__name__)


class ChannelState(Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class ChannelEvent(Enum):
    CONNECTED = "connected"
    CONNECT_FAILED = "connect_failed"
    MESSAGE = "message"
    ERROR = "error"
    CLOSED = "closed"


def next_state(state: ChannelState, event: ChannelEvent) -> ChannelState:
    """Transition function for a single channel instance.

    ``CLOSED`` absorbs every event.  ``CONNECTED`` only moves a
    ``CONNECTING`` channel to ``OPEN``; ``MESSAGE`` never changes state;
    every failure or close event ends the instance.
    """
    if state is ChannelState.CLOSED:
        return state
    if event is ChannelEvent.CONNECTED:
        return ChannelState.OPEN if state is ChannelState.CONNECTING else state
    if event is ChannelEvent.MESSAGE:
        return state
    return ChannelState.CLOSED


class Channel:
    """One connection attempt; discarded once it reaches ``CLOSED``."""

    def __init__(self, session: "ConnectionSession", generation: int) -> None:
        self.session = session
        self.generation = generation
        self.state = ChannelState.CONNECTING
        self.close_reason: Optional[str] = None
        self.error_type: Optional[ErrorType] = None
        self.messages_received = 0
        self.heartbeats_sent = 0
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    @property
    def prefix(self) -> str:
        return self.session.prefix

    def apply(self, event: ChannelEvent, reason: Optional[str] = None) -> bool:
        """Feed *event* into the state machine.

        Returns:
            ``True`` if this event closed the channel (first close only).
        """
        previous = self.state
        self.state = next_state(previous, event)
        if previous is not ChannelState.OPEN and self.state is ChannelState.OPEN:
            self.session._channel_opened()
        if previous is not ChannelState.CLOSED and self.state is ChannelState.CLOSED:
            if previous is ChannelState.OPEN:
                self.session._channel_released()
            self.close_reason = reason or event.value
            if event in (ChannelEvent.ERROR, ChannelEvent.CONNECT_FAILED):
                self.error_type = ErrorType.CHANNEL
            return True
        return False

    async def run(self) -> None:
        """Connect, register, heartbeat and read until the channel closes."""
        settings = self.session.settings
        url = settings.channel_url(self.session.account.token)
        logger.info(
            f"{self.prefix} 🔌 Connecting WebSocket (attempt {self.generation}) "
            f"via {self.session.proxy_label}"
        )
        try:
            self._ws = await self.session.client.ws_connect(url)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.error(f"{self.prefix} WebSocket connection failed: {e.__class__.__name__}: {e}")
            self.apply(ChannelEvent.CONNECT_FAILED, str(e) or e.__class__.__name__)
            return

        self.apply(ChannelEvent.CONNECTED)
        logger.info(f"{self.prefix} ✅ WebSocket connected.")
        try:
            await self._on_open()
            await self._read_loop()
        except (aiohttp.ClientError, ConnectionError, RuntimeError, asyncio.TimeoutError) as e:
            logger.error(f"{self.prefix} WebSocket failure: {e.__class__.__name__}: {e}")
            self.apply(ChannelEvent.ERROR, str(e) or e.__class__.__name__)
        finally:
            await self._teardown()

    async def _on_open(self) -> None:
        session = self.session
        logger.info(f"{self.prefix} Sending register message")
        await self._ws.send_json(build_register_message(session.account, session.settings))
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _heartbeat_loop(self) -> None:
        session = self.session
        interval = session.settings.heartbeat_interval_seconds
        while self.state is ChannelState.OPEN:
            await asyncio.sleep(interval)
            if self.state is not ChannelState.OPEN:
                return
            assignment = session.assignments.get_or_create(session.account.worker_id)
            payload = build_heartbeat_message(
                session.account, assignment, session.settings, session.rng,
            )
            try:
                await self._ws.send_json(payload)
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                logger.error(f"{self.prefix} Heartbeat send failed: {e}")
                self.apply(ChannelEvent.ERROR, f"heartbeat send failed: {e}")
                await self._ws.close()
                return
            self.heartbeats_sent += 1
            logger.info(f"{self.prefix} 💓 Heartbeat sent")

    async def _read_loop(self) -> None:
        async for msg in self._ws:
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                self.messages_received += 1
                self.apply(ChannelEvent.MESSAGE)
                logger.info(f"{self.prefix} 📩 Message received: {_preview(msg.data)}")
            elif msg.type == aiohttp.WSMsgType.ERROR:
                error = self._ws.exception()
                logger.error(f"{self.prefix} WebSocket error: {error}")
                self.apply(ChannelEvent.ERROR, str(error) if error else "error")
                break
            if self.state is ChannelState.CLOSED:
                break

        if self.apply(ChannelEvent.CLOSED, _close_reason(self._ws)):
            logger.warning(f"{self.prefix} WebSocket closed ({self.close_reason}).")

    async def _teardown(self) -> None:
        if self.state is not ChannelState.CLOSED:
            self.apply(ChannelEvent.CLOSED, "teardown")
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error(f"{self.prefix} Heartbeat task failed: {e}")
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()


class ConnectionSession:
    """Reconnect supervisor for one account's worker channel."""

    def __init__(
        self,
        index: int,
        account: Account,
        client: LedgerClient,
        assignments: AssignmentStore,
        settings: BotSettings,
        registry: Optional[AccountRegistry] = None,
        *,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.index = index
        self.account = account
        self.client = client
        self.assignments = assignments
        self.settings = settings
        self.registry = registry
        self.rng = rng or random.Random()
        self._sleep = sleep
        self.reconnect_policy = RetryPolicy.unbounded(
            delay=settings.reconnect_min_seconds,
            jitter=max(0.0, settings.reconnect_max_seconds - settings.reconnect_min_seconds),
        )

        self.channel: Optional[Channel] = None
        self.generation = 0
        self.pending_reconnect = False
        self.reconnects = 0
        self.open_channels = 0
        self.max_open_channels = 0
        self.pending_timers = 0
        self.max_pending_timers = 0
        self._stopped = False

    @property
    def prefix(self) -> str:
        account_id = self.registry.get(self.account.token) if self.registry else None
        if account_id:
            return f"[Account {self.index} #{account_id}]"
        return f"[Account {self.index}]"

    @property
    def proxy_label(self) -> str:
        proxy = self.client.proxy
        return proxy.masked() if proxy else "direct connection"

    @property
    def state(self) -> Optional[ChannelState]:
        return self.channel.state if self.channel else None

    def _channel_opened(self) -> None:
        self.open_channels += 1
        self.max_open_channels = max(self.max_open_channels, self.open_channels)

    def _channel_released(self) -> None:
        self.open_channels -= 1

    def stop(self) -> None:
        """Stop after the current channel closes (no further reconnects)."""
        self._stopped = True

    def schedule_reconnect(self) -> Optional[float]:
        """Claim the single reconnect slot for this account.

        Returns:
            The reconnect delay in seconds, or ``None`` if a reconnect is
            already pending.
        """
        if self.pending_reconnect:
            return None
        self.pending_reconnect = True
        self.reconnects += 1
        return self.reconnect_policy.next_delay(self.rng)

    async def _wait_reconnect(self, delay: float) -> None:
        self.pending_timers += 1
        self.max_pending_timers = max(self.max_pending_timers, self.pending_timers)
        try:
            logger.info(f"{self.prefix} 🔄 Reconnecting WebSocket in {delay:.0f}s...")
            await self._sleep(delay)
        finally:
            self.pending_timers -= 1

    def _begin_connecting(self) -> Channel:
        self.pending_reconnect = False
        self.generation += 1
        self.channel = Channel(self, self.generation)
        return self.channel

    async def run(self) -> None:
        """Keep the channel alive until :meth:`stop` is called."""
        while not self._stopped:
            channel = self._begin_connecting()
            await channel.run()
            if self._stopped:
                break
            if channel.error_type is ErrorType.CHANNEL:
                logger.warning(f"{self.prefix} Channel failed: {channel.close_reason}")
            delay = self.schedule_reconnect()
            if delay is not None:
                await self._wait_reconnect(delay)
        logger.info(f"{self.prefix} Connection session stopped.")


def _preview(data: Any, limit: int = 200) -> str:
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    text = str(data)
    return text if len(text) <= limit else text[:limit] + "..."


def _close_reason(ws: Any) -> str:
    code = getattr(ws, "close_code", None)
    return f"code {code}" if code is not None else "remote close"
