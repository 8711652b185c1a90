"""Per-account orchestration.

An :class:`AccountPipeline` runs one account through, strictly in order:

1. resolve identity (retried indefinitely; nothing else can proceed without it),
2. fetch the reward summary (bounded retries, best-effort),
3. check and claim the daily reward (bounded retries, best-effort),
4. hand off to the account's :class:`~ledger.session.ConnectionSession`
   (persistent-channel mode) or mark the account ready for the scheduler's
   HTTP heartbeats (channel-less mode).

Steps 2-4 are independent of each other's success.  Shared state travels in
an explicit :class:`RunContext` instead of module-level maps.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from core.config import BotSettings, HeartbeatMode
from core.proxy_manager import Proxy
from core.registry import AccountRegistry
from core.retry import RetryExhausted, Sleep
from ledger.accounts import Account
from ledger.api import ClaimOutcome, LedgerClient, RewardSummary
from ledger.assignments import AssignmentStore
from ledger.messages import build_heartbeat_message
from ledger.session import ConnectionSession

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RunContext:
    """Process-wide collaborators shared by every pipeline.

    Attributes:
        settings: Bot-wide configuration.
        assignments: Persisted simulated-hardware profiles.
        registry: ``token -> account id`` map, written on identity resolution.
        sleep: Awaitable sleep for retries and reconnects (injectable for tests).
        rng: Random source for jitter and simulated capacity figures.
    """

    settings: BotSettings
    assignments: AssignmentStore
    registry: AccountRegistry
    sleep: Sleep = asyncio.sleep
    rng: Optional[random.Random] = None


class AccountPipeline:
    """Identity -> rewards -> claim -> channel, for one account."""

    def __init__(
        self,
        index: int,
        account: Account,
        proxy: Optional[Proxy],
        context: RunContext,
        client: Optional[LedgerClient] = None,
    ) -> None:
        self.index = index
        self.account = account
        self.proxy = proxy
        self.context = context
        self.client = client or LedgerClient(
            context.settings,
            account.token,
            proxy,
            log_prefix=f"[Account {index}]",
            sleep=context.sleep,
            rng=context.rng,
        )
        self.session = ConnectionSession(
            index,
            account,
            self.client,
            context.assignments,
            context.settings,
            context.registry,
            sleep=context.sleep,
            rng=context.rng,
        )
        self.account_id: Optional[str] = None
        self.last_summary: Optional[RewardSummary] = None
        self.last_claim: Optional[ClaimOutcome] = None

    @property
    def prefix(self) -> str:
        if self.account_id:
            return f"[Account {self.index} #{self.account_id}]"
        return f"[Account {self.index}]"

    @property
    def ready(self) -> bool:
        """True once identity is resolved (heartbeats may be sent)."""
        return self.account_id is not None

    async def run(self) -> None:
        """Run every step; in channel mode this never returns."""
        await self.resolve_identity()
        await self._isolated("Reward summary", self.refresh_rewards)
        await self._isolated("Claim check", self.check_and_claim)
        if self.context.settings.heartbeat_mode is HeartbeatMode.WEBSOCKET:
            await self.session.run()
        else:
            logger.info(f"{self.prefix} Ready for HTTP heartbeats.")

    async def _isolated(self, label: str, step: Callable[[], Awaitable[T]]) -> Optional[T]:
        """Run a best-effort step; an unexpected error is logged, not raised."""
        try:
            return await step()
        except Exception as e:
            logger.error(f"{self.prefix} {label} crashed: {e.__class__.__name__}: {e}", exc_info=True)
            return None

    async def resolve_identity(self) -> str:
        logger.info(f"{self.prefix} Fetching account ID via {self.proxy.masked() if self.proxy else 'direct connection'}")
        account_id = await self.client.fetch_identity(self.client.unbounded_policy())
        self.account_id = self.context.registry.register(self.account.token, account_id)
        logger.info(f"{self.prefix} 🆔 Account ID resolved")
        return self.account_id

    async def refresh_rewards(self) -> Optional[RewardSummary]:
        try:
            summary = await self.client.fetch_reward_summary(self.client.bounded_policy())
        except RetryExhausted as e:
            logger.error(f"{self.prefix} Could not fetch reward summary: {e}")
            return None
        self.last_summary = summary
        logger.info(
            f"{self.prefix} 💰 Total points: {summary.total:.2f} "
            f"(heartbeats {summary.heartbeats:.0f}, epoch {summary.epoch}: {summary.epoch_points:.2f})"
        )
        return summary

    async def check_and_claim(self) -> Optional[ClaimOutcome]:
        """Claim the daily reward if it has not been claimed yet.

        Returns:
            The claim outcome, or ``None`` if nothing was claimed (already
            claimed, or the check/claim failed after retries).
        """
        logger.info(f"{self.prefix} Checking reward details")
        try:
            details = await self.client.fetch_claim_details(self.client.bounded_policy())
        except RetryExhausted as e:
            logger.error(f"{self.prefix} Could not check claim details: {e}")
            return None

        if details.claimed:
            logger.info(f"{self.prefix} Reward already claimed (tier {details.tier}, daily {details.daily_point:g})")
            return None

        logger.info(f"{self.prefix} 🎁 Claiming reward")
        try:
            outcome = await self.client.claim_reward(self.client.bounded_policy())
        except RetryExhausted as e:
            logger.error(f"{self.prefix} Reward claim failed: {e}")
            return None

        self.last_claim = outcome
        if outcome.success:
            logger.info(f"{self.prefix} ✅ Reward claimed successfully. Next claim: {outcome.next_claim}")
        else:
            logger.warning(f"{self.prefix} Reward claim failed: {outcome.status} {outcome.message}".rstrip())
        return outcome

    async def send_heartbeat(self) -> bool:
        """One-shot HEARTBEAT over REST (channel-less mode)."""
        if not self.ready:
            return False
        context = self.context
        assignment = context.assignments.get_or_create(self.account.worker_id)
        payload = build_heartbeat_message(self.account, assignment, context.settings, context.rng)
        try:
            await self.client.send_heartbeat(payload, self.client.bounded_policy())
        except RetryExhausted as e:
            logger.error(f"{self.prefix} Heartbeat failed: {e}")
            return False
        logger.info(f"{self.prefix} 💓 Heartbeat sent")
        return True

    async def close(self) -> None:
        self.session.stop()
        await self.client.close()
