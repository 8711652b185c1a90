"""Process-wide scheduling for the Ledger worker bot.

The :class:`FarmScheduler` owns every account pipeline and drives three kinds
of work, all as concurrent fan-outs on one event loop:

* **Bootstrap** -- every :class:`~ledger.pipeline.AccountPipeline` is started
  at once (identity -> rewards -> claim -> channel).  The claim step of the
  bootstrap is the startup claim check.
* **Claim loop** -- every ``claim_interval_hours`` (12 h) each account with a
  resolved identity runs ``check_and_claim`` again.
* **Heartbeat loop** -- only in channel-less (``http``) mode: every
  ``heartbeat_interval_seconds`` (30 s) each ready account sends a one-shot
  heartbeat.

Each account is an independent unit of failure: an exception in one
account's coroutine is logged with its index and never cancels a sibling.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Sequence

from core.config import BotSettings, HeartbeatMode
from core.retry import Sleep

logger = logging.getLogger(__name__)


class FarmScheduler:
    """Fan out pipelines and periodic checks across all accounts."""

    def __init__(
        self,
        settings: BotSettings,
        pipelines: Sequence[Any],
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.pipelines = list(pipelines)
        self._sleep = sleep
        self._stopped = False
        self.claim_rounds = 0
        self.heartbeat_rounds = 0

    def stop(self) -> None:
        self._stopped = True

    async def _guard(self, pipeline: Any, label: str, coro: Awaitable[Any]) -> Any:
        """Await *coro*, logging (not raising) any exception."""
        try:
            return await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"[Account {pipeline.index}] {label} crashed: {e.__class__.__name__}: {e}",
                exc_info=True,
            )
            return None

    async def fan_out(self, label: str, action: Callable[[Any], Awaitable[Any]]) -> List[Any]:
        """Run *action* for every pipeline concurrently, isolating failures."""
        return await asyncio.gather(
            *(self._guard(p, label, action(p)) for p in self.pipelines)
        )

    async def bootstrap(self) -> List[Any]:
        logger.info(f"🚀 Starting {len(self.pipelines)} account pipelines...")
        return await self.fan_out("Pipeline", lambda p: p.run())

    def _ready(self) -> List[Any]:
        return [p for p in self.pipelines if p.ready]

    async def run_claim_round(self) -> List[Any]:
        """Claim check for every account whose identity is resolved.

        Accounts still resolving identity are skipped; their own pipeline
        runs the claim step once identity succeeds.
        """
        self.claim_rounds += 1
        ready = self._ready()
        if not ready:
            logger.debug("No account ready for claim checks yet")
            return []
        logger.info(f"Checking rewards for {len(ready)}/{len(self.pipelines)} accounts...")
        return await asyncio.gather(
            *(self._guard(p, "Claim check", p.check_and_claim()) for p in ready)
        )

    async def run_heartbeat_round(self) -> List[Any]:
        self.heartbeat_rounds += 1
        ready = self._ready()
        if not ready:
            logger.debug("No account ready for heartbeats yet")
            return []
        return await asyncio.gather(
            *(self._guard(p, "Heartbeat", p.send_heartbeat()) for p in ready)
        )

    async def _every(self, interval: float, tick: Callable[[], Awaitable[Any]], max_rounds: Optional[int]) -> None:
        rounds = 0
        while not self._stopped and (max_rounds is None or rounds < max_rounds):
            await self._sleep(interval)
            if self._stopped:
                break
            await tick()
            rounds += 1

    async def claim_loop(self, max_rounds: Optional[int] = None) -> None:
        """Re-run the claim check every ``claim_interval_hours``."""
        await self._every(self.settings.claim_interval_seconds, self.run_claim_round, max_rounds)

    async def heartbeat_loop(self, max_rounds: Optional[int] = None) -> None:
        """One-shot heartbeats every ``heartbeat_interval_seconds``."""
        await self._every(self.settings.heartbeat_interval_seconds, self.run_heartbeat_round, max_rounds)

    async def run_forever(self) -> None:
        """Bootstrap every account and keep the periodic loops running."""
        loops = [self.bootstrap(), self.claim_loop()]
        if self.settings.heartbeat_mode is HeartbeatMode.HTTP:
            loops.append(self.heartbeat_loop())
        await asyncio.gather(*loops)

    async def close(self) -> None:
        self.stop()
        for pipeline in self.pipelines:
            await pipeline.close()
