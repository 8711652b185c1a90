"""REST and WebSocket client for the rewards platform.

One :class:`LedgerClient` exists per account.  It owns an
``aiohttp.ClientSession`` and routes every request and the worker channel
through the account's assigned proxy.

Failure handling:
    * Every attempt is classified into an :class:`~core.retry.ApiError`:
      HTTP 429 is ``RATE_LIMIT``; timeouts, refused or dead proxy connections,
      any other non-2xx status and undecodable bodies are ``TRANSIENT``.
    * :meth:`LedgerClient.call` feeds attempts through
      :func:`core.retry.retry` with the caller's :class:`RetryPolicy`.

Classes:
    RewardSummary: Aggregated point figures for one account.
    ClaimDetails: Daily-claim eligibility.
    ClaimOutcome: Result of a claim request.
    LedgerClient: The client itself.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from core.config import BotSettings
from core.proxy_manager import Proxy
from core.retry import ApiError, ErrorType, RetryPolicy, Sleep, retry

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "Content-Type": "application/json",
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
}


def _data(body: Any) -> Any:
    """Return ``body["data"]`` or raise a TRANSIENT error."""
    if not isinstance(body, dict) or "data" not in body:
        raise ApiError(ErrorType.TRANSIENT, f"Unexpected response body: {body!r:.200}")
    return body["data"]


def _records(data: Any, endpoint: str) -> List[Dict[str, Any]]:
    """Return the object entries of a list payload or raise a TRANSIENT error."""
    if data is None:
        return []
    if not isinstance(data, list):
        raise ApiError(ErrorType.TRANSIENT, f"{endpoint} data is not a list: {data!r:.200}")
    return [entry for entry in data if isinstance(entry, dict)]


def _number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class RewardSummary:
    """Point figures gathered from the three reward endpoints.

    Attributes:
        heartbeats: Sum of ``total_heartbeats`` over ``reward_realtime``.
        history_points: Sum of ``total_points`` over ``reward_history``.
        epoch_points: ``totalPoint`` from ``reward``.
        epoch: Epoch label (``name`` from ``reward``).
    """

    heartbeats: float
    history_points: float
    epoch_points: float
    epoch: str

    @property
    def total(self) -> float:
        # heartbeat count + epoch points (mixed units)
        return self.heartbeats + self.epoch_points


@dataclass(frozen=True)
class ClaimDetails:
    claimed: bool
    tier: Optional[str] = None
    daily_point: float = 0.0
    next_claim: Optional[str] = None


@dataclass(frozen=True)
class ClaimOutcome:
    success: bool
    status: str
    next_claim: Optional[str] = None
    message: str = ""


class LedgerClient:
    """Authenticated client bound to one account and one proxy."""

    def __init__(
        self,
        settings: BotSettings,
        token: str,
        proxy: Optional[Proxy] = None,
        *,
        log_prefix: str = "",
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        """
        Initialize the LedgerClient.

        Args:
            settings: Bot-wide configuration.
            token: Bearer token for this account.
            proxy: Proxy every request and the channel go through.
            log_prefix: Context for log lines (e.g. ``"[Account 1]"``).
            sleep: Awaitable sleep used between retries (injectable for tests).
            rng: Random source for retry jitter and 429 backoff.
        """
        self.settings = settings
        self.token = token
        self.proxy = proxy
        self.log_prefix = log_prefix
        self._sleep = sleep
        self._rng = rng
        self._session: Optional[aiohttp.ClientSession] = None

    # ------------------------------------------------------------------
    # Policies
    # ------------------------------------------------------------------

    @property
    def rate_limit_window(self):
        return (self.settings.rate_limit_min_seconds, self.settings.rate_limit_max_seconds)

    def bounded_policy(self) -> RetryPolicy:
        return RetryPolicy.bounded(
            self.settings.retry_attempts,
            self.settings.retry_delay_seconds,
            rate_limit_window=self.rate_limit_window,
        )

    def unbounded_policy(self) -> RetryPolicy:
        return RetryPolicy.unbounded(
            self.settings.retry_delay_seconds,
            rate_limit_window=self.rate_limit_window,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    @property
    def _ssl(self) -> bool:
        return bool(self.settings.verify_ssl)

    @property
    def _proxy_kwargs(self) -> Dict[str, Any]:
        if self.proxy is None:
            return {}
        return {"proxy": self.proxy.url, "proxy_auth": self.proxy.auth}

    def _headers(self) -> Dict[str, str]:
        return {**DEFAULT_HEADERS, "Authorization": f"Bearer {self.token}"}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def request(self, method: str, url: str, json: Optional[Dict[str, Any]] = None) -> Any:
        """Perform one attempt and return the decoded JSON body.

        Raises:
            ApiError: Classified failure of this attempt.
        """
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.settings.request_timeout_seconds)
        try:
            async with session.request(
                method,
                url,
                json=json,
                headers=self._headers(),
                timeout=timeout,
                ssl=self._ssl,
                **self._proxy_kwargs,
            ) as response:
                if response.status == 429:
                    raise ApiError(ErrorType.RATE_LIMIT, "HTTP 429 Too Many Requests", status=429)
                if response.status >= 400:
                    raise ApiError(
                        ErrorType.TRANSIENT,
                        f"HTTP {response.status} from {url}",
                        status=response.status,
                    )
                return await response.json(content_type=None)
        except ApiError:
            raise
        except asyncio.TimeoutError as e:
            raise ApiError(ErrorType.TRANSIENT, f"Timeout calling {url}") from e
        except aiohttp.ClientError as e:
            raise ApiError(ErrorType.TRANSIENT, f"{e.__class__.__name__}: {e}") from e
        except ValueError as e:
            raise ApiError(ErrorType.TRANSIENT, f"Invalid JSON from {url}: {e}") from e

    async def call(
        self,
        method: str,
        url: str,
        policy: RetryPolicy,
        *,
        json: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> Any:
        """:meth:`request` under *policy* (see :func:`core.retry.retry`)."""
        return await retry(
            lambda: self.request(method, url, json=json),
            policy,
            description=description or f"{method} {url}",
            log_prefix=self.log_prefix,
            sleep=self._sleep,
            rng=self._rng,
        )

    async def ws_connect(self, url: str) -> aiohttp.ClientWebSocketResponse:
        """Open the worker channel through the account's proxy."""
        session = await self._get_session()
        return await session.ws_connect(
            url,
            ssl=self._ssl,
            autoping=True,
            **self._proxy_kwargs,
        )

    async def close(self) -> None:
        if self._session:
            await self._session.close()

    # ------------------------------------------------------------------
    # Platform operations
    # ------------------------------------------------------------------

    async def fetch_identity(self, policy: Optional[RetryPolicy] = None) -> str:
        """Return the account id (``data.id`` of ``/users/me``)."""
        policy = policy or self.unbounded_policy()

        async def attempt() -> str:
            body = await self.request("GET", f"{self.settings.api_base_url}/users/me")
            data = _data(body)
            if not isinstance(data, dict) or data.get("id") is None:
                raise ApiError(ErrorType.TRANSIENT, "Identity response has no id")
            return str(data["id"])

        return await retry(
            attempt, policy,
            description="Fetch account ID",
            log_prefix=self.log_prefix,
            sleep=self._sleep,
            rng=self._rng,
        )

    async def fetch_reward_summary(self, policy: Optional[RetryPolicy] = None) -> RewardSummary:
        policy = policy or self.bounded_policy()
        base = self.settings.rewards_base_url

        async def attempt() -> RewardSummary:
            realtime = _records(_data(await self.request("GET", f"{base}/reward_realtime")), "reward_realtime")
            history = _records(_data(await self.request("GET", f"{base}/reward_history")), "reward_history")
            reward = _data(await self.request("GET", f"{base}/reward"))
            if not isinstance(reward, dict):
                raise ApiError(ErrorType.TRANSIENT, "Reward response is not an object")
            return RewardSummary(
                heartbeats=sum(_number(r.get("total_heartbeats")) for r in realtime),
                history_points=sum(_number(h.get("total_points")) for h in history),
                epoch_points=_number(reward.get("totalPoint")),
                epoch=str(reward.get("name") or "unknown"),
            )

        return await retry(
            attempt, policy,
            description="Fetch reward summary",
            log_prefix=self.log_prefix,
            sleep=self._sleep,
            rng=self._rng,
        )

    async def fetch_claim_details(self, policy: Optional[RetryPolicy] = None) -> ClaimDetails:
        policy = policy or self.bounded_policy()

        async def attempt() -> ClaimDetails:
            data = _data(await self.request("GET", f"{self.settings.rewards_base_url}/claim_details"))
            if not isinstance(data, dict):
                raise ApiError(ErrorType.TRANSIENT, "Claim details response is not an object")
            tier = data.get("tier")
            return ClaimDetails(
                claimed=bool(data.get("claimed")),
                tier=str(tier) if tier is not None else None,
                daily_point=_number(data.get("dailyPoint")),
                next_claim=data.get("nextClaim"),
            )

        return await retry(
            attempt, policy,
            description="Check claim details",
            log_prefix=self.log_prefix,
            sleep=self._sleep,
            rng=self._rng,
        )

    async def claim_reward(self, policy: Optional[RetryPolicy] = None) -> ClaimOutcome:
        body = await self.call(
            "GET",
            f"{self.settings.rewards_base_url}/claim_reward",
            policy or self.bounded_policy(),
            description="Claim reward",
        )
        if not isinstance(body, dict):
            return ClaimOutcome(success=False, status="INVALID", message=repr(body)[:200])
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        status = str(body.get("status") or data.get("status") or "UNKNOWN")
        return ClaimOutcome(
            success=status == "SUCCESS",
            status=status,
            next_claim=body.get("nextClaim") or data.get("nextClaim"),
            message=str(body.get("message") or ""),
        )

    async def send_heartbeat(self, payload: Dict[str, Any], policy: Optional[RetryPolicy] = None) -> Any:
        """One-shot HEARTBEAT for the channel-less mode."""
        return await self.call(
            "POST",
            self.settings.heartbeat_url,
            policy or self.bounded_policy(),
            json=payload,
            description="Send heartbeat",
        )
