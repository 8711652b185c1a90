"""Error classification and retry policy for remote calls.

Every remote failure is mapped onto an :class:`ErrorType` and wrapped in an
:class:`ApiError`.  A single :func:`retry` coroutine consumes a
:class:`RetryPolicy` value object and is shared by every caller that needs
to try an operation more than once:

* rate-limited attempts (HTTP 429) sleep a random 30-100 s and are retried
  indefinitely without consuming the caller's budget;
* transient failures are retried with a fixed delay until the policy's
  ``max_attempts`` is exhausted, after which :class:`RetryExhausted` is
  raised;
* an *unbounded* policy (``max_attempts=None``) never gives up.

Classes:
    ErrorType: Enum classifying errors for retry decisions.
    ApiError: Classified failure of a single attempt.
    RetryExhausted: Terminal failure once a bounded budget runs out.
    RetryPolicy: Frozen ``{max_attempts, delay, jitter}`` value object.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class ErrorType(Enum):
    """Classification of error types for retry decisions.

    Error Categories:
    - RATE_LIMIT: HTTP 429 (always retried, never terminal)
    - TRANSIENT: Timeouts, refused/dead proxy connections, 4xx/5xx, bad bodies
      (retried up to the policy budget)
    - CONFIG_ERROR: Missing or insufficient credentials/proxies (fatal at startup)
    - CHANNEL: Duplex channel error or unexpected close (always reconnected)
    """
    RATE_LIMIT = "rate_limit"
    TRANSIENT = "transient"
    CONFIG_ERROR = "config_error"
    CHANNEL = "channel"


class ApiError(Exception):
    """A classified failure of one remote attempt."""

    def __init__(self, error_type: ErrorType, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.error_type = error_type
        self.status = status

    @property
    def is_rate_limited(self) -> bool:
        return self.error_type is ErrorType.RATE_LIMIT


class RetryExhausted(Exception):
    """Raised when a bounded policy has no attempts left."""

    def __init__(self, description: str, attempts: int, last_error: BaseException):
        super().__init__(f"{description} failed after {attempts} attempts: {last_error}")
        self.description = description
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry.

    Attributes:
        max_attempts: Attempt budget for non-429 failures, or ``None`` for
            unbounded.
        delay: Base delay in seconds between attempts.
        jitter: Extra uniform random delay in ``[0, jitter]`` seconds.
        rate_limit_window: ``(min, max)`` seconds slept after a 429.
    """

    max_attempts: Optional[int] = 3
    delay: float = 60.0
    jitter: float = 0.0
    rate_limit_window: Tuple[float, float] = (30.0, 100.0)

    @classmethod
    def bounded(cls, max_attempts: int = 3, delay: float = 60.0, **kwargs) -> "RetryPolicy":
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        return cls(max_attempts=max_attempts, delay=delay, **kwargs)

    @classmethod
    def unbounded(cls, delay: float = 60.0, **kwargs) -> "RetryPolicy":
        return cls(max_attempts=None, delay=delay, **kwargs)

    @property
    def is_bounded(self) -> bool:
        return self.max_attempts is not None

    def exhausted(self, attempts: int) -> bool:
        """True once *attempts* failures have used up the budget."""
        return self.max_attempts is not None and attempts >= self.max_attempts

    def next_delay(self, rng: Optional[random.Random] = None) -> float:
        """Delay before the next attempt: ``delay + U(0, jitter)``."""
        if self.jitter <= 0:
            return self.delay
        rng = rng or random
        return self.delay + rng.uniform(0, self.jitter)

    def rate_limit_delay(self, rng: Optional[random.Random] = None) -> float:
        """Random backoff after an HTTP 429."""
        rng = rng or random
        low, high = self.rate_limit_window
        return rng.uniform(low, high)


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    description: str = "operation",
    log_prefix: str = "",
    sleep: Sleep = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> T:
    """Run *operation* until it succeeds or *policy* gives up.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Retry budget and delays.
        description: Human-readable name used in log lines and errors.
        log_prefix: Context prefix for log lines (e.g. ``"[Account 2]"``).
        sleep: Awaitable sleep, injectable for tests.
        rng: Random source for jitter and 429 backoff.

    Returns:
        The operation's result.

    Raises:
        RetryExhausted: A bounded policy ran out of attempts.
    """
    prefix = f"{log_prefix} " if log_prefix else ""
    failures = 0
    while True:
        try:
            return await operation()
        except ApiError as e:
            if e.is_rate_limited:
                wait = policy.rate_limit_delay(rng)
                logger.warning(
                    f"{prefix}⏳ {description}: 429 Too Many Requests. Retrying in {wait:.0f}s..."
                )
                await sleep(wait)
                continue
            last_error: BaseException = e

        failures += 1
        if policy.exhausted(failures):
            logger.error(f"{prefix}❌ {description} failed after {failures} attempts: {last_error}")
            raise RetryExhausted(description, failures, last_error) from last_error

        wait = policy.next_delay(rng)
        budget = policy.max_attempts if policy.is_bounded else "∞"
        logger.warning(
            f"{prefix}⚠️ {description} attempt {failures}/{budget} failed: {last_error}. "
            f"Retrying in {wait:.0f}s..."
        )
        await sleep(wait)
