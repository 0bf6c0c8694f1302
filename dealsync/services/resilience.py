from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
import random
import time
from typing import Awaitable, Callable, TypeVar

import httpx
from redis.asyncio import Redis

from dealsync.core.config import get_settings
from dealsync.core.errors import IntegrationUnavailableError


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures where the request may never have reached Xero or Pipedrive.
TransientException = (TimeoutError, OSError, httpx.TransportError)

_redis: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None


async def get_resilience_redis() -> Redis | None:
    """Return the shared Redis client for this event loop, or None when Redis is off."""
    global _redis, _redis_loop
    settings = get_settings()
    if not settings.redis_enabled:
        return None
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    if _redis is not None and _redis_loop is loop:
        return _redis
    try:
        _redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    except (ValueError, OSError) as exc:
        logger.warning("redis_unavailable url_scheme=%s", settings.redis_url.split(":", 1)[0], exc_info=exc)
        _redis = None
        return None
    _redis_loop = loop
    return _redis


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            timeout_ms=settings.ext_call_timeout_ms,
            max_attempts=settings.ext_retry_max_attempts,
            backoff_ms=settings.ext_retry_backoff_ms,
        )

    def delay_s(self, attempt: int) -> float:
        # Exponential in the attempt number, jittered by +/-50%.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] = is_transient,
    before_attempt: Callable[[], Awaitable[None]] | None = None,
) -> T:
    """Run one outbound platform call with a per-attempt timeout.

    ``before_attempt`` (rate-limit admission) runs ahead of each attempt and
    outside its timeout, so waiting for quota never counts as a slow call.
    Only failures accepted by ``retryable`` are retried; everything else,
    including a final transient failure, propagates unchanged.
    """
    policy = policy or RetryPolicy.from_settings()
    attempts = max(policy.max_attempts, 1)
    for attempt in range(1, attempts + 1):
        if before_attempt is not None:
            await before_attempt()
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless transient
            if attempt == attempts or not retryable(exc):
                raise
            delay = policy.delay_s(attempt)
            logger.info("platform_call_retry attempt=%s delay_s=%.3f error=%s", attempt, delay, type(exc).__name__)
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int = 1


class CircuitBreaker:
    """Consecutive-failure breaker guarding the handlers of one fix session.

    Once ``failure_threshold`` handlers fail in a row the breaker opens and every
    remaining item fails fast with ``IntegrationUnavailableError``. After
    ``open_seconds`` a limited number of trial calls decide whether it closes.
    """

    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_settings()
        self.name = name
        self._config = config or CircuitBreakerConfig(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
        )
        self._time = time_source
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trials = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> BreakerState:
        return self._state

    def _move(self, target: BreakerState) -> None:
        if target is not self._state:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self.name, self._state.value, target.value)
        self._state = target
        self._failures = 0
        self._trials = 0
        if target is BreakerState.OPEN:
            self._opened_at = self._time()

    async def before_call(self) -> None:
        async with self._lock:
            if self._state is BreakerState.OPEN:
                if self._time() - self._opened_at < self._config.open_seconds:
                    raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
                self._move(BreakerState.HALF_OPEN)
            if self._state is BreakerState.HALF_OPEN:
                if self._trials >= self._config.half_open_trials:
                    raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
                self._trials += 1

    async def record_success(self) -> None:
        async with self._lock:
            if self._state is BreakerState.CLOSED:
                self._failures = 0
            else:
                self._move(BreakerState.CLOSED)

    async def record_failure(self) -> None:
        async with self._lock:
            if self._state is BreakerState.HALF_OPEN:
                self._move(BreakerState.OPEN)
                return
            self._failures += 1
            if self._failures >= self._config.failure_threshold:
                self._move(BreakerState.OPEN)
