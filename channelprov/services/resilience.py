from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
import logging
import random
import time
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis

from channelprov.core.config import get_settings
from channelprov.core.errors import IntegrationUnavailableError
from channelprov.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

_shared_redis: Redis | None = None
_shared_redis_loop: asyncio.AbstractEventLoop | None = None


async def get_shared_redis() -> Redis | None:
    """Redis client for breaker state and OAuth correlation tokens, bound to the running loop."""
    global _shared_redis, _shared_redis_loop
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    if _shared_redis is not None and _shared_redis_loop is loop:
        return _shared_redis
    try:
        _shared_redis = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
    except ValueError as exc:
        logger.warning("shared_redis_unavailable error=%s", exc)
        _shared_redis = None
        return None
    _shared_redis_loop = loop
    return _shared_redis


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int

    def delay_s(self, attempt: int) -> float:
        # Exponential from backoff_ms, jittered by +/-50%.
        return (self.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * random.uniform(0.5, 1.5)


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=max(1, settings.ext_retry_max_attempts),
        backoff_ms=settings.ext_retry_backoff_ms,
    )


def single_attempt_policy() -> RetryPolicy:
    # Side-effecting provider calls are never replayed automatically.
    return RetryPolicy(timeout_ms=get_settings().ext_call_timeout_ms, max_attempts=1, backoff_ms=0)


def is_transient(exc: Exception) -> bool:
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and status >= 500


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] = is_transient,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Any:
    policy = policy or default_retry_policy()
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless transient and attempts remain
            if attempt >= policy.max_attempts or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            logger.info("external_call_retry attempt=%s error=%s", attempt, type(exc).__name__)
            await sleep(policy.delay_s(attempt))
            attempt += 1


class BreakerPhase(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_PHASE_GAUGE = {BreakerPhase.CLOSED: 0.0, BreakerPhase.HALF_OPEN: 0.5, BreakerPhase.OPEN: 1.0}


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


@dataclass(frozen=True)
class BreakerSnapshot:
    phase: BreakerPhase = BreakerPhase.CLOSED
    failures: int = 0
    opened_at: float | None = None
    trials: int = 0


class _LocalBreakerStore:
    def __init__(self) -> None:
        self._snapshot = BreakerSnapshot()

    async def load(self) -> BreakerSnapshot:
        return self._snapshot

    async def save(self, snapshot: BreakerSnapshot) -> None:
        self._snapshot = snapshot


class _RedisBreakerStore:
    # One hash per integration so every worker sees the same provider health.

    def __init__(self, redis: Redis, key: str, ttl_s: int) -> None:
        self._redis = redis
        self._key = key
        self._ttl_s = ttl_s

    async def load(self) -> BreakerSnapshot:
        raw = await self._redis.hgetall(self._key)
        if not raw:
            return BreakerSnapshot()
        return BreakerSnapshot(
            phase=BreakerPhase(raw.get("phase", BreakerPhase.CLOSED.value)),
            failures=int(raw.get("failures", 0)),
            opened_at=float(raw["opened_at"]) if raw.get("opened_at") else None,
            trials=int(raw.get("trials", 0)),
        )

    async def save(self, snapshot: BreakerSnapshot) -> None:
        await self._redis.hset(
            self._key,
            mapping={
                "phase": snapshot.phase.value,
                "failures": str(snapshot.failures),
                "opened_at": "" if snapshot.opened_at is None else str(snapshot.opened_at),
                "trials": str(snapshot.trials),
            },
        )
        await self._redis.expire(self._key, self._ttl_s)


class CircuitBreaker:
    """Closed/open/half-open breaker for one provider integration.

    State is process-local unless a Redis client is given, in which case it is
    shared under ``CB_REDIS_PREFIX:<name>``.
    """

    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        settings = get_settings()
        self.name = name
        self.config = config or CircuitBreakerConfig(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )
        self._now = time_source
        if redis is None:
            self._store: _LocalBreakerStore | _RedisBreakerStore = _LocalBreakerStore()
        else:
            self._store = _RedisBreakerStore(
                redis, f"{settings.cb_redis_prefix}:{name}", ttl_s=max(60, self.config.open_seconds * 4)
            )

    async def _enter(self, current: BreakerSnapshot, phase: BreakerPhase) -> BreakerSnapshot:
        if current.phase != phase:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self.name, current.phase.value, phase.value)
            increment_counter(f"circuit_breaker_transition_total.{self.name}.{phase.value}")
            set_gauge(f"circuit_breaker_state.{self.name}", _PHASE_GAUGE[phase])
        snapshot = BreakerSnapshot(phase=phase, opened_at=self._now() if phase is BreakerPhase.OPEN else None)
        await self._store.save(snapshot)
        return snapshot

    async def before_call(self) -> BreakerSnapshot:
        snapshot = await self._store.load()
        if snapshot.phase is BreakerPhase.OPEN:
            elapsed = self._now() - (snapshot.opened_at or 0.0)
            if elapsed < self.config.open_seconds:
                raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
            snapshot = await self._enter(snapshot, BreakerPhase.HALF_OPEN)
        if snapshot.phase is BreakerPhase.HALF_OPEN:
            if snapshot.trials >= self.config.half_open_trials:
                raise IntegrationUnavailableError(f"{self.name} is temporarily unavailable")
            snapshot = replace(snapshot, trials=snapshot.trials + 1)
            await self._store.save(snapshot)
        return snapshot

    async def record_success(self) -> None:
        snapshot = await self._store.load()
        if snapshot.phase is not BreakerPhase.CLOSED:
            await self._enter(snapshot, BreakerPhase.CLOSED)
        elif snapshot.failures:
            await self._store.save(BreakerSnapshot())

    async def record_failure(self) -> None:
        snapshot = await self._store.load()
        failures = snapshot.failures + 1
        if snapshot.phase is BreakerPhase.HALF_OPEN or failures >= self.config.failure_threshold:
            await self._enter(snapshot, BreakerPhase.OPEN)
            return
        await self._store.save(replace(snapshot, failures=failures))
