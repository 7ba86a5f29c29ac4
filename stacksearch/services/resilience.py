from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine

from redis.asyncio import Redis

from stacksearch.core.config import get_settings
from stacksearch.core.errors import IntegrationUnavailableError, ProviderUnavailableError, is_retriable
from stacksearch.services.telemetry import increment_counter, record_external_call, set_gauge


logger = logging.getLogger(__name__)


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_resilience_redis() -> Redis | None:
    # Reuse a shared Redis connection for breaker coordination across workers.
    settings = get_settings()
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("resilience_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.ext_call_timeout_ms,
        max_attempts=settings.ext_retry_max_attempts,
        backoff_ms=settings.ext_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Bounded attempts with jittered exponential backoff; non-retriable errors surface immediately.
    policy = policy or default_retry_policy()
    retryable = retryable or is_retriable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            retry_after = getattr(exc, "retry_after_s", None)
            if isinstance(retry_after, (int, float)) and retry_after > 0:
                # Honor provider Retry-After hints, capped by the call timeout.
                sleep_s = max(sleep_s, min(float(retry_after), policy.timeout_ms / 1000.0))
            await asyncio.sleep(sleep_s)
            attempt += 1


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    open_seconds: int
    half_open_trials: int


@dataclass
class CircuitBreakerState:
    state: str
    failures: int
    opened_at: float | None
    half_open_trials: int


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        redis: Redis | None = None,
        config: CircuitBreakerConfig | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        settings = get_settings()
        self._name = name
        self._redis = redis
        self._config = config or CircuitBreakerConfig(
            failure_threshold=settings.cb_failure_threshold,
            open_seconds=settings.cb_open_seconds,
            half_open_trials=settings.cb_half_open_trials,
        )
        self._time = time_source or time.monotonic
        self._local_state = CircuitBreakerState("closed", 0, None, 0)

    @property
    def name(self) -> str:
        return self._name

    def _key(self) -> str:
        return f"{get_settings().cb_redis_prefix}:{self._name}"

    async def _load(self) -> CircuitBreakerState:
        # Shared state lives in Redis when configured; otherwise per-process.
        if self._redis is None:
            return self._local_state
        raw = await self._redis.hgetall(self._key())
        if not raw:
            return self._local_state
        return CircuitBreakerState(
            raw.get("state", "closed"),
            int(raw.get("failures", 0)),
            float(raw["opened_at"]) if raw.get("opened_at") else None,
            int(raw.get("half_open_trials", 0)),
        )

    async def _save(self, state: CircuitBreakerState) -> None:
        if self._redis is None:
            self._local_state = state
            return
        payload = {
            "state": state.state,
            "failures": str(state.failures),
            "opened_at": str(state.opened_at or ""),
            "half_open_trials": str(state.half_open_trials),
        }
        await self._redis.hset(self._key(), mapping=payload)
        await self._redis.expire(self._key(), max(self._config.open_seconds * 4, 60))

    async def _transition(self, state: CircuitBreakerState, target: str) -> CircuitBreakerState:
        if state.state != target:
            logger.warning("circuit_breaker_transition name=%s from=%s to=%s", self._name, state.state, target)
            increment_counter(f"circuit_breaker_transition_total.{self._name}.{target}")
            set_gauge(
                f"circuit_breaker_state.{self._name}",
                {"closed": 0.0, "half_open": 0.5, "open": 1.0}.get(target, 0.0),
            )
        return CircuitBreakerState(target, 0, self._time() if target == "open" else None, 0)

    async def current_state(self) -> str:
        return (await self._load()).state

    async def before_call(self) -> CircuitBreakerState:
        state = await self._load()
        now = self._time()
        if state.state == "open":
            if state.opened_at is not None and (now - state.opened_at) >= self._config.open_seconds:
                state = await self._transition(state, "half_open")
                await self._save(state)
            else:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
        if state.state == "half_open":
            if state.half_open_trials >= self._config.half_open_trials:
                raise IntegrationUnavailableError(f"{self._name} is temporarily unavailable")
            state.half_open_trials += 1
            await self._save(state)
        return state

    async def record_success(self) -> None:
        state = await self._load()
        if state.state != "closed":
            state = await self._transition(state, "closed")
        else:
            state.failures = 0
            state.half_open_trials = 0
        await self._save(state)

    async def record_failure(self) -> None:
        state = await self._load()
        if state.state == "half_open":
            state = await self._transition(state, "open")
            await self._save(state)
            return
        failures = state.failures + 1
        if failures >= self._config.failure_threshold:
            state = await self._transition(state, "open")
        else:
            state.failures = failures
        await self._save(state)


async def call_external(
    integration: str,
    func: Callable[[], Awaitable[Any]],
    *,
    breaker: CircuitBreaker | None = None,
    policy: RetryPolicy | None = None,
) -> Any:
    """Run one provider call behind the breaker, the retry policy and telemetry.

    Timeouts are re-raised as ``ProviderUnavailableError`` so callers only deal
    with the error taxonomy. Only retriable failures count against the breaker;
    auth, validation and not-found responses mean the provider is healthy.
    """
    start = time.monotonic()
    if breaker is not None:
        await breaker.before_call()
    try:
        result = await retry_async(func, policy=policy)
    except Exception as exc:
        record_external_call(
            integration=integration,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=False,
        )
        if breaker is not None and is_retriable(exc):
            await breaker.record_failure()
        if isinstance(exc, TimeoutError):
            raise ProviderUnavailableError(f"{integration} timed out") from exc
        raise
    if breaker is not None:
        await breaker.record_success()
    record_external_call(
        integration=integration,
        latency_ms=(time.monotonic() - start) * 1000.0,
        success=True,
    )
    return result


_background_tasks: set[asyncio.Task] = set()


def best_effort(coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
    """Schedule a side effect whose failure must never reach the caller.

    Tasks are held in a module set until done so they are not garbage
    collected mid-flight; ``drain_background_tasks`` awaits them on shutdown.
    """
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)

    def _done(finished: asyncio.Task) -> None:
        _background_tasks.discard(finished)
        if finished.cancelled():
            return
        exc = finished.exception()
        if exc is not None:
            increment_counter(f"best_effort_failures_total.{name}")
            logger.warning("best_effort_failed name=%s", name, exc_info=exc)

    task.add_done_callback(_done)
    return task


async def drain_background_tasks(timeout_s: float = 5.0) -> None:
    # Let pending best-effort writes land before the loop closes.
    pending = [task for task in _background_tasks if not task.done()]
    if not pending:
        return
    _done, still_pending = await asyncio.wait(pending, timeout=timeout_s)
    for task in still_pending:
        task.cancel()
