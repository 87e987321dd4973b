"""
Retry, circuit breaker and timeout composition for outbound and storage calls.

Every call to QuickBooks and every storage read or write goes through a
ResiliencePolicy. One attempt is:

    breaker check -> per-attempt timeout -> operation

and the retry loop wraps whole attempts, so each retry consults the breaker's
current state and gets a fresh timeout. An open breaker fails fast with
CircuitOpenError, which is never retried.

Backoff follows the usual exponential scheme: the delay before retry *k*
(0-based) is ``min(base_delay * 2**k, max_delay)``, randomised within
[0.5x, 1.5x] when jitter is enabled.
"""

import asyncio
import random
import time
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
import structlog
from pydantic import BaseModel, Field

from steadybooks.config import Settings

logger = structlog.get_logger()

T = TypeVar("T")


class TransientError(Exception):
    """Base for provider and storage failures that are worth retrying."""

    pass


class CircuitOpenError(Exception):
    """Raised without calling the operation while a circuit breaker is open."""

    def __init__(self, name: str, retry_after: float = 0.0):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit '{name}' is open; retry after {retry_after:.1f}s")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_attempts: int = Field(default=3, ge=1, description="Total attempts, including the first")
    base_delay: float = Field(default=0.1, ge=0.0, description="Backoff base delay in seconds")
    max_delay: float = Field(default=5.0, ge=0.0, description="Upper bound on a single delay")
    jitter: bool = Field(default=True, description="Randomise the delay within [0.5x, 1.5x]")


class CircuitBreakerConfig(BaseModel):
    """Tuneable parameters for the failure-ratio circuit breaker."""

    failure_ratio: float = Field(default=0.5, gt=0.0, le=1.0)
    sampling_duration: float = Field(default=30.0, gt=0.0, description="Rolling window in seconds")
    minimum_throughput: int = Field(default=10, ge=1)
    break_duration: float = Field(default=30.0, gt=0.0, description="Open period in seconds")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def compute_delay(attempt: int, config: RetryConfig, rng: Optional[random.Random] = None) -> float:
    """Return the backoff delay before retry ``attempt`` (0-based)."""
    delay = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= (rng or random).uniform(0.5, 1.5)
    return delay


class CircuitBreaker:
    """
    Failure-ratio circuit breaker over a rolling time window.

    Attempt outcomes are kept as (timestamp, failed) pairs and pruned to the
    sampling window on every record. Once the window holds at least
    ``minimum_throughput`` outcomes and the failure ratio reaches
    ``failure_ratio``, the breaker opens for ``break_duration``. After that it
    half-opens and admits exactly one trial call: success closes it, failure
    reopens it for a full break.

    Not thread-safe; instances are shared between tasks of a single event loop.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.name = name
        self._clock = clock
        self._outcomes: deque[tuple[float, bool]] = deque()
        self._state = CircuitState.CLOSED
        self._opened_until = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state == CircuitState.OPEN and self._clock() >= self._opened_until:
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("circuit_breaker_half_opened", circuit=self.name)
        return self._state

    def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitOpenError: While open, or while the half-open trial is running
        """
        state = self.state
        if state == CircuitState.CLOSED:
            return

        if state == CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return

        retry_after = max(self._opened_until - self._clock(), 0.0)
        logger.warning("circuit_breaker_rejected", circuit=self.name, state=state.value)
        raise CircuitOpenError(self.name, retry_after)

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._close()
            return
        self._record(failed=False)

    def record_failure(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._open()
            return
        self._record(failed=True)
        total = len(self._outcomes)
        if self._state == CircuitState.CLOSED and total >= self.config.minimum_throughput:
            failures = sum(1 for _, failed in self._outcomes if failed)
            if failures / total >= self.config.failure_ratio:
                self._open()

    def release(self) -> None:
        """Give back a half-open trial slot whose call ended without an outcome."""
        self._trial_in_flight = False

    def _record(self, failed: bool) -> None:
        now = self._clock()
        self._outcomes.append((now, failed))
        cutoff = now - self.config.sampling_duration
        while self._outcomes and self._outcomes[0][0] < cutoff:
            self._outcomes.popleft()

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_until = self._clock() + self.config.break_duration
        self._trial_in_flight = False
        self._outcomes.clear()
        logger.warning(
            "circuit_breaker_opened",
            circuit=self.name,
            break_seconds=self.config.break_duration,
        )

    def _close(self) -> None:
        self._state = CircuitState.CLOSED
        self._trial_in_flight = False
        self._outcomes.clear()
        logger.info("circuit_breaker_closed", circuit=self.name)


class ResiliencePolicy:
    """
    Composable retry + circuit breaker + timeout wrapper.

    Attributes:
        name: Policy name used in log events
        retry: Retry parameters
        timeout: Per-attempt timeout in seconds (None disables it)
        transient_exceptions: Exception types that are retried and count
            as breaker failures; anything else propagates immediately
        breaker: Optional circuit breaker consulted before every attempt
    """

    def __init__(
        self,
        name: str,
        retry: RetryConfig,
        timeout: Optional[float],
        transient_exceptions: tuple[type[BaseException], ...],
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.name = name
        self.retry = retry
        self.timeout = timeout
        self.transient_exceptions = transient_exceptions
        self.breaker = breaker
        self._sleep = sleep
        self._rng = rng

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation`` under the policy.

        Args:
            operation: Zero-argument callable returning a fresh awaitable on
                every call; it is invoked once per attempt

        Returns:
            The operation's result from the first successful attempt

        Raises:
            CircuitOpenError: If the breaker rejects an attempt
            Exception: The last transient error once attempts are exhausted,
                or the first non-transient error
        """
        attempts = self.retry.max_attempts
        for attempt in range(attempts):
            try:
                return await self._attempt(operation)
            except CircuitOpenError:
                raise
            except self.transient_exceptions as exc:
                if attempt + 1 >= attempts:
                    logger.warning(
                        "resilience_attempts_exhausted",
                        policy=self.name,
                        attempts=attempts,
                        error_type=type(exc).__name__,
                    )
                    raise
                delay = compute_delay(attempt, self.retry, self._rng)
                logger.warning(
                    "resilience_retry_scheduled",
                    policy=self.name,
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    delay_seconds=round(delay, 3),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                await self._sleep(delay)

        raise RuntimeError("unreachable")  # pragma: no cover

    async def _attempt(self, operation: Callable[[], Awaitable[T]]) -> T:
        breaker = self.breaker
        if breaker is not None:
            breaker.before_call()

        try:
            if self.timeout is None:
                result = await operation()
            else:
                result = await asyncio.wait_for(operation(), timeout=self.timeout)
        except asyncio.CancelledError:
            if breaker is not None:
                breaker.release()
            raise
        except self.transient_exceptions:
            if breaker is not None:
                breaker.record_failure()
            raise
        except Exception:
            # Non-transient errors mean the dependency answered.
            if breaker is not None:
                breaker.record_success()
            raise

        if breaker is not None:
            breaker.record_success()
        return result


def retry_config_from_settings(settings: Settings, base_delay_ms: Optional[int] = None) -> RetryConfig:
    base_ms = settings.retry_initial_delay_ms if base_delay_ms is None else base_delay_ms
    return RetryConfig(
        max_attempts=settings.retry_max_attempts,
        base_delay=base_ms / 1000.0,
        max_delay=settings.retry_max_delay_ms / 1000.0,
    )


def build_outbound_policy(settings: Settings, **overrides) -> ResiliencePolicy:
    """
    Build the policy for calls to QuickBooks.

    Retries transport errors, attempt timeouts and transient provider
    responses, behind a circuit breaker.
    """
    breaker = CircuitBreaker(
        CircuitBreakerConfig(
            failure_ratio=settings.breaker_failure_ratio,
            sampling_duration=settings.breaker_sampling_duration_seconds,
            minimum_throughput=settings.breaker_minimum_throughput,
            break_duration=settings.breaker_break_duration_seconds,
        ),
        name="outbound_api",
    )
    options = {
        "name": "outbound_api",
        "retry": retry_config_from_settings(settings),
        "timeout": settings.http_timeout_seconds,
        "transient_exceptions": (httpx.TransportError, asyncio.TimeoutError, TransientError),
        "breaker": breaker,
    }
    options.update(overrides)
    return ResiliencePolicy(**options)


def build_storage_policy(settings: Settings, **overrides) -> ResiliencePolicy:
    """Build the policy for storage calls: longer timeout, slower backoff, no breaker."""
    options = {
        "name": "storage",
        "retry": retry_config_from_settings(settings, base_delay_ms=settings.retry_initial_delay_ms * 2),
        "timeout": settings.database_timeout_seconds,
        "transient_exceptions": (asyncio.TimeoutError, TransientError),
        "breaker": None,
    }
    options.update(overrides)
    return ResiliencePolicy(**options)
