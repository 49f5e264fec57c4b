"""
Resilience helpers for outbound calls.

- retry_with_backoff: re-run a coroutine on transient failures (OpenWeather)
- CircuitBreaker:     fail fast while a provider is down (OpenWeather, Twilio)
- is_transient:       which httpx failures are worth another attempt
"""

import asyncio
import random
import time
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, TypeVar

import httpx
import structlog

from agroalert.exceptions import CircuitOpenError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS = frozenset({429, 502, 503, 504})


def is_transient(exc: BaseException) -> bool:
    """Network errors and throttling/gateway responses; never 4xx client errors."""
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS
    return False


def backoff_delay(attempt: int, base_delay: float, max_delay: float, jitter: float) -> float:
    """Delay before retry number `attempt` (1-based): base * 2^(attempt-1), capped, plus jitter."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay) + random.uniform(0, jitter)


# ── Retry ──────────────────────────────────────────────────────────────


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    jitter: float = 0.25,
    should_retry: Callable[[BaseException], bool] = is_transient,
    operation: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await `fn()` up to `attempts` times.

    Only failures accepted by `should_retry` are retried; anything else, or
    the last failure, propagates unchanged.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as exc:
            if not should_retry(exc):
                raise
            if attempt >= attempts:
                logger.warning("retry_exhausted", operation=operation, attempts=attempt, error=str(exc))
                raise
            delay = backoff_delay(attempt, base_delay, max_delay, jitter)
            logger.info(
                "retry_scheduled",
                operation=operation,
                attempt=attempt,
                delay=round(delay, 2),
                error=str(exc) or type(exc).__name__,
            )
            await sleep(delay)
            attempt += 1


# ── Circuit breaker ────────────────────────────────────────────────────


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"     # One probe allowed


class CircuitBreaker:
    """
    Per-provider breaker.

    Opens after `failure_threshold` failures within `window_seconds`, rejects
    calls for `recovery_timeout` seconds, then lets a single probe through.
    A successful probe closes it; a failed one re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        window_seconds: float = 60.0,
        recovery_timeout: float = 30.0,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = max(1, failure_threshold)
        self.window_seconds = window_seconds
        self.recovery_timeout = recovery_timeout
        self._monotonic = monotonic

        self._state = CircuitState.CLOSED
        self._failures: deque[float] = deque()
        self._opened_at = 0.0
        self._probing = False

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self._monotonic() - self._opened_at >= self.recovery_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            logger.info("circuit_half_open", breaker=self.name)
        return self._state

    def _reject(self, reason: str) -> CircuitOpenError:
        logger.warning("circuit_rejected", breaker=self.name, reason=reason)
        return CircuitOpenError(self.name, f"{self.name} circuit is {reason}")

    async def call(self, fn: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Await `fn(*args, **kwargs)` unless the circuit is open."""
        state = self.state
        if state == CircuitState.OPEN:
            raise self._reject("open")
        if state == CircuitState.HALF_OPEN:
            if self._probing:
                raise self._reject("probing")
            self._probing = True

        try:
            result = await fn(*args, **kwargs)
        except asyncio.CancelledError:
            # A send timeout cancels the call; it must still release the probe.
            self._record_failure()
            raise
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def _record_success(self) -> None:
        if self._state != CircuitState.CLOSED:
            logger.info("circuit_closed", breaker=self.name)
        self.reset()

    def _record_failure(self) -> None:
        now = self._monotonic()
        self._probing = False

        if self._state == CircuitState.HALF_OPEN:
            self._trip(now)
            return

        self._failures.append(now)
        while self._failures and self._failures[0] <= now - self.window_seconds:
            self._failures.popleft()
        if len(self._failures) >= self.failure_threshold:
            self._trip(now)

    def _trip(self, now: float) -> None:
        logger.warning(
            "circuit_opened",
            breaker=self.name,
            failures=len(self._failures),
            recovery_seconds=self.recovery_timeout,
        )
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._failures.clear()

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self._failures.clear()
        self._probing = False
