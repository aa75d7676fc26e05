"""Retry executor with exponential backoff and jitter."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import random
import time
from typing import Callable, Generic, TypeVar

from .errors import SinkError


logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_BUILTINS: tuple[type[BaseException], ...] = (TimeoutError, ConnectionError)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    growth_factor: float = 2.0
    max_delay_seconds: float = 8.0
    jitter_max_seconds: float = 0.5

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0 or self.jitter_max_seconds < 0:
            raise ValueError("retry delays must be >= 0")
        if self.growth_factor < 1:
            raise ValueError("growth_factor must be >= 1")

    def backoff_seconds(self, attempt: int) -> float:
        """Deterministic part of the delay after the given 1-based attempt."""
        delay = self.base_delay_seconds * (self.growth_factor ** max(0, attempt - 1))
        return min(delay, self.max_delay_seconds)


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    success: bool
    attempts: int
    value: T | None = None
    error: Exception | None = None

    @property
    def error_text(self) -> str | None:
        if self.error is None:
            return None
        return str(self.error) or type(self.error).__name__


def is_retryable(exc: Exception) -> bool:
    if isinstance(exc, SinkError):
        return exc.retryable
    return isinstance(exc, RETRYABLE_BUILTINS)


class RetryExecutor:
    """Runs an operation until it succeeds, fails terminally, or exhausts the policy.

    Failures never escape ``run``; the caller receives a ``RetryResult`` carrying the
    last observed error so it can move on unconditionally.
    """

    def __init__(
        self,
        *,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        on_retry: Callable[[int, float, Exception], None] | None = None,
    ) -> None:
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._on_retry = on_retry

    def run(self, operation: Callable[[], T], policy: RetryPolicy, *, label: str = "operation") -> RetryResult[T]:
        last_exc: Exception | None = None
        for attempt in range(1, policy.max_attempts + 1):
            try:
                value = operation()
            except Exception as exc:
                last_exc = exc
                if not is_retryable(exc):
                    logger.warning("SF retry terminal label=%s attempt=%s error=%s", label, attempt, exc)
                    return RetryResult(success=False, attempts=attempt, error=exc)
                if attempt >= policy.max_attempts:
                    break
                delay = self._delay(policy, attempt)
                logger.warning(
                    "SF retry scheduled label=%s attempt=%s/%s delay=%.3fs error=%s",
                    label,
                    attempt,
                    policy.max_attempts,
                    delay,
                    exc,
                )
                if self._on_retry:
                    self._on_retry(attempt, delay, exc)
                self._sleep(delay)
            else:
                return RetryResult(success=True, attempts=attempt, value=value)
        logger.error("SF retry exhausted label=%s attempts=%s error=%s", label, policy.max_attempts, last_exc)
        return RetryResult(success=False, attempts=policy.max_attempts, error=last_exc)

    def _delay(self, policy: RetryPolicy, attempt: int) -> float:
        jitter = self._rng.uniform(0.0, policy.jitter_max_seconds) if policy.jitter_max_seconds > 0 else 0.0
        return policy.backoff_seconds(attempt) + jitter
