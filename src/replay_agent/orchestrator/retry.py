"""Retry policy with exponential backoff, usable without a browser."""

import asyncio
import random
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional

import structlog

from ..core.config import RetryConfig
from ..core.errors import FrameworkError


logger = structlog.get_logger()

JITTER_RATIO = 0.1


@dataclass
class RetryOutcome:
    """Result of running a callable under a RetryPolicy."""
    success: bool
    result: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    duration_ms: float = 0


@dataclass(frozen=True)
class RetryPolicy:
    """
    Immutable retry/backoff settings.

    `max_attempts` counts total attempts, the first one included. The delay
    before attempt n+1 is base * multiplier**(n-1), capped at max_delay and
    optionally stretched by up to 10% jitter.
    """
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 10.0
    jitter: bool = True

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("delays must be non-negative")

    @classmethod
    def default(cls) -> "RetryPolicy":
        return cls()

    @classmethod
    def quick(cls) -> "RetryPolicy":
        return cls(max_attempts=2, base_delay_seconds=0.5, max_delay_seconds=2.0)

    @classmethod
    def slow(cls) -> "RetryPolicy":
        return cls(max_attempts=5, base_delay_seconds=2.0, max_delay_seconds=30.0)

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay_seconds=config.base_delay_seconds,
            backoff_multiplier=config.backoff_multiplier,
            max_delay_seconds=config.max_delay_seconds,
            jitter=config.jitter,
        )

    def with_attempts(self, attempts: int) -> "RetryPolicy":
        return replace(self, max_attempts=max(1, attempts))

    def extended(self, extra: int) -> "RetryPolicy":
        return replace(self, max_attempts=self.max_attempts + max(0, extra))

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        delay = self.base_delay_seconds * (self.backoff_multiplier ** max(0, attempt - 1))
        delay = min(delay, self.max_delay_seconds)

        if self.jitter:
            delay += delay * random.uniform(0, JITTER_RATIO)

        return delay

    async def execute(
        self,
        fn: Callable[[], Awaitable[Any]],
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> RetryOutcome:
        """
        Await `fn()` until it succeeds or the attempt budget is spent.

        A FrameworkError with retryable=False stops immediately.
        """
        start_time = time.monotonic()
        attempts = 0
        last_error: Optional[BaseException] = None

        while attempts < self.max_attempts:
            attempts += 1
            try:
                result = await fn()
                return RetryOutcome(
                    success=True,
                    result=result,
                    attempts=attempts,
                    duration_ms=(time.monotonic() - start_time) * 1000,
                )
            except FrameworkError as e:
                last_error = e
                e.context["attempt"] = attempts
                if not e.retryable:
                    break
            except Exception as e:
                last_error = e

            if attempts < self.max_attempts:
                delay = self.delay_for(attempts)
                logger.debug(
                    "retry_scheduled",
                    attempt=attempts,
                    delay_seconds=round(delay, 3),
                    error=str(last_error),
                )
                await sleep(delay)

        return RetryOutcome(
            success=False,
            error=last_error,
            attempts=attempts,
            duration_ms=(time.monotonic() - start_time) * 1000,
        )
