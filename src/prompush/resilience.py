"""Retry logic.

RetryPolicy: bounded retries with exponential backoff and jitter. The last
error is re-raised unchanged once attempts or the time budget run out.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

NotifyFunc = Callable[[Exception, float], None]

# Overall retry budget of the exponential policy, measured from the first attempt
DEFAULT_MAX_ELAPSED = 15 * 60.0


def always_retryable(error: Exception) -> bool:
    """Treat every failure as transient."""
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy with exponential backoff.

    Calculates delay as: base_delay * exponential_base^(attempt-1), capped at
    max_delay, then perturbed by +/- jitter (a fraction of the delay) and
    clamped back into [0, max_delay]. With max_elapsed set, no retry is
    scheduled that would start later than max_elapsed seconds after the first
    attempt.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: float = 0.0
    max_elapsed: float | None = None
    is_retryable: Callable[[Exception], bool] = field(default=always_retryable)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if self.max_elapsed is not None and self.max_elapsed < 0:
            raise ValueError("max_elapsed must not be negative")

    @classmethod
    def exponential(cls, retries: int, delay: float, **kwargs: Any) -> RetryPolicy:
        """Policy for ``retries`` retries after the first attempt.

        Starts at ``delay``, doubles per retry, caps at ten times ``delay`` and
        applies 10% jitter. Gives up once the next retry would start more
        than 15 minutes after the first attempt.
        """
        kwargs.setdefault("max_elapsed", DEFAULT_MAX_ELAPSED)
        return cls(
            max_attempts=1 + retries,
            base_delay=delay,
            max_delay=10 * delay,
            exponential_base=2.0,
            jitter=0.1,
            **kwargs,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt number.

        Args:
            attempt: Attempt number (1-based) that just failed.

        Returns:
            Delay in seconds.
        """
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)

        return max(0.0, min(delay, self.max_delay))

    async def execute(
        self,
        func: Callable[[], Coroutine[Any, Any, T]],
        notify: NotifyFunc | None = None,
    ) -> T:
        """Execute function with retry logic.

        Stops on success, on an error ``is_retryable`` rejects, after
        ``max_attempts`` attempts, or when the next retry would start past
        ``max_elapsed``. Cancellation of the calling task ends the
        loop at once, including during the wait between attempts.

        Args:
            func: Async function to execute.
            notify: Called with the error and the delay before each wait.

        Returns:
            Function result.

        Raises:
            Exception: The error of the last attempt, unchanged.
        """
        attempt = 0
        started = time.monotonic()

        while True:
            attempt += 1
            try:
                return await func()
            except Exception as e:
                if not self.is_retryable(e):
                    logger.debug(f"Attempt {attempt} failed permanently: {e}")
                    raise
                if attempt >= self.max_attempts:
                    logger.debug(f"Attempt {attempt}/{self.max_attempts} failed, giving up: {e}")
                    raise

                delay = self.calculate_delay(attempt)
                if self.max_elapsed is not None:
                    elapsed = time.monotonic() - started
                    if elapsed + delay > self.max_elapsed:
                        logger.debug(
                            f"Attempt {attempt} failed, retry budget of {self.max_elapsed}s "
                            f"spent after {elapsed:.1f}s, giving up: {e}"
                        )
                        raise

                if notify is not None:
                    notify(e, delay)
                await asyncio.sleep(delay)
