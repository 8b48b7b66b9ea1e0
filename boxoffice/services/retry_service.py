"""
Bounded retry with exponential backoff and jitter.

Only failures classified retryable by ``is_retryable`` are tried again; any
other error propagates on the first occurrence. Backoff sleeps go through
``asyncio.sleep`` so they never block other requests on the loop.
"""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from boxoffice.core.config import settings
from boxoffice.core.errors import RetryExhausted, is_retryable
from boxoffice.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 5
    base_delay: float = 0.5
    max_delay: float = 10.0
    jitter: float = 0.5

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            attempts=settings.RETRY_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_MS / 1000.0,
            max_delay=settings.RETRY_MAX_DELAY_MS / 1000.0,
            jitter=settings.RETRY_JITTER_MS / 1000.0,
        )

    def delay_for(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """Delay after the ``attempt``-th failure (0-based): min(base * 2^n + jitter, cap)."""
        return min(self.base_delay * (2 ** attempt) + rand() * self.jitter, self.max_delay)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    policy = policy or RetryPolicy.from_settings()
    attempts = max(1, policy.attempts)

    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as e:
            if not retryable(e):
                raise
            if attempt + 1 >= attempts:
                logger.error("%s failed on final attempt %s/%s: %s", label, attempt + 1, attempts, e)
                raise RetryExhausted(attempts, e) from e

            delay = policy.delay_for(attempt)
            logger.warning(
                "%s failed (attempt %s/%s), retrying in %.2fs: %s",
                label,
                attempt + 1,
                attempts,
                delay,
                e,
            )
            await sleep(delay)
