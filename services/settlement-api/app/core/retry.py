"""Retry policy for calls that may hit transient network failures.

A single policy object is applied uniformly at every call site instead of
hand-rolled attempt loops: ``maxAttempts`` bounds the total number of tries
and ``backoff`` is the wait before the second try, doubling afterwards.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 2
    backoff: float = 1.0
    max_backoff: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff < 0:
            raise ValueError("backoff must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return min(self.backoff * (2 ** (attempt - 1)), self.max_backoff)

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        retry_on: tuple[type[BaseException], ...],
        label: str = "call",
    ) -> T:
        """Await ``fn()``, retrying on the given exception types.

        The last exception propagates once attempts are exhausted.
        """
        attempt = 1
        while True:
            try:
                return await fn()
            except retry_on as exc:
                if attempt >= self.max_attempts:
                    logger.warning("%s failed after %d attempt(s): %s", label, attempt, exc)
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    label, attempt, self.max_attempts, delay, exc,
                )
                await asyncio.sleep(delay)
                attempt += 1
