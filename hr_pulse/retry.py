"""Exponential backoff used for store reconnects and flag writes."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from .errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class Backoff:
    base: float = 1.0
    cap: float = 60.0
    factor: float = 2.0

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the ``attempt``-th failure (1-based)."""

        if self.base <= 0:
            return 0.0
        return min(self.cap, self.base * self.factor ** max(0, attempt - 1))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    backoff: Backoff,
    retry_on: Tuple[Type[BaseException], ...] = (TransientStoreError,),
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or ``attempts`` are used up; re-raises the last error."""

    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            wait = backoff.delay(attempt)
            logger.warning("%s failed (attempt %s/%s), retrying in %.1fs: %s", description, attempt, attempts, wait, exc)
            await asyncio.sleep(wait)


__all__ = ["Backoff", "retry_async"]
