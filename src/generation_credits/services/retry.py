from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from ..db.base import TransientStoreError
from ..errors import CreditSystemUnavailable


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff around one atomic store operation.

    Only `TransientStoreError` is retried; anything else (including domain
    errors such as insufficient credits) propagates on the first attempt.
    Each attempt must re-read its inputs, since a retry follows a write that
    was rejected and nothing of it persisted.
    """

    max_attempts: int = 3
    base_delay: float = 0.1

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based)."""
        return self.base_delay * 2 ** (attempt - 1)

    async def run(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except TransientStoreError as exc:
                logger.warning(
                    "%s attempt %d/%d failed: %s", description, attempt, self.max_attempts, exc
                )
                if attempt >= self.max_attempts:
                    logger.error("All %d %s attempts failed", self.max_attempts, description)
                    raise CreditSystemUnavailable(description, attempt) from exc
                await asyncio.sleep(self.backoff(attempt))
