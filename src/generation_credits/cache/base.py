from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional, Tuple


def balance_key(user_id: str) -> str:
    return f"credit:user:{user_id}:balance"


def plan_key(user_id: str) -> str:
    return f"credit:user:{user_id}:plan"


class AsyncCacheBackend(ABC):
    """
    Async cache for read-mostly lookups: plan types for the plan gate and
    versioned balances for balance reads. Never consulted for a ledger
    write decision.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[Any]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    async def get_versioned(self, key: str) -> Optional[Tuple[int, Any]]:
        """Cached `(version, value)` pair, or None when missing or malformed."""
        value = await self.get(key)
        if (
            isinstance(value, tuple)
            and len(value) == 2
            and isinstance(value[0], int)
            and not isinstance(value[0], bool)
        ):
            return value
        return None

    async def set_if_newer(
        self, key: str, version: int, value: Any, ttl_seconds: int | None = None
    ) -> bool:
        """
        Store `(version, value)` unless the cached entry is at least as new.

        Writers finishing out of order cannot replace a newer value with an
        older one. Returns True when the entry was written.
        """
        current = await self.get_versioned(key)
        if current is not None and current[0] >= version:
            return False
        await self.set(key, (version, value), ttl_seconds=ttl_seconds)
        return True

    async def get_str(self, key: str) -> Optional[str]:
        value = await self.get(key)
        return value if isinstance(value, str) else None
