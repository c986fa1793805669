from __future__ import annotations

import logging
from typing import Dict, Optional

from ..cache.base import AsyncCacheBackend, plan_key
from ..db.base import BaseLedgerStore
from ..errors import InvalidPlan, OutputLimitExceeded, PlanNotFound, PromptTooLong
from ..models.plan import PLAN_LIMITS, PlanCheck, PlanLimits
from ..models.user import PlanType


logger = logging.getLogger(__name__)


def count_words(text: str | None) -> int:
    if not text:
        return 0
    return len(text.split())


class PlanGate:
    """
    Checks a request against the user's plan limits before any spend.

    Read-only; plan lookups are cached when a cache is configured.
    """

    def __init__(
        self,
        store: BaseLedgerStore,
        cache: Optional[AsyncCacheBackend] = None,
        limits: Optional[Dict[str, PlanLimits]] = None,
        cache_ttl: int = 300,
    ) -> None:
        self._store = store
        self._cache = cache
        self._limits = limits or PLAN_LIMITS
        self._cache_ttl = cache_ttl

    async def validate(
        self,
        user_id: str,
        prompt_word_count: int,
        requested_word_count: int,
        tool_type: str = "writing",
    ) -> PlanCheck:
        plan_type = await self._get_plan_type(user_id)
        if plan_type is None:
            raise PlanNotFound(user_id)

        limits = self._limits.get(plan_type)
        if limits is None:
            raise InvalidPlan(plan_type)

        if limits.max_prompt_words is not None and prompt_word_count > limits.max_prompt_words:
            raise PromptTooLong(plan_type, prompt_word_count, limits.max_prompt_words)

        if (
            limits.max_output_words is not None
            and requested_word_count > limits.max_output_words
        ):
            raise OutputLimitExceeded(plan_type, requested_word_count, limits.max_output_words)

        return PlanCheck(
            user_id=user_id,
            plan_type=PlanType(plan_type),
            limits=limits,
            prompt_word_count=prompt_word_count,
            requested_word_count=requested_word_count,
            tool_type=tool_type,
        )

    async def invalidate(self, user_id: str) -> None:
        if self._cache is not None:
            await self._cache.delete(plan_key(user_id))

    async def _get_plan_type(self, user_id: str) -> Optional[str]:
        cache_key = plan_key(user_id)
        if self._cache is not None:
            cached = await self._cache.get_str(cache_key)
            if cached is not None:
                return cached

        user = await self._store.get_user(user_id)
        if user is None:
            return None
        if self._cache is not None:
            await self._cache.set(cache_key, user.plan_type, ttl_seconds=self._cache_ttl)
        return user.plan_type
