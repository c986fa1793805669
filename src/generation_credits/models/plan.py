from __future__ import annotations

from typing import Dict, Optional

from pydantic import BaseModel, Field

from .user import PlanType


class PlanLimits(BaseModel):
    """Per-request word limits attached to a plan. `None` means unlimited."""

    max_prompt_words: Optional[int] = Field(default=None, ge=1)
    max_output_words: Optional[int] = Field(default=None, ge=1)


PLAN_LIMITS: Dict[str, PlanLimits] = {
    PlanType.FREEMIUM.value: PlanLimits(max_prompt_words=500, max_output_words=1000),
    # Paid plans are bounded by credits, not by a per-request output cap
    PlanType.PRO.value: PlanLimits(max_prompt_words=5000),
    PlanType.CUSTOM.value: PlanLimits(max_prompt_words=5000),
}


class PlanCheck(BaseModel):
    """Successful plan gate result."""

    user_id: str
    plan_type: PlanType
    limits: PlanLimits
    prompt_word_count: int
    requested_word_count: int
    tool_type: str
