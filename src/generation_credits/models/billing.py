from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class PaymentEvent(BaseModel):
    """
    A settled payment reported by the billing gateway.

    Either `plan` (credits come from the plan table) or `credits` must be
    set; an explicit `credits` value wins when both are present.
    """

    event_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    plan: Optional[str] = None
    credits: Optional[int] = Field(default=None, gt=0)
    amount_cents: int = Field(default=0, ge=0)
    currency: str = "usd"
