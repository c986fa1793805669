from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, Field

from .base import DBSerializableModel, utcnow


class PlanType(str, Enum):
    FREEMIUM = "freemium"
    PRO = "pro"
    CUSTOM = "custom"


class UserAccount(DBSerializableModel):
    """
    Per-user credit record. Only ledger operations write `balance`.

    `plan_type` is kept as a plain string: a stored value that is not a known
    `PlanType` is reported by the plan gate instead of failing on load.
    """

    collection_name: ClassVar[str] = "credit_users"

    id: str
    plan_type: str = PlanType.FREEMIUM.value
    balance: int = Field(default=0, ge=0)
    version: int = Field(
        default=0,
        description="Bumped on every balance write; conditional writes compare against it.",
    )
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CreditBalance(BaseModel):
    user_id: str
    balance: int
