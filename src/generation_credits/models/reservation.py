from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class ReservationState(str, Enum):
    CREATED = "CREATED"
    COMMITTED = "COMMITTED"
    ROLLED_BACK = "ROLLED_BACK"

    @property
    def is_terminal(self) -> bool:
        return self is not ReservationState.CREATED


class Reservation(DBSerializableModel):
    """
    Credits taken from the balance for a pending operation.

    CREATED moves to COMMITTED or ROLLED_BACK exactly once; both are terminal.
    """

    collection_name: ClassVar[str] = "credit_reservations"

    id: str
    user_id: str
    amount: int = Field(gt=0)
    state: ReservationState = ReservationState.CREATED
    tool_type: Optional[str] = None
    word_count: int = 0
    charged_credits: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    finalized_at: Optional[datetime] = None
