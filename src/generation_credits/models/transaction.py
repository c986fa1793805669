from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class TransactionKind(str, Enum):
    RESERVE = "reserve"
    COMMIT = "commit"
    ROLLBACK = "rollback"
    REFUND = "refund"


class Transaction(DBSerializableModel):
    """
    Append-only ledger line. `amount` is signed: negative removes credits
    from the balance, positive returns or adds them.
    """

    collection_name: ClassVar[str] = "credit_transactions"

    id: str
    user_id: str
    kind: TransactionKind
    amount: int
    balance_after: int
    tool_type: Optional[str] = None
    word_count: int = 0
    reservation_id: Optional[str] = None
    reason: Optional[str] = None
    external_ref: Optional[str] = Field(
        default=None,
        description="Caller-supplied idempotency key, e.g. a billing event id.",
    )
    timestamp: datetime = Field(default_factory=utcnow)
