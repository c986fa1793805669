from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model for records persisted by a ledger store.

    Stores call `serialize_for_db` on write and `model_validate` on read,
    so the rest of the system never sees backend-specific documents or rows.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    primary_key: ClassVar[Optional[str]] = "id"

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.
        """
        return self.model_dump(by_alias=True, exclude_none=True)
