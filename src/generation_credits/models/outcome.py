from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..errors import CreditError


class ServiceOutcome(BaseModel):
    """
    Structured result handed across the service boundary.

    Failures carry an error code and a user-facing message; raw exceptions
    never leave the service layer.
    """

    success: bool
    error_code: Optional[str] = None
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, message: str = "", **data: Any) -> "ServiceOutcome":
        return cls(success=True, message=message, data=data)

    @classmethod
    def from_error(cls, exc: CreditError) -> "ServiceOutcome":
        return cls(
            success=False,
            error_code=exc.code,
            message=exc.message,
            data=dict(exc.details),
        )
