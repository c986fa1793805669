"""Failure kinds raised by the credit and generation services."""

from __future__ import annotations

from typing import Any


class CreditError(Exception):
    """Base error with a stable code and details for user-facing messaging."""

    code = "ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


# Pre-flight (plan gate)


class PlanNotFound(CreditError):
    code = "PLAN_NOT_FOUND"

    def __init__(self, user_id: str) -> None:
        super().__init__("User plan not found", {"user_id": user_id})


class InvalidPlan(CreditError):
    code = "INVALID_PLAN"

    def __init__(self, plan_type: str) -> None:
        super().__init__("Invalid plan type", {"plan_type": plan_type})


class PromptTooLong(CreditError):
    code = "PROMPT_TOO_LONG"

    def __init__(self, plan_type: str, current_length: int, max_length: int) -> None:
        if plan_type == "freemium":
            message = "Upgrade to Pro to use longer prompts!"
        else:
            message = f"Prompt length exceeds maximum limit of {max_length} words."
        super().__init__(
            message,
            {
                "plan_type": plan_type,
                "current_length": current_length,
                "max_length": max_length,
            },
        )


class OutputLimitExceeded(CreditError):
    code = "OUTPUT_LIMIT_EXCEEDED"

    def __init__(self, plan_type: str, requested_count: int, max_count: int) -> None:
        if plan_type == "freemium":
            message = (
                f"Freemium users can generate up to {max_count} words per request. "
                "Upgrade to Pro for unlimited generation!"
            )
        else:
            message = f"Output word count exceeds maximum limit of {max_count} words per request."
        super().__init__(
            message,
            {
                "plan_type": plan_type,
                "requested_count": requested_count,
                "max_count": max_count,
            },
        )


# Ledger


class UserNotFound(CreditError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: str) -> None:
        super().__init__("User not found", {"user_id": user_id})


class AccountExists(CreditError):
    code = "ACCOUNT_EXISTS"

    def __init__(self, user_id: str) -> None:
        super().__init__("Account already exists", {"user_id": user_id})


class InsufficientCredits(CreditError):
    code = "INSUFFICIENT_CREDITS"

    def __init__(self, required: int, available: int) -> None:
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits. Required: {required}, Available: {available}",
            {"required": required, "available": available},
        )


class CreditSystemUnavailable(CreditError):
    code = "CREDIT_SYSTEM_UNAVAILABLE"

    def __init__(self, operation: str, attempts: int) -> None:
        super().__init__(
            "Credit system is temporarily unavailable, please retry",
            {"operation": operation, "attempts": attempts},
        )


class ReservationNotFound(CreditError):
    code = "RESERVATION_NOT_FOUND"

    def __init__(self, reservation_id: str) -> None:
        super().__init__("Reservation not found", {"reservation_id": reservation_id})


class InvalidPaymentEvent(CreditError):
    code = "INVALID_PAYMENT_EVENT"

    def __init__(self, event_id: str, reason: str) -> None:
        super().__init__(f"Payment event rejected: {reason}", {"event_id": event_id})


# Generation


class GenerationUnderrun(CreditError):
    code = "GENERATION_UNDERRUN"

    def __init__(self, consecutive: int, produced: int, requested: int) -> None:
        super().__init__(
            "Content generation stalled: the backend repeatedly returned too little text",
            {
                "consecutive_underruns": consecutive,
                "produced_words": produced,
                "requested_words": requested,
            },
        )


class GenerationTimeout(CreditError):
    code = "GENERATION_TIMEOUT"

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(
            "Content generation timed out", {"timeout_seconds": timeout_seconds}
        )


class GenerationFailed(CreditError):
    """Generation backend call failed."""

    code = "GENERATION_FAILED"

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message, {"provider": provider} if provider else {})


class DetectionFailed(CreditError):
    """Detection backend call failed. Non-fatal inside the refinement loop."""

    code = "DETECTION_FAILED"

    def __init__(self, message: str) -> None:
        super().__init__(message)
