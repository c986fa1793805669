from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..errors import CreditError
from ..models.billing import PaymentEvent
from ..models.generation import GenerationRequest, QualityTier
from ..models.outcome import ServiceOutcome
from ..models.transaction import Transaction
from ..models.user import CreditBalance
from .deps import ServiceContainer, get_correlation_id, get_services


ERROR_STATUS = {
    "PLAN_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "USER_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "RESERVATION_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INVALID_PLAN": status.HTTP_400_BAD_REQUEST,
    "PROMPT_TOO_LONG": status.HTTP_400_BAD_REQUEST,
    "OUTPUT_LIMIT_EXCEEDED": status.HTTP_400_BAD_REQUEST,
    "INVALID_PAYMENT_EVENT": status.HTTP_400_BAD_REQUEST,
    "ACCOUNT_EXISTS": status.HTTP_409_CONFLICT,
    "INSUFFICIENT_CREDITS": status.HTTP_402_PAYMENT_REQUIRED,
    "GENERATION_UNDERRUN": status.HTTP_502_BAD_GATEWAY,
    "GENERATION_FAILED": status.HTTP_502_BAD_GATEWAY,
    "DETECTION_FAILED": status.HTTP_502_BAD_GATEWAY,
    "CREDIT_SYSTEM_UNAVAILABLE": status.HTTP_503_SERVICE_UNAVAILABLE,
    "GENERATION_TIMEOUT": status.HTTP_504_GATEWAY_TIMEOUT,
}


def status_for(error_code: Optional[str]) -> int:
    return ERROR_STATUS.get(error_code or "", status.HTTP_500_INTERNAL_SERVER_ERROR)


def outcome_response(outcome: ServiceOutcome) -> JSONResponse:
    code = status.HTTP_200_OK if outcome.success else status_for(outcome.error_code)
    return JSONResponse(status_code=code, content=outcome.model_dump(mode="json"))


def credit_error_response(exc: CreditError) -> JSONResponse:
    return outcome_response(ServiceOutcome.from_error(exc))


credits_router = APIRouter(prefix="/credits", tags=["credits"])
billing_router = APIRouter(prefix="/billing", tags=["billing"])
writer_router = APIRouter(prefix="/writer", tags=["writer"])


class EstimateRequest(BaseModel):
    word_count: int = Field(gt=0)
    tool_type: str = "writing"
    quality_tier: QualityTier = QualityTier.STANDARD
    operation: Optional[str] = None


class EstimateResponse(BaseModel):
    word_count: int
    tool_type: str
    quality_tier: QualityTier
    required_credits: int


class RefundRequest(BaseModel):
    user_id: str
    amount: int = Field(gt=0)
    reason: str = "manual refund"
    external_ref: Optional[str] = None


class RefundResponse(BaseModel):
    user_id: str
    transaction_id: str
    amount: int
    new_balance: int


@credits_router.get("/balance/{user_id}", response_model=CreditBalance)
async def get_balance(
    user_id: str, services: ServiceContainer = Depends(get_services)
) -> CreditBalance:
    balance = await services.ledger.get_balance(user_id)
    return CreditBalance(user_id=user_id, balance=balance)


@credits_router.get("/history/{user_id}", response_model=List[Transaction])
async def get_history(
    user_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    services: ServiceContainer = Depends(get_services),
) -> List[Transaction]:
    return await services.ledger.get_transaction_history(user_id, limit=limit)


@credits_router.post("/estimate", response_model=EstimateResponse)
async def estimate(
    payload: EstimateRequest, services: ServiceContainer = Depends(get_services)
) -> EstimateResponse:
    required = services.writing.estimate(
        payload.word_count, payload.tool_type, payload.quality_tier, payload.operation
    )
    return EstimateResponse(
        word_count=payload.word_count,
        tool_type=payload.tool_type,
        quality_tier=payload.quality_tier,
        required_credits=required,
    )


@credits_router.post("/refund", response_model=RefundResponse)
async def refund(
    payload: RefundRequest,
    services: ServiceContainer = Depends(get_services),
    correlation_id: Optional[str] = Depends(get_correlation_id),
) -> RefundResponse:
    tx = await services.ledger.refund(
        payload.user_id,
        payload.amount,
        reason=payload.reason,
        external_ref=payload.external_ref,
        correlation_id=correlation_id,
    )
    return RefundResponse(
        user_id=payload.user_id,
        transaction_id=tx.id,
        amount=tx.amount,
        new_balance=tx.balance_after,
    )


@billing_router.post("/payment-succeeded")
async def payment_succeeded(
    event: PaymentEvent, services: ServiceContainer = Depends(get_services)
) -> JSONResponse:
    return outcome_response(await services.billing.handle_payment_succeeded(event))


@writer_router.post("/generate")
async def generate(
    payload: GenerationRequest,
    x_user_id: str = Header(...),
    services: ServiceContainer = Depends(get_services),
    correlation_id: Optional[str] = Depends(get_correlation_id),
) -> JSONResponse:
    outcome = await services.writing.generate(x_user_id, payload, correlation_id=correlation_id)
    return outcome_response(outcome)
