from __future__ import annotations

import asyncio
import logging
from typing import Optional

from ..backends.base import DetectionBackend
from ..errors import CreditError, DetectionFailed, GenerationTimeout
from ..models.generation import (
    AcceptanceVerdict,
    DetectionScore,
    GenerationRequest,
    GenerationResult,
    QualityTier,
)
from ..models.outcome import ServiceOutcome
from .acceptance import AcceptanceGate
from .credit_service import CreditLedger
from .orchestrator import GenerationOrchestrator
from .plan_gate import PlanGate, count_words


logger = logging.getLogger(__name__)


class WritingService:
    """
    End-to-end paid generation for one request.

    plan gate -> reserve estimate -> generate (and refine) -> acceptance gate
    -> commit actual cost, or roll back on any failure. Always returns a
    `ServiceOutcome`; errors never escape as exceptions.
    """

    def __init__(
        self,
        ledger: CreditLedger,
        plan_gate: PlanGate,
        orchestrator: GenerationOrchestrator,
        acceptance: AcceptanceGate,
        detection: Optional[DetectionBackend] = None,
        premium_multiplier: int = 2,
        timeout_seconds: float = 300.0,
        final_detection: bool = True,
    ) -> None:
        self._ledger = ledger
        self._plan_gate = plan_gate
        self._orchestrator = orchestrator
        self._acceptance = acceptance
        self._detection = detection
        self.premium_multiplier = premium_multiplier
        self.timeout_seconds = timeout_seconds
        self.final_detection = final_detection

    def estimate(
        self,
        word_count: int,
        tool_type: str = "writing",
        quality_tier: QualityTier = QualityTier.STANDARD,
        operation: Optional[str] = None,
    ) -> int:
        base = self._ledger.calculate_required_credits(word_count, tool_type, operation)
        return base * self._multiplier(quality_tier)

    def estimate_credits(self, request: GenerationRequest) -> int:
        return self.estimate(
            request.requested_word_count, request.tool_type, request.quality_tier
        )

    def actual_credits(self, request: GenerationRequest, result: GenerationResult, reserved: int) -> int:
        """Cost of what was delivered; never above the reservation."""
        billable = min(result.actual_word_count, request.requested_word_count)
        if billable <= 0:
            return 0
        cost = self._ledger.calculate_required_credits(billable, request.tool_type)
        return min(cost * self._multiplier(request.quality_tier), reserved)

    async def generate(
        self,
        user_id: str,
        request: GenerationRequest,
        correlation_id: str | None = None,
    ) -> ServiceOutcome:
        try:
            return await self._generate(user_id, request, correlation_id)
        except CreditError as exc:
            logger.info("Generation for user %s refused: %s %s", user_id, exc.code, exc.message)
            return ServiceOutcome.from_error(exc)
        except Exception:
            logger.exception("Generation for user %s failed", user_id)
            return ServiceOutcome(
                success=False,
                error_code="INTERNAL_ERROR",
                message="Content generation failed",
            )

    async def _generate(
        self, user_id: str, request: GenerationRequest, correlation_id: str | None
    ) -> ServiceOutcome:
        plan = await self._plan_gate.validate(
            user_id,
            prompt_word_count=count_words(request.prompt),
            requested_word_count=request.requested_word_count,
            tool_type=request.tool_type,
        )
        reserved = self.estimate_credits(request)

        async with self._ledger.hold(
            user_id,
            reserved,
            tool_type=request.tool_type,
            word_count=request.requested_word_count,
            correlation_id=correlation_id,
        ) as reservation:
            try:
                result = await asyncio.wait_for(
                    self._orchestrator.generate(request, plan_type=plan.plan_type),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                raise GenerationTimeout(self.timeout_seconds) from exc

            scores = result.detection
            if scores is None and self.final_detection:
                scores = await self._final_scores(result.content)
            verdict = self._acceptance.evaluate(scores) if scores is not None else None

            charged = self.actual_credits(request, result, reserved)
            await self._ledger.commit(reservation.id, charged, correlation_id=correlation_id)

        balance = await self._ledger.get_balance(user_id)
        requires_review = result.requires_review or bool(verdict and verdict.requires_review)
        return ServiceOutcome.ok(
            "Content generated",
            content=result.content,
            word_count=result.actual_word_count,
            chunks_generated=result.chunks_generated,
            is_multi_part=result.chunks_generated > 1,
            generation_time=round(result.elapsed, 3),
            quality_tier=request.quality_tier.value,
            refinement_cycles=result.refinement_cycles,
            credits_reserved=reserved,
            credits_used=charged,
            credits_refunded=reserved - charged,
            new_balance=balance,
            reservation_id=reservation.id,
            requires_review=requires_review,
            **self._verdict_fields(scores, verdict),
            **self._citation_fields(result),
        )

    async def _final_scores(self, content: str) -> Optional[DetectionScore]:
        if self._detection is None:
            return None
        try:
            return await self._detection.score(content)
        except DetectionFailed as exc:
            logger.warning("Final detection unavailable: %s", exc)
            return None

    def _multiplier(self, quality_tier: QualityTier) -> int:
        return self.premium_multiplier if quality_tier is QualityTier.PREMIUM else 1

    @staticmethod
    def _verdict_fields(
        scores: Optional[DetectionScore], verdict: Optional[AcceptanceVerdict]
    ) -> dict:
        if scores is None or verdict is None:
            return {"is_acceptable": None, "quality_score": None, "detection": None}
        return {
            "is_acceptable": verdict.is_acceptable,
            "quality_score": verdict.quality_score,
            "detection": scores.model_dump(),
        }

    @staticmethod
    def _citation_fields(result: GenerationResult) -> dict:
        if result.citations is None:
            return {"citations": None}
        return {
            "citations": {
                "style": result.citations.style,
                "bibliography": list(result.citations.bibliography),
                "citation_count": result.citations.citation_count,
            }
        }
