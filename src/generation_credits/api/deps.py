from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import Request

from ..backends.base import DetectionBackend, GenerationBackend
from ..backends.citations import BackendCitationAssembler
from ..backends.detection_client import HTTPDetectionBackend
from ..backends.openai_backend import OpenAIGenerationBackend
from ..cache.memory import InMemoryAsyncCache
from ..config import Settings
from ..db.base import BaseLedgerStore
from ..db.memory import InMemoryLedgerStore
from ..db.mongo import MongoLedgerStore
from ..logging.ledger_logger import LedgerLogger
from ..models.user import PlanType
from ..services.acceptance import AcceptanceGate
from ..services.billing_service import BillingService
from ..services.credit_service import CreditLedger
from ..services.orchestrator import GenerationOrchestrator
from ..services.plan_gate import PlanGate
from ..services.refinement import RefinementLoop
from ..services.retry import RetryPolicy
from ..services.writing_service import WritingService


logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    store: BaseLedgerStore
    ledger: CreditLedger
    plan_gate: PlanGate
    writing: WritingService
    billing: BillingService


def create_store(settings: Settings) -> BaseLedgerStore:
    if settings.mongo_uri:
        logger.info("Using MongoDB ledger store (%s)", settings.mongo_db)
        return MongoLedgerStore.from_client_uri(settings.mongo_uri, settings.mongo_db)
    logger.info("Using in-memory ledger store")
    return InMemoryLedgerStore()


def build_services(
    settings: Settings,
    store: Optional[BaseLedgerStore] = None,
    generation: Optional[GenerationBackend] = None,
    detection: Optional[DetectionBackend] = None,
) -> ServiceContainer:
    """Wire the service graph from settings. Backends may be injected."""
    if store is None:
        store = create_store(settings)
    cache = InMemoryAsyncCache()
    ledger_log = LedgerLogger(store, Path(settings.ledger_log_path))

    ledger = CreditLedger(
        store,
        ledger_log,
        cache=cache,
        retry_policy=RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
        ),
        balance_cache_ttl=settings.balance_cache_ttl_seconds,
    )
    plan_gate = PlanGate(store, cache=cache, cache_ttl=settings.plan_cache_ttl_seconds)

    if generation is None:
        generation = OpenAIGenerationBackend(
            api_key=settings.openai_api_key, model=settings.openai_model
        )
    if detection is None and settings.detection_api_url:
        detection = HTTPDetectionBackend(
            settings.detection_api_url,
            api_key=settings.detection_api_key,
            timeout=settings.detection_timeout_seconds,
        )

    refinement = None
    if detection is not None:
        refinement = RefinementLoop(
            generation,
            detection,
            threshold=settings.refinement_threshold,
            max_cycles=settings.refinement_max_cycles,
        )
    orchestrator = GenerationOrchestrator(
        generation,
        refinement=refinement,
        citations=BackendCitationAssembler(generation),
        multipart_threshold=settings.multipart_threshold_words,
        paid_multipart_threshold=settings.paid_multipart_threshold_words,
        max_chunk_words=settings.max_chunk_words,
        max_chunk_attempts=settings.max_chunk_attempts,
        underrun_threshold=settings.underrun_threshold,
        underrun_ratio=settings.underrun_ratio,
        context_tail_words=settings.context_tail_words,
        refinement_enabled=settings.refinement_enabled,
    )
    writing = WritingService(
        ledger,
        plan_gate,
        orchestrator,
        AcceptanceGate(
            min_originality=settings.min_originality,
            max_ai_detection=settings.max_ai_detection,
            max_plagiarism=settings.max_plagiarism,
            review_threshold=settings.review_threshold,
        ),
        detection=detection,
        premium_multiplier=settings.premium_multiplier,
        timeout_seconds=settings.generation_timeout_seconds,
        final_detection=settings.final_detection_enabled,
    )
    billing = BillingService(
        ledger,
        plan_gate=plan_gate,
        plan_credits={
            PlanType.PRO.value: settings.pro_plan_credits,
            PlanType.CUSTOM.value: settings.custom_plan_credits,
        },
    )
    return ServiceContainer(
        store=store, ledger=ledger, plan_gate=plan_gate, writing=writing, billing=billing
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_correlation_id(request: Request) -> Optional[str]:
    return getattr(request.state, "correlation_id", None)
