from __future__ import annotations

import logging
import time
from typing import List, Optional

from ..backends.base import CitationAssembler, GenerationBackend
from ..errors import GenerationUnderrun
from ..models.generation import (
    ChunkResult,
    DetectionScore,
    GenerationRequest,
    GenerationResult,
    QualityTier,
)
from ..models.user import PlanType
from .refinement import RefinementLoop


logger = logging.getLogger(__name__)


class GenerationOrchestrator:
    """
    Turns a word budget into one or more sequential backend calls.

    Chunks are generated strictly in order: each call after the first is
    seeded with the tail of what has been assembled so far. The loop is
    bounded twice over: by `max_chunk_attempts` calls in total and by
    `underrun_threshold` consecutive under-producing calls, which fail the
    request with `GenerationUnderrun`.
    """

    def __init__(
        self,
        backend: GenerationBackend,
        refinement: Optional[RefinementLoop] = None,
        citations: Optional[CitationAssembler] = None,
        multipart_threshold: int = 800,
        paid_multipart_threshold: int = 500,
        max_chunk_words: int = 500,
        max_chunk_attempts: int = 8,
        underrun_threshold: int = 3,
        underrun_ratio: float = 0.5,
        context_tail_words: int = 150,
        refinement_enabled: bool = True,
    ) -> None:
        if max_chunk_words <= 0 or max_chunk_attempts <= 0 or underrun_threshold <= 0:
            raise ValueError("chunk bounds must be positive")
        self._backend = backend
        self._refinement = refinement
        self._citations = citations
        self.multipart_threshold = multipart_threshold
        self.paid_multipart_threshold = paid_multipart_threshold
        self.max_chunk_words = max_chunk_words
        self.max_chunk_attempts = max_chunk_attempts
        self.underrun_threshold = underrun_threshold
        self.underrun_ratio = underrun_ratio
        self.context_tail_words = context_tail_words
        self.refinement_enabled = refinement_enabled

    def uses_multipart(self, requested_word_count: int, plan_type: PlanType | str) -> bool:
        if requested_word_count > self.multipart_threshold:
            return True
        return (
            PlanType(plan_type) is not PlanType.FREEMIUM
            and requested_word_count > self.paid_multipart_threshold
        )

    def refines(self, request: GenerationRequest) -> bool:
        return (
            request.quality_tier is QualityTier.PREMIUM
            and self.refinement_enabled
            and self._refinement is not None
        )

    async def generate(
        self, request: GenerationRequest, plan_type: PlanType | str = PlanType.FREEMIUM
    ) -> GenerationResult:
        started = time.monotonic()
        multipart = self.uses_multipart(request.requested_word_count, plan_type)

        chunks = await self._generate_chunks(request, multipart)

        cycles = 0
        requires_review = False
        detection: Optional[DetectionScore] = None
        if self.refines(request):
            refined = await self._refinement.run(chunks)  # type: ignore[union-attr]
            chunks = refined.chunks
            cycles = refined.cycles
            requires_review = refined.requires_review
            detection = refined.score

        content = self._join(chunks)
        citations = None
        if request.requires_citations and self._citations is not None:
            citations = await self._citations.assemble(content, request.citation_style)

        elapsed = time.monotonic() - started
        actual = sum(c.realized_word_count for c in chunks)
        logger.info(
            "Generated %d/%d words in %d chunk(s), %d refinement cycle(s), %.2fs",
            actual,
            request.requested_word_count,
            len(chunks),
            cycles,
            elapsed,
        )
        return GenerationResult(
            content=content,
            actual_word_count=actual,
            chunks_generated=len(chunks),
            chunks=chunks,
            elapsed=elapsed,
            refinement_cycles=cycles,
            requires_review=requires_review,
            detection=detection,
            citations=citations,
        )

    async def _generate_chunks(
        self, request: GenerationRequest, multipart: bool
    ) -> List[ChunkResult]:
        requested = request.requested_word_count
        chunk_cap = self.max_chunk_words if multipart else requested

        chunks: List[ChunkResult] = []
        total = 0
        attempts = 0
        underruns = 0

        while total < requested and attempts < self.max_chunk_attempts:
            target = min(requested - total, chunk_cap)
            prompt = self._build_prompt(request, part=len(chunks), target=target, multipart=multipart)
            context = self._tail(chunks) if chunks else None

            generated = await self._backend.generate(prompt, target, context)
            attempts += 1

            if generated.word_count > 0 and generated.text.strip():
                chunks.append(
                    ChunkResult(
                        index=len(chunks),
                        text=generated.text.strip(),
                        realized_word_count=generated.word_count,
                    )
                )
                total += generated.word_count

            if generated.word_count < target * self.underrun_ratio:
                underruns += 1
                logger.warning(
                    "Chunk attempt %d under-ran: %d of %d words (%d in a row)",
                    attempts,
                    generated.word_count,
                    target,
                    underruns,
                )
                if underruns >= self.underrun_threshold:
                    raise GenerationUnderrun(underruns, total, requested)
            else:
                underruns = 0

        if not chunks:
            raise GenerationUnderrun(underruns, 0, requested)
        if total < requested:
            logger.warning(
                "Stopped after %d chunk attempts with %d of %d words", attempts, total, requested
            )
        return chunks

    def _build_prompt(
        self, request: GenerationRequest, part: int, target: int, multipart: bool
    ) -> str:
        lines = [request.prompt.strip(), ""]
        lines.append(f"Style: {request.style}. Tone: {request.tone}.")
        if request.subject:
            lines.append(f"Subject: {request.subject}.")
        if request.additional_instructions:
            lines.append(request.additional_instructions)
        if multipart and part > 0:
            lines.append(
                f"This is part {part + 1} of a longer piece. Continue directly from the "
                "preceding text without repeating it or adding a new introduction."
            )
        lines.append(f"Write approximately {target} words.")
        return "\n".join(lines)

    def _tail(self, chunks: List[ChunkResult]) -> str:
        if self.context_tail_words <= 0:
            return ""
        words = self._join(chunks).split()
        return " ".join(words[-self.context_tail_words:])

    @staticmethod
    def _join(chunks: List[ChunkResult]) -> str:
        return "\n\n".join(c.text for c in chunks)
