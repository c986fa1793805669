from __future__ import annotations

import logging
from typing import List, Optional

from ..backends.base import DetectionBackend, GenerationBackend
from ..errors import DetectionFailed
from ..models.generation import ChunkResult, DetectionScore, RefinementResult


logger = logging.getLogger(__name__)


class RefinementLoop:
    """
    Bounded detect-and-revise pass for premium content.

    Stops when the composite score reaches `threshold` or after `max_cycles`
    revisions, whichever comes first. It never touches the ledger: the
    premium reservation taken before generation pays for every cycle.
    """

    def __init__(
        self,
        generation: GenerationBackend,
        detection: DetectionBackend,
        threshold: float = 75.0,
        max_cycles: int = 2,
    ) -> None:
        if max_cycles < 0:
            raise ValueError("max_cycles must not be negative")
        self._generation = generation
        self._detection = detection
        self.threshold = threshold
        self.max_cycles = max_cycles

    async def run(self, chunks: List[ChunkResult]) -> RefinementResult:
        current = list(chunks)
        cycles = 0
        score: Optional[DetectionScore] = None

        while True:
            try:
                score = await self._detection.score(self._join(current))
            except DetectionFailed as exc:
                logger.warning("Detection failed after %d refinement cycles: %s", cycles, exc)
                return RefinementResult(chunks=current, cycles=cycles, score=score, requires_review=True)

            if score.composite >= self.threshold:
                return RefinementResult(chunks=current, cycles=cycles, score=score)

            if cycles >= self.max_cycles:
                logger.info(
                    "Refinement bound reached (%d cycles), composite %.1f below %.1f",
                    cycles,
                    score.composite,
                    self.threshold,
                )
                return RefinementResult(chunks=current, cycles=cycles, score=score, requires_review=True)

            try:
                targets = await self._low_scoring(current, score)
            except DetectionFailed as exc:
                logger.warning("Per-chunk detection failed on cycle %d: %s", cycles + 1, exc)
                return RefinementResult(chunks=current, cycles=cycles, score=score, requires_review=True)

            current = await self._revise(current, targets, score)
            cycles += 1

    async def _low_scoring(self, chunks: List[ChunkResult], overall: DetectionScore) -> List[int]:
        """Positions of the chunks to revise."""
        if len(chunks) == 1:
            return [0]

        composites = []
        for chunk in chunks:
            chunk_score = await self._detection.score(chunk.text)
            composites.append(chunk_score.composite)

        below = [i for i, value in enumerate(composites) if value < self.threshold]
        if below:
            return below
        # The whole falls short even though no single part does
        return [min(range(len(composites)), key=composites.__getitem__)]

    async def _revise(
        self, chunks: List[ChunkResult], targets: List[int], score: DetectionScore
    ) -> List[ChunkResult]:
        feedback = self._feedback(score)
        revised = list(chunks)
        for position in targets:
            chunk = chunks[position]
            result = await self._generation.revise(
                chunk.text, feedback, target_words=chunk.realized_word_count
            )
            if result.word_count == 0 or not result.text.strip():
                logger.warning("Revision of chunk %d came back empty; keeping original", chunk.index)
                continue
            revised[position] = ChunkResult(
                index=chunk.index,
                text=result.text.strip(),
                realized_word_count=result.word_count,
            )
        return revised

    @staticmethod
    def _feedback(score: DetectionScore) -> str:
        return (
            f"Detection scores: originality {score.originality:.0f}/100, "
            f"AI-likelihood {score.ai_detection:.0f}/100, "
            f"plagiarism {score.plagiarism:.0f}/100. "
            "Rewrite this passage so it reads naturally and originally, "
            "keeping its meaning, structure and length."
        )

    @staticmethod
    def _join(chunks: List[ChunkResult]) -> str:
        return "\n\n".join(c.text for c in chunks)
