from __future__ import annotations

from typing import Optional, Protocol

from ..models.generation import CitationData, DetectionScore, GeneratedText


class GenerationBackend(Protocol):
    """
    Text generator. May over- or under-produce relative to `target_words`;
    the realized count comes back in `GeneratedText.word_count`.
    """

    async def generate(
        self, prompt: str, target_words: int, context: Optional[str] = None
    ) -> GeneratedText: ...

    async def revise(self, text: str, feedback: str, target_words: int) -> GeneratedText: ...


class DetectionBackend(Protocol):
    async def score(self, text: str) -> DetectionScore: ...


class CitationAssembler(Protocol):
    async def assemble(self, content: str, style: str) -> CitationData: ...
