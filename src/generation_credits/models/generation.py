from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class QualityTier(str, Enum):
    STANDARD = "standard"
    PREMIUM = "premium"


class GenerationRequest(BaseModel):
    prompt: str = Field(min_length=1)
    requested_word_count: int = Field(gt=0)
    tool_type: str = "writing"
    quality_tier: QualityTier = QualityTier.STANDARD
    requires_citations: bool = False
    citation_style: str = "APA"
    # Passed through to the backend untouched
    style: str = "Academic"
    tone: str = "Formal"
    subject: str = ""
    additional_instructions: str = ""


class GeneratedText(BaseModel):
    """What a generation backend returns for one call."""

    text: str
    word_count: int = Field(ge=0)


class ChunkResult(BaseModel):
    index: int
    text: str
    realized_word_count: int = Field(ge=0)


class DetectionScore(BaseModel):
    originality: float = Field(ge=0, le=100)
    ai_detection: float = Field(ge=0, le=100)
    plagiarism: float = Field(ge=0, le=100)
    composite: Optional[float] = Field(default=None, ge=0, le=100)

    @model_validator(mode="after")
    def _fill_composite(self) -> "DetectionScore":
        if self.composite is None:
            self.composite = round(
                (self.originality + (100 - self.ai_detection) + (100 - self.plagiarism)) / 3,
                2,
            )
        return self


class AcceptanceVerdict(BaseModel):
    is_acceptable: bool
    requires_review: bool
    quality_score: float


class CitationData(BaseModel):
    style: str
    bibliography: List[str] = Field(default_factory=list)

    @property
    def citation_count(self) -> int:
        return len(self.bibliography)


class RefinementResult(BaseModel):
    chunks: List[ChunkResult]
    cycles: int = 0
    score: Optional[DetectionScore] = None
    requires_review: bool = False


class GenerationResult(BaseModel):
    content: str
    actual_word_count: int
    chunks_generated: int
    chunks: List[ChunkResult] = Field(default_factory=list)
    elapsed: float
    refinement_cycles: int = 0
    requires_review: bool = False
    detection: Optional[DetectionScore] = None
    citations: Optional[CitationData] = None
