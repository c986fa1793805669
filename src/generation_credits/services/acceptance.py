from __future__ import annotations

from ..models.generation import AcceptanceVerdict, DetectionScore


class AcceptanceGate:
    """Advisory accept/review verdict from detection scores. Pure."""

    def __init__(
        self,
        min_originality: float = 80.0,
        max_ai_detection: float = 30.0,
        max_plagiarism: float = 15.0,
        review_threshold: float = 70.0,
    ) -> None:
        self.min_originality = min_originality
        self.max_ai_detection = max_ai_detection
        self.max_plagiarism = max_plagiarism
        self.review_threshold = review_threshold

    def evaluate(self, scores: DetectionScore) -> AcceptanceVerdict:
        is_acceptable = (
            scores.originality >= self.min_originality
            and scores.ai_detection <= self.max_ai_detection
            and scores.plagiarism <= self.max_plagiarism
        )
        quality_score = float(scores.composite or 0.0)
        return AcceptanceVerdict(
            is_acceptable=is_acceptable,
            requires_review=not is_acceptable or quality_score < self.review_threshold,
            quality_score=quality_score,
        )
