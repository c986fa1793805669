from __future__ import annotations

from generation_credits.models.generation import DetectionScore
from generation_credits.services.acceptance import AcceptanceGate


def test_clean_content_is_accepted():
    verdict = AcceptanceGate().evaluate(DetectionScore(originality=95, ai_detection=5, plagiarism=2))

    assert verdict.is_acceptable
    assert not verdict.requires_review
    assert verdict.quality_score == 96.0


def test_any_threshold_breach_rejects():
    gate = AcceptanceGate()

    assert not gate.evaluate(DetectionScore(originality=79, ai_detection=5, plagiarism=2)).is_acceptable
    assert not gate.evaluate(DetectionScore(originality=95, ai_detection=31, plagiarism=2)).is_acceptable
    assert not gate.evaluate(DetectionScore(originality=95, ai_detection=5, plagiarism=16)).is_acceptable


def test_low_composite_requires_review_even_when_acceptable():
    gate = AcceptanceGate(review_threshold=90)
    scores = DetectionScore(originality=80, ai_detection=30, plagiarism=15)

    verdict = gate.evaluate(scores)

    assert verdict.is_acceptable
    assert verdict.requires_review
    assert verdict.quality_score == 78.33


def test_evaluate_does_not_touch_scores():
    scores = DetectionScore(originality=50, ai_detection=50, plagiarism=50)
    before = scores.model_dump()

    AcceptanceGate().evaluate(scores)

    assert scores.model_dump() == before


def test_explicit_composite_is_respected():
    scores = DetectionScore(originality=90, ai_detection=10, plagiarism=5, composite=60)
    assert AcceptanceGate().evaluate(scores).quality_score == 60.0
