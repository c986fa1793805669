from __future__ import annotations

import pytest

from generation_credits.models.generation import ChunkResult
from generation_credits.services.refinement import RefinementLoop

from fakes import DETECTION_DOWN, GOOD, POOR, ScriptedDetectionBackend, ScriptedGenerationBackend, score, words


def chunks(*counts: int):
    return [
        ChunkResult(index=i, text=words(count, f"part{i}"), realized_word_count=count)
        for i, count in enumerate(counts)
    ]


@pytest.mark.asyncio
async def test_good_first_score_needs_no_cycles():
    backend = ScriptedGenerationBackend()
    loop = RefinementLoop(backend, ScriptedDetectionBackend([GOOD]))

    result = await loop.run(chunks(100))

    assert result.cycles == 0
    assert not result.requires_review
    assert backend.revisions == []


@pytest.mark.parametrize("max_cycles", [0, 1, 2, 5])
@pytest.mark.asyncio
async def test_persistently_low_scores_stop_at_bound(max_cycles):
    backend = ScriptedGenerationBackend()
    loop = RefinementLoop(backend, ScriptedDetectionBackend([POOR]), max_cycles=max_cycles)

    result = await loop.run(chunks(100))

    assert result.cycles == max_cycles
    assert len(backend.revisions) == max_cycles
    assert result.requires_review
    assert result.score == POOR


@pytest.mark.asyncio
async def test_only_low_scoring_chunks_are_revised():
    backend = ScriptedGenerationBackend()
    # whole text, then chunk 0, chunk 1, chunk 2, then the whole text again
    detection = ScriptedDetectionBackend([score(60), score(90), score(50), score(80), score(85)])
    loop = RefinementLoop(backend, detection, threshold=75)

    result = await loop.run(chunks(100, 120, 80))

    assert result.cycles == 1
    assert len(backend.revisions) == 1
    assert backend.revisions[0]["target"] == 120
    assert [c.text.split()[0] for c in result.chunks] == ["part0", "revised", "part2"]
    assert not result.requires_review


@pytest.mark.asyncio
async def test_lowest_chunk_revised_when_none_fall_below():
    backend = ScriptedGenerationBackend()
    detection = ScriptedDetectionBackend([score(70), score(80), score(76), score(90)])
    loop = RefinementLoop(backend, detection, threshold=75)

    result = await loop.run(chunks(50, 60))

    assert [r["target"] for r in backend.revisions] == [60]
    assert result.cycles == 1


@pytest.mark.asyncio
async def test_detection_failure_is_not_fatal():
    backend = ScriptedGenerationBackend()
    loop = RefinementLoop(backend, ScriptedDetectionBackend([POOR, DETECTION_DOWN]))

    result = await loop.run(chunks(100))

    assert result.cycles == 1
    assert result.requires_review
    assert result.score == POOR
    assert result.chunks[0].text.startswith("revised")


@pytest.mark.asyncio
async def test_detection_down_from_the_start():
    backend = ScriptedGenerationBackend()
    original = chunks(100)
    loop = RefinementLoop(backend, ScriptedDetectionBackend([DETECTION_DOWN]))

    result = await loop.run(original)

    assert result.cycles == 0
    assert result.requires_review
    assert result.score is None
    assert result.chunks == original


def test_negative_bound_rejected():
    with pytest.raises(ValueError):
        RefinementLoop(ScriptedGenerationBackend(), ScriptedDetectionBackend([GOOD]), max_cycles=-1)
