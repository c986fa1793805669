from __future__ import annotations

import logging
import re
from typing import List

from ..models.generation import CitationData
from .base import GenerationBackend


logger = logging.getLogger(__name__)

STYLE_HINTS = {
    "APA": "APA 7th edition (Author, A. A. (Year). Title. Publisher.)",
    "MLA": "MLA 9th edition (Author. Title. Publisher, Year.)",
    "HARVARD": "Harvard (Author, Year. Title. Place: Publisher.)",
    "CHICAGO": "Chicago author-date",
}

_ENTRY_PREFIX = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


class BackendCitationAssembler:
    """Asks the generation backend for a reference list matching the content."""

    def __init__(self, backend: GenerationBackend, max_entries: int = 8) -> None:
        self._backend = backend
        self.max_entries = max_entries

    async def assemble(self, content: str, style: str) -> CitationData:
        normalized = (style or "APA").upper()
        hint = STYLE_HINTS.get(normalized, normalized)
        prompt = (
            f"List up to {self.max_entries} references supporting the text below, formatted in "
            f"{hint} style. One reference per line, no commentary.\n\n{content}"
        )
        generated = await self._backend.generate(prompt, target_words=self.max_entries * 25)
        entries = _parse_entries(generated.text)[: self.max_entries]
        logger.debug("Assembled %d %s references", len(entries), normalized)
        return CitationData(style=normalized, bibliography=entries)


def _parse_entries(text: str) -> List[str]:
    entries = []
    for line in text.splitlines():
        entry = _ENTRY_PREFIX.sub("", line).strip()
        if entry:
            entries.append(entry)
    return entries
