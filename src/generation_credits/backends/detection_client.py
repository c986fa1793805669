from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from ..errors import DetectionFailed
from ..models.generation import DetectionScore


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class HTTPDetectionBackend:
    """
    Scores text against a remote originality / AI-detection service.

    The service is expected to answer ``POST {base_url}/detect`` with a JSON
    body carrying ``originality``, ``ai_detection`` and ``plagiarism`` as
    percentages. camelCase ``*Score`` keys are accepted as well.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    async def score(self, text: str) -> DetectionScore:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.post(
                    f"{self._base_url}/detect", json={"text": text}, headers=headers
                )
                resp.raise_for_status()
                payload = resp.json()
        except httpx.HTTPStatusError as exc:
            raise DetectionFailed(
                f"Detection service returned {exc.response.status_code}"
            ) from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise DetectionFailed(f"Detection service unreachable: {exc}") from exc

        try:
            return DetectionScore(
                originality=_pick(payload, "originality", "originalityScore"),
                ai_detection=_pick(payload, "ai_detection", "aiDetectionScore"),
                plagiarism=_pick(payload, "plagiarism", "plagiarismScore"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Unexpected detection payload: %r", payload)
            raise DetectionFailed("Detection service returned an unexpected payload") from exc


def _pick(payload: Any, *keys: str) -> float:
    for key in keys:
        if key in payload and payload[key] is not None:
            return float(payload[key])
    raise KeyError(keys[0])
