from __future__ import annotations

import logging
from typing import Optional

from openai import APIError, AsyncOpenAI, AuthenticationError, RateLimitError

from ..errors import GenerationFailed
from ..models.generation import GeneratedText
from ..services.plan_gate import count_words


logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a careful writer. Produce original prose in the requested style and tone. "
    "Return only the text itself, with no headings about word counts and no commentary."
)

# Generous token head-room per requested word
TOKENS_PER_WORD = 2


class OpenAIGenerationBackend:
    """Generation backend on the OpenAI chat completions API."""

    provider = "openai"

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        if client is None and not api_key:
            raise GenerationFailed("OpenAI API key is not configured", provider=self.provider)
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.model = model
        self.temperature = temperature

    async def generate(
        self, prompt: str, target_words: int, context: Optional[str] = None
    ) -> GeneratedText:
        user_prompt = prompt
        if context:
            user_prompt = f"Preceding text:\n{context}\n\n{prompt}"
        return await self._complete(user_prompt, target_words)

    async def revise(self, text: str, feedback: str, target_words: int) -> GeneratedText:
        prompt = (
            f"Rewrite the following text. {feedback}\n"
            f"Keep the meaning and keep it to about {target_words} words.\n\n{text}"
        )
        return await self._complete(prompt, target_words)

    async def _complete(self, prompt: str, target_words: int) -> GeneratedText:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                temperature=self.temperature,
                max_tokens=max(256, target_words * TOKENS_PER_WORD),
            )
        except RateLimitError as exc:
            raise GenerationFailed(
                "OpenAI API rate limit exceeded. Please try again later.", provider=self.provider
            ) from exc
        except AuthenticationError as exc:
            raise GenerationFailed("OpenAI API key is invalid.", provider=self.provider) from exc
        except APIError as exc:
            raise GenerationFailed(f"OpenAI API error: {exc}", provider=self.provider) from exc

        text = (response.choices[0].message.content or "").strip() if response.choices else ""
        words = count_words(text)
        logger.debug("OpenAI returned %d words for a %d word target", words, target_words)
        return GeneratedText(text=text, word_count=words)
