"""OpenAI-compatible stateless LLM client.

Works with any endpoint that speaks the OpenAI chat completions API
(OpenAI, Ollama, LM Studio, OpenRouter, ...).
"""

from __future__ import annotations

from typing import AsyncIterator

from loguru import logger
from openai import AsyncOpenAI

from .config import SummarizerConfig


class OpenAICompatibleLLM:
    """Streams chat completions; implements ``LLMInterface``."""

    def __init__(self, config: SummarizerConfig | None = None):
        self._config = config or SummarizerConfig()
        self._client = AsyncOpenAI(
            base_url=self._config.base_url,
            api_key=self._config.api_key or "not-needed",
        )
        logger.debug(
            f"OpenAICompatibleLLM ready: model={self._config.model}, "
            f"base_url={self._config.base_url}"
        )

    async def chat_completion(
        self,
        messages: list[dict],
        system: str | None = None,
    ) -> AsyncIterator[str]:
        """Stream completion text chunks.

        Args:
            messages: Chat messages (role/content dicts)
            system: Optional system prompt prepended to the messages

        Yields:
            Text deltas as they arrive
        """
        payload = list(messages)
        if system:
            payload.insert(0, {"role": "system", "content": system})

        stream = await self._client.chat.completions.create(
            model=self._config.model,
            messages=payload,
            temperature=self._config.temperature,
            stream=True,
        )
        async for chunk in stream:
            if chunk.choices and chunk.choices[0].delta.content:
                yield chunk.choices[0].delta.content
