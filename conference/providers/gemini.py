"""Gemini provider using google-genai SDK with native async streaming."""

import logging
import os
import time

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from config.config_loader import ProviderConfig
from conference.models import ChatMessage, Completion
from conference.providers.base import AIProvider, DeltaCallback, ProviderError, split_system

logger = logging.getLogger(__name__)


def _to_contents(messages: list[ChatMessage]) -> list[dict]:
    return [
        {
            "role": "model" if m.role == "assistant" else "user",
            "parts": [{"text": m.to_api()["content"]}],
        }
        for m in messages
    ]


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def timeout_sec(self) -> int:
        return self._config.timeout_sec

    async def stream(self, model: str, messages: list[ChatMessage], on_delta: DeltaCallback) -> Completion:
        start = time.monotonic()
        system, turns = split_system(messages)
        parts: list[str] = []
        prompt_tokens = 0
        completion_tokens = 0
        try:
            stream = await self._client.aio.models.generate_content_stream(
                model=model,
                contents=_to_contents(turns),
                config=genai_types.GenerateContentConfig(
                    system_instruction=system or None,
                    max_output_tokens=self._config.max_tokens,
                ),
            )
            async for chunk in stream:
                if chunk.usage_metadata:
                    prompt_tokens = chunk.usage_metadata.prompt_token_count or 0
                    completion_tokens = chunk.usage_metadata.candidates_token_count or 0
                if chunk.text:
                    parts.append(chunk.text)
                    on_delta(chunk.text)
        except genai_errors.APIError as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}", exc.code) from exc

        content = "".join(parts)
        if not content.strip():
            logger.warning("Gemini %s: empty response text", model)

        latency = time.monotonic() - start
        logger.info(
            "Gemini %s: %.2fs, %d+%d tokens",
            model, latency, prompt_tokens, completion_tokens,
        )

        return Completion(
            content=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_sec=latency,
        )
