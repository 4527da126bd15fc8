"""OpenAI-compatible provider (OpenAI, OpenRouter) using the openai SDK's async streaming."""

import logging
import os
import time

import openai
from openai import AsyncOpenAI

from config.config_loader import ProviderConfig
from conference.models import ChatMessage, Completion
from conference.providers.base import AIProvider, DeltaCallback, ProviderError

logger = logging.getLogger(__name__)


class OpenAIProvider(AIProvider):
    """Chat-completions streaming via the openai SDK; ``base_url`` selects the endpoint."""

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        if config.base_url:
            self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url)
        else:
            self._client = AsyncOpenAI(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def timeout_sec(self) -> int:
        return self._config.timeout_sec

    async def stream(self, model: str, messages: list[ChatMessage], on_delta: DeltaCallback) -> Completion:
        start = time.monotonic()
        parts: list[str] = []
        prompt_tokens = 0
        completion_tokens = 0
        try:
            stream = await self._client.chat.completions.create(
                model=model,
                messages=[m.to_api() for m in messages],
                max_tokens=self._config.max_tokens,
                stream=True,
                stream_options={"include_usage": True},
            )
            async for chunk in stream:
                if chunk.usage:
                    prompt_tokens = chunk.usage.prompt_tokens or 0
                    completion_tokens = chunk.usage.completion_tokens or 0
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content if chunk.choices[0].delta else None
                if delta:
                    parts.append(delta)
                    on_delta(delta)
        except openai.APIStatusError as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}", exc.status_code) from exc
        except openai.APIError as exc:
            raise ProviderError(self._config.name, f"Stream failed: {exc}") from exc

        content = "".join(parts)
        if not content.strip():
            logger.warning("%s %s: empty streamed response", self._config.name, model)

        latency = time.monotonic() - start
        logger.info(
            "%s %s: %.2fs, %d+%d tokens",
            self._config.name, model, latency, prompt_tokens, completion_tokens,
        )
        return Completion(
            content=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_sec=latency,
        )
