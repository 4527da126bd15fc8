"""Anthropic Claude provider using the anthropic SDK's async message stream."""

import logging
import os
import time

import anthropic as anthropic_sdk

from config.config_loader import ProviderConfig
from conference.models import ChatMessage, Completion
from conference.providers.base import AIProvider, DeltaCallback, ProviderError, split_system

logger = logging.getLogger(__name__)


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    def timeout_sec(self) -> int:
        return self._config.timeout_sec

    async def stream(self, model: str, messages: list[ChatMessage], on_delta: DeltaCallback) -> Completion:
        start = time.monotonic()
        system, turns = split_system(messages)
        parts: list[str] = []
        try:
            async with self._client.messages.stream(
                model=model,
                max_tokens=self._config.max_tokens,
                system=system,
                messages=[m.to_api() for m in turns],
            ) as stream:
                async for text in stream.text_stream:
                    parts.append(text)
                    on_delta(text)
                final = await stream.get_final_message()
        except anthropic_sdk.APIStatusError as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}", exc.status_code) from exc
        except anthropic_sdk.APIError as exc:
            raise ProviderError(self._config.name, f"Stream failed: {exc}") from exc

        text_blocks = [b.text for b in final.content if b.type == "text"]
        content = "\n".join(text_blocks) if text_blocks else "".join(parts)
        if not content.strip():
            logger.warning("Anthropic %s: no text blocks in response", model)

        prompt_tokens = final.usage.input_tokens if final.usage else 0
        completion_tokens = final.usage.output_tokens if final.usage else 0
        latency = time.monotonic() - start

        logger.info(
            "Anthropic %s: %.2fs, %d+%d tokens",
            model, latency, prompt_tokens, completion_tokens,
        )

        return Completion(
            content=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            latency_sec=latency,
        )
