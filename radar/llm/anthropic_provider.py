"""Anthropic Claude LLM provider."""

from __future__ import annotations

import logging

import anthropic

from radar.llm import register_provider
from radar.llm.base import BaseLLMProvider, LLMResponse
from radar.llm.costs import estimate_usd
from radar.retry import retry_async

logger = logging.getLogger(__name__)


@register_provider("anthropic")
class AnthropicProvider(BaseLLMProvider):
    """Provider for Anthropic Claude models."""

    _client: anthropic.AsyncAnthropic | None = None

    @property
    def provider_name(self) -> str:
        return "anthropic"

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            # SDK retries are off; retry_async owns backoff
            self._client = anthropic.AsyncAnthropic(
                api_key=self.api_key or None,
                base_url=self.base_url or None,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    async def complete(
        self,
        prompt: str,
        system: str = "",
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 2000,
    ) -> LLMResponse:
        model = model or self.active_model or self.default_model
        return await retry_async(
            self._do_complete, prompt, system, model,
            temperature, max_tokens,
            max_retries=self.max_retries,
        )

    async def _do_complete(
        self,
        prompt: str,
        system: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        kwargs = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            kwargs["system"] = system

        response = await self.client.messages.create(**kwargs)

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        logger.debug("anthropic %s: %d in / %d out tokens", model, input_tokens, output_tokens)

        return LLMResponse(
            text=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model,
            cost_usd=estimate_usd(input_tokens, output_tokens, model),
        )
