# =============================================================================
# Completion Gateway — Multi-Provider LLM Abstraction
# =============================================================================
#
# Common interface for LLM completions, with implementations for Anthropic
# (Claude) and OpenAI-compatible APIs (OpenAI, DeepSeek, Qwen, ...).
#
# Protocol (structural typing) over ABC, matching SimilarityIndex in
# vectorstore.py: any class with `complete()` and `stream()` works, which
# is how tests substitute a scripted provider.
#
# Native SDKs, no LangChain wrappers: direct control over request
# parameters and over the lifetime of the streaming HTTP response.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider       : system prompt as top-level kwarg,
#   │                              streaming via messages.stream()
#   └── OpenAICompatibleProvider: system prompt as a message,
#                                  streaming via stream=True
#   create_provider()           : picks one from LLM_PROVIDER
#   CompletionGateway           : builds the prompt, owns the provider
#
# Errors: a missing key or unknown provider is ConfigError; every SDK
# APIError becomes ProviderError at this boundary.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Protocol

import anthropic
import openai

from web3_insight.config import Settings, settings
from web3_insight.errors import ConfigError, ProviderError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """
    Standardised response from any LLM provider.

    Normalises the different response formats (Anthropic vs OpenAI)
    into a single structure that downstream code can consume.
    """

    content: str           # The generated text
    model: str             # Model identifier (e.g., "claude-sonnet-4-6")
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """Interface shared by the Anthropic and OpenAI-compatible providers."""

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a whole completion.

        Args:
            messages: Conversation messages as dicts with "role" and "content".
                Roles: "user", "assistant" (no "system"; use the system param).
            system: System prompt. Anthropic takes it as a top-level kwarg,
                OpenAI as a leading {"role": "system"} message.
            temperature: Override sampling temperature (default from config).
            max_tokens: Override max output tokens (default from config).
        """
        ...

    def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """
        Yield text chunks as the provider produces them.

        Closing the iterator releases the upstream HTTP response.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native async SDK.

    KEY API DIFFERENCE: Anthropic takes system prompts as a top-level
    `system=` kwarg, NOT as a message with role "system".
    """

    def __init__(
        self,
        config: Settings | None = None,
        client: Any | None = None,
    ) -> None:
        config = config or settings
        if client is None:
            resolved_key = config.llm_api_key or config.anthropic_api_key
            if not resolved_key:
                raise ConfigError(
                    "No Anthropic API key configured. Set LLM_API_KEY or "
                    "ANTHROPIC_API_KEY in .env"
                )
            client = anthropic.AsyncAnthropic(api_key=resolved_key)

        self._client = client
        self._model = config.llm_model
        self._temperature = config.llm_temperature
        self._max_tokens = config.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    def _request_kwargs(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict:
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }
        # Anthropic: system prompt is a top-level kwarg, not a message
        if system:
            kwargs["system"] = system
        return kwargs

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        kwargs = self._request_kwargs(messages, system, temperature, max_tokens)
        try:
            response = await self._client.messages.create(**kwargs)
        except anthropic.APIError as e:
            raise ProviderError(f"Anthropic request failed: {e}") from e

        content = "".join(
            block.text for block in response.content if block.type == "text"
        )

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Stream text deltas; leaving the `async with` closes the response."""
        kwargs = self._request_kwargs(messages, system, temperature, max_tokens)
        try:
            async with self._client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield text
        except anthropic.APIError as e:
            raise ProviderError(f"Anthropic stream failed: {e}") from e


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible (OpenAI, DeepSeek, Qwen, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Provider for any API that follows the OpenAI chat-completions API.

    Switching vendors is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        config: Settings | None = None,
        client: Any | None = None,
    ) -> None:
        config = config or settings
        if client is None:
            resolved_key = config.llm_api_key or config.openai_api_key
            if not resolved_key:
                raise ConfigError(
                    "No API key configured for OpenAI-compatible provider. "
                    "Set LLM_API_KEY or OPENAI_API_KEY in .env"
                )
            client_kwargs: dict = {"api_key": resolved_key}
            if config.llm_base_url:
                client_kwargs["base_url"] = config.llm_base_url
            client = openai.AsyncOpenAI(**client_kwargs)

        self._client = client
        self._model = config.llm_model
        self._temperature = config.llm_temperature
        self._max_tokens = config.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            config.llm_base_url or "https://api.openai.com/v1",
        )

    def _request_kwargs(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict:
        # OpenAI: system prompt goes as the first message
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)
        return {
            "model": self._model,
            "messages": all_messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        kwargs = self._request_kwargs(messages, system, temperature, max_tokens)
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            raise ProviderError(f"OpenAI-compatible request failed: {e}") from e

        content = response.choices[0].message.content or ""

        # Token counts: OpenAI uses different field names than Anthropic
        usage = response.usage
        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Stream content deltas; the response is closed however iteration ends."""
        kwargs = self._request_kwargs(messages, system, temperature, max_tokens)
        try:
            stream = await self._client.chat.completions.create(**kwargs, stream=True)
        except openai.APIError as e:
            raise ProviderError(f"OpenAI-compatible stream failed: {e}") from e

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except openai.APIError as e:
            raise ProviderError(f"OpenAI-compatible stream failed: {e}") from e
        finally:
            await stream.close()


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_PROVIDER_ALIASES = {
    "anthropic": "anthropic",
    "openai": "openai_compatible",
    "openai_compatible": "openai_compatible",
}


def create_provider(config: Settings | None = None) -> LLMProvider:
    """
    Build the provider named by `llm_provider`.

    - "anthropic" → AnthropicProvider (Claude)
    - "openai_compatible" / "openai" → OpenAICompatibleProvider

    Raises:
        ConfigError: Unknown provider name or missing API key.
    """
    config = config or settings
    provider_type = _PROVIDER_ALIASES.get(config.llm_provider)
    if provider_type is None:
        raise ConfigError(
            f"Unsupported LLM provider '{config.llm_provider}'. "
            "Use 'anthropic' or 'openai_compatible'."
        )
    if provider_type == "anthropic":
        return AnthropicProvider(config)
    return OpenAICompatibleProvider(config)


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class CompletionGateway:
    """
    Prompt construction plus one lazily created provider.

    The provider is built on first use, so a deployment without an LLM key
    still starts; the first chat request then fails with ConfigError, which
    the chat layer turns into a readable configuration message.
    """

    def __init__(
        self,
        config: Settings | None = None,
        provider: LLMProvider | None = None,
    ) -> None:
        self._config = config or settings
        self._provider = provider
        self._system_prompt = self._config.llm_system_prompt

    def _get_provider(self) -> LLMProvider:
        if self._provider is None:
            self._provider = create_provider(self._config)
        return self._provider

    @staticmethod
    def build_prompt(prompt: str, context: str = "") -> str:
        """Context first, then the question; the bare question when context is empty."""
        if context and context.strip():
            return f"Context: {context}\n\nUser Question: {prompt}"
        return prompt

    async def complete(self, prompt: str, context: str = "") -> LLMResponse:
        """
        One whole completion for `prompt` with `context`.

        Raises:
            ConfigError: No provider or key configured.
            ProviderError: The upstream call failed.
        """
        provider = self._get_provider()
        response = await provider.complete(
            [{"role": "user", "content": self.build_prompt(prompt, context)}],
            system=self._system_prompt,
        )
        logger.info(
            "Completion finished (model=%s, input_tokens=%d, output_tokens=%d)",
            response.model, response.input_tokens, response.output_tokens,
        )
        return response

    async def stream_complete(self, prompt: str, context: str = "") -> AsyncIterator[str]:
        """
        Text chunks for `prompt` with `context`, in arrival order.

        Single-pass. A mid-stream upstream failure raises ProviderError after
        the chunks already yielded; aclose() releases the upstream stream.
        """
        provider = self._get_provider()
        messages = [{"role": "user", "content": self.build_prompt(prompt, context)}]
        async with aclosing(provider.stream(messages, system=self._system_prompt)) as chunks:
            async for chunk in chunks:
                yield chunk
