"""LLM provider boundary.

The core hands a normalized list of ``{"role", "content"}`` messages to a
provider adapter and gets back text, either complete or streamed. Background
calls go through an ordered model fallback chain instead of retries.
"""

from __future__ import annotations

import logging
import re
from typing import AsyncIterator, Callable, Protocol

logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"
ANTHROPIC_BASE_URL = "https://api.anthropic.com/v1/"

_THINK_TAGS = re.compile(r"<(think|reasoning)>.*?</\1>", re.IGNORECASE | re.DOTALL)


class ProviderError(Exception):
    """Base class for provider failures."""


class RateLimitedError(ProviderError):
    """The provider answered HTTP 429."""


class ProviderTransportError(ProviderError):
    """The request never got a response (network failure, timeout)."""


class ProviderStatusError(ProviderError):
    """The provider answered with a non-OK status other than 429."""

    def __init__(self, status_code: int, message: str = ""):
        super().__init__(f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}")
        self.status_code = status_code


class ProviderExhaustedError(ProviderError):
    """Every model in a fallback chain failed."""


class MissingCredentialError(ProviderError):
    """No API key is configured for the required provider."""

    def __init__(self, provider: str):
        super().__init__(f"No API key configured for provider: {provider}")
        self.provider = provider


class ChatProvider(Protocol):
    """Protocol for provider adapters."""

    name: str

    async def complete(
        self,
        model: str,
        messages: list[dict],
        temperature: float = 0.8,
        max_tokens: int = 2048,
    ) -> str:
        """Return the full completion text."""
        ...

    def stream(
        self,
        model: str,
        messages: list[dict],
        temperature: float = 0.8,
        max_tokens: int = 2048,
    ) -> AsyncIterator[str]:
        """Yield completion text incrementally."""
        ...


class OpenAICompatibleProvider:
    """Adapter for any OpenAI-compatible chat completions endpoint."""

    def __init__(self, name: str, api_key: str, base_url: str | None = None):
        from openai import AsyncOpenAI

        self.name = name
        headers = {"X-Title": "Lorekeeper"} if name == "openrouter" else None
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url, default_headers=headers)

    async def complete(
        self,
        model: str,
        messages: list[dict],
        temperature: float = 0.8,
        max_tokens: int = 2048,
    ) -> str:
        import openai

        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.RateLimitError as e:
            raise RateLimitedError(str(e)) from e
        except openai.APIConnectionError as e:  # includes APITimeoutError
            raise ProviderTransportError(str(e)) from e
        except openai.APIStatusError as e:
            raise ProviderStatusError(e.status_code, str(e)) from e

        if not response.choices:
            return ""
        message = response.choices[0].message
        # Reasoning models sometimes leave content empty and answer in reasoning_content
        return message.content or getattr(message, "reasoning_content", None) or ""

    async def stream(
        self,
        model: str,
        messages: list[dict],
        temperature: float = 0.8,
        max_tokens: int = 2048,
    ) -> AsyncIterator[str]:
        import openai

        try:
            chunks = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
            )
            async for chunk in chunks:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except openai.RateLimitError as e:
            raise RateLimitedError(str(e)) from e
        except openai.APIConnectionError as e:
            raise ProviderTransportError(str(e)) from e
        except openai.APIStatusError as e:
            raise ProviderStatusError(e.status_code, str(e)) from e


ProviderFactory = Callable[[str, str], ChatProvider]
KeyProvider = Callable[[str], "str | None"]


def create_provider(name: str, api_key: str) -> ChatProvider:
    """Build the adapter for a provider name."""
    if name == "openrouter":
        return OpenAICompatibleProvider(name, api_key, base_url=OPENROUTER_BASE_URL)
    if name == "openai":
        return OpenAICompatibleProvider(name, api_key)
    if name == "anthropic":
        return OpenAICompatibleProvider(name, api_key, base_url=ANTHROPIC_BASE_URL)
    raise ValueError(f"Unknown provider: {name}")


def strip_reasoning(text: str) -> str:
    """Remove <think>/<reasoning> blocks some models emit before the answer."""
    return _THINK_TAGS.sub("", text or "").strip()


async def complete_with_fallback(
    provider: ChatProvider,
    models: list[str],
    messages: list[dict],
    temperature: float = 0.3,
    max_tokens: int = 2000,
) -> tuple[str, str]:
    """Try each model in order and return the first successful answer.

    Rate limits and transport failures fall through to the next model; any
    other non-OK status aborts the chain. Empty answers also fall through.

    Returns:
        Tuple of (cleaned text, model used)

    Raises:
        ProviderExhaustedError: if no model produced an answer
    """
    for model in models:
        try:
            text = await provider.complete(
                model, messages, temperature=temperature, max_tokens=max_tokens
            )
        except RateLimitedError:
            logger.info("%s rate limited on %s, trying next model", model, provider.name)
            continue
        except ProviderTransportError as e:
            logger.warning("Transport error on %s: %s", model, e)
            continue
        except ProviderStatusError as e:
            logger.warning("%s failed with status %s, aborting fallback chain", model, e.status_code)
            raise ProviderExhaustedError(f"{model} failed: {e}") from e

        cleaned = strip_reasoning(text)
        if cleaned:
            return cleaned, model
        logger.info("Empty response from %s, trying next model", model)

    raise ProviderExhaustedError(f"All {len(models)} models failed on {provider.name}")
