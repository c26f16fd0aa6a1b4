from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

DeltaCallback = Callable[[str], None]


@dataclass
class ProviderResult:
    text: str
    thinking: str = ""
    model: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str | None = None


@runtime_checkable
class LLMProvider(Protocol):
    async def stream_chat(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        *,
        on_text: DeltaCallback,
        on_thinking: DeltaCallback | None = None,
        thinking_enabled: bool = False,
    ) -> ProviderResult:
        """Stream a chat response, forwarding text and reasoning deltas as they arrive.

        ``messages`` are plain ``{"role", "content"}`` dicts ending with the prompt.
        """
        ...


def create_provider(provider_name: str, api_key: str) -> LLMProvider:
    """Factory: create an LLMProvider by platform id."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from tabchat.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key)
    if name == "openai":
        from tabchat.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")
