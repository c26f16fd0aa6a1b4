import anthropic
from loguru import logger
from tenacity import retry

from tabchat.provider import DeltaCallback, ProviderResult
from tabchat.providers.common import default_retry_kwargs, to_chat_messages

MIN_THINKING_BUDGET = 1024


class AnthropicProvider:
    def __init__(self, api_key: str):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    @retry(**default_retry_kwargs((
        anthropic.RateLimitError,
        anthropic.APIConnectionError,
        anthropic.APITimeoutError,
    )))
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
        """Stream a chat response from the Messages API.

        With thinking enabled, the budget is half of ``max_tokens`` (at least
        1024) and the temperature is forced to 1 as the API requires.
        """
        kwargs: dict = dict(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=to_chat_messages(messages),
        )
        if system_prompt:
            kwargs["system"] = system_prompt
        if thinking_enabled:
            budget = max(MIN_THINKING_BUDGET, max_tokens // 2)
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": budget}
            kwargs["max_tokens"] = max(max_tokens, budget + MIN_THINKING_BUDGET)
            kwargs["temperature"] = 1

        thinking_parts: list[str] = []
        logger.debug(
            f"API request: model={model}, max_tokens={kwargs['max_tokens']}, "
            f"messages={len(kwargs['messages'])}, thinking={thinking_enabled}"
        )
        async with self._client.messages.stream(**kwargs) as stream:
            async for event in stream:
                if event.type != "content_block_delta":
                    continue
                if event.delta.type == "text_delta":
                    on_text(event.delta.text)
                elif event.delta.type == "thinking_delta":
                    thinking_parts.append(event.delta.thinking)
                    if on_thinking is not None:
                        on_thinking(event.delta.thinking)

            response = await stream.get_final_message()

        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )

        text = "".join(block.text for block in response.content if block.type == "text")
        return ProviderResult(
            text=text,
            thinking="".join(thinking_parts),
            model=getattr(response, "model", None) or model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            stop_reason=response.stop_reason,
        )
