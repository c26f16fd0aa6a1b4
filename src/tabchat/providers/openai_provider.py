import openai
from loguru import logger
from tenacity import retry

from tabchat.provider import DeltaCallback, ProviderResult
from tabchat.providers.common import default_retry_kwargs, to_chat_messages

# Map OpenAI finish reasons to the stop reasons used elsewhere.
_STOP_REASON_MAP = {
    "stop": "end_turn",
    "length": "max_tokens",
    "content_filter": "refusal",
}


def _to_openai_messages(system_prompt: str, messages: list[dict]) -> list[dict]:
    out: list[dict] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})
    out.extend(to_chat_messages(messages))
    return out


class OpenAIProvider:
    def __init__(self, api_key: str):
        self._client = openai.AsyncOpenAI(api_key=api_key)

    @retry(**default_retry_kwargs((
        openai.RateLimitError,
        openai.APIConnectionError,
        openai.APITimeoutError,
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
        """Stream a chat completion. ``reasoning_content`` deltas are reported as thinking."""
        oai_messages = _to_openai_messages(system_prompt, messages)

        text_parts: list[str] = []
        thinking_parts: list[str] = []
        finish_reason: str | None = None
        resolved_model: str | None = None
        usage = None

        logger.debug(
            f"API request: model={model}, max_tokens={max_tokens}, "
            f"messages={len(oai_messages)}, thinking={thinking_enabled}"
        )
        stream = await self._client.chat.completions.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=oai_messages,
            stream=True,
            stream_options={"include_usage": True},
        )

        async for chunk in stream:
            resolved_model = getattr(chunk, "model", None) or resolved_model
            if getattr(chunk, "usage", None) is not None:
                usage = chunk.usage

            choice = chunk.choices[0] if chunk.choices else None
            if choice is None:
                continue
            if choice.finish_reason:
                finish_reason = choice.finish_reason

            delta = choice.delta
            if delta is None:
                continue

            reasoning = getattr(delta, "reasoning_content", None)
            if reasoning:
                thinking_parts.append(reasoning)
                if on_thinking is not None:
                    on_thinking(reasoning)

            if delta.content:
                text_parts.append(delta.content)
                on_text(delta.content)

        stop_reason = _STOP_REASON_MAP.get(finish_reason or "stop", "end_turn")
        input_tokens = getattr(usage, "prompt_tokens", 0) if usage is not None else 0
        output_tokens = getattr(usage, "completion_tokens", 0) if usage is not None else 0
        text = "".join(text_parts)
        logger.debug(
            f"API response: stop_reason={stop_reason}, text_len={len(text)}, "
            f"input_tokens={input_tokens}, output_tokens={output_tokens}"
        )

        return ProviderResult(
            text=text,
            thinking="".join(thinking_parts),
            model=resolved_model or model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            stop_reason=stop_reason,
        )
