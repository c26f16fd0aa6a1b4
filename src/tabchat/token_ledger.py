from __future__ import annotations

import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from loguru import logger

from tabchat.models import (
    AssistantMessage,
    ChatMessage,
    ContextStatus,
    CostBreakdown,
    LedgerBaseline,
    ModelConfig,
    TokenStatistics,
    TurnOutcome,
    UserMessage,
)
from tabchat.storage import KeyValueStore

GLOBAL_STATS_KEY = "global_chat_token_stats"

TOKENS_PER_PRICE_UNIT = 1_000_000

NOTICE_THRESHOLD = 50.0
WARNING_THRESHOLD = 75.0
CRITICAL_THRESHOLD = 90.0

Encoder = Callable[[str], Sequence[int]]


@dataclass(frozen=True)
class MessageTokenBreakdown:
    prompt_tokens: int = 0
    history_tokens: int = 0
    system_tokens: int = 0
    input_tokens: int = 0
    output_tokens_in_last_api_call: int = 0
    output_tokens: int = 0


class TokenLedger:
    """Token estimation, pricing and the per-session statistics record.

    This is the only writer of persisted token statistics. All sessions share
    one record under ``GLOBAL_STATS_KEY`` keyed by session id.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        encoding_name: str = "cl100k_base",
        encode: Encoder | None = None,
    ):
        self._store = store
        self._encoding_name = encoding_name
        self._encode = encode
        self._encoder_failed = False

    # -- estimation -------------------------------------------------------

    def estimate_tokens(self, text: str | None) -> int:
        if not text or not text.strip():
            return 0
        try:
            encode = self._encode or self._load_encoder()
            return max(1, len(encode(text)))
        except Exception as ex:
            logger.warning(f"Tokenizer failed, falling back to character estimate: {ex}")
            return math.ceil(len(text) / 4)

    def _load_encoder(self) -> Encoder:
        if self._encoder_failed:
            raise RuntimeError(f"Tokenizer encoding {self._encoding_name!r} unavailable")
        try:
            import tiktoken

            encoding = tiktoken.get_encoding(self._encoding_name)
        except Exception:
            self._encoder_failed = True
            raise

        def encode(text: str) -> list[int]:
            return encoding.encode(text, disallowed_special=())

        self._encode = encode
        return encode

    def message_tokens(self, message: ChatMessage) -> int:
        if isinstance(message, UserMessage):
            return message.input_tokens or self.estimate_tokens(message.content)
        if isinstance(message, AssistantMessage):
            if message.output_tokens is not None:
                return message.output_tokens
            return self.estimate_tokens(message.content) + self.estimate_tokens(message.thinking_content)
        return 0

    # -- pricing ----------------------------------------------------------

    def calculate_cost(
        self,
        input_tokens: int,
        output_tokens: int,
        model_config: ModelConfig | None,
        *,
        thinking_enabled: bool = False,
    ) -> CostBreakdown:
        if model_config is None:
            return CostBreakdown()

        input_price = model_config.input_token_price
        output_price = model_config.output_token_price
        if thinking_enabled and model_config.thinking_toggleable:
            if model_config.thinking_input_token_price is not None:
                input_price = model_config.thinking_input_token_price
            if model_config.thinking_output_token_price is not None:
                output_price = model_config.thinking_output_token_price

        input_cost = max(0, input_tokens) / TOKENS_PER_PRICE_UNIT * input_price
        output_cost = max(0, output_tokens) / TOKENS_PER_PRICE_UNIT * output_price
        return CostBreakdown(
            input_cost=input_cost,
            output_cost=output_cost,
            total_cost=input_cost + output_cost,
            input_token_price=input_price,
            output_token_price=output_price,
        )

    # -- statistics -------------------------------------------------------

    def calculate_token_statistics_from_messages(
        self,
        messages: Sequence[ChatMessage],
        system_prompt: str | None = None,
    ) -> MessageTokenBreakdown:
        last_user_index = -1
        last_assistant_index = -1
        for index in range(len(messages) - 1, -1, -1):
            message = messages[index]
            if last_user_index < 0 and isinstance(message, UserMessage):
                last_user_index = index
            if last_assistant_index < 0 and isinstance(message, AssistantMessage):
                last_assistant_index = index
            if last_user_index >= 0 and last_assistant_index >= 0:
                break

        prompt_tokens = 0
        history_tokens = 0
        output_tokens = 0
        output_in_last_call = 0

        for index, message in enumerate(messages):
            tokens = self.message_tokens(message)
            if isinstance(message, UserMessage):
                if index == last_user_index:
                    prompt_tokens = tokens
                else:
                    history_tokens += tokens
            elif isinstance(message, AssistantMessage):
                output_tokens += tokens
                if index == last_assistant_index:
                    output_in_last_call = tokens
                # The reply to the last prompt is that call's output, not its input.
                if not (index == last_assistant_index and index > last_user_index):
                    history_tokens += tokens

        system_tokens = self.estimate_tokens(system_prompt)
        return MessageTokenBreakdown(
            prompt_tokens=prompt_tokens,
            history_tokens=history_tokens,
            system_tokens=system_tokens,
            input_tokens=system_tokens + history_tokens + prompt_tokens,
            output_tokens_in_last_api_call=output_in_last_call,
            output_tokens=output_tokens,
        )

    def get_token_statistics(self, session_id: str | None) -> TokenStatistics:
        if not session_id:
            return TokenStatistics()
        all_stats = self._load_all()
        return TokenStatistics.from_dict(all_stats.get(session_id))

    def calculate_and_update_statistics(
        self,
        session_id: str,
        messages: Sequence[ChatMessage],
        model_config: ModelConfig | None = None,
        *,
        baseline: LedgerBaseline | None = None,
        outcome: TurnOutcome = TurnOutcome.COMPLETED,
        system_prompt: str | None = None,
        thinking_enabled: bool = False,
        persist: bool = True,
    ) -> TokenStatistics:
        """Account one turn on top of the baseline.

        With ``persist=False`` the statistics are only computed; the caller
        records them with ``save_token_statistics`` once its own write succeeded.
        """
        if not session_id:
            raise ValueError("session_id is required to update token statistics")

        if baseline is not None and baseline.is_valid:
            base_cost = baseline.accumulated_cost
            base_output = baseline.output_tokens
        else:
            current = self.get_token_statistics(session_id)
            base_cost = current.accumulated_cost
            base_output = current.output_tokens

        breakdown = self.calculate_token_statistics_from_messages(messages, system_prompt)
        turn_output = 0 if outcome is TurnOutcome.ERROR else breakdown.output_tokens_in_last_api_call

        turn_cost = 0.0
        if model_config is not None and outcome is not TurnOutcome.ERROR:
            turn_cost = self.calculate_cost(
                breakdown.input_tokens,
                turn_output,
                model_config,
                thinking_enabled=thinking_enabled,
            ).total_cost

        stats = TokenStatistics(
            output_tokens=base_output + turn_output,
            accumulated_cost=max(0.0, base_cost + turn_cost),
            prompt_tokens_in_last_api_call=breakdown.prompt_tokens,
            history_tokens_sent_in_last_api_call=breakdown.history_tokens,
            system_tokens_in_last_api_call=breakdown.system_tokens,
            input_tokens_in_last_api_call=breakdown.input_tokens,
            output_tokens_in_last_api_call=turn_output,
            last_api_call_cost=turn_cost,
            is_calculated=True,
        )
        if persist:
            self.save_token_statistics(session_id, stats)
        logger.debug(
            f"Token stats {'updated' if persist else 'computed'}: session={session_id}, outcome={outcome.value}, "
            f"turn_cost={turn_cost:.6f}, accumulated={stats.accumulated_cost:.6f}, "
            f"input={stats.input_tokens_in_last_api_call}, output={turn_output}"
        )
        return stats

    def recalculate_statistics(
        self,
        session_id: str,
        messages: Sequence[ChatMessage],
        system_prompt: str | None = None,
    ) -> TokenStatistics:
        """Rebuild the record from the messages alone, summing the recorded per-message costs."""
        if not session_id:
            raise ValueError("session_id is required to recalculate token statistics")

        breakdown = self.calculate_token_statistics_from_messages(messages, system_prompt)
        assistants = [m for m in messages if isinstance(m, AssistantMessage)]
        accumulated = sum(m.api_cost or 0.0 for m in assistants)
        last_cost = (assistants[-1].api_cost or 0.0) if assistants else 0.0

        stats = TokenStatistics(
            output_tokens=breakdown.output_tokens,
            accumulated_cost=accumulated,
            prompt_tokens_in_last_api_call=breakdown.prompt_tokens,
            history_tokens_sent_in_last_api_call=breakdown.history_tokens,
            system_tokens_in_last_api_call=breakdown.system_tokens,
            input_tokens_in_last_api_call=breakdown.input_tokens,
            output_tokens_in_last_api_call=breakdown.output_tokens_in_last_api_call,
            last_api_call_cost=last_cost,
            is_calculated=True,
        )
        self.save_token_statistics(session_id, stats)
        return stats

    def clear_token_statistics(self, session_id: str) -> None:
        if not session_id:
            return
        all_stats = self._load_all()
        if all_stats.pop(session_id, None) is not None:
            self._store.set(GLOBAL_STATS_KEY, all_stats)
            logger.debug(f"Token stats cleared: session={session_id}")

    def calculate_context_status(
        self,
        stats: TokenStatistics,
        context_window: int | None,
    ) -> ContextStatus:
        if not context_window or context_window <= 0:
            return ContextStatus()

        used = max(0, stats.input_tokens_in_last_api_call)
        percentage = used / context_window * 100
        if percentage >= CRITICAL_THRESHOLD:
            level = "critical"
        elif percentage >= WARNING_THRESHOLD:
            level = "warning"
        elif percentage >= NOTICE_THRESHOLD:
            level = "notice"
        else:
            level = "none"

        return ContextStatus(
            warning_level=level,
            percentage=percentage,
            tokens_remaining=max(0, context_window - used),
            exceeds=used > context_window,
            total_tokens=used,
            max_context_window=context_window,
        )

    # -- persistence ------------------------------------------------------

    def _load_all(self) -> dict:
        all_stats = self._store.get(GLOBAL_STATS_KEY)
        return all_stats if isinstance(all_stats, dict) else {}

    def save_token_statistics(self, session_id: str, stats: TokenStatistics) -> None:
        all_stats = self._load_all()
        all_stats[session_id] = stats.to_dict()
        self._store.set(GLOBAL_STATS_KEY, all_stats)
