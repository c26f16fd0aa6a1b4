from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar
from uuid import uuid4

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SYSTEM = "system"


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


def new_message_id() -> str:
    return f"msg_{uuid4().hex}"


@dataclass
class UserMessage:
    id: str
    content: str
    timestamp: str = field(default_factory=utc_now)
    input_tokens: int = 0

    role: ClassVar[str] = ROLE_USER

    @property
    def is_streaming(self) -> bool:
        return False


@dataclass
class AssistantMessage:
    id: str
    content: str = ""
    thinking_content: str = ""
    timestamp: str = field(default_factory=utc_now)
    input_tokens: int = 0
    output_tokens: int | None = None
    api_cost: float | None = None
    is_streaming: bool = False
    platform_id: str | None = None
    model_id: str | None = None

    role: ClassVar[str] = ROLE_ASSISTANT


@dataclass
class SystemMessage:
    id: str
    content: str
    timestamp: str = field(default_factory=utc_now)

    role: ClassVar[str] = ROLE_SYSTEM

    @property
    def is_streaming(self) -> bool:
        return False


ChatMessage = UserMessage | AssistantMessage | SystemMessage


def message_to_dict(message: ChatMessage) -> dict[str, Any]:
    record: dict[str, Any] = {
        "id": message.id,
        "role": message.role,
        "content": message.content,
        "timestamp": message.timestamp,
        "isStreaming": message.is_streaming,
    }
    if isinstance(message, UserMessage):
        record["inputTokens"] = message.input_tokens
    elif isinstance(message, AssistantMessage):
        record.update(
            {
                "thinkingContent": message.thinking_content,
                "inputTokens": message.input_tokens,
                "outputTokens": message.output_tokens,
                "apiCost": message.api_cost,
                "platformId": message.platform_id,
                "modelId": message.model_id,
            }
        )
    return record


def message_from_dict(record: dict[str, Any]) -> ChatMessage:
    role = record.get("role")
    message_id = str(record.get("id") or new_message_id())
    content = str(record.get("content") or "")
    timestamp = str(record.get("timestamp") or utc_now())

    if role == ROLE_USER:
        return UserMessage(
            id=message_id,
            content=content,
            timestamp=timestamp,
            input_tokens=_as_int(record.get("inputTokens")),
        )
    if role == ROLE_ASSISTANT:
        output_tokens = record.get("outputTokens")
        api_cost = record.get("apiCost")
        return AssistantMessage(
            id=message_id,
            content=content,
            thinking_content=str(record.get("thinkingContent") or ""),
            timestamp=timestamp,
            input_tokens=_as_int(record.get("inputTokens")),
            output_tokens=int(output_tokens) if isinstance(output_tokens, (int, float)) else None,
            api_cost=float(api_cost) if isinstance(api_cost, (int, float)) else None,
            is_streaming=bool(record.get("isStreaming", False)),
            platform_id=record.get("platformId"),
            model_id=record.get("modelId"),
        )
    if role == ROLE_SYSTEM:
        return SystemMessage(id=message_id, content=content, timestamp=timestamp)
    raise ValueError(f"Unknown message role: {role!r}")


def _as_int(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(0, int(value))
    return 0


@dataclass
class SessionMetadata:
    id: str
    platform_id: str | None
    model_id: str | None
    created_at: str
    last_activity_at: str
    initial_url: str | None = None
    initial_title: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "platformId": self.platform_id,
            "modelId": self.model_id,
            "createdAt": self.created_at,
            "lastActivityAt": self.last_activity_at,
            "initialTabUrl": self.initial_url,
            "initialTabTitle": self.initial_title,
        }

    @classmethod
    def from_dict(cls, record: dict[str, Any]) -> SessionMetadata:
        created_at = str(record.get("createdAt") or utc_now())
        return cls(
            id=str(record["id"]),
            platform_id=record.get("platformId"),
            model_id=record.get("modelId"),
            created_at=created_at,
            last_activity_at=str(record.get("lastActivityAt") or created_at),
            initial_url=record.get("initialTabUrl"),
            initial_title=record.get("initialTabTitle"),
        )


@dataclass
class ChatSession:
    metadata: SessionMetadata
    messages: list[ChatMessage] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.metadata.id

    def index_of(self, message_id: str) -> int:
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return index
        return -1

    def find(self, message_id: str) -> ChatMessage | None:
        index = self.index_of(message_id)
        return self.messages[index] if index >= 0 else None

    def streaming_message(self) -> AssistantMessage | None:
        for message in self.messages:
            if isinstance(message, AssistantMessage) and message.is_streaming:
                return message
        return None

    def to_record(self) -> dict[str, Any]:
        return {
            "metadata": self.metadata.to_dict(),
            "messages": [message_to_dict(m) for m in self.messages],
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> ChatSession:
        return cls(
            metadata=SessionMetadata.from_dict(record["metadata"]),
            messages=[message_from_dict(m) for m in record.get("messages", [])],
        )


@dataclass
class TokenStatistics:
    """Per-session ledger.

    ``output_tokens`` and ``accumulated_cost`` are cumulative over the session;
    the ``*_in_last_api_call`` fields describe only the most recent turn.
    """

    output_tokens: int = 0
    accumulated_cost: float = 0.0
    prompt_tokens_in_last_api_call: int = 0
    history_tokens_sent_in_last_api_call: int = 0
    system_tokens_in_last_api_call: int = 0
    input_tokens_in_last_api_call: int = 0
    output_tokens_in_last_api_call: int = 0
    last_api_call_cost: float = 0.0
    is_calculated: bool = False

    _FIELDS: ClassVar[dict[str, str]] = {
        "output_tokens": "outputTokens",
        "accumulated_cost": "accumulatedCost",
        "prompt_tokens_in_last_api_call": "promptTokensInLastApiCall",
        "history_tokens_sent_in_last_api_call": "historyTokensSentInLastApiCall",
        "system_tokens_in_last_api_call": "systemTokensInLastApiCall",
        "input_tokens_in_last_api_call": "inputTokensInLastApiCall",
        "output_tokens_in_last_api_call": "outputTokensInLastApiCall",
        "last_api_call_cost": "lastApiCallCost",
        "is_calculated": "isCalculated",
    }

    def to_dict(self) -> dict[str, Any]:
        return {key: getattr(self, attr) for attr, key in self._FIELDS.items()}

    @classmethod
    def from_dict(cls, record: dict[str, Any] | None) -> TokenStatistics:
        stats = cls()
        if not record:
            return stats
        for attr, key in cls._FIELDS.items():
            if key not in record or record[key] is None:
                continue
            current = getattr(stats, attr)
            setattr(stats, attr, type(current)(record[key]))
        return stats


@dataclass(frozen=True)
class LedgerBaseline:
    """Cumulative figures treated as already spent before the current turn."""

    accumulated_cost: float
    output_tokens: int

    @property
    def is_valid(self) -> bool:
        return self.accumulated_cost >= 0 and self.output_tokens >= 0


class TurnOutcome(Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class ModelConfig:
    """Rate card and limits for one model. Prices are USD per million tokens."""

    model_id: str
    input_token_price: float = 0.0
    output_token_price: float = 0.0
    context_window: int | None = None
    display_name: str | None = None
    thinking_toggleable: bool = False
    thinking_input_token_price: float | None = None
    thinking_output_token_price: float | None = None

    @classmethod
    def from_config(cls, model_id: str, config: dict[str, Any]) -> ModelConfig:
        pricing = config.get("pricing") or {}
        tokens = config.get("tokens") or {}
        thinking = config.get("thinking") or {}
        thinking_pricing = thinking.get("pricing") or {}
        context_window = tokens.get("contextWindow")
        return cls(
            model_id=model_id,
            input_token_price=float(pricing.get("inputTokenPrice", 0) or 0),
            output_token_price=float(pricing.get("outputTokenPrice", 0) or 0),
            context_window=int(context_window) if context_window else None,
            display_name=config.get("displayName"),
            thinking_toggleable=thinking.get("toggleable") is True,
            thinking_input_token_price=_optional_price(thinking_pricing.get("inputTokenPrice")),
            thinking_output_token_price=_optional_price(thinking_pricing.get("outputTokenPrice")),
        )


def _optional_price(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if value >= 0 else None


@dataclass(frozen=True)
class CostBreakdown:
    input_cost: float = 0.0
    output_cost: float = 0.0
    total_cost: float = 0.0
    input_token_price: float = 0.0
    output_token_price: float = 0.0


@dataclass(frozen=True)
class ContextStatus:
    warning_level: str = "none"
    percentage: float = 0.0
    tokens_remaining: int = 0
    exceeds: bool = False
    total_tokens: int = 0
    max_context_window: int = 0


@dataclass(frozen=True)
class StreamChunk:
    stream_id: str | None
    chunk: str = ""
    thinking_chunk: str = ""
    done: bool = False
    cancelled: bool = False
    error: str | None = None
    full_content: str | None = None
    model: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.done or self.error is not None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> StreamChunk:
        data = payload.get("chunkData")
        if not isinstance(data, dict):
            raise ValueError(f"Invalid chunk payload: {payload!r}")
        chunk = data.get("chunk")
        if chunk is not None and not isinstance(chunk, str):
            chunk = str(chunk)
        error = data.get("error")
        return cls(
            stream_id=payload.get("streamId"),
            chunk=chunk or "",
            thinking_chunk=str(data.get("thinkingChunk") or ""),
            done=bool(data.get("done", False)),
            cancelled=data.get("cancelled") is True,
            error=str(error) if error else None,
            full_content=data.get("fullContent") or None,
            model=data.get("model") or None,
        )
