from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from loguru import logger

from tabchat.models import (
    AssistantMessage,
    ChatMessage,
    ChatSession,
    LedgerBaseline,
    ModelConfig,
    SystemMessage,
    TurnOutcome,
    UserMessage,
    new_message_id,
)
from tabchat.session_store import ChatSessionStore
from tabchat.storage import StorageError
from tabchat.stream_controller import StreamController, TurnRequest
from tabchat.transport import TransportError

PORT_CLOSED_MESSAGE = "[System: The connection was interrupted. Please try sending your message again.]"
NO_PLATFORM_MESSAGE = "Please select a platform."
NO_MODEL_MESSAGE = "Please select a model."
NO_CREDENTIALS_MESSAGE = "Valid API credentials are required for the selected platform."


@dataclass
class ChatSelection:
    platform_id: str | None = None
    model_id: str | None = None
    has_credentials: bool = False
    model_config: ModelConfig | None = None
    thinking_enabled: bool = False

    def missing_requirement(self) -> str | None:
        if not self.platform_id:
            return NO_PLATFORM_MESSAGE
        if not self.model_id:
            return NO_MODEL_MESSAGE
        if not self.has_credentials:
            return NO_CREDENTIALS_MESSAGE
        return None


class SessionRewinder:
    """Send, rerun and edit-and-rerun for one chat session.

    Reruns truncate the session and hand the stream controller a ledger
    baseline equal to the cumulative figures before the discarded turns.
    """

    def __init__(
        self,
        session: ChatSession,
        sessions: ChatSessionStore,
        controller: StreamController,
        *,
        selection: ChatSelection | None = None,
        system_prompt: str = "",
        on_update: Callable[[ChatSession], None] | None = None,
        on_error: Callable[[str], None] | None = None,
    ):
        self.session = session
        self.selection = selection or ChatSelection()
        self.system_prompt = system_prompt
        self._sessions = sessions
        self._controller = controller
        self._on_update = on_update
        self._on_error = on_error
        self._rollback: LedgerBaseline | None = None

    @property
    def rollback(self) -> LedgerBaseline | None:
        return self._rollback

    @property
    def controller(self) -> StreamController:
        return self._controller

    async def send(self, text: str) -> bool:
        content = (text or "").strip()
        if not content or self._controller.is_busy:
            return False

        problem = self.selection.missing_requirement()
        if problem is not None:
            logger.warning(f"Send refused: {problem}")
            self.session.messages.append(SystemMessage(id=new_message_id(), content=problem))
            self._persist()
            return False

        history = build_history(self.session.messages)
        ledger = self._sessions.ledger
        self.session.messages.append(
            UserMessage(id=new_message_id(), content=content, input_tokens=ledger.estimate_tokens(content))
        )
        return await self._issue(content, history, baseline=None)

    async def rerun(self, message_id: str) -> bool:
        if not self._ready("rerun"):
            return False
        index = self.session.index_of(message_id)
        if index < 0 or not isinstance(self.session.messages[index], UserMessage):
            logger.warning(f"Rerun ignored: {message_id} is not a user message in session {self.session.id}")
            return False
        return await self._rerun_from(index)

    async def edit_and_rerun(self, message_id: str, new_content: str) -> bool:
        content = (new_content or "").strip()
        if not content:
            return False
        if not self._ready("edit"):
            return False
        index = self.session.index_of(message_id)
        message = self.session.messages[index] if index >= 0 else None
        if not isinstance(message, UserMessage):
            logger.warning(f"Edit ignored: {message_id} is not a user message in session {self.session.id}")
            return False

        message.content = content
        message.input_tokens = self._sessions.ledger.estimate_tokens(content)
        return await self._rerun_from(index)

    async def rerun_assistant_message(self, message_id: str) -> bool:
        if not self._ready("assistant rerun"):
            return False
        index = self.session.index_of(message_id)
        if index < 0 or not isinstance(self.session.messages[index], AssistantMessage):
            logger.warning(f"Assistant rerun ignored: {message_id} is not an assistant message")
            return False
        if index == 0 or not isinstance(self.session.messages[index - 1], UserMessage):
            logger.error(f"Assistant rerun ignored: no user message precedes {message_id}")
            return False
        return await self._rerun_from(index - 1)

    def clear_chat(self) -> bool:
        if self._controller.is_busy:
            logger.warning("Clear chat refused while a stream is active")
            return False
        self.session.messages.clear()
        self._persist()
        self._sessions.ledger.clear_token_statistics(self.session.id)
        logger.info(f"Chat cleared: session={self.session.id}")
        return True

    async def _rerun_from(self, user_index: int) -> bool:
        messages = self.session.messages
        prompt = messages[user_index]
        self._rollback = self._baseline_before(messages[user_index + 1:])
        history = build_history(messages[:user_index])
        del messages[user_index + 1:]
        logger.info(
            f"Rerun issued: session={self.session.id}, message={prompt.id}, "
            f"baseline_cost={self._rollback.accumulated_cost:.6f}"
        )
        return await self._issue(prompt.content, history, baseline=self._rollback)

    async def _issue(self, prompt: str, history: list[dict[str, Any]], *, baseline: LedgerBaseline | None) -> bool:
        selection = self.selection
        placeholder = AssistantMessage(
            id=new_message_id(),
            is_streaming=True,
            platform_id=selection.platform_id,
            model_id=selection.model_id,
        )
        self.session.messages.append(placeholder)
        self._notify()

        request = TurnRequest(
            prompt=prompt,
            platform_id=selection.platform_id or "",
            model_id=selection.model_id or "",
            history=history,
            model_config=selection.model_config,
            system_prompt=self.system_prompt,
            thinking_enabled=selection.thinking_enabled,
            baseline=baseline,
        )
        try:
            await self._controller.start(self.session, placeholder.id, request)
            return True
        except TransportError as ex:
            logger.error(f"Backend call failed for session {self.session.id}: {ex}")
            text = PORT_CLOSED_MESSAGE if ex.is_port_closed else f"Error: {ex}"
            self.session.messages[self.session.index_of(placeholder.id)] = SystemMessage(
                id=new_message_id(), content=text
            )
            self._persist(outcome=TurnOutcome.ERROR, baseline=baseline)
            return False
        finally:
            self._rollback = None

    def _ready(self, operation: str) -> bool:
        problem = self.selection.missing_requirement()
        if problem is not None:
            logger.warning(f"{operation.capitalize()} refused: {problem}")
            return False
        if self._controller.is_busy:
            logger.warning(f"{operation.capitalize()} refused while a stream is active")
            return False
        return True

    def _baseline_before(self, discarded: Sequence[ChatMessage]) -> LedgerBaseline:
        ledger = self._sessions.ledger
        stats = ledger.get_token_statistics(self.session.id)
        cost = stats.accumulated_cost
        output = stats.output_tokens
        for message in discarded:
            if isinstance(message, AssistantMessage):
                cost -= message.api_cost or 0.0
                output -= ledger.message_tokens(message)
        return LedgerBaseline(accumulated_cost=max(0.0, cost), output_tokens=max(0, output))

    def _persist(self, *, outcome: TurnOutcome | None = None, baseline: LedgerBaseline | None = None) -> None:
        try:
            self._sessions.save(
                self.session,
                self.selection.model_config,
                baseline=baseline,
                outcome=outcome,
                system_prompt=self.system_prompt,
                thinking_enabled=self.selection.thinking_enabled,
            )
        except StorageError as ex:
            logger.error(f"Failed to persist session {self.session.id}: {ex}")
            if self._on_error is not None:
                self._on_error(f"Failed to save chat history: {ex}")
            persisted = self._sessions.load_session(self.session.id)
            self.session.messages[:] = persisted.messages if persisted is not None else []
        self._notify()

    def _notify(self) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(self.session)
        except Exception as ex:
            logger.error(f"Update listener failed: {ex}")


def build_history(messages: Sequence[ChatMessage]) -> list[dict[str, Any]]:
    """Conversation history as sent to the backend: settled user and assistant turns, in order."""
    return [
        {"role": m.role, "content": m.content, "timestamp": m.timestamp}
        for m in messages
        if isinstance(m, (UserMessage, AssistantMessage)) and not m.is_streaming
    ]
