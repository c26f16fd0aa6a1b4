from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from loguru import logger

from tabchat.coalescer import FlushCoalescer
from tabchat.models import (
    AssistantMessage,
    ChatSession,
    LedgerBaseline,
    ModelConfig,
    StreamChunk,
    SystemMessage,
    TurnOutcome,
)
from tabchat.session_store import ChatSessionStore
from tabchat.storage import StorageError
from tabchat.transport import ChunkChannel, Transport, TransportError

CANCELLED_MARKER = "\n\n_Stream cancelled by user._"


class StreamPhase(Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"


@dataclass
class StreamState:
    message_id: str
    buffered_text: str = ""
    buffered_thinking_text: str = ""
    pending_flush: bool = False


@dataclass
class TurnRequest:
    prompt: str
    platform_id: str
    model_id: str
    history: list[dict[str, Any]] = field(default_factory=list)
    model_config: ModelConfig | None = None
    system_prompt: str = ""
    thinking_enabled: bool = False
    baseline: LedgerBaseline | None = None

    def to_payload(self, session_id: str) -> dict[str, Any]:
        return {
            "action": "processContent",
            "sessionId": session_id,
            "platformId": self.platform_id,
            "modelId": self.model_id,
            "prompt": self.prompt,
            "conversationHistory": self.history,
            "systemPrompt": self.system_prompt,
            "thinkingEnabled": self.thinking_enabled,
        }


class StreamController:
    """Lifecycle of the single in-flight streamed answer.

    Fragments are buffered and flushed to the message list at most once per
    tick. Each terminal path finalises the message, has the session store
    account and persist the turn, and always drops the buffers.
    """

    def __init__(
        self,
        transport: Transport,
        chunks: ChunkChannel,
        sessions: ChatSessionStore,
        *,
        flush_interval: float = 0.016,
        on_update: Callable[[ChatSession], None] | None = None,
        on_error: Callable[[str], None] | None = None,
    ):
        self._transport = transport
        self._chunks = chunks
        self._sessions = sessions
        self._on_update = on_update
        self._on_error = on_error
        self._coalescer = FlushCoalescer(self._flush, interval=flush_interval)

        self._phase = StreamPhase.IDLE
        self._state: StreamState | None = None
        self._session: ChatSession | None = None
        self._request: TurnRequest | None = None
        self._stream_id: str | None = None
        self._task: asyncio.Task | None = None

    @property
    def phase(self) -> StreamPhase:
        return self._phase

    @property
    def state(self) -> StreamState | None:
        return self._state

    @property
    def stream_id(self) -> str | None:
        return self._stream_id

    @property
    def is_busy(self) -> bool:
        return self._phase in (StreamPhase.STREAMING, StreamPhase.CANCELLING)

    def set_listeners(
        self,
        *,
        on_update: Callable[[ChatSession], None] | None = None,
        on_error: Callable[[str], None] | None = None,
    ) -> None:
        self._on_update = on_update
        self._on_error = on_error

    async def start(self, session: ChatSession, message_id: str, request: TurnRequest) -> str:
        """Issue the backend call for the placeholder ``message_id`` and start pumping chunks.

        Raises ``TransportError`` when the call is not accepted; the caller owns
        the placeholder in that case.
        """
        if self.is_busy:
            raise RuntimeError("A stream is already active")

        self._phase = StreamPhase.STREAMING
        self._session = session
        self._request = request
        self._state = StreamState(message_id=message_id)

        try:
            response = await self._transport.send(request.to_payload(session.id))
            if not isinstance(response, dict) or not response.get("success") or not response.get("streamId"):
                error = response.get("error") if isinstance(response, dict) else None
                raise TransportError(error or "Failed to initialize stream")
        except BaseException:
            self._reset()
            raise

        stream_id = str(response["streamId"])
        self._stream_id = stream_id
        self._task = asyncio.create_task(self._pump(stream_id))
        logger.info(
            f"Stream started: session={session.id}, stream={stream_id}, "
            f"platform={request.platform_id}, model={request.model_id}"
        )
        return stream_id

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def cancel(self) -> bool:
        """Ask the coordinator to stop the active stream. Returns False when there was nothing to cancel."""
        if self._phase is not StreamPhase.STREAMING or self._stream_id is None:
            return False

        stream_id = self._stream_id
        self._phase = StreamPhase.CANCELLING
        logger.info(f"Cancelling stream {stream_id}")
        try:
            response = await self._transport.send({"action": "cancelStream", "streamId": stream_id})
        except TransportError as ex:
            logger.warning(f"Cancel request for stream {stream_id} failed, closing locally: {ex}")
            response = None
        if not isinstance(response, dict) or not response.get("success"):
            self._chunks.publish({"streamId": stream_id, "chunkData": {"done": True, "cancelled": True}})
        return True

    async def handle_escape(self) -> bool:
        return await self.cancel()

    # -- chunk handling ---------------------------------------------------

    async def _pump(self, stream_id: str) -> None:
        try:
            async for chunk in self._chunks.receive(stream_id):
                if chunk.error is not None:
                    logger.error(f"Stream {stream_id} error: {chunk.error}")
                    self._finish_error(chunk.error)
                elif chunk.done and chunk.cancelled:
                    self._finish_cancelled()
                elif chunk.done:
                    self._finish_done(chunk)
                else:
                    self._absorb(chunk)
        except Exception as ex:
            logger.error(f"Stream {stream_id} failed while processing chunks: {ex}")
            message = self._streaming_message()
            if message is not None and message.is_streaming:
                self._finish_error(str(ex))
        finally:
            self._reset()

    def _absorb(self, chunk: StreamChunk) -> None:
        state = self._state
        if state is None:
            return
        if chunk.chunk:
            state.buffered_text += chunk.chunk
        if chunk.thinking_chunk:
            state.buffered_thinking_text += chunk.thinking_chunk
        if not state.pending_flush:
            state.pending_flush = self._coalescer.request()

    def _flush(self) -> None:
        state = self._state
        if state is None:
            return
        state.pending_flush = False
        message = self._streaming_message()
        if message is None:
            return
        message.content = state.buffered_text
        message.thinking_content = state.buffered_thinking_text
        self._notify()

    def _finish_done(self, chunk: StreamChunk) -> None:
        state, message, request = self._state, self._streaming_message(), self._request
        if state is None or message is None or request is None:
            return
        self._coalescer.cancel()
        ledger = self._sessions.ledger

        message.content = chunk.full_content or state.buffered_text
        message.thinking_content = state.buffered_thinking_text
        message.is_streaming = False
        message.platform_id = request.platform_id
        message.model_id = chunk.model or request.model_id
        message.output_tokens = ledger.estimate_tokens(message.content) + ledger.estimate_tokens(
            message.thinking_content
        )

        self._phase = StreamPhase.COMPLETED
        self._persist(TurnOutcome.COMPLETED)
        logger.info(f"Stream completed: message={message.id}, output_tokens={message.output_tokens}")

    def _finish_cancelled(self) -> None:
        state, message, request = self._state, self._streaming_message(), self._request
        if state is None or message is None or request is None:
            return
        self._coalescer.cancel()
        ledger = self._sessions.ledger

        message.output_tokens = ledger.estimate_tokens(state.buffered_text) + ledger.estimate_tokens(
            state.buffered_thinking_text
        )
        message.content = state.buffered_text + CANCELLED_MARKER
        message.thinking_content = state.buffered_thinking_text
        message.is_streaming = False
        message.platform_id = request.platform_id
        message.model_id = request.model_id

        self._phase = StreamPhase.CANCELLED
        self._persist(TurnOutcome.CANCELLED)
        logger.info(f"Stream cancelled: message={message.id}, partial_output_tokens={message.output_tokens}")

    def _finish_error(self, error: str) -> None:
        session, state = self._session, self._state
        if session is None or state is None:
            return
        self._coalescer.cancel()

        index = session.index_of(state.message_id)
        replacement = SystemMessage(id=state.message_id, content=error)
        if index >= 0:
            session.messages[index] = replacement
        else:
            session.messages.append(replacement)

        self._phase = StreamPhase.ERRORED
        self._persist(TurnOutcome.ERROR)

    def _persist(self, outcome: TurnOutcome) -> None:
        session, request = self._session, self._request
        if session is None or request is None:
            return
        try:
            self._sessions.save(
                session,
                request.model_config,
                baseline=request.baseline,
                outcome=outcome,
                system_prompt=request.system_prompt,
                thinking_enabled=request.thinking_enabled,
            )
        except StorageError as ex:
            logger.error(f"Failed to persist session {session.id}: {ex}")
            self._report_error(f"Failed to save chat history: {ex}")
            persisted = self._sessions.load_session(session.id)
            session.messages[:] = persisted.messages if persisted is not None else []
        self._notify()

    # -- helpers ----------------------------------------------------------

    def _streaming_message(self) -> AssistantMessage | None:
        if self._session is None or self._state is None:
            return None
        message = self._session.find(self._state.message_id)
        return message if isinstance(message, AssistantMessage) else None

    def _notify(self) -> None:
        if self._on_update is None or self._session is None:
            return
        try:
            self._on_update(self._session)
        except Exception as ex:
            logger.error(f"Update listener failed: {ex}")

    def _report_error(self, text: str) -> None:
        if self._on_error is None:
            return
        try:
            self._on_error(text)
        except Exception as ex:
            logger.error(f"Error listener failed: {ex}")

    def _reset(self) -> None:
        self._coalescer.cancel()
        self._state = None
        self._request = None
        self._stream_id = None
        self._task = None
        if self._phase in (StreamPhase.STREAMING, StreamPhase.CANCELLING):
            self._phase = StreamPhase.IDLE
