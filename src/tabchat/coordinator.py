from __future__ import annotations

import asyncio
import random
import string
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from tabchat.provider import LLMProvider, ProviderResult, create_provider
from tabchat.transport import ChannelClosedError, ChannelInvalidatedError, ChunkChannel

ProviderFactory = Callable[[str, str], LLMProvider]


def new_stream_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"stream_{int(time.time() * 1000)}_{suffix}"


@dataclass
class _ActiveStream:
    session_id: str | None
    platform_id: str
    model_id: str
    task: asyncio.Task


class BackendCoordinator:
    """Privileged side of the transport: runs provider calls and pushes their chunks.

    Every accepted stream gets exactly one terminal payload, published from
    the task's completion callback.
    """

    def __init__(
        self,
        chunks: ChunkChannel,
        api_keys: dict[str, str],
        *,
        provider_factory: ProviderFactory = create_provider,
        max_tokens: int = 8192,
        temperature: float = 1.0,
    ):
        self._chunks = chunks
        self._api_keys = {k: v for k, v in api_keys.items() if v}
        self._provider_factory = provider_factory
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._providers: dict[str, LLMProvider] = {}
        self._streams: dict[str, _ActiveStream] = {}

    @property
    def active_stream_ids(self) -> list[str]:
        return list(self._streams)

    def has_credentials(self, platform_id: str | None) -> bool:
        return bool(platform_id) and platform_id in self._api_keys

    async def handle(self, request: dict[str, Any]) -> dict[str, Any]:
        action = request.get("action")
        try:
            if action == "processContent":
                return self._process_content(request)
            if action == "cancelStream":
                return self._cancel_stream(request)
            if action == "clearSessionData":
                return self._clear_session_data(request)
        except Exception as ex:
            logger.error(f"Coordinator failed handling '{action}': {ex}")
            return {"success": False, "error": str(ex)}
        logger.warning(f"Coordinator received unknown action: {action!r}")
        return {"success": False, "error": f"Unknown action: {action}"}

    async def shutdown(self) -> None:
        tasks = [stream.task for stream in self._streams.values()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _process_content(self, request: dict[str, Any]) -> dict[str, Any]:
        platform_id = request.get("platformId")
        model_id = request.get("modelId")
        prompt = request.get("prompt")
        if not platform_id or not model_id:
            return {"success": False, "error": "platformId and modelId are required"}
        if not isinstance(prompt, str) or not prompt.strip():
            return {"success": False, "error": "prompt is required"}
        if not self.has_credentials(platform_id):
            return {"success": False, "error": f"No API credentials configured for platform '{platform_id}'"}

        provider = self._provider_for(platform_id)
        history = request.get("conversationHistory") or []
        messages = [{"role": m.get("role"), "content": m.get("content")} for m in history if isinstance(m, dict)]
        messages.append({"role": "user", "content": prompt})

        stream_id = new_stream_id()
        self._chunks.open(stream_id)
        task = asyncio.create_task(
            self._run_stream(
                stream_id,
                provider,
                model_id,
                messages,
                system_prompt=str(request.get("systemPrompt") or ""),
                thinking_enabled=request.get("thinkingEnabled") is True,
            )
        )
        self._streams[stream_id] = _ActiveStream(
            session_id=request.get("sessionId"),
            platform_id=platform_id,
            model_id=model_id,
            task=task,
        )
        task.add_done_callback(lambda t: self._on_stream_finished(stream_id, model_id, t))
        logger.info(f"Stream {stream_id} opened: platform={platform_id}, model={model_id}, messages={len(messages)}")
        return {"success": True, "streamId": stream_id}

    def _cancel_stream(self, request: dict[str, Any]) -> dict[str, Any]:
        stream_id = request.get("streamId")
        stream = self._streams.get(stream_id) if isinstance(stream_id, str) else None
        if stream is None:
            return {"success": False, "error": f"No active stream: {stream_id}"}
        stream.task.cancel()
        logger.info(f"Stream {stream_id} cancellation requested")
        return {"success": True}

    def _clear_session_data(self, request: dict[str, Any]) -> dict[str, Any]:
        session_id = request.get("sessionId")
        if not session_id:
            return {"success": False, "error": "Missing sessionId"}
        cancelled = 0
        for stream in list(self._streams.values()):
            if stream.session_id == session_id:
                stream.task.cancel()
                cancelled += 1
        return {"success": True, "cancelled": cancelled}

    async def _run_stream(
        self,
        stream_id: str,
        provider: LLMProvider,
        model_id: str,
        messages: list[dict],
        *,
        system_prompt: str,
        thinking_enabled: bool,
    ) -> ProviderResult:
        def on_text(text: str) -> None:
            self._publish(stream_id, {"chunk": text, "done": False, "model": model_id})

        def on_thinking(text: str) -> None:
            self._publish(stream_id, {"thinkingChunk": text, "done": False, "model": model_id})

        return await provider.stream_chat(
            model_id,
            self._max_tokens,
            self._temperature,
            system_prompt,
            messages,
            on_text=on_text,
            on_thinking=on_thinking,
            thinking_enabled=thinking_enabled,
        )

    def _on_stream_finished(self, stream_id: str, model_id: str, task: asyncio.Task) -> None:
        self._streams.pop(stream_id, None)
        if task.cancelled():
            logger.info(f"Stream {stream_id} cancelled")
            self._publish(stream_id, {"chunk": "", "done": True, "cancelled": True, "model": model_id})
            return
        ex = task.exception()
        if ex is not None:
            logger.error(f"Stream {stream_id} failed: {type(ex).__name__}: {ex}")
            self._publish(stream_id, {"error": str(ex) or type(ex).__name__, "done": True})
            return
        result: ProviderResult = task.result()
        logger.info(f"Stream {stream_id} done: model={result.model}, output_tokens={result.output_tokens}")
        self._publish(
            stream_id,
            {"chunk": "", "done": True, "fullContent": result.text, "model": result.model or model_id},
        )

    def _publish(self, stream_id: str, chunk_data: dict[str, Any]) -> None:
        self._chunks.publish({"streamId": stream_id, "chunkData": chunk_data})

    def _provider_for(self, platform_id: str) -> LLMProvider:
        provider = self._providers.get(platform_id)
        if provider is None:
            provider = self._provider_factory(platform_id, self._api_keys[platform_id])
            self._providers[platform_id] = provider
        return provider


class LocalChannel:
    """In-process channel to a coordinator.

    Raises ``ChannelClosedError`` until the coordinator is marked ready and
    ``ChannelInvalidatedError`` once it has been shut down.
    """

    def __init__(self, coordinator: BackendCoordinator, *, ready: bool = True):
        self._coordinator = coordinator
        self._ready = ready
        self._invalidated = False

    def mark_ready(self) -> None:
        self._ready = True

    def invalidate(self) -> None:
        self._invalidated = True

    async def send_message(self, request: dict[str, Any]) -> Any:
        if self._invalidated:
            raise ChannelInvalidatedError("Extension context invalidated")
        if not self._ready:
            raise ChannelClosedError("Could not establish connection. Receiving end does not exist.")
        return await self._coordinator.handle(request)
