from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from tabchat.models import StreamChunk


class TransportError(RuntimeError):
    def __init__(self, message: str, *, is_port_closed: bool = False):
        super().__init__(message)
        self.is_port_closed = is_port_closed


class ChannelClosedError(ConnectionError):
    """The receiving end of the channel does not exist (yet)."""


class ChannelInvalidatedError(ConnectionError):
    """The coordinator context is gone for good."""


@runtime_checkable
class Channel(Protocol):
    async def send_message(self, request: dict[str, Any]) -> Any: ...


def _on_retry(retry_state) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.3f}s (attempt {attempt})...")


class Transport:
    """Request/acknowledge delivery to the coordinator.

    Only ``ChannelClosedError`` is retried, with delays of
    ``base_delay * 2 ** (n - 1)``. A ``ChannelInvalidatedError`` resolves to
    ``None``; every other failure raises ``TransportError``.
    """

    def __init__(
        self,
        channel: Channel,
        *,
        max_retries: int = 2,
        base_delay: float = 0.25,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._channel = channel
        self._max_retries = max(0, max_retries)
        self._base_delay = base_delay
        self._sleep = sleep

    async def send(self, request: dict[str, Any]) -> Any:
        action = request.get("action") if isinstance(request, dict) else None
        if not isinstance(action, str) or not action.strip():
            raise TransportError("Invalid request: 'action' is required")

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(ChannelClosedError),
            wait=wait_exponential(multiplier=self._base_delay, min=self._base_delay),
            stop=stop_after_attempt(self._max_retries + 1),
            before_sleep=_on_retry,
            sleep=self._sleep,
            reraise=True,
        )

        response: Any = None
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self._channel.send_message(request)
        except ChannelInvalidatedError as ex:
            logger.debug(f"Channel invalidated during '{action}', ignoring: {ex}")
            return None
        except ChannelClosedError as ex:
            attempts = self._max_retries + 1
            logger.error(f"Communication failed for '{action}' after {attempts} attempts: {ex}")
            raise TransportError(
                f"Communication failed after {attempts} attempts: {ex}",
                is_port_closed=True,
            ) from ex
        except Exception as ex:
            logger.error(f"Transport failure for '{action}': {ex}")
            raise TransportError(f"Transport failure for '{action}': {ex}") from ex

        logger.debug(f"Transport '{action}' acknowledged")
        return response


class ChunkChannel:
    """Push channel for stream chunks. Chunks of one stream are delivered in publish order."""

    def __init__(self):
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = {}

    def open(self, stream_id: str) -> None:
        self._queues.setdefault(stream_id, asyncio.Queue())

    def close(self, stream_id: str) -> None:
        self._queues.pop(stream_id, None)

    def is_open(self, stream_id: str) -> bool:
        return stream_id in self._queues

    def publish(self, payload: dict[str, Any]) -> None:
        stream_id = payload.get("streamId")
        queue = self._queues.get(stream_id) if isinstance(stream_id, str) else None
        if queue is None:
            logger.debug(f"Dropping chunk for unknown stream {stream_id!r}")
            return
        queue.put_nowait(payload)

    async def receive(self, stream_id: str) -> AsyncIterator[StreamChunk]:
        """Yield chunks for ``stream_id`` up to and including its terminal chunk."""
        self.open(stream_id)
        queue = self._queues[stream_id]
        try:
            while True:
                payload = await queue.get()
                try:
                    chunk = StreamChunk.from_payload(payload)
                except ValueError as ex:
                    logger.warning(f"Skipping malformed chunk on stream {stream_id}: {ex}")
                    continue
                yield chunk
                if chunk.is_terminal:
                    return
        finally:
            self.close(stream_id)
