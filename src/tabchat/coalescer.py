from __future__ import annotations

import asyncio
from collections.abc import Callable

from loguru import logger


class FlushCoalescer:
    """Runs ``flush`` at most once per tick no matter how often ``request`` is called."""

    def __init__(self, flush: Callable[[], None], *, interval: float = 0.016):
        self._flush = flush
        self._interval = max(0.0, interval)
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def request(self) -> bool:
        """Schedule a flush. Returns False when one is already pending."""
        if self._handle is not None:
            return False
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._interval, self._run)
        return True

    def flush_now(self) -> None:
        self.cancel()
        self._flush()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _run(self) -> None:
        self._handle = None
        try:
            self._flush()
        except Exception as ex:
            logger.error(f"Flush callback failed: {ex}")
