"""Debounced batching of trigger events."""

import asyncio
import logging
from collections.abc import Callable
from typing import Generic
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Debouncer(Generic[T]):
    """Buffers items and flushes them once no item arrived for ``delay`` seconds.

    Every ``push`` restarts the single timer, so a burst of events becomes
    one ``flush`` call carrying the whole batch. Must be used from the
    event loop thread.
    """

    def __init__(self, delay: float, flush: Callable[[list[T]], None]) -> None:
        self.delay = delay
        self._flush_callback = flush
        self._pending: list[T] = []
        self._handle: asyncio.TimerHandle | None = None

    @property
    def pending(self) -> list[T]:
        return list(self._pending)

    def push(self, item: T) -> None:
        self._pending.append(item)
        if self._handle is not None:
            self._handle.cancel()
        self._handle = asyncio.get_running_loop().call_later(self.delay, self._flush)

    def _flush(self) -> None:
        self._handle = None
        if not self._pending:
            return
        batch, self._pending = self._pending, []
        try:
            self._flush_callback(batch)
        except Exception as e:
            logger.error(f"Debounced flush failed: {e}", exc_info=True)

    def cancel(self) -> None:
        """Drop buffered items and the pending timer."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = []
