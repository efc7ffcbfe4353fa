"""Signal bus bridging client callbacks to consumers.

Listeners registered with on() run synchronously inside the emitting
handler, so the client's single-threaded ordering is preserved.
consume() gives async consumers (such as a relay server) a queue-backed
iterator over every signal.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from typing import Any

from octools.adapters.events import Signal

logger = logging.getLogger(__name__)

Listener = Callable[[Signal], Any]

# Subscribe to this name to receive every signal.
ALL_SIGNALS = "*"


class EventBus:
    """Named listener registry plus async queues for stream consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._maxsize = maxsize
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._queues: list[asyncio.Queue[Signal]] = []
        self._pending: set[asyncio.Task] = set()
        self._closed = False

    def on(self, event_type: str, callback: Listener) -> None:
        self._listeners[event_type].append(callback)

    def off(self, event_type: str, callback: Listener) -> None:
        listeners = self._listeners.get(event_type)
        if not listeners:
            return
        try:
            listeners.remove(callback)
        except ValueError:
            pass

    def listener_count(self, event_type: str) -> int:
        return len(self._listeners.get(event_type, ()))

    def emit(self, signal: Signal) -> None:
        """Deliver a signal to listeners and consumer queues.

        Listener errors are logged; they never propagate into the
        emitting handler.
        """
        if self._closed:
            return
        callbacks = [
            *self._listeners.get(signal.event_type, ()),
            *self._listeners.get(ALL_SIGNALS, ()),
        ]
        for callback in callbacks:
            try:
                result = callback(signal)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_listener_done)
            except Exception:
                logger.exception(
                    "Listener for %s raised (emitter continues)",
                    signal.event_type,
                )

        for queue in self._queues:
            try:
                queue.put_nowait(signal)
            except asyncio.QueueFull:
                logger.warning(
                    "Signal queue full, dropping %s (queue size: %d)",
                    signal.event_type,
                    queue.qsize(),
                )

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async listener error: %s", exc, exc_info=exc)

    async def consume(self) -> AsyncIterator[Signal]:
        """Yield signals as they arrive. Stops on close()."""
        queue: asyncio.Queue[Signal] = asyncio.Queue(maxsize=self._maxsize)
        self._queues.append(queue)
        try:
            while not self._closed:
                try:
                    signal = await asyncio.wait_for(queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue
                yield signal
        finally:
            self._queues.remove(queue)

    def close(self) -> None:
        """Stop consumer loops and drop all listeners permanently."""
        self._closed = True
        self._listeners.clear()
