"""Liveness monitoring for busy sessions.

One background task per busy session wakes every check interval,
reports how long the session has been silent, and hands stale sessions
to the recovery controller. Starting always cancels any previous task
for the same session, so there is at most one monitor per session.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from octools.adapters.event_bus import EventBus
from octools.adapters.events import SessionLiveness

from .models import SessionStatusType
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
StaleCallback = Callable[[str], object]


class LivenessMonitor:
    """Per-session staleness timers."""

    def __init__(
        self,
        registry: SessionRegistry,
        bus: EventBus,
        *,
        check_interval: float = 1.0,
        timeout: float = 240.0,
        on_stale: StaleCallback | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._registry = registry
        self._bus = bus
        self.check_interval = check_interval
        self.timeout = timeout
        self.on_stale = on_stale
        self._clock = clock

    def is_active(self, session_id: str) -> bool:
        record = self._registry.peek(session_id)
        return record is not None and record.monitoring

    def start(self, session_id: str) -> None:
        """Start (or restart) monitoring. Must run inside an event loop."""
        self.stop(session_id)
        record = self._registry.get(session_id)
        if record.last_activity is None:
            record.last_activity = self._clock()
        record.liveness_task = asyncio.get_running_loop().create_task(
            self._run(session_id), name=f"liveness-{session_id}"
        )
        logger.debug("Liveness monitoring started for %s", session_id)

    def stop(self, session_id: str) -> None:
        record = self._registry.peek(session_id)
        if record is None or record.liveness_task is None:
            return
        task = record.liveness_task
        record.liveness_task = None
        # A tick that stops its own monitor just returns.
        if task is not asyncio.current_task():
            task.cancel()
        logger.debug("Liveness monitoring stopped for %s", session_id)

    def pause(self, session_id: str) -> None:
        """Suspend monitoring unconditionally (e.g. awaiting a human reply)."""
        self.stop(session_id)

    def resume(self, session_id: str) -> bool:
        """Restart a fresh countdown if the session is still busy.

        Returns False (and does nothing) for a session that is not busy.
        """
        record = self._registry.peek(session_id)
        if record is None or record.status is not SessionStatusType.BUSY:
            return False
        record.last_activity = self._clock()
        self.start(session_id)
        return True

    async def _run(self, session_id: str) -> None:
        try:
            while True:
                await asyncio.sleep(self.check_interval)
                if not self.check(session_id):
                    return
        except asyncio.CancelledError:
            return

    def check(self, session_id: str) -> bool:
        """One liveness tick. Returns False once monitoring has ended."""
        record = self._registry.peek(session_id)
        if record is None or record.status is not SessionStatusType.BUSY:
            # A stop was missed; don't let the timer outlive busy.
            self.stop(session_id)
            return False

        now = self._clock()
        last = record.last_activity if record.last_activity is not None else now
        elapsed = max(0.0, now - last)
        is_stale = elapsed >= self.timeout
        seconds = int(elapsed)
        logger.debug(
            "Liveness %s: %ds since last event (stale=%s)",
            session_id, seconds, is_stale,
        )
        self._bus.emit(SessionLiveness(
            session_id=session_id,
            seconds_since_last_event=seconds,
            is_stale=is_stale,
        ))

        if not is_stale:
            return True

        logger.warning(
            "Session %s silent for %ds (timeout %.0fs), triggering retry",
            session_id, seconds, self.timeout,
        )
        # Suspend monitoring before recovery so retries can't overlap.
        self.stop(session_id)
        if self.on_stale is not None:
            self.on_stale(session_id)
        return False
