"""Session status tracking.

Applies ``session.status`` pushes to the registry, keeps the activity
clock current, and starts/stops liveness monitoring so that a monitor
runs exactly while a session is busy. Error and retry statuses are
offered to the recovery controller for model failover.
"""
from __future__ import annotations

import logging
import time
from typing import Any

from octools.adapters.event_bus import EventBus
from octools.adapters.events import SessionStatusChanged

from .liveness import Clock, LivenessMonitor
from .models import (
    ACTIVE_STATUSES,
    FAILOVER_STATUSES,
    ModelBinding,
    ModelDescriptor,
    SessionInfo,
    SessionStatusType,
)
from .recovery import RetryController
from .registry import SessionRegistry

logger = logging.getLogger(__name__)


class SessionTracker:
    """Owns status, activity, and model-binding transitions."""

    def __init__(
        self,
        registry: SessionRegistry,
        bus: EventBus,
        monitor: LivenessMonitor,
        controller: RetryController,
        clock: Clock = time.monotonic,
    ) -> None:
        self._registry = registry
        self._bus = bus
        self._monitor = monitor
        self._controller = controller
        self._clock = clock

    def status_of(self, session_id: str) -> SessionStatusType:
        record = self._registry.peek(session_id)
        return record.status if record is not None else SessionStatusType.IDLE

    def last_activity(self, session_id: str) -> float | None:
        record = self._registry.peek(session_id)
        return record.last_activity if record is not None else None

    def record_activity(self, session_id: str) -> None:
        self._registry.get(session_id).last_activity = self._clock()

    def apply_status(
        self,
        session_id: str,
        status: SessionStatusType,
        details: dict[str, Any] | None = None,
    ) -> None:
        is_new = session_id not in self._registry
        record = self._registry.get(session_id)
        previous = None if is_new else record.status
        record.status = status

        if status in ACTIVE_STATUSES:
            self.record_activity(session_id)

        if status is SessionStatusType.BUSY:
            if previous is not SessionStatusType.BUSY:
                logger.info("Session %s busy, monitoring liveness", session_id)
                self._monitor.start(session_id)
        else:
            if record.monitoring:
                logger.info("Session %s %s, liveness monitoring stopped", session_id, status.value)
            self._monitor.stop(session_id)

        self._bus.emit(SessionStatusChanged(
            session_id=session_id,
            status=status.value,
            previous_status=previous.value if previous is not None else None,
            details=details or {},
        ))

        if status in FAILOVER_STATUSES:
            self._controller.fail_over(session_id, status.value)

    def force_status(self, session_id: str, status: SessionStatusType) -> None:
        """Set a status without emitting, stopping the monitor unless busy."""
        record = self._registry.get(session_id)
        record.status = status
        if status is not SessionStatusType.BUSY:
            self._monitor.stop(session_id)

    def set_binding(
        self,
        session_id: str,
        primary: ModelDescriptor | None,
        secondary: ModelDescriptor | None = None,
    ) -> ModelBinding | None:
        """Install a fresh binding; ``current`` starts at ``primary``."""
        record = self._registry.get(session_id)
        if primary is None:
            record.binding = None
            return None
        record.binding = ModelBinding(primary=primary, secondary=secondary)
        return record.binding

    def seed(self, session_id: str, info: SessionInfo | None) -> None:
        """Baseline a session from fetched metadata; history is not live."""
        record = self._registry.get(session_id)
        if info is not None:
            record.info = info
            binding = record.binding
            unchanged = (
                binding is not None
                and binding.primary == info.model
                and binding.secondary == info.secondary_model
            )
            # Keep a failed-over ``current`` if the configuration is the same.
            if not unchanged and info.model is not None:
                self.set_binding(session_id, info.model, info.secondary_model)
        self.force_status(session_id, SessionStatusType.IDLE)
