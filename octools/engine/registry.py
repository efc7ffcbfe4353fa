"""Per-session record registry.

One structured record per session id holds everything the tracker,
monitor, and recovery controller mutate. Records are created lazily on
first reference; remove() is the only teardown and is left to the
surrounding application to call.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from .models import ModelBinding, PendingPrompt, SessionInfo, SessionStatusType

logger = logging.getLogger(__name__)


@dataclass
class SessionRecord:
    session_id: str
    status: SessionStatusType = SessionStatusType.IDLE
    # Monotonic seconds of the last AI-originated activity.
    last_activity: float | None = None
    binding: ModelBinding | None = None
    pending_prompt: PendingPrompt | None = None
    # Consecutive timeout-triggered retries; reset on a successful retry.
    retry_attempts: int = 0
    info: SessionInfo | None = None
    # Existence of this task is the sole "monitoring active" indicator.
    liveness_task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def monitoring(self) -> bool:
        return self.liveness_task is not None


class SessionRegistry:
    """Owns all SessionRecords. Mutated only by client callbacks."""

    def __init__(self) -> None:
        self._records: dict[str, SessionRecord] = {}

    def get(self, session_id: str) -> SessionRecord:
        """Return the record for *session_id*, creating it on first use."""
        record = self._records.get(session_id)
        if record is None:
            record = SessionRecord(session_id=session_id)
            self._records[session_id] = record
        return record

    def peek(self, session_id: str) -> SessionRecord | None:
        """Return the record if one exists, without creating it."""
        return self._records.get(session_id)

    def remove(self, session_id: str) -> SessionRecord | None:
        """Drop a record. Callers must stop its liveness task first."""
        record = self._records.pop(session_id, None)
        if record is not None:
            logger.debug("Removed session record %s", session_id)
        return record

    def session_ids(self) -> list[str]:
        return list(self._records)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._records

    def __len__(self) -> int:
        return len(self._records)
