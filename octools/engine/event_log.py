"""Bounded FIFO of raw inbound frames, kept for diagnostics."""
from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Any

from .stream import extract_session_id

DEFAULT_CAPACITY = 2000


@dataclass
class RawEventEntry:
    timestamp: int  # epoch milliseconds
    payload: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": self.timestamp, "payload": self.payload}


class RawEventLog:
    """Append-only ring of the most recent frames; oldest evicted first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        self.capacity = capacity
        self._entries: deque[RawEventEntry] = deque(maxlen=capacity)

    def append(self, payload: dict[str, Any]) -> RawEventEntry:
        entry = RawEventEntry(timestamp=int(time.time() * 1000), payload=payload)
        self._entries.append(entry)
        return entry

    def entries(self, session_id: str | None = None) -> list[RawEventEntry]:
        """Snapshot of the log, optionally limited to one session's frames."""
        if session_id is None:
            return list(self._entries)
        return [e for e in self._entries if _session_of(e.payload) == session_id]

    def __len__(self) -> int:
        return len(self._entries)


def _session_of(payload: dict[str, Any]) -> str | None:
    properties = payload.get("properties")
    if not isinstance(properties, dict):
        return None
    return extract_session_id(properties)
