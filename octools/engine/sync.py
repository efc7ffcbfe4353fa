"""History sync: bounded replay of a session for a late-joining observer.

Metadata, messages and diffs are fetched concurrently; a failed fetch
degrades to an empty result. Retained history is re-emitted through the
normalizer's emission surface with ``historical=True`` and the sync
ends with one ``session.sync.complete`` signal carrying the totals.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from octools.adapters.event_bus import EventBus
from octools.adapters.events import SyncComplete

from .errors import OctoolsError
from .models import SessionInfo
from .normalizer import EventNormalizer
from .rest import RestClient
from .tracker import SessionTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_MESSAGES = 200
DEFAULT_MAX_DIFFS = 200
DEFAULT_MAX_AGE_SECONDS = 12 * 3600


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _created_ms(message: dict[str, Any]) -> int:
    created = _as_dict(_as_dict(message.get("info")).get("time")).get("created")
    return created if isinstance(created, (int, float)) else 0


def select_messages(
    messages: list[dict[str, Any]],
    *,
    now_ms: int,
    max_messages: int = DEFAULT_MAX_MESSAGES,
    max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
) -> list[dict[str, Any]]:
    """Chronological, age-filtered, most recent ``max_messages`` messages.

    Messages without a creation time fall outside the age window; entries
    that are not objects are skipped.
    """
    cutoff = now_ms - int(max_age_seconds * 1000)
    ordered = sorted((m for m in messages if isinstance(m, dict)), key=_created_ms)
    recent = [m for m in ordered if _created_ms(m) >= cutoff]
    return recent[-max_messages:] if max_messages > 0 else []


def select_diffs(
    diffs: list[dict[str, Any]], max_diffs: int = DEFAULT_MAX_DIFFS
) -> list[dict[str, Any]]:
    return diffs[-max_diffs:] if max_diffs > 0 else []


class HistorySync:
    """Rehydrates one session on demand."""

    def __init__(
        self,
        rest: RestClient,
        tracker: SessionTracker,
        normalizer: EventNormalizer,
        bus: EventBus,
        *,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        max_diffs: int = DEFAULT_MAX_DIFFS,
        max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._rest = rest
        self._tracker = tracker
        self._normalizer = normalizer
        self._bus = bus
        self.max_messages = max_messages
        self.max_diffs = max_diffs
        self.max_age_seconds = max_age_seconds
        self._clock = clock

    async def _fetch(self, what: str, session_id: str, coro: Awaitable[T], default: T) -> T:
        try:
            return await coro
        except (OctoolsError, ValueError) as exc:
            logger.warning("History sync for %s: could not fetch %s: %s", session_id, what, exc)
            return default

    async def sync(self, session_id: str) -> SyncComplete:
        info_data, messages, diffs = await asyncio.gather(
            self._fetch("session", session_id, self._rest.load_session(session_id), None),
            self._fetch("messages", session_id, self._rest.get_messages(session_id), []),
            self._fetch("diffs", session_id, self._rest.get_diffs(session_id), []),
        )
        messages = messages if isinstance(messages, list) else []
        diffs = diffs if isinstance(diffs, list) else []

        info = SessionInfo.from_dict(info_data) if isinstance(info_data, dict) else None
        self._tracker.seed(session_id, info)

        kept_messages = select_messages(
            messages,
            now_ms=int(self._clock() * 1000),
            max_messages=self.max_messages,
            max_age_seconds=self.max_age_seconds,
        )
        kept_diffs = select_diffs(diffs, self.max_diffs)

        for diff in kept_diffs:
            self._normalizer.emit_diff(
                session_id, {"sessionID": session_id, "diff": [diff]}, historical=True
            )

        for message in kept_messages:
            self._replay_message(session_id, message)

        summary = SyncComplete(
            session_id=session_id,
            total_messages=len(messages),
            rehydrated_messages=len(kept_messages),
            total_diffs=len(diffs),
            rehydrated_diffs=len(kept_diffs),
        )
        logger.info(
            "Synced session %s: %d/%d messages, %d/%d diffs",
            session_id, summary.rehydrated_messages, summary.total_messages,
            summary.rehydrated_diffs, summary.total_diffs,
        )
        self._bus.emit(summary)
        return summary

    def _replay_message(self, session_id: str, message: dict[str, Any]) -> None:
        info = _as_dict(message.get("info"))
        raw_parts = message.get("parts")
        parts = [p for p in raw_parts if isinstance(p, dict)] if isinstance(raw_parts, list) else []
        for part in parts:
            self._normalizer.emit_part(session_id, part, None, historical=True)
        if info.get("finish") or _as_dict(info.get("time")).get("completed"):
            self._normalizer.emit_completion(session_id, info, parts, historical=True)
