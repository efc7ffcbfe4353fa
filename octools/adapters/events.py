"""Signal types emitted by the session client.

Each signal is a typed dataclass whose ``event_type`` is the name
consumers subscribe to. signal_to_dict() produces the camelCase wire
payload the relay forwards to browser UIs.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Signal:
    """Base signal. ``historical`` is set only for rehydrated replays."""
    event_type: str = ""
    session_id: str | None = None
    historical: bool | None = None


@dataclass
class Connected(Signal):
    event_type: str = "connected"


@dataclass
class Disconnected(Signal):
    event_type: str = "disconnected"


@dataclass
class StreamError(Signal):
    event_type: str = "error"
    message: str = ""


@dataclass
class RawEvent(Signal):
    """Every decoded frame, before dispatch."""
    event_type: str = "raw.event"
    timestamp: int = 0
    payload: dict = field(default_factory=dict)


@dataclass
class SessionStatusChanged(Signal):
    event_type: str = "session.status"
    status: str = ""
    previous_status: str | None = None
    details: dict = field(default_factory=dict)


@dataclass
class ModelSwitched(Signal):
    event_type: str = "session.model_switched"
    model: dict = field(default_factory=dict)
    reason: str = ""


@dataclass
class RetryingAlternative(Signal):
    event_type: str = "session.retrying_alternative"
    model: dict = field(default_factory=dict)
    reason: str = ""


@dataclass
class MessageDelta(Signal):
    event_type: str = "message.delta"
    message_id: str | None = None
    part_id: str | None = None
    delta: str | None = None
    part: dict = field(default_factory=dict)


@dataclass
class SubagentProgress(Signal):
    event_type: str = "subagent.progress"
    message_id: str | None = None
    part_id: str | None = None
    agent: str = ""
    task: str = ""
    status: str = ""


@dataclass
class MessageComplete(Signal):
    event_type: str = "message.complete"
    message_id: str | None = None
    message: dict = field(default_factory=dict)
    parts: list | None = None


@dataclass
class QuestionAsked(Signal):
    event_type: str = "question"
    request_id: str | None = None
    properties: dict = field(default_factory=dict)


@dataclass
class PermissionAsked(Signal):
    event_type: str = "permission"
    request_id: str | None = None
    properties: dict = field(default_factory=dict)


@dataclass
class SessionError(Signal):
    event_type: str = "session.error"
    error: dict = field(default_factory=dict)
    is_auth_error: bool = False


@dataclass
class SessionAuthError(Signal):
    event_type: str = "session.error.auth"
    error: dict = field(default_factory=dict)


@dataclass
class SessionDiff(Signal):
    event_type: str = "session.diff"
    properties: dict = field(default_factory=dict)


@dataclass
class SessionUpdated(Signal):
    event_type: str = "session.updated"
    properties: dict = field(default_factory=dict)


@dataclass
class Passthrough(Signal):
    """An inbound event of a type the client does not interpret."""
    event_type: str = "event"
    event: dict = field(default_factory=dict)


@dataclass
class SessionLiveness(Signal):
    event_type: str = "session.liveness"
    seconds_since_last_event: int = 0
    is_stale: bool = False


@dataclass
class RetryStart(Signal):
    event_type: str = "session.retry.start"
    reason: str = ""  # "timeout", "error", "retry"
    attempt_number: int = 0


@dataclass
class RetrySuccess(Signal):
    event_type: str = "session.retry.success"


@dataclass
class RetryFailed(Signal):
    event_type: str = "session.retry.failed"
    error: str = ""


@dataclass
class SyncComplete(Signal):
    event_type: str = "session.sync.complete"
    total_messages: int = 0
    rehydrated_messages: int = 0
    total_diffs: int = 0
    rehydrated_diffs: int = 0


# Every signal name the client can emit, in subscription order.
SIGNAL_TYPES: tuple[str, ...] = tuple(
    cls.event_type for cls in (
        Connected, Disconnected, StreamError, RawEvent,
        SessionStatusChanged, ModelSwitched, RetryingAlternative,
        MessageDelta, SubagentProgress, MessageComplete,
        QuestionAsked, PermissionAsked, SessionError, SessionAuthError,
        SessionDiff, SessionUpdated, Passthrough, SessionLiveness,
        RetryStart, RetrySuccess, RetryFailed, SyncComplete,
    )
)


def _wire_key(name: str) -> str:
    """snake_case field name -> the camelCase key the UI reads."""
    head, *rest = name.split("_")
    if rest and rest[-1] == "id":
        rest[-1] = "ID"
        return head + "".join(p if p == "ID" else p.capitalize() for p in rest)
    return head + "".join(p.capitalize() for p in rest)


def signal_to_dict(signal: Signal) -> dict[str, Any]:
    """Convert a signal to its wire payload (without the event name)."""
    d: dict[str, Any] = {}
    for f in signal.__dataclass_fields__:
        if f == "event_type":
            continue
        val = getattr(signal, f)
        if val is not None:
            d[_wire_key(f)] = val
    return d
