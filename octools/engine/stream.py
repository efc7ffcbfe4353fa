"""Inbound event stream decoding.

Each server-push frame is decoded once, at the boundary, into one of
the typed events below. Unrecognized types become UnknownEvent so they
pass through rather than being dropped.

Frame envelope:
    {"type": "...", "properties": {...}}
or wrapped:
    {"directory": "...", "payload": {"type": "...", "properties": {...}}}
"""
from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from .models import SessionStatusType

logger = logging.getLogger(__name__)


@dataclass
class StreamEvent:
    """Base inbound event."""
    type: str = ""
    properties: dict = field(default_factory=dict)
    session_id: str | None = None
    directory: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "properties": self.properties}


@dataclass
class ServerConnected(StreamEvent):
    pass


@dataclass
class ServerHeartbeat(StreamEvent):
    pass


@dataclass
class StatusEvent(StreamEvent):
    status: SessionStatusType = SessionStatusType.IDLE
    details: dict = field(default_factory=dict)


@dataclass
class PartUpdatedEvent(StreamEvent):
    part: dict = field(default_factory=dict)
    delta: str | None = None


@dataclass
class MessageUpdatedEvent(StreamEvent):
    info: dict = field(default_factory=dict)


@dataclass
class QuestionEvent(StreamEvent):
    pass


@dataclass
class PermissionEvent(StreamEvent):
    pass


@dataclass
class ErrorEvent(StreamEvent):
    error: dict = field(default_factory=dict)


@dataclass
class DiffEvent(StreamEvent):
    pass


@dataclass
class SessionUpdatedEvent(StreamEvent):
    pass


@dataclass
class UnknownEvent(StreamEvent):
    pass


class FrameError(ValueError):
    """A frame could not be decoded into an event envelope."""


# Where a session id may live in ``properties``, in precedence order.
_SESSION_ID_PATHS: tuple[tuple[str, ...], ...] = (
    ("sessionID",),
    ("info", "sessionID"),
    ("part", "sessionID"),
)


def _dig(data: Any, path: tuple[str, ...]) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _first_of(data: Any, paths: tuple[tuple[str, ...], ...], default: Any) -> Any:
    """First truthy value found along *paths*, else *default*."""
    for path in paths:
        value = _dig(data, path)
        if value:
            return value
    return default


def extract_session_id(properties: dict[str, Any]) -> str | None:
    value = _first_of(properties, _SESSION_ID_PATHS, None)
    return str(value) if value is not None else None


# Display fields for tool/subtask progress. Each is an ordered list of
# lookups with a literal final default.
PROGRESS_AGENT_PATHS = (("metadata", "subagent_type"), ("state", "agent"))
PROGRESS_AGENT_DEFAULT = "agent"
PROGRESS_TASK_PATHS = (("metadata", "description"), ("state", "title"), ("tool",))
PROGRESS_TASK_DEFAULT = "working"
PROGRESS_STATUS_PATHS = (("state", "status"),)
PROGRESS_STATUS_DEFAULT = "running"

PROGRESS_PART_TYPES = frozenset({"tool", "subtask"})


def derive_progress(part: dict[str, Any]) -> dict[str, str]:
    """Extract ``{agent, task, status}`` for a tool or subtask part."""
    return {
        "agent": _first_of(part, PROGRESS_AGENT_PATHS, PROGRESS_AGENT_DEFAULT),
        "task": _first_of(part, PROGRESS_TASK_PATHS, PROGRESS_TASK_DEFAULT),
        "status": _first_of(part, PROGRESS_STATUS_PATHS, PROGRESS_STATUS_DEFAULT),
    }


def _decode_status(base: dict[str, Any], props: dict[str, Any]) -> StreamEvent:
    status = props.get("status")
    raw_type = status.get("type") if isinstance(status, dict) else status
    parsed = SessionStatusType.parse(raw_type)
    if parsed is None:
        logger.warning("Unrecognized session status %r; passing through", raw_type)
        return UnknownEvent(**base)
    details = status if isinstance(status, dict) else {"type": raw_type}
    return StatusEvent(**base, status=parsed, details=details)


def _decode_part(base: dict[str, Any], props: dict[str, Any]) -> StreamEvent:
    part = props.get("part")
    return PartUpdatedEvent(
        **base,
        part=part if isinstance(part, dict) else {},
        delta=props.get("delta"),
    )


def _decode_message(base: dict[str, Any], props: dict[str, Any]) -> StreamEvent:
    info = props.get("info")
    return MessageUpdatedEvent(**base, info=info if isinstance(info, dict) else {})


def _decode_error(base: dict[str, Any], props: dict[str, Any]) -> StreamEvent:
    error = props.get("error")
    return ErrorEvent(**base, error=error if isinstance(error, dict) else {})


_DECODERS = {
    "server.connected": lambda base, props: ServerConnected(**base),
    "server.heartbeat": lambda base, props: ServerHeartbeat(**base),
    "session.status": _decode_status,
    "message.part.updated": _decode_part,
    "message.updated": _decode_message,
    "question.asked": lambda base, props: QuestionEvent(**base),
    "permission.asked": lambda base, props: PermissionEvent(**base),
    "session.error": _decode_error,
    "session.diff": lambda base, props: DiffEvent(**base),
    "session.updated": lambda base, props: SessionUpdatedEvent(**base),
}


def unwrap_envelope(payload: Any) -> tuple[dict[str, Any], str | None]:
    """Return the inner ``{type, properties}`` envelope and its directory."""
    if not isinstance(payload, dict):
        raise FrameError(f"frame is not an object: {type(payload).__name__}")
    directory = None
    if "type" not in payload and isinstance(payload.get("payload"), dict):
        directory = payload.get("directory")
        payload = payload["payload"]
    if not isinstance(payload.get("type"), str):
        raise FrameError("frame has no event type")
    return payload, directory


def decode_event(envelope: dict[str, Any], directory: str | None = None) -> StreamEvent:
    """Decode an unwrapped envelope into a typed StreamEvent."""
    props = envelope.get("properties")
    if not isinstance(props, dict):
        props = {}
    base = {
        "type": envelope["type"],
        "properties": props,
        "session_id": extract_session_id(props),
        "directory": directory,
    }
    decoder = _DECODERS.get(envelope["type"])
    if decoder is None:
        return UnknownEvent(**base)
    return decoder(base, props)


def parse_frame(data: str) -> tuple[dict[str, Any], StreamEvent]:
    """Parse one frame's text. Raises FrameError (a ValueError) if malformed."""
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise FrameError(f"invalid JSON: {exc}") from exc
    envelope, directory = unwrap_envelope(payload)
    return envelope, decode_event(envelope, directory)


async def iter_sse_data(lines: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield the ``data`` payload of each server-sent event.

    Multi-line data fields are joined with newlines; comments and other
    fields are ignored.
    """
    buffer: list[str] = []
    async for raw in lines:
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if name == "data":
            buffer.append(value[1:] if value.startswith(" ") else value)
    if buffer:
        yield "\n".join(buffer)
