"""Event normalizer: inbound frames -> state transitions + signals.

Every frame is logged to the raw event log and announced as
``raw.event`` before dispatch. Malformed frames are logged and dropped;
nothing here may raise into the stream reader.
"""
from __future__ import annotations

import logging
from typing import Any

from octools.adapters.event_bus import EventBus
from octools.adapters.events import (
    MessageComplete,
    MessageDelta,
    Passthrough,
    PermissionAsked,
    QuestionAsked,
    RawEvent,
    SessionAuthError,
    SessionDiff,
    SessionError,
    SessionUpdated,
    SubagentProgress,
)

from .errors import AuthError, is_auth_error
from .event_log import RawEventLog
from .recovery import RetryController
from .stream import (
    PROGRESS_PART_TYPES,
    DiffEvent,
    ErrorEvent,
    FrameError,
    MessageUpdatedEvent,
    PartUpdatedEvent,
    PermissionEvent,
    QuestionEvent,
    ServerConnected,
    ServerHeartbeat,
    SessionUpdatedEvent,
    StatusEvent,
    StreamEvent,
    derive_progress,
    parse_frame,
)
from .tracker import SessionTracker

logger = logging.getLogger(__name__)


class EventNormalizer:
    """Decodes frames and dispatches them by event kind."""

    def __init__(
        self,
        bus: EventBus,
        tracker: SessionTracker,
        controller: RetryController,
        raw_log: RawEventLog,
    ) -> None:
        self._bus = bus
        self._tracker = tracker
        self._controller = controller
        self.raw_log = raw_log

    def handle_frame(self, data: str) -> StreamEvent | None:
        """Process one frame's text. Returns the decoded event, or None if dropped."""
        try:
            envelope, event = parse_frame(data)
        except FrameError as exc:
            logger.error("Failed to parse event frame (dropped): %s", exc)
            return None

        entry = self.raw_log.append(envelope)
        self._bus.emit(RawEvent(
            session_id=event.session_id,
            timestamp=entry.timestamp,
            payload=envelope,
        ))
        try:
            self.dispatch(event)
        except Exception:
            logger.exception(
                "Error dispatching %s for session %s (stream continues)",
                event.type, event.session_id,
            )
        return event

    def dispatch(self, event: StreamEvent) -> None:
        logger.debug("Dispatch %s session=%s", event.type, event.session_id)
        sid = event.session_id

        if isinstance(event, (ServerConnected, ServerHeartbeat)):
            # Heartbeat time is updated by the stream reader on every frame.
            return
        elif isinstance(event, StatusEvent):
            if sid:
                self._tracker.apply_status(sid, event.status, event.details)
        elif isinstance(event, PartUpdatedEvent):
            self._on_part_updated(event)
        elif isinstance(event, MessageUpdatedEvent):
            self._on_message_updated(event)
        elif isinstance(event, QuestionEvent):
            if sid:
                self._tracker.record_activity(sid)
                self._bus.emit(QuestionAsked(
                    session_id=sid,
                    request_id=_request_id(event.properties),
                    properties=event.properties,
                ))
        elif isinstance(event, PermissionEvent):
            if sid:
                self._tracker.record_activity(sid)
                self._bus.emit(PermissionAsked(
                    session_id=sid,
                    request_id=_request_id(event.properties),
                    properties=event.properties,
                ))
        elif isinstance(event, ErrorEvent):
            self._on_session_error(event)
        elif isinstance(event, DiffEvent):
            self.emit_diff(sid, event.properties)
        elif isinstance(event, SessionUpdatedEvent):
            self._bus.emit(SessionUpdated(session_id=sid, properties=event.properties))
        else:
            self._bus.emit(Passthrough(session_id=sid, event=event.to_dict()))

    # ── Handlers ──

    def _on_part_updated(self, event: PartUpdatedEvent) -> None:
        sid = event.part.get("sessionID")
        if not sid:
            return
        self._tracker.record_activity(sid)
        self.emit_part(sid, event.part, event.delta)

    def _on_message_updated(self, event: MessageUpdatedEvent) -> None:
        info = event.info
        sid = info.get("sessionID")
        if not sid or info.get("role") != "assistant":
            return
        self._tracker.record_activity(sid)
        if info.get("finish"):
            self.emit_completion(sid, info)

    def _on_session_error(self, event: ErrorEvent) -> None:
        sid = event.session_id
        error = event.error
        if not sid or not error:
            self._bus.emit(Passthrough(session_id=sid, event=event.to_dict()))
            return

        auth = is_auth_error(error)
        if auth:
            auth_error = AuthError(error.get("message") or "Authentication failed", details=error)
            logger.warning("Session %s reported an auth error: %s", sid, auth_error)
            self._bus.emit(SessionAuthError(session_id=sid, error=auth_error.to_dict()))
        else:
            logger.warning(
                "Session %s reported error %s: %s",
                sid, error.get("name"), error.get("message"),
            )
        self._bus.emit(SessionError(session_id=sid, error=error, is_auth_error=auth))
        self._controller.fail_over(sid, "error")

    # ── Emission surface shared with history replay ──

    def emit_part(
        self,
        session_id: str,
        part: dict[str, Any],
        delta: str | None,
        historical: bool | None = None,
    ) -> None:
        if part.get("type") in PROGRESS_PART_TYPES:
            progress = derive_progress(part)
            self._bus.emit(SubagentProgress(
                session_id=session_id,
                message_id=part.get("messageID"),
                part_id=part.get("id"),
                historical=historical,
                **progress,
            ))
        self._bus.emit(MessageDelta(
            session_id=session_id,
            message_id=part.get("messageID"),
            part_id=part.get("id"),
            delta=delta,
            part=part,
            historical=historical,
        ))

    def emit_completion(
        self,
        session_id: str,
        info: dict[str, Any],
        parts: list[dict[str, Any]] | None = None,
        historical: bool | None = None,
    ) -> None:
        self._bus.emit(MessageComplete(
            session_id=session_id,
            message_id=info.get("id"),
            message=info,
            parts=parts,
            historical=historical,
        ))

    def emit_diff(
        self,
        session_id: str | None,
        properties: dict[str, Any],
        historical: bool | None = None,
    ) -> None:
        self._bus.emit(SessionDiff(
            session_id=session_id,
            properties=properties,
            historical=historical,
        ))


def _request_id(properties: dict[str, Any]) -> str | None:
    value = properties.get("id") or properties.get("requestID")
    return str(value) if value is not None else None
