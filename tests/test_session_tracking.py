from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from octools.engine.client import OctoolsClient
from octools.engine.config import ClientConfig
from octools.engine.models import ModelDescriptor, SessionStatusType

PRIMARY = ModelDescriptor("anthropic", "claude-sonnet")
SECONDARY = ModelDescriptor("openai", "gpt-large")


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _build_client(clock: _Clock | None = None) -> OctoolsClient:
    config = ClientConfig(
        liveness_check_interval_seconds=60,
        session_timeout_seconds=10,
        timeout_retry_delay_seconds=0,
        status_retry_delay_seconds=0,
    )
    client = OctoolsClient(config, clock=clock or _Clock())
    client.rest.send_message = AsyncMock(return_value={"info": {"id": "msg"}})
    client.rest.abort_session = AsyncMock(return_value=None)
    return client


def _frame(event_type: str, **properties) -> str:
    return json.dumps({"type": event_type, "properties": properties})


def _status(session_id: str, status: str) -> str:
    return _frame("session.status", sessionID=session_id, status={"type": status})


def _record(client: OctoolsClient) -> list:
    signals: list = []
    client.on("*", signals.append)
    return signals


# ── Status state machine ──


@pytest.mark.asyncio
async def test_monitoring_runs_only_while_busy() -> None:
    client = _build_client()
    for status in ("busy", "idle", "busy", "retry", "busy", "error", "busy"):
        client.normalizer.handle_frame(_status("s1", status))
        assert client.is_monitoring("s1") == (status == "busy")
        assert client.get_session_status("s1") is SessionStatusType(status)
    await client.close()


@pytest.mark.asyncio
async def test_repeated_busy_does_not_restart_monitor() -> None:
    client = _build_client()
    client.normalizer.handle_frame(_status("s1", "busy"))
    task = client.registry.get("s1").liveness_task
    client.normalizer.handle_frame(_status("s1", "busy"))

    assert client.registry.get("s1").liveness_task is task
    assert not task.cancelled()
    await client.close()


@pytest.mark.asyncio
async def test_status_signal_carries_previous_status() -> None:
    client = _build_client()
    signals = _record(client)
    client.normalizer.handle_frame(_status("s1", "busy"))
    client.normalizer.handle_frame(_status("s1", "idle"))

    changes = [s for s in signals if s.event_type == "session.status"]
    assert [(s.status, s.previous_status) for s in changes] == [
        ("busy", None),
        ("idle", "busy"),
    ]
    assert changes[0].details == {"type": "busy"}
    await client.close()


def test_unknown_session_defaults_to_idle() -> None:
    client = _build_client()
    assert client.get_session_status("nope") is SessionStatusType.IDLE
    assert client.is_session_responsive("nope")
    assert not client.is_monitoring("nope")


@pytest.mark.asyncio
async def test_busy_records_activity_and_responsiveness() -> None:
    clock = _Clock(500.0)
    client = _build_client(clock)
    client.normalizer.handle_frame(_status("s1", "busy"))
    assert client.tracker.last_activity("s1") == 500.0
    assert client.is_session_responsive("s1")

    clock.now = 511.0
    assert not client.is_session_responsive("s1")
    assert client.is_session_responsive("s1", threshold_seconds=20)
    await client.close()


# ── Dispatch ──


def test_every_frame_is_logged_and_announced() -> None:
    client = _build_client()
    signals = _record(client)
    client.normalizer.handle_frame(_frame("server.connected"))
    client.normalizer.handle_frame(_frame("server.heartbeat"))

    assert [s.event_type for s in signals] == ["raw.event", "raw.event"]
    assert len(client.raw_events) == 2


def test_malformed_frame_is_dropped_and_stream_continues() -> None:
    client = _build_client()
    signals = _record(client)
    assert client.normalizer.handle_frame("{not json") is None
    assert client.raw_events == []

    client.normalizer.handle_frame(_frame("session.updated", sessionID="s1", info={}))
    assert [s.event_type for s in signals] == ["raw.event", "session.updated"]


def test_part_update_emits_progress_and_delta() -> None:
    clock = _Clock(42.0)
    client = _build_client(clock)
    signals = _record(client)
    part = {
        "id": "p1",
        "messageID": "m1",
        "sessionID": "s1",
        "type": "tool",
        "tool": "bash",
        "state": {"status": "completed"},
    }
    client.normalizer.handle_frame(_frame("message.part.updated", part=part, delta=None))

    progress = next(s for s in signals if s.event_type == "subagent.progress")
    assert (progress.agent, progress.task, progress.status) == ("agent", "bash", "completed")
    assert progress.message_id == "m1"
    delta = next(s for s in signals if s.event_type == "message.delta")
    assert delta.part == part
    assert delta.part_id == "p1"
    assert client.tracker.last_activity("s1") == 42.0


def test_text_part_emits_only_delta() -> None:
    client = _build_client()
    signals = _record(client)
    part = {"id": "p1", "messageID": "m1", "sessionID": "s1", "type": "text"}
    client.normalizer.handle_frame(_frame("message.part.updated", part=part, delta="Hel"))

    names = [s.event_type for s in signals]
    assert "subagent.progress" not in names
    assert signals[-1].delta == "Hel"


def test_message_updated_only_tracks_assistant_messages() -> None:
    client = _build_client()
    signals = _record(client)
    client.normalizer.handle_frame(_frame(
        "message.updated", info={"id": "u1", "sessionID": "s1", "role": "user"},
    ))
    assert client.tracker.last_activity("s1") is None

    client.normalizer.handle_frame(_frame(
        "message.updated", info={"id": "a1", "sessionID": "s1", "role": "assistant"},
    ))
    assert client.tracker.last_activity("s1") is not None
    assert not any(s.event_type == "message.complete" for s in signals)

    client.normalizer.handle_frame(_frame(
        "message.updated",
        info={"id": "a1", "sessionID": "s1", "role": "assistant", "finish": "stop"},
    ))
    complete = [s for s in signals if s.event_type == "message.complete"]
    assert len(complete) == 1
    assert complete[0].message_id == "a1"
    assert complete[0].historical is None


def test_question_and_permission_signals() -> None:
    client = _build_client()
    signals = _record(client)
    client.normalizer.handle_frame(_frame("question.asked", id="q1", sessionID="s1"))
    client.normalizer.handle_frame(_frame("permission.asked", id="perm1", sessionID="s1"))

    question = next(s for s in signals if s.event_type == "question")
    permission = next(s for s in signals if s.event_type == "permission")
    assert question.request_id == "q1"
    assert permission.request_id == "perm1"
    assert permission.properties["sessionID"] == "s1"
    assert client.tracker.last_activity("s1") is not None


def test_unrecognized_event_passes_through() -> None:
    client = _build_client()
    signals = _record(client)
    client.normalizer.handle_frame(_frame("file.edited", sessionID="s1", file="a.py"))

    passthrough = signals[-1]
    assert passthrough.event_type == "event"
    assert passthrough.event == {
        "type": "file.edited",
        "properties": {"sessionID": "s1", "file": "a.py"},
    }


def test_diff_is_passed_through() -> None:
    client = _build_client()
    signals = _record(client)
    client.normalizer.handle_frame(_frame("session.diff", sessionID="s1", diff=[{"file": "a"}]))

    assert signals[-1].event_type == "session.diff"
    assert signals[-1].properties["diff"] == [{"file": "a"}]


# ── Session errors and failover ──


@pytest.mark.asyncio
async def test_auth_error_with_secondary_model_switches() -> None:
    client = _build_client()
    signals = _record(client)
    client.set_model_binding("s1", PRIMARY, SECONDARY)
    await client.send_message("s1", "hello")

    client.normalizer.handle_frame(_frame(
        "session.error",
        sessionID="s1",
        error={"name": "APIError", "data": {"message": "nope"}, "statusCode": 401},
    ))

    names = [s.event_type for s in signals if s.event_type != "raw.event"]
    assert names[:4] == [
        "session.error.auth",
        "session.error",
        "session.model_switched",
        "session.retrying_alternative",
    ]
    auth = signals[[s.event_type for s in signals].index("session.error.auth")]
    assert auth.error["name"] == "AuthError"
    switched = next(s for s in signals if s.event_type == "session.model_switched")
    assert switched.reason == "error"
    assert switched.model == SECONDARY.to_dict()
    assert client.get_model_binding("s1").current == SECONDARY

    await client.controller.wait_idle()
    await client.close()


@pytest.mark.asyncio
async def test_plain_error_without_secondary_does_not_fail_over() -> None:
    client = _build_client()
    signals = _record(client)
    client.set_model_binding("s1", PRIMARY)
    client.normalizer.handle_frame(_frame(
        "session.error", sessionID="s1", error={"name": "APIError", "message": "overloaded"},
    ))

    names = [s.event_type for s in signals]
    assert "session.error" in names
    assert "session.error.auth" not in names
    assert "session.model_switched" not in names
    error = next(s for s in signals if s.event_type == "session.error")
    assert error.is_auth_error is False
    await client.close()


@pytest.mark.asyncio
async def test_failover_happens_once() -> None:
    client = _build_client()
    signals = _record(client)
    client.set_model_binding("s1", PRIMARY, SECONDARY)
    await client.send_message("s1", "hello")

    client.normalizer.handle_frame(_status("s1", "retry"))
    await client.controller.wait_idle()
    client.normalizer.handle_frame(_status("s1", "retry"))
    await client.controller.wait_idle()

    switched = [s for s in signals if s.event_type == "session.model_switched"]
    assert len(switched) == 1
    assert switched[0].reason == "retry"
    await client.close()


@pytest.mark.asyncio
async def test_remove_session_stops_timer_and_forgets_state() -> None:
    client = _build_client()
    client.normalizer.handle_frame(_status("s1", "busy"))
    task = client.registry.get("s1").liveness_task

    client.remove_session("s1")
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert "s1" not in client.registry
    assert task.done()
    assert client.get_session_status("s1") is SessionStatusType.IDLE
    await client.close()
