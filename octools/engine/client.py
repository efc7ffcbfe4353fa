"""OctoolsClient: the session runtime in front of the remote service.

Wires one inbound event stream through the normalizer into the tracker,
liveness monitor and recovery controller, and exposes the REST control
surface plus read-only accessors over per-session state.

Usage:
    async with OctoolsClient(ClientConfig(password="...")) as client:
        client.on("message.delta", print)
        await client.connect()
        session = await client.create_session(title="demo")
        reply = await client.send_message_and_wait(session["id"], "hello")
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import aiohttp

from octools.adapters.event_bus import EventBus, Listener
from octools.adapters.events import (
    Connected,
    Disconnected,
    Signal,
    SessionStatusChanged,
    StreamError,
    SyncComplete,
)

from .config import ClientConfig
from .errors import (
    AuthError,
    NoAssistantMessageError,
    RequestError,
    SessionFailedError,
)
from .event_log import RawEventEntry, RawEventLog
from .liveness import Clock, LivenessMonitor
from .models import (
    ACTIVE_STATUSES,
    ModelBinding,
    ModelDescriptor,
    PendingPrompt,
    SessionInfo,
    SessionStatusType,
)
from .normalizer import EventNormalizer
from .recovery import RetryController
from .registry import SessionRegistry
from .rest import RestClient
from .stream import iter_sse_data
from .sync import HistorySync
from .tracker import SessionTracker

logger = logging.getLogger(__name__)

SESSION_RESPONSIVE_THRESHOLD_SECONDS = 10.0


class OctoolsClient:
    """Client-side session runtime."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.config = config or ClientConfig.from_env()
        self._clock = clock

        self.bus = EventBus()
        self.registry = SessionRegistry()
        self.raw_log = RawEventLog(self.config.raw_event_capacity)
        self.rest = RestClient(self.config, session)

        self.monitor = LivenessMonitor(
            self.registry,
            self.bus,
            check_interval=self.config.liveness_check_interval_seconds,
            timeout=self.config.session_timeout_seconds,
            clock=clock,
        )
        self.controller = RetryController(
            self.registry,
            self.bus,
            self.monitor,
            sender=self._resend,
            aborter=self.abort_session,
            timeout_delay=self.config.timeout_retry_delay_seconds,
            status_delay=self.config.status_retry_delay_seconds,
        )
        self.monitor.on_stale = self.controller.on_timeout
        self.tracker = SessionTracker(
            self.registry, self.bus, self.monitor, self.controller, clock
        )
        self.normalizer = EventNormalizer(
            self.bus, self.tracker, self.controller, self.raw_log
        )
        self.history = HistorySync(
            self.rest,
            self.tracker,
            self.normalizer,
            self.bus,
            max_messages=self.config.history_max_messages,
            max_diffs=self.config.history_max_diffs,
            max_age_seconds=self.config.history_max_age_seconds,
        )

        self._response: aiohttp.ClientResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._last_heartbeat: float | None = None
        self._connect_lock = asyncio.Lock()

    async def __aenter__(self) -> OctoolsClient:
        if self.config.auto_connect:
            await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ── Event stream ──

    async def connect(self) -> None:
        """Open the event stream. A no-op while already connected.

        Overlapping calls share one handshake: later callers wait for the
        first and return without opening a second stream.
        """
        async with self._connect_lock:
            if self._response is not None:
                return
            await self._open_stream()

    async def _open_stream(self) -> None:
        url = f"{self.config.base_url}/event"
        headers = {"Accept": "text/event-stream", **self.config.auth_header}
        timeout = aiohttp.ClientTimeout(
            total=None, sock_connect=self.config.request_timeout_seconds
        )
        operation = "connect to event stream"
        try:
            resp = await self.rest.session.get(
                url, headers=headers, timeout=timeout
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("Event stream connection to %s failed: %s", url, exc)
            self.bus.emit(StreamError(message=str(exc) or type(exc).__name__))
            raise RequestError(operation, None, str(exc) or type(exc).__name__) from exc

        if resp.status != 200:
            body = await resp.text()
            resp.release()
            error = (
                AuthError(operation=operation)
                if resp.status == 401
                else RequestError(operation, resp.status, resp.reason or "", body)
            )
            logger.error("Event stream rejected: %s", error)
            self.bus.emit(StreamError(message=str(error)))
            raise error

        self._response = resp
        self._last_heartbeat = self._clock()
        logger.info("Connected to event stream at %s", url)
        self.bus.emit(Connected())
        self._reader_task = asyncio.get_running_loop().create_task(
            self._read_stream(resp), name="octools-event-stream"
        )

    async def _read_stream(self, resp: aiohttp.ClientResponse) -> None:
        try:
            async for data in iter_sse_data(resp.content):
                self._last_heartbeat = self._clock()
                self.normalizer.handle_frame(data)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Event stream error: %s", exc)
            self.bus.emit(StreamError(message=str(exc) or type(exc).__name__))

        if self._response is resp:
            self._reader_task = None
            self._close_stream()
            logger.info("Event stream closed by server")
            self.bus.emit(Disconnected())

    def _close_stream(self) -> bool:
        resp = self._response
        if resp is None:
            return False
        self._response = None
        resp.close()
        return True

    async def disconnect(self) -> None:
        """Close the event stream; emits ``disconnected`` if it was open."""
        task = self._reader_task
        self._reader_task = None
        was_connected = self._close_stream()
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if was_connected:
            logger.info("Disconnected from event stream")
            self.bus.emit(Disconnected())

    async def close(self) -> None:
        """Disconnect, stop every timer and retry, and release HTTP resources."""
        await self.disconnect()
        self.controller.cancel_all()
        for session_id in self.registry.session_ids():
            self.monitor.stop(session_id)
        await self.rest.close()
        self.bus.close()

    def is_connected(self) -> bool:
        return self._response is not None

    def is_connection_healthy(self, threshold_seconds: float | None = None) -> bool:
        """Connected, and a frame arrived within the threshold."""
        if not self.is_connected() or self._last_heartbeat is None:
            return False
        if threshold_seconds is None:
            threshold_seconds = self.config.heartbeat_threshold_seconds
        return (self._clock() - self._last_heartbeat) < threshold_seconds

    # ── Session state accessors ──

    def get_session_status(self, session_id: str) -> SessionStatusType:
        return self.tracker.status_of(session_id)

    def is_session_responsive(
        self,
        session_id: str,
        threshold_seconds: float = SESSION_RESPONSIVE_THRESHOLD_SECONDS,
    ) -> bool:
        """True unless a busy/retrying session has been silent past the threshold."""
        if self.get_session_status(session_id) not in ACTIVE_STATUSES:
            return True
        last = self.tracker.last_activity(session_id)
        if last is None:
            return False
        return (self._clock() - last) < threshold_seconds

    def is_monitoring(self, session_id: str) -> bool:
        return self.monitor.is_active(session_id)

    def get_model_binding(self, session_id: str) -> ModelBinding | None:
        record = self.registry.peek(session_id)
        return record.binding if record is not None else None

    def get_pending_prompt(self, session_id: str) -> PendingPrompt | None:
        record = self.registry.peek(session_id)
        return record.pending_prompt if record is not None else None

    def get_retry_attempts(self, session_id: str) -> int:
        record = self.registry.peek(session_id)
        return record.retry_attempts if record is not None else 0

    def pause_liveness_monitoring(self, session_id: str) -> None:
        logger.info("Liveness monitoring paused for %s", session_id)
        self.monitor.pause(session_id)

    def resume_liveness_monitoring(self, session_id: str) -> bool:
        resumed = self.monitor.resume(session_id)
        if resumed:
            logger.info("Liveness monitoring resumed for %s", session_id)
        return resumed

    def set_model_binding(
        self,
        session_id: str,
        primary: ModelDescriptor | dict | None,
        secondary: ModelDescriptor | dict | None = None,
    ) -> ModelBinding | None:
        return self.tracker.set_binding(
            session_id,
            ModelDescriptor.from_dict(primary),
            ModelDescriptor.from_dict(secondary),
        )

    def remove_session(self, session_id: str) -> None:
        """Forget a finished session. Stops its liveness timer first."""
        self.monitor.stop(session_id)
        self.registry.remove(session_id)

    @property
    def raw_events(self) -> list[RawEventEntry]:
        return self.raw_log.entries()

    def get_raw_events(self, session_id: str | None = None) -> list[RawEventEntry]:
        return self.raw_log.entries(session_id)

    # ── Signals ──

    def on(self, event_type: str, callback: Listener) -> None:
        self.bus.on(event_type, callback)

    def off(self, event_type: str, callback: Listener) -> None:
        self.bus.off(event_type, callback)

    def stream(self) -> AsyncIterator[Signal]:
        """Async iterator over every emitted signal."""
        return self.bus.consume()

    # ── Sessions ──

    async def create_session(
        self,
        *,
        title: str | None = None,
        agent: str | None = None,
        directory: str | None = None,
        model: ModelDescriptor | dict | None = None,
        secondary_model: ModelDescriptor | dict | None = None,
    ) -> dict[str, Any]:
        data = await self.rest.create_session(
            title=title,
            agent=agent,
            directory=directory,
            model=model,
            secondary_model=secondary_model,
        )
        session_id = data.get("id") if isinstance(data, dict) else None
        if session_id:
            self.registry.get(session_id).info = SessionInfo.from_dict(data)
            self.set_model_binding(session_id, model, secondary_model)
            logger.info("Created session %s", session_id)
        return data

    async def load_session(self, session_id: str) -> dict[str, Any]:
        return await self.rest.load_session(session_id)

    async def update_session(
        self, session_id: str, *, title: str | None = None
    ) -> dict[str, Any]:
        return await self.rest.update_session(session_id, title=title)

    async def list_sessions(
        self,
        *,
        limit: int = 20,
        search: str | None = None,
        start: int | None = None,
    ) -> list[dict[str, Any]]:
        return await self.rest.list_sessions(limit=limit, search=search, start=start)

    async def get_messages(
        self, session_id: str, limit: int | None = None
    ) -> list[dict[str, Any]]:
        return await self.rest.get_messages(session_id, limit)

    async def get_diffs(self, session_id: str) -> list[dict[str, Any]]:
        return await self.rest.get_diffs(session_id)

    async def abort_session(self, session_id: str) -> None:
        await self.rest.abort_session(session_id)

    async def reply_to_question(self, request_id: str, answers: list[Any]) -> None:
        await self.rest.reply_to_question(request_id, answers)

    async def reply_to_permission(self, request_id: str, approved: bool) -> None:
        await self.rest.reply_to_permission(request_id, approved)

    async def get_agents(self) -> list[dict[str, Any]]:
        return await self.rest.get_agents()

    async def get_config(self) -> dict[str, Any]:
        return await self.rest.get_config()

    async def patch_config(self, updates: dict[str, Any]) -> dict[str, Any]:
        return await self.rest.patch_config(updates)

    async def list_providers(self) -> dict[str, Any]:
        return await self.rest.list_providers()

    async def list_connected_models(self) -> list[dict[str, str]]:
        return await self.rest.list_connected_models()

    async def sync_session(self, session_id: str) -> SyncComplete:
        return await self.history.sync(session_id)

    # ── Messages ──

    async def send_message(
        self,
        session_id: str,
        text: str,
        *,
        agent: str | None = None,
        model: ModelDescriptor | dict | None = None,
        system: str | None = None,
    ) -> dict[str, Any] | None:
        """Send user text. Without an explicit model the binding's current one is used.

        The prompt is remembered for resubmission only after a successful send.
        """
        override = ModelDescriptor.from_dict(model)
        resolved = override
        if resolved is None:
            binding = self.get_model_binding(session_id)
            resolved = binding.current if binding is not None else None
        result = await self.rest.send_message(
            session_id, text, agent=agent, model=resolved, system=system
        )
        self.registry.get(session_id).pending_prompt = PendingPrompt(
            text=text, agent=agent, model=override, system=system
        )
        return result

    async def _resend(self, session_id: str, prompt: PendingPrompt) -> Any:
        return await self.send_message(
            session_id,
            prompt.text,
            agent=prompt.agent,
            model=prompt.model,
            system=prompt.system,
        )

    async def send_message_and_wait(
        self,
        session_id: str,
        text: str,
        *,
        agent: str | None = None,
        model: ModelDescriptor | dict | None = None,
        system: str | None = None,
        poll_interval: float = 0.2,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send and wait for the session to settle, returning the assistant reply.

        Raises SessionFailedError if the session enters ``error`` and
        NoAssistantMessageError if no assistant message can be found.
        """
        settled: asyncio.Future[SessionStatusType] = asyncio.get_running_loop().create_future()

        def on_status(signal: SessionStatusChanged) -> None:
            if signal.session_id != session_id or settled.done():
                return
            status = SessionStatusType.parse(signal.status)
            if status in (SessionStatusType.IDLE, SessionStatusType.ERROR):
                settled.set_result(status)

        self.bus.on("session.status", on_status)
        try:
            await self.send_message(
                session_id, text, agent=agent, model=model, system=system
            )
            status = await asyncio.wait_for(
                self._await_settled(session_id, settled, poll_interval), timeout
            )
        finally:
            self.bus.off("session.status", on_status)
            if not settled.done():
                settled.cancel()

        if status is SessionStatusType.ERROR:
            raise SessionFailedError(session_id)
        return await self._latest_assistant_message(session_id)

    async def _await_settled(
        self,
        session_id: str,
        settled: asyncio.Future[SessionStatusType],
        poll_interval: float,
    ) -> SessionStatusType:
        # With a stream open, a polled idle/error only counts once the session
        # has been seen working, so a status left over from the previous turn
        # is ignored. Without one the tracked status never moves, so it is
        # taken as is.
        seen_active = not self.is_connected()
        while not settled.done():
            status = self.get_session_status(session_id)
            if status in ACTIVE_STATUSES:
                seen_active = True
            elif seen_active:
                return status
            try:
                await asyncio.wait_for(asyncio.shield(settled), poll_interval)
            except asyncio.TimeoutError:
                continue
        return settled.result()

    async def _latest_assistant_message(self, session_id: str) -> dict[str, Any]:
        messages = await self.rest.get_messages(session_id, limit=5)
        for message in reversed(messages):
            if not isinstance(message, dict):
                continue
            info = message.get("info")
            if isinstance(info, dict) and info.get("role") == "assistant":
                return message
        raise NoAssistantMessageError(session_id)
