"""Retry and model failover for stalled or failing sessions.

Two triggers converge on one recovery protocol:

    staleness timeout ──┐
                        ├──> stop monitor ──> retry.start ──> abort ──> settle
    error/retry status ─┘        ──> resend last prompt ──> retry.success | retry.failed

The timeout path counts attempts; the status path first switches the
session's current model to its secondary and does not count.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import replace

from octools.adapters.event_bus import EventBus
from octools.adapters.events import (
    ModelSwitched,
    RetryFailed,
    RetryingAlternative,
    RetryStart,
    RetrySuccess,
)

from .liveness import LivenessMonitor
from .models import PendingPrompt, SessionStatusType
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

# async def sender(session_id, prompt) -> Any
PromptSender = Callable[[str, PendingPrompt], Awaitable[object]]
# async def aborter(session_id) -> Any
SessionAborter = Callable[[str], Awaitable[object]]

NO_PENDING_PROMPT = "No pending prompt to retry"


class RetryController:
    """Aborts stalled remote operations and resubmits the last prompt."""

    def __init__(
        self,
        registry: SessionRegistry,
        bus: EventBus,
        monitor: LivenessMonitor,
        *,
        sender: PromptSender,
        aborter: SessionAborter,
        timeout_delay: float = 1.0,
        status_delay: float = 0.5,
    ) -> None:
        self._registry = registry
        self._bus = bus
        self._monitor = monitor
        self._sender = sender
        self._aborter = aborter
        self.timeout_delay = timeout_delay
        self.status_delay = status_delay
        self._tasks: set[asyncio.Task] = set()

    # ── Entry points ──

    def on_timeout(self, session_id: str) -> asyncio.Task:
        """Staleness trigger from the liveness monitor."""
        return self._spawn(
            session_id,
            self.retry(session_id, "timeout", count_attempt=True, delay=self.timeout_delay),
        )

    def fail_over(self, session_id: str, reason: str) -> bool:
        """Status-driven trigger: switch to the secondary model and retry.

        Returns False when the session has no distinct secondary model.
        """
        record = self._registry.peek(session_id)
        binding = record.binding if record is not None else None
        if binding is None or not binding.has_alternative():
            return False

        binding.current = binding.secondary
        model = binding.current.to_dict()
        logger.info(
            "Session %s switching to secondary model %s/%s (reason=%s)",
            session_id, binding.current.provider_id, binding.current.model_id, reason,
        )
        self._bus.emit(ModelSwitched(session_id=session_id, model=model, reason=reason))
        self._bus.emit(RetryingAlternative(session_id=session_id, model=model, reason=reason))
        self._spawn(
            session_id,
            self.retry(session_id, reason, count_attempt=False, delay=self.status_delay),
        )
        return True

    # ── Recovery protocol ──

    async def retry(
        self,
        session_id: str,
        reason: str,
        *,
        count_attempt: bool,
        delay: float,
    ) -> bool:
        """Abort, settle, and resend the session's pending prompt."""
        self._monitor.stop(session_id)
        record = self._registry.get(session_id)
        if count_attempt:
            record.retry_attempts += 1
        attempt = record.retry_attempts
        logger.info(
            "Retrying session %s (reason=%s, attempt=%d)", session_id, reason, attempt
        )
        self._bus.emit(RetryStart(session_id=session_id, reason=reason, attempt_number=attempt))

        try:
            await self._aborter(session_id)
        except Exception as exc:
            # The remote operation may already have stopped.
            logger.warning("Abort before retry failed for %s: %s", session_id, exc)

        await asyncio.sleep(delay)

        if self._registry.peek(session_id) is not record:
            logger.info("Session %s removed during retry; dropping it", session_id)
            return False

        prompt = record.pending_prompt
        if prompt is None:
            self._fail(session_id, NO_PENDING_PROMPT)
            return False

        try:
            # No explicit model: the send resolves the binding's current model.
            await self._sender(session_id, replace(prompt, model=None))
        except Exception as exc:
            self._fail(session_id, str(exc))
            return False

        record.retry_attempts = 0
        logger.info("Retry succeeded for session %s", session_id)
        self._bus.emit(RetrySuccess(session_id=session_id))
        # Monitoring was suspended for the retry; pick it back up if the
        # session is still reported busy.
        self._monitor.resume(session_id)
        return True

    def _fail(self, session_id: str, error: str) -> None:
        logger.error("Retry failed for session %s: %s", session_id, error)
        record = self._registry.peek(session_id)
        if record is not None:
            record.status = SessionStatusType.ERROR
        self._monitor.stop(session_id)
        self._bus.emit(RetryFailed(session_id=session_id, error=error))

    def _spawn(self, session_id: str, coro: Awaitable[bool]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=f"retry-{session_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Retry task crashed: %s", exc, exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait for every in-flight retry to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
