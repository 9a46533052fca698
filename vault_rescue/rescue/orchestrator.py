from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable

from vault_rescue.common import log_event

from .engine import RedeemAttemptEngine
from .types import RescueReason, RescueSession, RescueTrigger, SessionReport

SessionFinishedHandler = Callable[[SessionReport], Awaitable[None]]


class RescueOrchestrator:
    """Single-flight gate in front of the redeem attempt engine.

    ``submit_trigger`` is only ever called from the event loop thread, so the
    check of ``_active_session`` and its assignment happen without an
    intervening await and act as a try-lock. Triggers arriving while a
    session runs only overwrite ``pending_reason``; they are not replayed
    when the session ends.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        engine: RedeemAttemptEngine,
        on_session_finished: SessionFinishedHandler | None = None,
    ) -> None:
        self._logger = logger
        self._engine = engine
        self._on_session_finished = on_session_finished
        self._active_session: RescueSession | None = None
        self._active_task: asyncio.Task[None] | None = None
        self.pending_reason: RescueReason | None = None
        self.sessions_started = 0
        self.last_report: SessionReport | None = None

    @property
    def busy(self) -> bool:
        return self._active_session is not None

    @property
    def active_session(self) -> RescueSession | None:
        return self._active_session

    def submit_trigger(self, trigger: RescueTrigger) -> bool:
        if self._active_session is not None:
            self.pending_reason = trigger.reason
            self._active_session.pending_reason = trigger.reason
            log_event(
                self._logger,
                level="info",
                event="rescue_trigger_coalesced",
                message="Rescue already in progress; trigger recorded and dropped",
                reason=trigger.reason.value,
                active_session_id=self._active_session.session_id,
            )
            return False

        session = self._engine.new_session(trigger)
        self._active_session = session
        self.pending_reason = None
        self.sessions_started += 1
        log_event(
            self._logger,
            level="info",
            event="rescue_session_started",
            message=f"--- Rescue triggered by: {trigger.reason.value} ---",
            session_id=session.session_id,
            trigger=trigger.to_dict(),
        )
        self._active_task = asyncio.create_task(
            self._run_session(session),
            name=f"rescue-session-{session.session_id}",
        )
        return True

    async def wait_idle(self) -> None:
        task = self._active_task
        if task is not None:
            await asyncio.shield(task)

    async def shutdown(self) -> None:
        """Cancel the running session on process shutdown."""
        task = self._active_task
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run_session(self, session: RescueSession) -> None:
        try:
            report = await self._engine.run(session)
            self.last_report = report
            log_event(
                self._logger,
                level="info" if report.detail != "retries_exhausted" else "error",
                event="rescue_session_finished",
                message=_finish_message(report),
                **report.to_dict(),
                discarded_pending_reason=(
                    session.pending_reason.value if session.pending_reason is not None else None
                ),
            )
            if self._on_session_finished is not None:
                await self._on_session_finished(report)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            log_event(
                self._logger,
                level="exception",
                event="rescue_session_error",
                message="Rescue session failed unexpectedly",
                session_id=session.session_id,
                state=session.state.value,
                error=str(error),
            )
        finally:
            self._active_session = None
            self._active_task = None


def _finish_message(report: SessionReport) -> str:
    if report.detail == "redeemed":
        return "Redeem successful"
    if report.detail == "dry_run_not_sent":
        return "Dry run finished; redeem not sent"
    if report.detail == "retries_exhausted":
        return "Redeem attempts exhausted"
    if report.detail == "shutdown_requested":
        return "Redeem retries abandoned on shutdown"
    if report.detail == "sizing_query_failed":
        return "Share query failed; nothing to rescue this session"
    return "No vault shares to rescue"


async def run_trigger_dispatcher(
    *,
    logger: logging.Logger,
    queue: asyncio.Queue[RescueTrigger],
    orchestrator: RescueOrchestrator,
    stop_event: asyncio.Event,
) -> None:
    while not stop_event.is_set():
        trigger = await queue.get()
        try:
            orchestrator.submit_trigger(trigger)
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="rescue_dispatch_error",
                message="Failed to dispatch rescue trigger",
                reason=trigger.reason.value,
                error=str(error),
            )
        finally:
            queue.task_done()


def enqueue_trigger(
    queue: asyncio.Queue[RescueTrigger],
    trigger: RescueTrigger,
    *,
    logger: logging.Logger,
) -> None:
    """Queue a trigger, evicting the oldest one when the queue is full."""
    while True:
        try:
            queue.put_nowait(trigger)
            return
        except asyncio.QueueFull:
            try:
                dropped = queue.get_nowait()
            except asyncio.QueueEmpty:
                continue
            queue.task_done()
            log_event(
                logger,
                level="warning",
                event="rescue_trigger_queue_full",
                message="Trigger queue full; dropped oldest trigger",
                dropped_reason=dropped.reason.value,
                reason=trigger.reason.value,
            )
