from __future__ import annotations

import asyncio
import logging
import unittest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from vault_rescue.bot_runtime.loop import (
    bootstrap_dependencies,
    build_session_reporter,
    log_startup_summary,
    run_rescue_runtime,
)
from vault_rescue.rescue.types import RescueReason, SessionReport, SessionState, WatcherConnectionLost

LOGGER = logging.getLogger("test.runtime")


def _make_orchestrator() -> MagicMock:
    orchestrator = MagicMock()
    orchestrator.submit_trigger = MagicMock(return_value=True)
    orchestrator.shutdown = AsyncMock()
    return orchestrator


def _idle_component(stop_event: asyncio.Event) -> MagicMock:
    component = MagicMock()

    async def _run() -> None:
        await stop_event.wait()

    component.run = _run
    return component


class RunRescueRuntimeTests(unittest.IsolatedAsyncioTestCase):
    async def test_startup_trigger_dispatched_and_stop_returns(self) -> None:
        stop_event = asyncio.Event()
        queue: asyncio.Queue = asyncio.Queue(maxsize=4)
        orchestrator = _make_orchestrator()

        def _submit(trigger: object) -> bool:
            stop_event.set()
            return True

        orchestrator.submit_trigger.side_effect = _submit

        await asyncio.wait_for(
            run_rescue_runtime(
                logger=LOGGER,
                stop_event=stop_event,
                queue=queue,
                orchestrator=orchestrator,
                watcher=_idle_component(stop_event),
                patrol=_idle_component(stop_event),
            ),
            timeout=1.0,
        )

        orchestrator.submit_trigger.assert_called_once()
        self.assertEqual(orchestrator.submit_trigger.call_args.args[0].reason, RescueReason.STARTUP)
        orchestrator.shutdown.assert_awaited_once()

    async def test_active_session_cancelled_before_tasks_drain(self) -> None:
        stop_event = asyncio.Event()
        order: list[str] = []
        orchestrator = _make_orchestrator()
        orchestrator.shutdown = AsyncMock(side_effect=lambda: order.append("session_cancelled"))

        def _submit(trigger: object) -> bool:
            stop_event.set()
            return True

        orchestrator.submit_trigger.side_effect = _submit
        watcher = MagicMock()

        async def _watch_forever() -> None:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                order.append("watcher_cancelled")
                raise

        watcher.run = _watch_forever

        await asyncio.wait_for(
            run_rescue_runtime(
                logger=LOGGER,
                stop_event=stop_event,
                queue=asyncio.Queue(maxsize=4),
                orchestrator=orchestrator,
                watcher=watcher,
                patrol=_idle_component(stop_event),
            ),
            timeout=1.0,
        )

        self.assertEqual(order, ["session_cancelled", "watcher_cancelled"])

    async def test_watcher_failure_propagates_after_cleanup(self) -> None:
        stop_event = asyncio.Event()
        orchestrator = _make_orchestrator()
        watcher = MagicMock()
        watcher.run = AsyncMock(side_effect=WatcherConnectionLost("ws closed"))

        with self.assertRaises(WatcherConnectionLost):
            await asyncio.wait_for(
                run_rescue_runtime(
                    logger=LOGGER,
                    stop_event=stop_event,
                    queue=asyncio.Queue(maxsize=4),
                    orchestrator=orchestrator,
                    watcher=watcher,
                    patrol=_idle_component(stop_event),
                ),
                timeout=1.0,
            )

        orchestrator.shutdown.assert_awaited_once()


class BootstrapTests(unittest.IsolatedAsyncioTestCase):
    async def test_bootstrap_retries_until_vault_connects(self) -> None:
        vault = MagicMock()
        vault.connect = AsyncMock(side_effect=[ConnectionError("rpc down"), None])
        vault.close = AsyncMock()
        settings = SimpleNamespace(error_backoff_seconds=2.0)

        with patch("vault_rescue.bot_runtime.loop.wait_with_stop", new=AsyncMock()) as waiter:
            await bootstrap_dependencies(
                logger=LOGGER,
                stop_event=asyncio.Event(),
                app_settings=settings,
                vault=vault,
            )

        self.assertEqual(vault.connect.await_count, 2)
        vault.close.assert_awaited_once()
        waiter.assert_awaited_once()
        self.assertEqual(waiter.await_args.args[1], 2.0)

    async def test_bootstrap_aborts_when_stop_requested(self) -> None:
        stop_event = asyncio.Event()
        stop_event.set()

        with self.assertRaises(RuntimeError):
            await bootstrap_dependencies(
                logger=LOGGER,
                stop_event=stop_event,
                app_settings=SimpleNamespace(error_backoff_seconds=2.0),
                vault=MagicMock(),
            )


class StartupSummaryTests(unittest.IsolatedAsyncioTestCase):
    async def test_summary_formats_balances_and_tolerates_failures(self) -> None:
        vault = MagicMock()
        vault.signer_address = "0xsigner"
        vault.decimals = AsyncMock(return_value=6)
        vault.balance_of = AsyncMock(return_value=2_500_000)
        vault.max_redeem = AsyncMock(side_effect=ConnectionError("rpc down"))
        settings = MagicMock()
        settings.summary.return_value = {"dry_run": True}

        with self.assertLogs("test.runtime", level="INFO") as captured:
            await log_startup_summary(logger=LOGGER, app_settings=settings, vault=vault)

        started = [record for record in captured.records if getattr(record, "event", "") == "rescue_bot_started"]
        self.assertEqual(len(started), 1)
        self.assertEqual(started[0].getMessage(), "Running Rescue Bot for: 0xsigner")
        self.assertEqual(started[0].share_balance, 2_500_000)
        self.assertEqual(started[0].share_balance_formatted, "2.5")
        self.assertFalse(hasattr(started[0], "redeemable_shares"))
        self.assertTrue(started[0].dry_run)


class SessionReporterTests(unittest.IsolatedAsyncioTestCase):
    def _report(self, *, state: SessionState, sent: bool) -> SessionReport:
        return SessionReport(
            session_id="abc123",
            state=state,
            reason=RescueReason.PATROL,
            shares=10,
            attempts=(),
            sent=sent,
            detail="redeemed",
        )

    async def test_successful_redeem_reads_underlying_balance(self) -> None:
        vault = MagicMock()
        vault.underlying_balance = AsyncMock(return_value=1234)
        reporter = build_session_reporter(logger=LOGGER, vault=vault, receiver="0xreceiver")

        await reporter(self._report(state=SessionState.SUCCEEDED, sent=True))

        vault.underlying_balance.assert_awaited_once_with("0xreceiver")

    async def test_unsent_or_failed_sessions_skip_balance_read(self) -> None:
        vault = MagicMock()
        vault.underlying_balance = AsyncMock(return_value=0)
        reporter = build_session_reporter(logger=LOGGER, vault=vault, receiver="0xreceiver")

        await reporter(self._report(state=SessionState.SUCCEEDED, sent=False))
        await reporter(self._report(state=SessionState.EXHAUSTED, sent=True))

        vault.underlying_balance.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
