from __future__ import annotations

import asyncio
import logging
from typing import Any

from vault_rescue.common import guarded_call, log_event, wait_with_stop
from vault_rescue.rescue import (
    PatrolLoop,
    RescueOrchestrator,
    RescueReason,
    RescueTrigger,
    SessionReport,
    SessionState,
    VaultEventWatcher,
    Web3VaultService,
    enqueue_trigger,
    format_units,
    run_trigger_dispatcher,
)
from vault_rescue.rescue.orchestrator import SessionFinishedHandler

from .settings import AppSettings


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    vault: Web3VaultService,
) -> None:
    while not stop_event.is_set():
        try:
            await vault.connect()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
            )
            await guarded_call(
                vault.close,
                logger=logger,
                event="bootstrap_vault_close_failed",
                message="Failed to close vault service during bootstrap retry",
            )
            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


async def log_startup_summary(
    *,
    logger: logging.Logger,
    app_settings: AppSettings,
    vault: Web3VaultService,
) -> None:
    signer = vault.signer_address
    decimals = await guarded_call(
        vault.decimals,
        logger=logger,
        event="startup_decimals_failed",
        message="Failed to read vault decimals; assuming 18",
        default=18,
    )
    balance = await guarded_call(
        lambda: vault.balance_of(signer),
        logger=logger,
        event="startup_balance_failed",
        message="Failed to read vault share balance",
    )
    redeemable = await guarded_call(
        lambda: vault.max_redeem(signer),
        logger=logger,
        event="startup_redeemable_failed",
        message="Failed to read redeemable shares",
    )

    fields: dict[str, Any] = {"signer": signer, "decimals": decimals, **app_settings.summary()}
    if balance is not None:
        fields["share_balance"] = balance
        fields["share_balance_formatted"] = format_units(balance, decimals or 18)
    if redeemable is not None:
        fields["redeemable_shares"] = redeemable
        fields["redeemable_formatted"] = format_units(redeemable, decimals or 18)

    log_event(
        logger,
        level="info",
        event="rescue_bot_started",
        message=f"Running Rescue Bot for: {signer}",
        **fields,
    )


def build_session_reporter(
    *,
    logger: logging.Logger,
    vault: Web3VaultService,
    receiver: str,
) -> SessionFinishedHandler:
    async def on_session_finished(report: SessionReport) -> None:
        if report.state is not SessionState.SUCCEEDED or not report.sent:
            return

        balance = await guarded_call(
            lambda: vault.underlying_balance(receiver),
            logger=logger,
            event="underlying_balance_failed",
            message="Failed to read underlying token balance after redeem",
        )
        if balance is None:
            return

        log_event(
            logger,
            level="info",
            event="rescue_underlying_balance",
            message="Underlying token balance after redeem",
            receiver=receiver,
            balance=balance,
            session_id=report.session_id,
        )

    return on_session_finished


async def run_rescue_runtime(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    queue: asyncio.Queue[RescueTrigger],
    orchestrator: RescueOrchestrator,
    watcher: VaultEventWatcher,
    patrol: PatrolLoop,
) -> None:
    enqueue_trigger(queue, RescueTrigger(reason=RescueReason.STARTUP), logger=logger)

    tasks: set[asyncio.Task[Any]] = {
        asyncio.create_task(
            run_trigger_dispatcher(
                logger=logger,
                queue=queue,
                orchestrator=orchestrator,
                stop_event=stop_event,
            ),
            name="trigger-dispatcher",
        ),
        asyncio.create_task(watcher.run(), name="event-watcher"),
        asyncio.create_task(patrol.run(), name="patrol-loop"),
    }
    stop_waiter = asyncio.create_task(stop_event.wait(), name="stop-waiter")

    try:
        while tasks:
            done, _ = await asyncio.wait(tasks | {stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
            if stop_waiter in done:
                return

            for task in done:
                tasks.discard(task)
                if task.cancelled():
                    continue
                error = task.exception()
                if error is not None:
                    log_event(
                        logger,
                        level="error",
                        event="runtime_task_failed",
                        message="Runtime task failed",
                        task=task.get_name(),
                        error=str(error),
                    )
                    raise error

        await stop_waiter
    finally:
        # Cancel the redeem session first so no attempt starts while the other tasks drain.
        await orchestrator.shutdown()
        for task in (*tasks, stop_waiter):
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, stop_waiter, return_exceptions=True)
