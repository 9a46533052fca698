from __future__ import annotations

import asyncio
import contextlib
import signal
from functools import partial

from dotenv import load_dotenv

from vault_rescue.bot_runtime import (
    AppSettings,
    SettingsError,
    bootstrap_dependencies,
    build_session_reporter,
    log_startup_summary,
    run_rescue_runtime,
    setup_logger,
)
from vault_rescue.common import log_event, wait_with_stop
from vault_rescue.rescue import (
    PatrolLoop,
    RedeemAttemptEngine,
    RescueOrchestrator,
    RescueTrigger,
    VaultEventWatcher,
    WatcherConnectionLost,
    Web3FeeOracle,
    Web3VaultService,
    build_http_web3,
    enqueue_trigger,
    load_signer,
)


async def main() -> int:
    load_dotenv()
    logger = setup_logger()

    app_settings = AppSettings.from_env()
    try:
        app_settings.validate()
    except SettingsError as error:
        log_event(
            logger,
            level="error",
            event="config_missing",
            message="Missing required env vars. Please set RPC_WS, RPC_HTTP, PRIVATE_KEY, OWNER_ADDRESS, VAULT_ADDRESS.",
            missing=app_settings.missing_required(),
            error=str(error),
        )
        return 1

    try:
        signer = load_signer(app_settings.private_key)
    except Exception as error:
        log_event(
            logger,
            level="error",
            event="config_invalid_private_key",
            message="PRIVATE_KEY could not be parsed",
            error=str(error),
        )
        return 1

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    w3 = build_http_web3(app_settings.rpc_http, timeout_seconds=app_settings.rpc_timeout_seconds)
    vault = Web3VaultService(
        logger=logger,
        w3=w3,
        vault_address=app_settings.vault_address,
        signer=signer,
        token_address=app_settings.token_address,
        confirmations=app_settings.confirmations,
        confirm_timeout_seconds=app_settings.confirm_timeout_seconds,
    )
    fee_oracle = Web3FeeOracle(logger=logger, w3=w3)

    engine = RedeemAttemptEngine(
        logger=logger,
        vault=vault,
        fee_oracle=fee_oracle,
        owner=signer.address,
        receiver=app_settings.owner_address,
        gas_policy=app_settings.gas_policy,
        retry_policy=app_settings.retry_policy,
        sizing_policy=app_settings.sizing_policy,
        dry_run=app_settings.dry_run,
        gas_limit_multiplier=app_settings.gas_limit_multiplier,
        fallback_gas_limit=app_settings.fallback_gas_limit,
        sleep=partial(wait_with_stop, stop_event),
        stop_event=stop_event,
    )
    orchestrator = RescueOrchestrator(
        logger=logger,
        engine=engine,
        on_session_finished=build_session_reporter(
            logger=logger,
            vault=vault,
            receiver=app_settings.owner_address,
        ),
    )

    queue: asyncio.Queue[RescueTrigger] = asyncio.Queue(maxsize=app_settings.trigger_queue_size)
    emit = partial(enqueue_trigger, queue, logger=logger)
    watcher = VaultEventWatcher(
        logger=logger,
        ws_url=app_settings.rpc_ws,
        vault_address=app_settings.vault_address,
        emit=emit,
        stop_event=stop_event,
        reconnect_policy=app_settings.watcher_reconnect_policy,
        reconnect_max_delay_seconds=app_settings.watcher_reconnect_max_delay_seconds,
    )
    patrol = PatrolLoop(
        logger=logger,
        vault=vault,
        owner=signer.address,
        emit=emit,
        stop_event=stop_event,
        interval_seconds=app_settings.patrol_interval_seconds,
        enabled=app_settings.patrol_enabled,
    )

    exit_code = 0
    try:
        await bootstrap_dependencies(
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            vault=vault,
        )
        await log_startup_summary(logger=logger, app_settings=app_settings, vault=vault)
        await run_rescue_runtime(
            logger=logger,
            stop_event=stop_event,
            queue=queue,
            orchestrator=orchestrator,
            watcher=watcher,
            patrol=patrol,
        )
    except WatcherConnectionLost:
        exit_code = 1
    except RuntimeError as error:
        if not stop_event.is_set():
            raise
        log_event(
            logger,
            level="warning",
            event="shutdown_before_bootstrap",
            message="Shutdown requested during startup",
            error=str(error),
        )
    finally:
        await vault.close()
        log_event(
            logger,
            level="info",
            event="shutdown_completed",
            message="Shutdown completed",
            exit_code=exit_code,
        )

    return exit_code


def run() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
