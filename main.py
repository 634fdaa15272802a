from __future__ import annotations

import asyncio
import contextlib
import signal
import sys
from typing import Any

from dotenv import load_dotenv

from trend_trader.bot_runtime import (
    RUN_MODE_ONCE,
    RUN_MODE_SERVE,
    AppSettings,
    TradingService,
    bootstrap_dependencies,
    execute_cycle,
    run_trading_loop,
    serve_http,
    setup_logger,
)
from trend_trader.common import guarded_call, log_event
from trend_trader.notifications import LineNotifier
from trend_trader.storage import StorageGateway, StorageSettings
from trend_trader.trading import (
    ConfigurationError,
    DryRunSwapExecutor,
    JupiterWatcher,
    LiveSwapExecutor,
    PairConfig,
    RuntimeConfig,
    SigningKey,
    StatePersistenceError,
    TraderEngine,
)


async def main() -> int:
    load_dotenv()
    logger = setup_logger()

    app_settings = AppSettings.from_env()
    try:
        app_settings.validate()
        signing_key = None if app_settings.dry_run else SigningKey.from_string(app_settings.private_key)
    except ConfigurationError as error:
        log_event(
            logger,
            level="error",
            event="configuration_invalid",
            message="Configuration is invalid; refusing to start",
            error=str(error),
        )
        return 2
    app_settings.private_key = ""

    storage_settings = StorageSettings.from_env()
    pair = PairConfig.from_env()
    runtime_defaults = RuntimeConfig.from_env_defaults()

    storage = StorageGateway(storage_settings, logger)
    watcher = JupiterWatcher(
        logger=logger,
        api_base_url=app_settings.jupiter_api_url,
        api_key=app_settings.jupiter_api_key,
        timeout_seconds=app_settings.jupiter_timeout_seconds,
    )
    if signing_key is None:
        executor: DryRunSwapExecutor | LiveSwapExecutor = DryRunSwapExecutor(logger=logger, watcher=watcher)
    else:
        executor = LiveSwapExecutor(
            logger=logger,
            rpc_url=app_settings.solana_rpc_url,
            signing_key=signing_key,
            watcher=watcher,
            confirm_max_attempts=app_settings.confirm_max_attempts,
            confirm_initial_backoff_seconds=app_settings.confirm_initial_backoff_seconds,
            confirm_backoff_multiplier=app_settings.confirm_backoff_multiplier,
            confirm_max_backoff_seconds=app_settings.confirm_max_backoff_seconds,
            rpc_timeout_seconds=app_settings.rpc_timeout_seconds,
        )
    notifier = LineNotifier(
        logger=logger,
        channel_token=app_settings.line_channel_token,
        user_id=app_settings.line_user_id,
        push_url=app_settings.line_push_url,
        timezone_name=app_settings.notify_timezone,
        pair_symbol=pair.symbol,
    )

    trader_engine = TraderEngine(
        logger=logger,
        pair=pair,
        store=storage,
        watcher=watcher,
        executor=executor,
        notifier=notifier,
        cycle_deadline_seconds=app_settings.cycle_deadline_seconds,
        cycle_lock_ttl_seconds=app_settings.cycle_lock_ttl_seconds,
        pending_expiry_seconds=app_settings.pending_expiry_seconds,
    )

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

    async def on_config_update(config: dict[str, Any]) -> None:
        log_event(
            logger,
            level="info",
            event="runtime_config_updated",
            message="Runtime config updated",
            items=len(config),
        )

    exit_code = 0
    stop_reason = "shutdown"
    try:
        try:
            await bootstrap_dependencies(
                logger=logger,
                stop_event=stop_event,
                app_settings=app_settings,
                storage=storage,
                watcher=watcher,
                executor=executor,
                notifier=notifier,
                config_listener_loop=loop,
                on_config_update=on_config_update,
                max_attempts=3 if app_settings.run_mode == RUN_MODE_ONCE else None,
            )
        except RuntimeError as error:
            log_event(
                logger,
                level="error",
                event="bootstrap_aborted",
                message="Dependencies were not initialized; exiting",
                error=str(error),
            )
            stop_reason = "bootstrap_aborted"
            return 0 if stop_event.is_set() else 1

        await storage.publish_event(
            level="INFO",
            event="bot_started",
            message="Bot process started",
            details={
                "pair": pair.symbol,
                "dry_run": app_settings.dry_run,
                "run_mode": app_settings.run_mode,
                "watch_interval_seconds": app_settings.watch_interval_seconds,
            },
        )

        if app_settings.run_mode == RUN_MODE_ONCE:
            try:
                result = await execute_cycle(
                    logger=logger,
                    storage=storage,
                    trader_engine=trader_engine,
                    notifier=notifier,
                    runtime_defaults=runtime_defaults,
                    trigger="once",
                )
            except StatePersistenceError:
                exit_code = 1
                stop_reason = "state_persistence_failed"
            else:
                log_event(
                    logger,
                    level="info",
                    event="cycle_completed",
                    message="Trading cycle completed",
                    pair=pair.symbol,
                    cycle_id=result.cycle_id,
                    status=result.status,
                    action=result.action.value,
                )
                stop_reason = "completed"
        elif app_settings.run_mode == RUN_MODE_SERVE:
            service = TradingService(
                logger=logger,
                storage=storage,
                trader_engine=trader_engine,
                runtime_defaults=runtime_defaults,
                notifier=notifier,
            )
            await serve_http(
                logger=logger,
                stop_event=stop_event,
                service=service,
                host=app_settings.http_host,
                port=app_settings.http_port,
            )
        else:
            await run_trading_loop(
                logger=logger,
                stop_event=stop_event,
                app_settings=app_settings,
                storage=storage,
                pair=pair,
                runtime_defaults=runtime_defaults,
                trader_engine=trader_engine,
                notifier=notifier,
            )
    finally:
        await guarded_call(
            lambda: storage.publish_event(
                level="INFO",
                event="bot_stopped",
                message="Bot process stopped gracefully",
                details={"reason": stop_reason},
            ),
            logger=logger,
            event="shutdown_publish_failed",
            message="Failed to publish bot_stopped event",
        )
        await guarded_call(
            lambda: storage.mark_run_stopped(reason=stop_reason),
            logger=logger,
            event="shutdown_run_status_failed",
            message="Failed to mark run as stopped",
        )
        for name, close in (
            ("notifier", notifier.close),
            ("watcher", watcher.close),
            ("executor", executor.close),
            ("storage", storage.close),
        ):
            await guarded_call(
                close,
                logger=logger,
                event=f"shutdown_{name}_close_failed",
                message=f"Failed to close {name}",
            )

        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")

    return exit_code


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
