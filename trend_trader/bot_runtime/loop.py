from __future__ import annotations

import asyncio
import logging

from trend_trader.common import guarded_call, log_event, wait_with_stop
from trend_trader.notifications import LineNotifier
from trend_trader.storage import ConfigUpdateHandler, StorageGateway
from trend_trader.trading import (
    CycleResult,
    DryRunSwapExecutor,
    JupiterWatcher,
    LiveSwapExecutor,
    PairConfig,
    RuntimeConfig,
    StatePersistenceError,
    TraderEngine,
)

from .settings import AppSettings


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    watcher: JupiterWatcher,
    executor: DryRunSwapExecutor | LiveSwapExecutor,
    notifier: LineNotifier,
    config_listener_loop: asyncio.AbstractEventLoop,
    on_config_update: ConfigUpdateHandler,
    max_attempts: int | None = None,
) -> None:
    attempts = 0
    while not stop_event.is_set():
        attempts += 1
        try:
            await storage.connect()
            storage.start_config_listener(config_listener_loop, on_update=on_config_update)
            await watcher.connect()
            await executor.connect()
            await notifier.connect()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                attempt=attempts,
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="bootstrap_error",
                    message="Failed to initialize dependencies",
                    details={"error": str(error), "attempt": attempts},
                ),
                logger=logger,
                event="bootstrap_publish_error_failed",
                message="Failed to publish bootstrap error",
            )
            # The executor holds the signing key; it stays open across retries.
            for name, close in (("watcher", watcher.close), ("notifier", notifier.close), ("storage", storage.close)):
                await guarded_call(
                    close,
                    logger=logger,
                    event=f"bootstrap_{name}_close_failed",
                    message=f"Failed to close {name} during bootstrap retry",
                )

            if max_attempts is not None and attempts >= max_attempts:
                raise RuntimeError(f"Dependency bootstrap failed after {attempts} attempts.") from error
            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


async def load_runtime_config(*, storage: StorageGateway, runtime_defaults: RuntimeConfig) -> RuntimeConfig:
    redis_config = await storage.get_runtime_config()
    return RuntimeConfig.from_redis(redis_config, runtime_defaults)


async def execute_cycle(
    *,
    logger: logging.Logger,
    storage: StorageGateway,
    trader_engine: TraderEngine,
    notifier: LineNotifier | None,
    runtime_defaults: RuntimeConfig,
    trigger: str,
) -> CycleResult:
    runtime_config = await load_runtime_config(storage=storage, runtime_defaults=runtime_defaults)
    try:
        return await trader_engine.run_cycle(runtime_config=runtime_config, trigger=trigger)
    except StatePersistenceError as error:
        log_event(
            logger,
            level="exception",
            event="state_persistence_failed",
            message="Trading state could not be persisted",
            trigger=trigger,
            error=str(error),
        )
        await guarded_call(
            lambda: storage.publish_event(
                level="ERROR",
                event="state_persistence_failed",
                message="Trading state could not be persisted",
                details={"trigger": trigger, "error": str(error)},
            ),
            logger=logger,
            event="state_persistence_publish_failed",
            message="Failed to publish state persistence failure",
        )
        if notifier is not None:
            await guarded_call(
                lambda: notifier.notify_error(error),
                logger=logger,
                event="state_persistence_notify_failed",
                message="Failed to notify state persistence failure",
            )
        raise


async def try_resume_trading(
    *,
    logger: logging.Logger,
    storage: StorageGateway,
    trader_engine: TraderEngine,
    pause_reason: str,
) -> bool:
    try:
        await storage.healthcheck()
        await trader_engine.healthcheck()
        log_event(
            logger,
            level="info",
            event="trading_recovered",
            message="Trading resumed after dependency recovery",
            reason=pause_reason,
        )
        return True
    except Exception as error:
        log_event(
            logger,
            level="warning",
            event="trading_still_paused",
            message="Trading remains paused",
            reason=pause_reason,
            error=str(error),
        )
        return False


def next_delay(*, now: float, next_tick: float, interval: float) -> tuple[float, float]:
    """Advance the schedule by one interval, skipping ticks that already passed."""
    next_tick += interval
    if next_tick <= now:
        next_tick += (int((now - next_tick) / interval) + 1) * interval
    return next_tick, max(0.0, next_tick - now)


async def pause_trading(
    *,
    logger: logging.Logger,
    storage: StorageGateway,
    pair: PairConfig,
    error: Exception,
) -> None:
    log_event(
        logger,
        level="exception",
        event="main_loop_error",
        message="Trading cycle failed and trading has been paused",
        pair=pair.symbol,
        error=str(error),
    )
    await guarded_call(
        lambda: storage.record_position({"pair": pair.symbol, "status": "trading_paused", "reason": str(error)}),
        logger=logger,
        event="main_loop_pause_position_record_failed",
        message="Failed to record paused position state",
    )
    await guarded_call(
        lambda: storage.publish_event(
            level="ERROR",
            event="trading_paused",
            message="Trading paused after a failed cycle",
            details={"error": str(error), "pair": pair.symbol},
        ),
        logger=logger,
        event="main_loop_pause_publish_failed",
        message="Failed to publish trading_paused event",
    )


async def run_trading_loop(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    pair: PairConfig,
    runtime_defaults: RuntimeConfig,
    trader_engine: TraderEngine,
    notifier: LineNotifier | None = None,
) -> None:
    loop = asyncio.get_running_loop()
    next_tick = loop.time()
    pause_reason: str | None = None

    while not stop_event.is_set():
        try:
            if pause_reason is not None:
                if not await try_resume_trading(
                    logger=logger,
                    storage=storage,
                    trader_engine=trader_engine,
                    pause_reason=pause_reason,
                ):
                    await guarded_call(
                        storage.update_heartbeat,
                        logger=logger,
                        event="paused_heartbeat_failed",
                        message="Failed to update heartbeat while trading is paused",
                    )
                    continue

                pause_reason = None
                await guarded_call(
                    lambda: storage.publish_event(
                        level="INFO",
                        event="trading_resumed",
                        message="Trading resumed after successful recovery",
                        details={"pair": pair.symbol},
                    ),
                    logger=logger,
                    event="trading_resumed_publish_failed",
                    message="Failed to publish trading_resumed event",
                )

            result = await execute_cycle(
                logger=logger,
                storage=storage,
                trader_engine=trader_engine,
                notifier=notifier,
                runtime_defaults=runtime_defaults,
                trigger="schedule",
            )
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
        except Exception as error:
            pause_reason = str(error)
            await pause_trading(logger=logger, storage=storage, pair=pair, error=error)
        finally:
            next_tick, delay_seconds = next_delay(
                now=loop.time(),
                next_tick=next_tick,
                interval=app_settings.watch_interval_seconds,
            )
            if pause_reason is not None:
                delay_seconds = min(delay_seconds, app_settings.error_backoff_seconds)
            await wait_with_stop(stop_event, delay_seconds)
