from __future__ import annotations

import asyncio
import json
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable

from aiohttp import web

from trend_trader.common import log_event
from trend_trader.notifications import LineNotifier
from trend_trader.storage import StorageGateway
from trend_trader.trading import (
    CycleResult,
    RuntimeConfig,
    StatePersistenceError,
    TraderEngine,
    compute_performance,
)
from trend_trader.trading.types import CYCLE_STATUS_SKIPPED_BUSY, decimal_to_str, now_utc

from .loop import execute_cycle

DEFAULT_PERFORMANCE_DAYS = 30
DEFAULT_PRICE_HISTORY_HOURS = 24
DEFAULT_SESSIONS_LIMIT = 50
MAX_PERFORMANCE_DAYS = 3650
MAX_PRICE_HISTORY_HOURS = 24 * 90
MAX_SESSIONS_LIMIT = 500


class InvalidQueryError(ValueError):
    pass


def parse_bounded_int(raw: str | None, *, name: str, default: int, maximum: int) -> int:
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise InvalidQueryError(f"{name} must be an integer") from exc
    if value < 1 or value > maximum:
        raise InvalidQueryError(f"{name} must be between 1 and {maximum}")
    return value


class TradingService:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        storage: StorageGateway,
        trader_engine: TraderEngine,
        runtime_defaults: RuntimeConfig,
        notifier: LineNotifier | None = None,
    ) -> None:
        self._logger = logger
        self._storage = storage
        self._trader_engine = trader_engine
        self._runtime_defaults = runtime_defaults
        self._notifier = notifier

    async def trigger_cycle(self, *, trigger: str = "manual") -> CycleResult:
        return await execute_cycle(
            logger=self._logger,
            storage=self._storage,
            trader_engine=self._trader_engine,
            notifier=self._notifier,
            runtime_defaults=self._runtime_defaults,
            trigger=trigger,
        )

    async def query_performance(self, *, days: int = DEFAULT_PERFORMANCE_DAYS) -> dict[str, Any]:
        state = await self._storage.load_trading_state()
        since = now_utc() - timedelta(days=days)
        sessions = await self._storage.list_sessions(since=since)
        performance = compute_performance(sessions, position=state.position, days=days)
        payload = performance.to_dict()
        payload["cumulative_profit"] = decimal_to_str(state.cumulative_profit)
        payload["lifetime_trade_count"] = state.trade_count
        payload["pending_session_id"] = state.pending_session.session_id if state.pending_session else None
        return payload

    async def query_price_history(self, *, hours: int = DEFAULT_PRICE_HISTORY_HOURS) -> list[dict[str, Any]]:
        since = now_utc() - timedelta(hours=hours)
        points = await self._storage.list_price_history(since=since)
        return [point.to_dict() for point in points]

    async def query_sessions(self, *, limit: int = DEFAULT_SESSIONS_LIMIT) -> list[dict[str, Any]]:
        sessions = await self._storage.list_sessions(limit=limit)
        return [session.to_dict() for session in sessions]


SERVICE_KEY = web.AppKey("trading_service", TradingService)
LOGGER_KEY = web.AppKey("logger", logging.Logger)


def json_response(data: Any, *, status: int = 200) -> web.Response:
    return web.Response(
        text=json.dumps(data, ensure_ascii=False, default=str),
        status=status,
        content_type="application/json",
    )


def _service(request: web.Request) -> TradingService:
    return request.app[SERVICE_KEY]


async def health(_request: web.Request) -> web.Response:
    return web.Response(text="OK")


async def trigger(request: web.Request) -> web.Response:
    service = _service(request)
    try:
        result = await service.trigger_cycle(trigger="manual")
    except StatePersistenceError as error:
        return json_response({"status": "error", "error": str(error)}, status=500)

    status = 409 if result.status == CYCLE_STATUS_SKIPPED_BUSY else 200
    return json_response(result.to_dict(), status=status)


async def performance(request: web.Request) -> web.Response:
    try:
        days = parse_bounded_int(
            request.query.get("days"),
            name="days",
            default=DEFAULT_PERFORMANCE_DAYS,
            maximum=MAX_PERFORMANCE_DAYS,
        )
    except InvalidQueryError as error:
        return json_response({"status": "error", "error": str(error)}, status=400)
    return await _read(request, "performance", lambda: _service(request).query_performance(days=days))


async def price_history(request: web.Request) -> web.Response:
    try:
        hours = parse_bounded_int(
            request.query.get("hours"),
            name="hours",
            default=DEFAULT_PRICE_HISTORY_HOURS,
            maximum=MAX_PRICE_HISTORY_HOURS,
        )
    except InvalidQueryError as error:
        return json_response({"status": "error", "error": str(error)}, status=400)
    return await _read(request, "price_history", lambda: _service(request).query_price_history(hours=hours))


async def trading_sessions(request: web.Request) -> web.Response:
    try:
        limit = parse_bounded_int(
            request.query.get("limit"),
            name="limit",
            default=DEFAULT_SESSIONS_LIMIT,
            maximum=MAX_SESSIONS_LIMIT,
        )
    except InvalidQueryError as error:
        return json_response({"status": "error", "error": str(error)}, status=400)
    return await _read(request, "trading_sessions", lambda: _service(request).query_sessions(limit=limit))


async def _read(request: web.Request, name: str, query: Callable[[], Awaitable[Any]]) -> web.Response:
    try:
        data = await query()
    except StatePersistenceError as error:
        log_event(
            request.app[LOGGER_KEY],
            level="error",
            event=f"{name}_query_failed",
            message=f"Failed to read {name.replace('_', ' ')}",
            error=str(error),
        )
        return json_response({"status": "error", "error": str(error)}, status=500)
    return json_response(data)


def create_app(service: TradingService, *, logger: logging.Logger) -> web.Application:
    app = web.Application()
    app[SERVICE_KEY] = service
    app[LOGGER_KEY] = logger
    app.router.add_get("/", health)
    app.router.add_get("/health", health)
    app.router.add_get("/trigger", trigger)
    app.router.add_post("/trigger", trigger)
    app.router.add_get("/api/performance", performance)
    app.router.add_get("/api/price-history", price_history)
    app.router.add_get("/api/trading-sessions", trading_sessions)
    return app


async def serve_http(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    service: TradingService,
    host: str,
    port: int,
) -> None:
    runner = web.AppRunner(create_app(service, logger=logger))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log_event(
        logger,
        level="info",
        event="http_server_started",
        message="HTTP server started",
        host=host,
        port=port,
    )
    try:
        await stop_event.wait()
    finally:
        await runner.cleanup()
        log_event(
            logger,
            level="info",
            event="http_server_stopped",
            message="HTTP server stopped",
        )
