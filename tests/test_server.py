from __future__ import annotations

from datetime import timedelta

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from conftest import FakeWatcher, make_runtime_config
from trend_trader.bot_runtime import TradingService, create_app
from trend_trader.bot_runtime.server import InvalidQueryError, parse_bounded_int
from trend_trader.trading import TraderEngine
from trend_trader.trading.errors import StatePersistenceError


@pytest.fixture
def service(logger, pair, store, executor, notifier) -> TradingService:
    engine = TraderEngine(
        logger=logger,
        pair=pair,
        store=store,
        watcher=FakeWatcher("98.40"),
        executor=executor,
        notifier=notifier,
    )
    return TradingService(
        logger=logger,
        storage=store,
        trader_engine=engine,
        runtime_defaults=make_runtime_config(),
        notifier=notifier,
    )


@pytest_asyncio.fixture
async def client(service, logger):
    test_client = TestClient(TestServer(create_app(service, logger=logger)))
    await test_client.start_server()
    yield test_client
    await test_client.close()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(None, 30), ("", 30), (" 7 ", 7), ("3650", 3650)],
)
def test_parse_bounded_int_accepts_range(raw, expected):
    assert parse_bounded_int(raw, name="days", default=30, maximum=3650) == expected


@pytest.mark.parametrize("raw", ["0", "-1", "3651", "abc", "1.5"])
def test_parse_bounded_int_rejects_out_of_range(raw):
    with pytest.raises(InvalidQueryError):
        parse_bounded_int(raw, name="days", default=30, maximum=3650)


@pytest.mark.asyncio
async def test_health_endpoints(client):
    for path in ("/", "/health"):
        response = await client.get(path)
        assert response.status == 200
        assert await response.text() == "OK"


@pytest.mark.asyncio
async def test_trigger_runs_cycle_and_returns_summary(client, store):
    store.seed_price("99.00", ago=timedelta(minutes=61))

    response = await client.post("/trigger")

    assert response.status == 200
    body = await response.json()
    assert body["status"] == "success"
    assert body["action"] == "buy"
    assert body["outcome"] == "success"
    assert body["trigger"] == "manual"
    assert body["position"]["state"] == "long"
    assert len(store.sessions) == 1


@pytest.mark.asyncio
async def test_trigger_reports_busy_cycle(client, store):
    store.lock_owner = "cyc-other"

    response = await client.get("/trigger")

    assert response.status == 409
    assert (await response.json())["status"] == "skipped_busy"


@pytest.mark.asyncio
async def test_trigger_surfaces_persistence_failure(client, store, notifier):
    store.seed_price("99.00", ago=timedelta(minutes=61))
    store.commit_error = StatePersistenceError("firestore unavailable")

    response = await client.post("/trigger")

    assert response.status == 500
    assert (await response.json())["error"] == "firestore unavailable"
    assert notifier.errors == ["firestore unavailable"]
    assert store.events[-1]["event"] == "state_persistence_failed"


@pytest.mark.asyncio
async def test_trigger_uses_runtime_config_from_cache(client, store):
    store.seed_price("99.00", ago=timedelta(minutes=61))
    store.runtime_config = {"trade_enabled": "false"}

    response = await client.post("/trigger")

    assert (await response.json())["status"] == "trade_disabled"
    assert store.sessions == []


@pytest.mark.asyncio
async def test_performance_summary(client, store):
    store.seed_price("99.00", ago=timedelta(minutes=61))
    await client.post("/trigger")

    response = await client.get("/api/performance")

    assert response.status == 200
    body = await response.json()
    assert body["period_days"] == 30
    assert body["total_trades"] == 1
    assert body["win_rate"] == "0.00%"
    assert body["position"]["state"] == "long"
    assert body["pending_session_id"] is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "path",
    [
        "/api/performance?days=0",
        "/api/performance?days=abc",
        "/api/price-history?hours=100000",
        "/api/trading-sessions?limit=-5",
    ],
)
async def test_bad_query_parameters_are_rejected(client, path):
    response = await client.get(path)
    assert response.status == 400
    assert (await response.json())["status"] == "error"


@pytest.mark.asyncio
async def test_price_history_window(client, store):
    store.seed_price("97.00", ago=timedelta(hours=30))
    store.seed_price("99.00", ago=timedelta(hours=2))

    default = await (await client.get("/api/price-history")).json()
    narrow = await (await client.get("/api/price-history?hours=1")).json()

    assert [point["price"] for point in default] == ["99.00"]
    assert narrow == []


@pytest.mark.asyncio
async def test_trading_sessions_are_newest_first(client, store):
    store.seed_price("99.00", ago=timedelta(minutes=61))
    await client.post("/trigger")
    await client.post("/trigger")

    body = await (await client.get("/api/trading-sessions?limit=1")).json()

    assert len(body) == 1
    assert body[0]["sequence"] == len(store.sessions)
