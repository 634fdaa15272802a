from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest

from trend_trader.trading.errors import PositionConflictError, SwapError
from trend_trader.trading.ledger import replay_sessions
from trend_trader.trading.types import (
    SIGNATURE_PENDING,
    SOL_MINT,
    USDC_MINT,
    CycleResult,
    PairConfig,
    PricePoint,
    RuntimeConfig,
    SignatureCheck,
    SwapIntent,
    SwapReceipt,
    TradeAction,
    TradeDecision,
    TradingSession,
    TradingState,
    TrendReport,
    now_utc,
    parse_windows,
)


def make_pair() -> PairConfig:
    return PairConfig(
        symbol="SOL/USDC",
        base_mint=SOL_MINT,
        quote_mint=USDC_MINT,
        base_decimals=9,
        quote_decimals=6,
        slippage_bps=50,
    )


def make_runtime_config(**overrides: Any) -> RuntimeConfig:
    config = RuntimeConfig(
        config_schema_version=1,
        trade_enabled=True,
        windows=parse_windows("1h,6h,24h"),
        default_threshold_pct=Decimal("0.5"),
        window_thresholds={},
        sell_basis="window",
        window_policy="short",
        sizing_policy="fixed",
        buy_amount_quote=Decimal("9.84"),
        native_fee_reserve=Decimal("0.01"),
        max_reference_age_seconds=3600,
        priority_fee_lamports=10_000,
        notify_on_noop=False,
    )
    return replace(config, **overrides)


class InMemoryStateStore:
    def __init__(self) -> None:
        self.prices: list[PricePoint] = []
        self.sessions: list[TradingSession] = []
        self.snapshot: dict[str, Any] | None = None
        self.lock_owner: str | None = None
        self.runtime_config: dict[str, str] = {}
        self.events: list[dict[str, Any]] = []
        self.cached_prices: list[PricePoint] = []
        self.cached_trends: list[tuple[TrendReport, TradeDecision]] = []
        self.cached_positions: list[dict[str, Any]] = []
        self.heartbeats = 0
        self.commit_error: Exception | None = None
        self.load_delay = 0.0

    def seed_price(self, price: str, *, ago: timedelta, now: datetime | None = None) -> PricePoint:
        point = PricePoint(timestamp=(now or now_utc()) - ago, price=Decimal(price))
        self.prices.append(point)
        return point

    async def append_price(self, point: PricePoint) -> bool:
        if any(p.timestamp == point.timestamp and p.source == point.source for p in self.prices):
            return False
        self.prices.append(point)
        return True

    async def list_price_history(
        self,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[PricePoint]:
        points = sorted(self.prices, key=lambda point: point.timestamp)
        if since is not None:
            points = [point for point in points if point.timestamp >= since]
        if until is not None:
            points = [point for point in points if point.timestamp <= until]
        if limit is not None:
            points = points[-limit:]
        return points

    async def load_trading_state(self) -> TradingState:
        if self.load_delay:
            await asyncio.sleep(self.load_delay)
        return replay_sessions(self.sessions)

    async def commit_session(
        self,
        *,
        session: TradingSession,
        state_after: TradingState,
        expected_last_session_id: str | None,
    ) -> None:
        if self.commit_error is not None:
            raise self.commit_error
        actual = self.sessions[-1].session_id if self.sessions else None
        if actual != expected_last_session_id:
            raise PositionConflictError(
                expected_last_session_id=expected_last_session_id,
                actual_last_session_id=actual,
            )
        self.sessions.append(session)
        self.snapshot = state_after.to_dict()

    async def list_sessions(
        self,
        *,
        limit: int | None = None,
        since: datetime | None = None,
    ) -> list[TradingSession]:
        sessions = sorted(self.sessions, key=lambda session: session.sequence, reverse=True)
        if since is not None:
            sessions = [session for session in sessions if session.timestamp >= since]
        if limit is not None:
            sessions = sessions[:limit]
        return sessions

    async def acquire_cycle_lock(self, *, owner: str, ttl_seconds: int) -> bool:
        if self.lock_owner is not None:
            return False
        self.lock_owner = owner
        return True

    async def release_cycle_lock(self, *, owner: str) -> bool:
        if self.lock_owner != owner:
            return False
        self.lock_owner = None
        return True

    async def record_price(self, *, pair: str, point: PricePoint) -> None:
        self.cached_prices.append(point)

    async def record_trend(self, *, pair: str, report: TrendReport, decision: TradeDecision) -> None:
        self.cached_trends.append((report, decision))

    async def record_position(self, mapping: dict[str, Any]) -> None:
        self.cached_positions.append(mapping)

    async def update_heartbeat(self) -> None:
        self.heartbeats += 1

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        self.events.append({"level": level, "event": event, "message": message, "details": details})

    async def get_runtime_config(self) -> dict[str, str]:
        return dict(self.runtime_config)

    async def healthcheck(self) -> None:
        return None


class FakeWatcher:
    def __init__(self, *prices: str) -> None:
        self.prices = [Decimal(price) for price in prices]
        self.error: Exception | None = None
        self.calls = 0

    async def fetch_price(self, pair: PairConfig) -> PricePoint:
        self.calls += 1
        if self.error is not None:
            raise self.error
        price = self.prices.pop(0) if len(self.prices) > 1 else self.prices[0]
        return PricePoint(timestamp=now_utc(), price=price)


class FakeExecutor:
    def __init__(self, *, fill_price: str = "98.40") -> None:
        self.fill_price = Decimal(fill_price)
        self.error: SwapError | None = None
        self.balance_error: SwapError | None = None
        self.balances: dict[str, Decimal] = {}
        self.signature_check = SignatureCheck(status=SIGNATURE_PENDING)
        self.intents: list[SwapIntent] = []
        self.signature_checks: list[str] = []
        self.release: asyncio.Event | None = None

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def healthcheck(self) -> None:
        return None

    async def fetch_balance(self, *, mint: str, decimals: int) -> Decimal | None:
        if self.balance_error is not None:
            raise self.balance_error
        return self.balances.get(mint)

    async def execute(self, *, intent: SwapIntent, deadline: Any) -> SwapReceipt:
        self.intents.append(intent)
        if self.release is not None:
            await self.release.wait()
        if self.error is not None:
            raise self.error
        if intent.action is TradeAction.BUY:
            amount_out = (intent.amount_in / self.fill_price).quantize(Decimal("0.000000001"))
        else:
            amount_out = (intent.amount_in * self.fill_price).quantize(Decimal("0.000001"))
        return SwapReceipt(
            status="confirmed",
            tx_signature=f"sig-{len(self.intents)}",
            amount_in=intent.amount_in,
            amount_out=amount_out,
            last_valid_block_height=1_000,
            confirmation_status="confirmed",
        )

    async def check_signature(self, *, tx_signature: str, last_valid_block_height: int | None) -> SignatureCheck:
        self.signature_checks.append(tx_signature)
        return self.signature_check


class RecordingNotifier:
    def __init__(self) -> None:
        self.results: list[CycleResult] = []
        self.errors: list[str] = []
        self.fail = False

    async def notify(self, result: CycleResult) -> None:
        if self.fail:
            raise RuntimeError("LINE is down")
        self.results.append(result)

    async def notify_error(self, error: BaseException | str) -> None:
        self.errors.append(str(error))


@pytest.fixture
def logger() -> logging.Logger:
    test_logger = logging.getLogger("trend_trader.tests")
    test_logger.setLevel(logging.DEBUG)
    return test_logger


@pytest.fixture
def pair() -> PairConfig:
    return make_pair()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()

