from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from trend_trader.notifications import LineNotifier, format_error_message, format_message
from trend_trader.trading.types import (
    SOL_MINT,
    USDC_MINT,
    CycleResult,
    Position,
    PositionState,
    PricePoint,
    SessionOutcome,
    TradeAction,
    TradingSession,
)

TOKYO = ZoneInfo("Asia/Tokyo")
FINISHED = datetime(2026, 3, 1, 3, 0, tzinfo=timezone.utc)


def sell_session(**overrides) -> TradingSession:
    fields = dict(
        session_id="s2",
        sequence=2,
        timestamp=FINISHED,
        action=TradeAction.SELL,
        outcome=SessionOutcome.SUCCESS,
        amount_in=Decimal("0.1"),
        amount_out=Decimal("9.95"),
        input_mint=SOL_MINT,
        output_mint=USDC_MINT,
        price=Decimal("99.5"),
        position_before=PositionState.LONG,
        position_after=PositionState.FLAT,
        tx_signature="5xSig",
        realized_profit=Decimal("0.11"),
    )
    fields.update(overrides)
    return TradingSession(**fields)


def cycle_result(status: str, **fields) -> CycleResult:
    return CycleResult(
        cycle_id="cyc-1",
        trigger="schedule",
        status=status,
        action=fields.pop("action", TradeAction.NOOP),
        started_at=FINISHED,
        finished_at=FINISHED,
        position=Position.flat(),
        cumulative_profit=Decimal("0.11"),
        **fields,
    )


def test_successful_trade_message():
    text = format_message(cycle_result("success", action=TradeAction.SELL, session=sell_session()), tz=TOKYO)

    assert text.splitlines() == [
        "Trade executed!",
        "Action: SELL",
        "In: 0.1000 SOL",
        "Out: 9.9500 USDC",
        "Price: 99.5000 USDC",
        "Profit: 0.1100 USDC",
        "Tx: 5xSig",
        "Position: FLAT",
        "Total: 0.1100 USDC",
        "Time: 2026-03-01 12:00:00 JST",
    ]


def test_failed_trade_message_includes_reason():
    session = sell_session(
        outcome=SessionOutcome.FAILED,
        amount_out=Decimal(0),
        realized_profit=None,
        failure_reason="submission_rejected",
        failure_detail="Transaction rejected: Blockhash not found",
    )

    text = format_message(cycle_result("failed", action=TradeAction.SELL, session=session), tz=TOKYO)

    assert text.startswith("Trading error...")
    assert "Reason: submission_rejected" in text
    assert "Blockhash not found" in text
    assert "Out:" not in text


def test_noop_message_shows_price():
    point = PricePoint(timestamp=FINISHED, price=Decimal("99.30"))
    text = format_message(cycle_result("noop", price=point), tz=TOKYO)
    assert text.splitlines()[:2] == ["No trading opportunity found", "Price: 99.3000 USDC"]


def test_resolved_pending_trade_is_reported_first():
    resolution = sell_session(resolves_session_id="s1")
    text = format_message(cycle_result("noop", resolved_session=resolution), tz=TOKYO)
    assert text.splitlines()[0] == "Pending trade confirmed"


def test_error_message_is_sanitized():
    text = format_error_message("boom at https://rpc.example/?api-key=secret", tz=TOKYO, moment=FINISHED)
    assert "secret" not in text
    assert text.endswith("Time: 2026-03-01 12:00:00 JST")


@pytest.mark.asyncio
async def test_push_message_posts_to_line(logger):
    received: list[dict] = []

    async def push(request: web.Request) -> web.Response:
        received.append({"auth": request.headers.get("Authorization"), "body": await request.json()})
        return web.json_response({})

    app = web.Application()
    app.router.add_post("/push", push)
    server = TestServer(app)
    await server.start_server()
    notifier = LineNotifier(
        logger=logger,
        channel_token="token",
        user_id="U123",
        push_url=str(server.make_url("/push")),
    )
    try:
        assert await notifier.send_text("hello")
    finally:
        await notifier.close()
        await server.close()

    assert received == [
        {"auth": "Bearer token", "body": {"to": "U123", "messages": [{"type": "text", "text": "hello"}]}}
    ]


@pytest.mark.asyncio
async def test_disabled_notifier_sends_nothing(logger):
    notifier = LineNotifier(logger=logger, channel_token="", user_id="")
    await notifier.connect()
    assert not notifier.enabled
    assert await notifier.send_text("hello") is False
