from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable

from .types import (
    Position,
    PositionState,
    SessionOutcome,
    TradeAction,
    TradingPerformance,
    TradingSession,
    TradingState,
    now_utc,
)

PERCENT = Decimal(100)


def realized_profit(*, entry_price: Decimal | None, exit_price: Decimal, quantity: Decimal) -> Decimal:
    if entry_price is None:
        return Decimal(0)
    return (exit_price - entry_price) * quantity


def execution_price(*, action: TradeAction, amount_in: Decimal, amount_out: Decimal) -> Decimal | None:
    # Prices are always quoted as quote asset per base asset.
    if action is TradeAction.BUY:
        if amount_out <= 0:
            return None
        return amount_in / amount_out
    if amount_in <= 0:
        return None
    return amount_out / amount_in


def apply_session(position: Position, session: TradingSession) -> Position:
    if session.outcome is not SessionOutcome.SUCCESS:
        return position
    if session.action is TradeAction.BUY:
        return Position.long(
            entry_price=session.price,
            entry_timestamp=session.timestamp,
            quantity=session.amount_out,
        )
    if session.action is TradeAction.SELL:
        return Position.flat()
    return position


def replay_sessions(sessions: Iterable[TradingSession]) -> TradingState:
    ordered = sorted(sessions, key=lambda session: session.sequence)

    position = Position.flat()
    cumulative_profit = Decimal(0)
    trade_count = 0
    failed_count = 0
    winning_trades = 0
    losing_trades = 0
    last_session_id: str | None = None
    last_trade_price: Decimal | None = None
    resolved_ids: set[str] = set()
    pending: TradingSession | None = None

    for session in ordered:
        last_session_id = session.session_id
        if session.resolves_session_id:
            resolved_ids.add(session.resolves_session_id)

        if session.outcome is SessionOutcome.SUCCESS:
            trade_count += 1
            last_trade_price = session.price
            if session.action is TradeAction.SELL:
                profit = session.realized_profit
                if profit is None:
                    profit = realized_profit(
                        entry_price=position.entry_price,
                        exit_price=session.price,
                        quantity=session.amount_in,
                    )
                cumulative_profit += profit
                if profit > 0:
                    winning_trades += 1
                elif profit < 0:
                    losing_trades += 1
            position = apply_session(position, session)
            continue

        failed_count += 1
        if session.awaits_confirmation:
            pending = session

    if pending is not None and pending.session_id in resolved_ids:
        pending = None

    return TradingState(
        position=position,
        cumulative_profit=cumulative_profit,
        trade_count=trade_count,
        failed_count=failed_count,
        winning_trades=winning_trades,
        losing_trades=losing_trades,
        session_count=len(ordered),
        last_session_id=last_session_id,
        last_trade_price=last_trade_price,
        pending_session=pending,
    )


def advance_state(state: TradingState, session: TradingSession) -> TradingState:
    if session.sequence != state.next_sequence:
        raise ValueError(
            f"Session sequence {session.sequence} does not follow ledger length {state.session_count}"
        )

    position = apply_session(state.position, session)
    cumulative_profit = state.cumulative_profit
    winning_trades = state.winning_trades
    losing_trades = state.losing_trades
    trade_count = state.trade_count
    failed_count = state.failed_count
    last_trade_price = state.last_trade_price

    if session.outcome is SessionOutcome.SUCCESS:
        trade_count += 1
        last_trade_price = session.price
        profit = session.realized_profit or Decimal(0)
        cumulative_profit += profit
        if session.action is TradeAction.SELL:
            if profit > 0:
                winning_trades += 1
            elif profit < 0:
                losing_trades += 1
    else:
        failed_count += 1

    pending = state.pending_session
    if session.resolves_session_id and pending and pending.session_id == session.resolves_session_id:
        pending = None
    if session.awaits_confirmation:
        pending = session

    return TradingState(
        position=position,
        cumulative_profit=cumulative_profit,
        trade_count=trade_count,
        failed_count=failed_count,
        winning_trades=winning_trades,
        losing_trades=losing_trades,
        session_count=state.session_count + 1,
        last_session_id=session.session_id,
        last_trade_price=last_trade_price,
        pending_session=pending,
    )


def state_matches_snapshot(state: TradingState, snapshot: dict | None) -> bool:
    if not snapshot:
        return state.session_count == 0
    return (
        snapshot.get("last_session_id") == state.last_session_id
        and int(snapshot.get("session_count") or 0) == state.session_count
        and (snapshot.get("position") or {}).get("state", PositionState.FLAT.value) == state.position.state.value
    )


def compute_performance(
    sessions: Iterable[TradingSession],
    *,
    position: Position,
    days: int | None = None,
    now: datetime | None = None,
) -> TradingPerformance:
    cutoff = None
    if days is not None and days > 0:
        cutoff = (now or now_utc()) - timedelta(days=days)

    total_trades = 0
    winning_trades = 0
    losing_trades = 0
    closed_trades = 0
    failed_attempts = 0
    total_profit = Decimal(0)

    for session in sessions:
        if cutoff is not None and session.timestamp < cutoff:
            continue
        if session.outcome is SessionOutcome.FAILED:
            failed_attempts += 1
            continue
        total_trades += 1
        if session.action is not TradeAction.SELL:
            continue
        closed_trades += 1
        profit = session.realized_profit or Decimal(0)
        total_profit += profit
        if profit > 0:
            winning_trades += 1
        elif profit < 0:
            losing_trades += 1

    win_rate = Decimal(0)
    if closed_trades:
        win_rate = Decimal(winning_trades) / Decimal(closed_trades) * PERCENT

    return TradingPerformance(
        total_trades=total_trades,
        winning_trades=winning_trades,
        losing_trades=losing_trades,
        failed_attempts=failed_attempts,
        total_profit_loss=total_profit,
        win_rate=win_rate,
        period_days=days,
        position=position,
    )
