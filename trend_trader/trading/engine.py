from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from trend_trader.common import guarded_call, log_event, sanitize_text

from .deadline import CycleDeadline
from .decision import DecisionEngine
from .errors import (
    BalanceUnavailableError,
    CycleTimeoutError,
    InsufficientBalanceError,
    InvalidPriceError,
    RouteUnavailableError,
    SwapError,
)
from .ledger import advance_state, execution_price, realized_profit
from .trend import TrendAnalyzer
from .types import (
    CYCLE_STATUS_AWAITING_CONFIRMATION,
    CYCLE_STATUS_BALANCE_UNAVAILABLE,
    CYCLE_STATUS_FAILED,
    CYCLE_STATUS_INVALID_PRICE,
    CYCLE_STATUS_NOOP,
    CYCLE_STATUS_ROUTE_UNAVAILABLE,
    CYCLE_STATUS_SKIPPED_BUSY,
    CYCLE_STATUS_SUCCESS,
    CYCLE_STATUS_TIMEOUT,
    CYCLE_STATUS_TRADE_DISABLED,
    FAIL_REASON_NOT_LANDED,
    SIGNATURE_CONFIRMED,
    SIGNATURE_EXPIRED,
    SIGNATURE_FAILED,
    SIZING_POLICY_BALANCE,
    CycleResult,
    Notifier,
    PairConfig,
    PositionState,
    PriceWatcher,
    PricePoint,
    RuntimeConfig,
    SessionOutcome,
    SignatureCheck,
    SwapExecutor,
    SwapIntent,
    SwapReceipt,
    TradeAction,
    TradeDecision,
    TradingSession,
    TradingState,
    TradingStateStore,
    TrendReport,
    decimal_to_str,
    make_cycle_id,
    make_session_id,
    now_utc,
    to_decimal,
    validate_price,
)

FAILURE_DETAIL_LIMIT = 500
HISTORY_MARGIN_SECONDS = 60


class TraderEngine:
    def __init__(
        self,
        *,
        logger: logging.Logger,
        pair: PairConfig,
        store: TradingStateStore,
        watcher: PriceWatcher,
        executor: SwapExecutor,
        notifier: Notifier | None = None,
        analyzer: TrendAnalyzer | None = None,
        decider: DecisionEngine | None = None,
        cycle_deadline_seconds: float = 240.0,
        cycle_lock_ttl_seconds: int = 300,
        pending_expiry_seconds: int = 900,
    ) -> None:
        self._logger = logger
        self.pair = pair
        self.store = store
        self.watcher = watcher
        self.executor = executor
        self.notifier = notifier
        self.analyzer = analyzer or TrendAnalyzer()
        self.decider = decider or DecisionEngine()
        self._cycle_deadline_seconds = cycle_deadline_seconds
        self._cycle_lock_ttl_seconds = max(1, int(cycle_lock_ttl_seconds))
        self._pending_expiry_seconds = max(0, int(pending_expiry_seconds))
        self._cycle_lock = asyncio.Lock()
        self._last_state: TradingState | None = None

    async def healthcheck(self) -> None:
        await self.executor.healthcheck()

    async def run_cycle(self, *, runtime_config: RuntimeConfig, trigger: str = "schedule") -> CycleResult:
        cycle_id = make_cycle_id()
        started_at = now_utc()

        if self._cycle_lock.locked():
            return self._skipped_busy(cycle_id=cycle_id, trigger=trigger, started_at=started_at)

        async with self._cycle_lock:
            acquired = await self.store.acquire_cycle_lock(owner=cycle_id, ttl_seconds=self._cycle_lock_ttl_seconds)
            if not acquired:
                return self._skipped_busy(cycle_id=cycle_id, trigger=trigger, started_at=started_at)

            try:
                result = await self._run_locked(
                    cycle_id=cycle_id,
                    trigger=trigger,
                    started_at=started_at,
                    runtime_config=runtime_config,
                )
            finally:
                await guarded_call(
                    lambda: self.store.release_cycle_lock(owner=cycle_id),
                    logger=self._logger,
                    event="cycle_lock_release_failed",
                    message="Failed to release cycle lock",
                    cycle_id=cycle_id,
                )

        await self._after_cycle(result, runtime_config)
        return result

    def _skipped_busy(self, *, cycle_id: str, trigger: str, started_at: datetime) -> CycleResult:
        state = self._last_state or TradingState()
        log_event(
            self._logger,
            level="info",
            event="cycle_skipped_busy",
            message="Another cycle is in flight; skipping trigger",
            cycle_id=cycle_id,
            trigger=trigger,
        )
        return CycleResult(
            cycle_id=cycle_id,
            trigger=trigger,
            status=CYCLE_STATUS_SKIPPED_BUSY,
            action=TradeAction.NOOP,
            started_at=started_at,
            finished_at=now_utc(),
            position=state.position,
            cumulative_profit=state.cumulative_profit,
        )

    async def _run_locked(
        self,
        *,
        cycle_id: str,
        trigger: str,
        started_at: datetime,
        runtime_config: RuntimeConfig,
    ) -> CycleResult:
        deadline = CycleDeadline(self._cycle_deadline_seconds)

        def finish(status: str, **fields: Any) -> CycleResult:
            current = self._last_state or TradingState()
            return CycleResult(
                cycle_id=cycle_id,
                trigger=trigger,
                status=status,
                action=fields.pop("action", TradeAction.NOOP),
                started_at=started_at,
                finished_at=now_utc(),
                position=current.position,
                cumulative_profit=current.cumulative_profit,
                **fields,
            )

        try:
            state = await deadline.run(self.store.load_trading_state(), step="load_state")
        except CycleTimeoutError as error:
            return finish(CYCLE_STATUS_TIMEOUT, error=str(error))
        self._last_state = state

        resolved_session: TradingSession | None = None
        if state.pending_session is not None:
            state, resolved_session = await self._reconcile_pending(
                state=state,
                deadline=deadline,
                trigger=trigger,
            )
            if resolved_session is None:
                return finish(CYCLE_STATUS_AWAITING_CONFIRMATION, error="pending swap is not final yet")

        try:
            point = await deadline.run(self.watcher.fetch_price(self.pair), step="price")
            validate_price(point.price)
        except RouteUnavailableError as error:
            return finish(CYCLE_STATUS_ROUTE_UNAVAILABLE, error=str(error), resolved_session=resolved_session)
        except asyncio.TimeoutError as error:
            return finish(
                CYCLE_STATUS_ROUTE_UNAVAILABLE,
                error=f"Price request timed out: {error!r}",
                resolved_session=resolved_session,
            )
        except (InvalidPriceError, ValueError) as error:
            return finish(CYCLE_STATUS_INVALID_PRICE, error=str(error), resolved_session=resolved_session)
        except CycleTimeoutError as error:
            return finish(CYCLE_STATUS_TIMEOUT, error=str(error), resolved_session=resolved_session)

        try:
            await deadline.run(self.store.append_price(point), step="append_price")
            history_since = point.timestamp - timedelta(
                seconds=runtime_config.longest_window.seconds
                + runtime_config.max_reference_age_seconds
                + HISTORY_MARGIN_SECONDS
            )
            history = await deadline.run(
                self.store.list_price_history(since=history_since, until=point.timestamp),
                step="price_history",
            )
        except CycleTimeoutError as error:
            return finish(CYCLE_STATUS_TIMEOUT, error=str(error), price=point, resolved_session=resolved_session)

        trends = self.analyzer.analyze(
            point,
            history,
            runtime_config.windows,
            max_reference_age_seconds=runtime_config.max_reference_age_seconds,
        )
        decision = self.decider.decide(position=state.position, trends=trends, config=runtime_config)
        self._log_decision(cycle_id=cycle_id, point=point, trends=trends, decision=decision)

        common: dict[str, Any] = {
            "price": point,
            "trends": trends,
            "decision": decision,
            "resolved_session": resolved_session,
        }

        if not decision.should_trade:
            return finish(CYCLE_STATUS_NOOP, **common)
        if not runtime_config.trade_enabled:
            return finish(CYCLE_STATUS_TRADE_DISABLED, action=decision.action, **common)

        intent: SwapIntent | None = None
        try:
            intent = await self._build_intent(
                action=decision.action,
                state=state,
                runtime_config=runtime_config,
                deadline=deadline,
            )
            receipt = await self.executor.execute(intent=intent, deadline=deadline)
        except BalanceUnavailableError as error:
            return finish(CYCLE_STATUS_BALANCE_UNAVAILABLE, action=decision.action, error=str(error), **common)
        except RouteUnavailableError as error:
            if not error.submitted:
                return finish(CYCLE_STATUS_ROUTE_UNAVAILABLE, action=decision.action, error=str(error), **common)
            session = self._failed_session(
                state=state, intent=intent, action=decision.action, point=point, error=error, trigger=trigger
            )
        except CycleTimeoutError as error:
            if not error.submitted:
                return finish(CYCLE_STATUS_TIMEOUT, action=decision.action, error=str(error), **common)
            session = self._failed_session(
                state=state, intent=intent, action=decision.action, point=point, error=error, trigger=trigger
            )
        except SwapError as error:
            session = self._failed_session(
                state=state, intent=intent, action=decision.action, point=point, error=error, trigger=trigger
            )
        else:
            session = self._success_session(
                state=state, intent=intent, receipt=receipt, point=point, trigger=trigger
            )

        await self._commit(state=state, session=session)
        status = CYCLE_STATUS_SUCCESS if session.succeeded else CYCLE_STATUS_FAILED
        return finish(
            status,
            action=decision.action,
            session=session,
            error=session.failure_detail,
            **common,
        )

    async def _commit(self, *, state: TradingState, session: TradingSession) -> TradingState:
        state_after = advance_state(state, session)
        await self.store.commit_session(
            session=session,
            state_after=state_after,
            expected_last_session_id=state.last_session_id,
        )
        self._last_state = state_after
        log_event(
            self._logger,
            level="info" if session.succeeded else "warning",
            event="session_committed",
            message="Trading session committed",
            session_id=session.session_id,
            sequence=session.sequence,
            action=session.action.value,
            outcome=session.outcome.value,
            failure_reason=session.failure_reason,
            tx_signature=session.tx_signature,
            position=state_after.position.state.value,
            realized_profit=decimal_to_str(session.realized_profit),
        )
        return state_after

    async def _reconcile_pending(
        self,
        *,
        state: TradingState,
        deadline: CycleDeadline,
        trigger: str,
    ) -> tuple[TradingState, TradingSession | None]:
        pending = state.pending_session
        if pending is None or not pending.tx_signature:
            return state, None

        check = await guarded_call(
            lambda: deadline.run(
                self.executor.check_signature(
                    tx_signature=pending.tx_signature,
                    last_valid_block_height=pending.last_valid_block_height,
                ),
                step="reconcile",
            ),
            logger=self._logger,
            event="pending_check_failed",
            message="Failed to check pending swap signature",
            session_id=pending.session_id,
            tx_signature=pending.tx_signature,
        )
        if check is None:
            return state, None

        if check.status not in {SIGNATURE_CONFIRMED, SIGNATURE_FAILED, SIGNATURE_EXPIRED}:
            age_seconds = (now_utc() - pending.timestamp).total_seconds()
            if pending.last_valid_block_height is not None or age_seconds < self._pending_expiry_seconds:
                log_event(
                    self._logger,
                    level="info",
                    event="pending_still_unknown",
                    message="Pending swap is not final; trading is paused",
                    session_id=pending.session_id,
                    tx_signature=pending.tx_signature,
                    age_seconds=round(age_seconds, 1),
                )
                return state, None
            check = SignatureCheck(
                status=SIGNATURE_EXPIRED,
                error=f"signature unseen after {int(age_seconds)}s",
            )

        session = self._resolution_session(state=state, pending=pending, check=check, trigger=trigger)
        state_after = await self._commit(state=state, session=session)
        return state_after, session

    def _resolution_session(
        self,
        *,
        state: TradingState,
        pending: TradingSession,
        check: SignatureCheck,
        trigger: str,
    ) -> TradingSession:
        confirmed = check.status == SIGNATURE_CONFIRMED
        amount_out = pending.amount_out
        if amount_out <= 0:
            amount_out = to_decimal(pending.metadata.get("expected_amount_out"), Decimal(0)) or Decimal(0)
        price = execution_price(action=pending.action, amount_in=pending.amount_in, amount_out=amount_out)
        price = price or pending.price

        profit: Decimal | None = None
        position_after = state.position.state
        if confirmed:
            if pending.action is TradeAction.BUY:
                position_after = PositionState.LONG
            else:
                position_after = PositionState.FLAT
                profit = realized_profit(
                    entry_price=state.position.entry_price,
                    exit_price=price,
                    quantity=pending.amount_in,
                )

        return TradingSession(
            session_id=make_session_id(),
            sequence=state.next_sequence,
            timestamp=now_utc(),
            action=pending.action,
            outcome=SessionOutcome.SUCCESS if confirmed else SessionOutcome.FAILED,
            amount_in=pending.amount_in,
            amount_out=amount_out if confirmed else Decimal(0),
            input_mint=pending.input_mint,
            output_mint=pending.output_mint,
            price=price,
            position_before=state.position.state,
            position_after=position_after,
            tx_signature=pending.tx_signature,
            failure_reason=None if confirmed else FAIL_REASON_NOT_LANDED,
            failure_detail=None if confirmed else check.error,
            realized_profit=profit,
            resolves_session_id=pending.session_id,
            trigger=trigger,
            metadata={"reconciled": True, "signature_status": check.status},
        )

    async def _build_intent(
        self,
        *,
        action: TradeAction,
        state: TradingState,
        runtime_config: RuntimeConfig,
        deadline: CycleDeadline,
    ) -> SwapIntent:
        pair = self.pair
        if action is TradeAction.BUY:
            if state.position.state is not PositionState.FLAT:
                raise InsufficientBalanceError("Buy requested while a position is open.")
            amount = runtime_config.buy_amount_quote
            if runtime_config.sizing_policy == SIZING_POLICY_BALANCE:
                balance = await deadline.run(
                    self.executor.fetch_balance(mint=pair.quote_mint, decimals=pair.quote_decimals),
                    step="sizing",
                )
                if balance is not None:
                    amount = balance
            input_mint, output_mint = pair.quote_mint, pair.base_mint
            input_decimals, output_decimals = pair.quote_decimals, pair.base_decimals
        else:
            if state.position.state is not PositionState.LONG:
                raise InsufficientBalanceError("Sell requested without an open position.")
            amount = state.position.quantity or Decimal(0)
            if runtime_config.sizing_policy == SIZING_POLICY_BALANCE:
                balance = await deadline.run(
                    self.executor.fetch_balance(mint=pair.base_mint, decimals=pair.base_decimals),
                    step="sizing",
                )
                if balance is not None:
                    amount = balance
                    if pair.base_is_native:
                        amount -= runtime_config.native_fee_reserve
            input_mint, output_mint = pair.base_mint, pair.quote_mint
            input_decimals, output_decimals = pair.base_decimals, pair.quote_decimals

        if amount <= 0:
            raise InsufficientBalanceError(
                f"Nothing to swap for {action.value}: sized amount {amount}",
                details={"sized_amount": decimal_to_str(amount)},
            )

        return SwapIntent(
            action=action,
            input_mint=input_mint,
            output_mint=output_mint,
            input_decimals=input_decimals,
            output_decimals=output_decimals,
            amount_in=amount,
            slippage_bps=pair.slippage_bps,
            priority_fee_lamports=runtime_config.priority_fee_lamports,
        )

    def _success_session(
        self,
        *,
        state: TradingState,
        intent: SwapIntent,
        receipt: SwapReceipt,
        point: PricePoint,
        trigger: str,
    ) -> TradingSession:
        price = execution_price(action=intent.action, amount_in=receipt.amount_in, amount_out=receipt.amount_out)
        price = price or point.price

        profit: Decimal | None = None
        position_after = PositionState.LONG
        if intent.action is TradeAction.SELL:
            position_after = PositionState.FLAT
            profit = realized_profit(
                entry_price=state.position.entry_price,
                exit_price=price,
                quantity=receipt.amount_in,
            )

        return TradingSession(
            session_id=make_session_id(),
            sequence=state.next_sequence,
            timestamp=now_utc(),
            action=intent.action,
            outcome=SessionOutcome.SUCCESS,
            amount_in=receipt.amount_in,
            amount_out=receipt.amount_out,
            input_mint=intent.input_mint,
            output_mint=intent.output_mint,
            price=price,
            position_before=state.position.state,
            position_after=position_after,
            tx_signature=receipt.tx_signature,
            realized_profit=profit,
            last_valid_block_height=receipt.last_valid_block_height,
            trigger=trigger,
            metadata={
                "observed_price": decimal_to_str(point.price),
                "receipt_status": receipt.status,
                "confirmation_status": receipt.confirmation_status,
                **receipt.metadata,
            },
        )

    def _failed_session(
        self,
        *,
        state: TradingState,
        intent: SwapIntent | None,
        action: TradeAction,
        point: PricePoint,
        error: SwapError,
        trigger: str,
    ) -> TradingSession:
        pair = self.pair
        if action is TradeAction.BUY:
            input_mint, output_mint = pair.quote_mint, pair.base_mint
        else:
            input_mint, output_mint = pair.base_mint, pair.quote_mint

        details = error.details
        amount_in = to_decimal(details.get("amount_in"), None)
        if amount_in is None:
            amount_in = intent.amount_in if intent is not None else Decimal(0)
        block_height_raw = details.get("last_valid_block_height")

        metadata: dict[str, Any] = {"observed_price": decimal_to_str(point.price)}
        for key in ("expected_amount_out", "required", "available", "sized_amount", "on_chain_error", "status"):
            if details.get(key) is not None:
                metadata[key] = details[key]
        if isinstance(error, CycleTimeoutError):
            metadata["timeout_step"] = error.step

        return TradingSession(
            session_id=make_session_id(),
            sequence=state.next_sequence,
            timestamp=now_utc(),
            action=action,
            outcome=SessionOutcome.FAILED,
            amount_in=amount_in,
            amount_out=Decimal(0),
            input_mint=input_mint,
            output_mint=output_mint,
            price=point.price,
            position_before=state.position.state,
            position_after=state.position.state,
            tx_signature=error.tx_signature,
            failure_reason=error.reason,
            failure_detail=sanitize_text(str(error))[:FAILURE_DETAIL_LIMIT],
            last_valid_block_height=None if block_height_raw is None else int(block_height_raw),
            trigger=trigger,
            metadata=metadata,
        )

    def _log_decision(
        self,
        *,
        cycle_id: str,
        point: PricePoint,
        trends: TrendReport,
        decision: TradeDecision,
    ) -> None:
        log_event(
            self._logger,
            level="info",
            event="trade_decision",
            message="Trade decision evaluated",
            cycle_id=cycle_id,
            pair=self.pair.symbol,
            price=decimal_to_str(point.price),
            action=decision.action.value,
            reason=decision.reason,
            trends=trends.to_dict(),
        )

    async def _after_cycle(self, result: CycleResult, runtime_config: RuntimeConfig) -> None:
        await guarded_call(
            self.store.update_heartbeat,
            logger=self._logger,
            event="heartbeat_failed",
            message="Failed to update heartbeat",
        )
        if result.price is not None:
            price = result.price
            await guarded_call(
                lambda: self.store.record_price(pair=self.pair.symbol, point=price),
                logger=self._logger,
                event="price_cache_failed",
                message="Failed to cache latest price",
            )
        if result.trends is not None and result.decision is not None:
            trends, decision = result.trends, result.decision
            await guarded_call(
                lambda: self.store.record_trend(pair=self.pair.symbol, report=trends, decision=decision),
                logger=self._logger,
                event="trend_cache_failed",
                message="Failed to cache latest trend",
            )

        state = self._last_state
        if state is not None:
            position_mapping = state.to_dict()
            await guarded_call(
                lambda: self.store.record_position(position_mapping),
                logger=self._logger,
                event="position_cache_failed",
                message="Failed to cache position snapshot",
            )

        if result.status == CYCLE_STATUS_SKIPPED_BUSY:
            return

        has_session = result.session is not None or result.resolved_session is not None
        if has_session or result.status not in {CYCLE_STATUS_NOOP}:
            await guarded_call(
                lambda: self.store.publish_event(
                    level="ERROR" if result.status == CYCLE_STATUS_FAILED else "INFO",
                    event=f"cycle_{result.status}",
                    message=f"Cycle finished with status {result.status}",
                    details=result.to_dict(),
                    event_id=result.cycle_id,
                ),
                logger=self._logger,
                event="cycle_event_publish_failed",
                message="Failed to publish cycle event",
                cycle_id=result.cycle_id,
            )

        should_notify = has_session or (result.status == CYCLE_STATUS_NOOP and runtime_config.notify_on_noop)
        if should_notify and self.notifier is not None:
            notifier = self.notifier
            await guarded_call(
                lambda: notifier.notify(result),
                logger=self._logger,
                event="notification_failed",
                message="Failed to deliver cycle notification",
                cycle_id=result.cycle_id,
            )
