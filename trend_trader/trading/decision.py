from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable

from .trend import percent_change
from .types import (
    SELL_BASIS_ENTRY,
    WINDOW_POLICY_ALL,
    WINDOW_POLICY_ANY,
    Position,
    PositionState,
    RuntimeConfig,
    TradeAction,
    TradeDecision,
    TrendReport,
    TrendSignal,
    decimal_to_str,
)


class DecisionEngine:
    def decide(
        self,
        *,
        position: Position,
        trends: TrendReport,
        config: RuntimeConfig,
    ) -> TradeDecision:
        if position.state is PositionState.FLAT:
            return self._decide_flat(trends, config)
        return self._decide_long(position, trends, config)

    def _decide_flat(self, trends: TrendReport, config: RuntimeConfig) -> TradeDecision:
        satisfied, basis = self._evaluate_windows(
            trends,
            config,
            lambda change, threshold: change <= -threshold,
        )
        if satisfied:
            return TradeDecision(action=TradeAction.BUY, reason="price_drop", basis=basis)
        return TradeDecision(action=TradeAction.NOOP, reason=self._noop_reason(basis), basis=basis)

    def _decide_long(self, position: Position, trends: TrendReport, config: RuntimeConfig) -> TradeDecision:
        if config.sell_basis == SELL_BASIS_ENTRY:
            threshold = config.threshold_for(config.short_window)
            basis: dict[str, Any] = {
                "policy": "entry",
                "threshold_pct": decimal_to_str(threshold),
                "entry_price": decimal_to_str(position.entry_price),
                "current_price": decimal_to_str(trends.current_price),
            }
            if position.entry_price is None:
                basis["change_pct"] = None
                return TradeDecision(action=TradeAction.NOOP, reason="entry_price_unknown", basis=basis)

            change = percent_change(trends.current_price, position.entry_price)
            basis["change_pct"] = decimal_to_str(change)
            if change is not None and change >= threshold:
                return TradeDecision(action=TradeAction.SELL, reason="price_rise_from_entry", basis=basis)
            return TradeDecision(action=TradeAction.NOOP, reason="below_threshold", basis=basis)

        satisfied, basis = self._evaluate_windows(
            trends,
            config,
            lambda change, threshold: change >= threshold,
        )
        if satisfied:
            return TradeDecision(action=TradeAction.SELL, reason="price_rise", basis=basis)
        return TradeDecision(action=TradeAction.NOOP, reason=self._noop_reason(basis), basis=basis)

    def _evaluate_windows(
        self,
        trends: TrendReport,
        config: RuntimeConfig,
        predicate: Callable[[Decimal, Decimal], bool],
    ) -> tuple[bool, dict[str, Any]]:
        if config.window_policy in {WINDOW_POLICY_ALL, WINDOW_POLICY_ANY}:
            windows = config.windows
        else:
            windows = (config.short_window,)

        results: list[bool] = []
        window_basis: dict[str, Any] = {}
        for window in windows:
            signal = trends.signal(window)
            threshold = config.threshold_for(window)
            matched = self._signal_satisfies(signal, threshold, predicate)
            results.append(matched)
            window_basis[window.label] = {
                "change_pct": decimal_to_str(signal.change_pct),
                "threshold_pct": decimal_to_str(threshold),
                "available": signal.available,
                "satisfied": matched,
            }

        if config.window_policy == WINDOW_POLICY_ANY:
            satisfied = any(results)
        else:
            satisfied = bool(results) and all(results)

        return satisfied, {"policy": config.window_policy, "windows": window_basis}

    @staticmethod
    def _signal_satisfies(
        signal: TrendSignal,
        threshold: Decimal,
        predicate: Callable[[Decimal, Decimal], bool],
    ) -> bool:
        if signal.change_pct is None:
            return False
        return predicate(signal.change_pct, threshold)

    @staticmethod
    def _noop_reason(basis: dict[str, Any]) -> str:
        windows = basis.get("windows") or {}
        if windows and not any(entry["available"] for entry in windows.values()):
            return "trend_unavailable"
        return "below_threshold"
