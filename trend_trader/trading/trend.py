from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Sequence

from .types import PricePoint, TrendReport, TrendSignal, TrendWindow

PERCENT = Decimal(100)


def population_variance(prices: Sequence[Decimal]) -> Decimal:
    if len(prices) < 2:
        return Decimal(0)
    count = Decimal(len(prices))
    mean = sum(prices, Decimal(0)) / count
    return sum(((price - mean) * (price - mean) for price in prices), Decimal(0)) / count


def percent_change(current: Decimal, reference: Decimal) -> Decimal | None:
    if reference <= 0:
        return None
    return (current - reference) / reference * PERCENT


class TrendAnalyzer:
    def analyze(
        self,
        current: PricePoint,
        history: Sequence[PricePoint],
        windows: Sequence[TrendWindow],
        *,
        max_reference_age_seconds: int | None = None,
    ) -> TrendReport:
        ordered = sorted(history, key=lambda point: point.timestamp)
        signals = tuple(
            self._signal_for_window(current, ordered, window, max_reference_age_seconds)
            for window in windows
        )
        return TrendReport(timestamp=current.timestamp, current_price=current.price, signals=signals)

    def _signal_for_window(
        self,
        current: PricePoint,
        ordered: Sequence[PricePoint],
        window: TrendWindow,
        max_reference_age_seconds: int | None,
    ) -> TrendSignal:
        boundary = current.timestamp - timedelta(seconds=window.seconds)

        reference: PricePoint | None = None
        in_window: list[Decimal] = []
        current_seen = False
        for point in ordered:
            if point.timestamp > current.timestamp:
                continue
            if point.timestamp == current.timestamp:
                current_seen = True
            if point.timestamp <= boundary:
                reference = point
            else:
                in_window.append(point.price)

        if reference is None:
            return TrendSignal(window=window, change_pct=None)

        if max_reference_age_seconds is not None and max_reference_age_seconds > 0:
            if reference.timestamp < boundary - timedelta(seconds=max_reference_age_seconds):
                return TrendSignal(
                    window=window,
                    change_pct=None,
                    reference_price=reference.price,
                    reference_timestamp=reference.timestamp,
                )

        if not current_seen:
            in_window.append(current.price)

        return TrendSignal(
            window=window,
            change_pct=percent_change(current.price, reference.price),
            reference_price=reference.price,
            reference_timestamp=reference.timestamp,
            variance=population_variance(in_window),
        )
