from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from trend_trader.trading.trend import TrendAnalyzer, percent_change, population_variance
from trend_trader.trading.types import PricePoint, parse_windows

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def point(price: str, *, minutes_ago: int) -> PricePoint:
    return PricePoint(timestamp=NOW - timedelta(minutes=minutes_ago), price=Decimal(price))


def test_percent_change_against_reference():
    assert percent_change(Decimal("98.40"), Decimal("99.00")).quantize(Decimal("0.001")) == Decimal("-0.606")
    assert percent_change(Decimal("99.30"), Decimal("99.00")).quantize(Decimal("0.001")) == Decimal("0.303")
    assert percent_change(Decimal("1"), Decimal("0")) is None


def test_population_variance():
    assert population_variance([Decimal("1")]) == Decimal(0)
    assert population_variance([Decimal("1"), Decimal("3")]) == Decimal(1)


def test_reference_is_latest_point_at_or_before_window_start():
    history = [
        point("97.00", minutes_ago=120),
        point("99.00", minutes_ago=60),
        point("98.90", minutes_ago=30),
    ]
    current = PricePoint(timestamp=NOW, price=Decimal("98.40"))

    report = TrendAnalyzer().analyze(current, history, parse_windows("1h"))

    signal = report.signals[0]
    assert signal.reference_price == Decimal("99.00")
    assert signal.reference_timestamp == NOW - timedelta(hours=1)
    assert signal.direction == "down"
    assert signal.variance == population_variance([Decimal("98.90"), Decimal("98.40")])


def test_window_without_enough_history_is_unavailable():
    history = [point("99.00", minutes_ago=61)]
    current = PricePoint(timestamp=NOW, price=Decimal("98.40"))

    report = TrendAnalyzer().analyze(current, history, parse_windows("1h,6h"))

    assert report.signals[0].available
    assert not report.signals[1].available
    assert report.to_dict()["6h"]["change_pct"] is None


def test_stale_reference_is_ignored():
    history = [point("99.00", minutes_ago=200)]
    current = PricePoint(timestamp=NOW, price=Decimal("98.40"))

    report = TrendAnalyzer().analyze(current, history, parse_windows("1h"), max_reference_age_seconds=3600)

    signal = report.signals[0]
    assert signal.change_pct is None
    assert signal.reference_price == Decimal("99.00")


def test_future_points_are_not_used():
    history = [point("99.00", minutes_ago=61), point("50.00", minutes_ago=-5)]
    current = PricePoint(timestamp=NOW, price=Decimal("99.00"))

    report = TrendAnalyzer().analyze(current, history, parse_windows("1h"))

    assert report.signals[0].change_pct == Decimal(0)
    assert report.signals[0].direction == "stable"


@pytest.mark.parametrize(
    ("raw", "labels"),
    [
        ("1h,6h,24h", ["1h", "6h", "1d"]),
        ("24h, 60m ,1h", ["1h", "1d"]),
        ("90m", ["90m"]),
    ],
)
def test_parse_windows_sorts_and_dedupes(raw, labels):
    assert [window.label for window in parse_windows(raw)] == labels


@pytest.mark.parametrize("raw", ["", "abc", "0h"])
def test_parse_windows_rejects_invalid(raw):
    with pytest.raises(ValueError):
        parse_windows(raw)
