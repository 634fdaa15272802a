from __future__ import annotations

import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Protocol, Sequence

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

PRICE_SOURCE_JUPITER = "jupiter"

FAIL_REASON_ROUTE_UNAVAILABLE = "route_unavailable"
FAIL_REASON_INSUFFICIENT_BALANCE = "insufficient_balance"
FAIL_REASON_SUBMISSION_REJECTED = "submission_rejected"
FAIL_REASON_CONFIRMATION_TIMEOUT = "confirmation_timeout"
FAIL_REASON_TIMEOUT = "timeout"
FAIL_REASON_NOT_LANDED = "not_landed"
FAIL_REASON_BALANCE_UNAVAILABLE = "balance_unavailable"

SIGNATURE_CONFIRMED = "confirmed"
SIGNATURE_FAILED = "failed"
SIGNATURE_EXPIRED = "expired"
SIGNATURE_PENDING = "pending"

# Failed sessions with these reasons were submitted but never observed as final.
PENDING_FAILURE_REASONS = frozenset({FAIL_REASON_CONFIRMATION_TIMEOUT, FAIL_REASON_TIMEOUT})

CYCLE_STATUS_NOOP = "noop"
CYCLE_STATUS_SUCCESS = "success"
CYCLE_STATUS_FAILED = "failed"
CYCLE_STATUS_SKIPPED_BUSY = "skipped_busy"
CYCLE_STATUS_AWAITING_CONFIRMATION = "awaiting_confirmation"
CYCLE_STATUS_TRADE_DISABLED = "trade_disabled"
CYCLE_STATUS_ROUTE_UNAVAILABLE = "route_unavailable"
CYCLE_STATUS_INVALID_PRICE = "invalid_price"
CYCLE_STATUS_TIMEOUT = "timeout"
CYCLE_STATUS_BALANCE_UNAVAILABLE = "balance_unavailable"

SELL_BASIS_WINDOW = "window"
SELL_BASIS_ENTRY = "entry"
WINDOW_POLICY_SHORT = "short"
WINDOW_POLICY_ALL = "all"
WINDOW_POLICY_ANY = "any"
SIZING_POLICY_FIXED = "fixed"
SIZING_POLICY_BALANCE = "balance"

MAX_VALID_PRICE = Decimal("1000000")

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhdw]?)\s*$", re.IGNORECASE)
_DURATION_UNITS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}


def to_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def to_int(value: Any, default: int) -> int:
    try:
        if value is None or value == "":
            return default
        return int(float(str(value).strip()))
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float) -> float:
    try:
        if value is None or value == "":
            return default
        return float(str(value).strip())
    except (TypeError, ValueError):
        return default


def to_decimal(value: Any, default: Decimal | None) -> Decimal | None:
    if value is None or value == "":
        return default
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # Route floats through repr so 0.1 stays 0.1 instead of its binary expansion.
        value = repr(value)
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return default
    if not parsed.is_finite():
        return default
    return parsed


def to_non_negative_decimal(value: Any, default: Decimal) -> Decimal:
    parsed = to_decimal(value, None)
    if parsed is None or parsed < 0:
        return default
    return parsed


def decimal_to_str(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return format(value, "f")


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value).strip()
        normalized = raw[:-1] + "+00:00" if raw.endswith("Z") else raw
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def make_session_id() -> str:
    return str(uuid.uuid4())


def make_cycle_id() -> str:
    return f"cyc-{uuid.uuid4().hex[:16]}"


def to_atomic_amount(amount: Decimal, decimals: int) -> int:
    scaled = (amount * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN)
    return max(0, int(scaled))


def from_atomic_amount(amount: int | str, decimals: int) -> Decimal:
    return Decimal(int(amount)) / (Decimal(10) ** decimals)


def parse_duration_seconds(value: str) -> int:
    match = _DURATION_RE.match(value or "")
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2).lower()]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return seconds


def format_window_label(seconds: int) -> str:
    for unit, size in (("w", 604800), ("d", 86400), ("h", 3600), ("m", 60)):
        if seconds % size == 0:
            return f"{seconds // size}{unit}"
    return f"{seconds}s"


def validate_price(price: Decimal) -> None:
    if price <= 0:
        raise ValueError("Invalid price: must be greater than zero")
    if price > MAX_VALID_PRICE:
        raise ValueError("Invalid price: exceeds maximum allowed value")


def normalize_choice(value: Any, choices: Sequence[str], default: str) -> str:
    candidate = str(value or "").strip().lower()
    if candidate in choices:
        return candidate
    return default


class PositionState(str, Enum):
    FLAT = "flat"
    LONG = "long"


class TradeAction(str, Enum):
    BUY = "buy"
    SELL = "sell"
    NOOP = "noop"


class SessionOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class TrendWindow:
    label: str
    seconds: int


def parse_windows(raw: str) -> tuple[TrendWindow, ...]:
    windows: dict[int, TrendWindow] = {}
    for token in (raw or "").split(","):
        token = token.strip()
        if not token:
            continue
        seconds = parse_duration_seconds(token)
        windows[seconds] = TrendWindow(label=format_window_label(seconds), seconds=seconds)
    if not windows:
        raise ValueError("At least one trend window is required.")
    return tuple(windows[seconds] for seconds in sorted(windows))


def parse_thresholds(raw: str) -> dict[str, Decimal]:
    thresholds: dict[str, Decimal] = {}
    for token in (raw or "").split(","):
        if "=" not in token:
            continue
        window_raw, value_raw = token.split("=", 1)
        threshold = to_decimal(value_raw, None)
        if threshold is None or threshold < 0:
            raise ValueError(f"Invalid threshold for window {window_raw.strip()!r}: {value_raw!r}")
        thresholds[format_window_label(parse_duration_seconds(window_raw))] = threshold
    return thresholds


@dataclass(slots=True, frozen=True)
class PairConfig:
    symbol: str
    base_mint: str
    quote_mint: str
    base_decimals: int
    quote_decimals: int
    slippage_bps: int

    @classmethod
    def from_env(cls) -> "PairConfig":
        return cls(
            symbol=os.getenv("PAIR_SYMBOL", "SOL/USDC"),
            base_mint=os.getenv("PAIR_BASE_MINT", os.getenv("SOL_MINT", SOL_MINT)),
            quote_mint=os.getenv("PAIR_QUOTE_MINT", os.getenv("USDC_MINT", USDC_MINT)),
            base_decimals=to_int(os.getenv("PAIR_BASE_DECIMALS"), 9),
            quote_decimals=to_int(os.getenv("PAIR_QUOTE_DECIMALS"), 6),
            slippage_bps=max(0, to_int(os.getenv("SLIPPAGE_BPS"), 50)),
        )

    @property
    def base_is_native(self) -> bool:
        return self.base_mint == SOL_MINT


@dataclass(slots=True, frozen=True)
class RuntimeConfig:
    config_schema_version: int
    trade_enabled: bool
    windows: tuple[TrendWindow, ...]
    default_threshold_pct: Decimal
    window_thresholds: dict[str, Decimal]
    sell_basis: str
    window_policy: str
    sizing_policy: str
    buy_amount_quote: Decimal
    native_fee_reserve: Decimal
    max_reference_age_seconds: int
    priority_fee_lamports: int
    notify_on_noop: bool

    @property
    def short_window(self) -> TrendWindow:
        return self.windows[0]

    @property
    def longest_window(self) -> TrendWindow:
        return self.windows[-1]

    def threshold_for(self, window: TrendWindow) -> Decimal:
        return self.window_thresholds.get(window.label, self.default_threshold_pct)

    def to_document(self) -> dict[str, Any]:
        """Runtime config document as stored in Firestore and mirrored into Redis."""
        return {
            "schema_version": self.config_schema_version,
            "trade_enabled": self.trade_enabled,
            "trend_windows": ",".join(window.label for window in self.windows),
            "trend_threshold_pct": decimal_to_str(self.default_threshold_pct),
            "trend_window_thresholds": ",".join(
                f"{label}={decimal_to_str(value)}" for label, value in sorted(self.window_thresholds.items())
            ),
            "sell_basis": self.sell_basis,
            "window_policy": self.window_policy,
            "sizing_policy": self.sizing_policy,
            "buy_amount_quote": decimal_to_str(self.buy_amount_quote),
            "native_fee_reserve": decimal_to_str(self.native_fee_reserve),
            "max_reference_age_seconds": self.max_reference_age_seconds,
            "priority_fee_lamports": self.priority_fee_lamports,
            "notify_on_noop": self.notify_on_noop,
        }

    @classmethod
    def from_env_defaults(cls) -> "RuntimeConfig":
        return cls(
            config_schema_version=max(1, to_int(os.getenv("CONFIG_SCHEMA_VERSION"), 1)),
            trade_enabled=to_bool(os.getenv("TRADE_ENABLED"), True),
            windows=parse_windows(os.getenv("TREND_WINDOWS", "1h,6h,24h")),
            default_threshold_pct=to_non_negative_decimal(os.getenv("TREND_THRESHOLD_PCT"), Decimal("0.5")),
            window_thresholds=parse_thresholds(os.getenv("TREND_WINDOW_THRESHOLDS", "")),
            sell_basis=normalize_choice(
                os.getenv("SELL_BASIS"),
                (SELL_BASIS_WINDOW, SELL_BASIS_ENTRY),
                SELL_BASIS_WINDOW,
            ),
            window_policy=normalize_choice(
                os.getenv("WINDOW_POLICY"),
                (WINDOW_POLICY_SHORT, WINDOW_POLICY_ALL, WINDOW_POLICY_ANY),
                WINDOW_POLICY_SHORT,
            ),
            sizing_policy=normalize_choice(
                os.getenv("SIZING_POLICY"),
                (SIZING_POLICY_FIXED, SIZING_POLICY_BALANCE),
                SIZING_POLICY_FIXED,
            ),
            buy_amount_quote=to_non_negative_decimal(os.getenv("BUY_AMOUNT_QUOTE"), Decimal("10")),
            native_fee_reserve=to_non_negative_decimal(os.getenv("NATIVE_FEE_RESERVE"), Decimal("0.01")),
            max_reference_age_seconds=max(0, to_int(os.getenv("MAX_REFERENCE_AGE_SECONDS"), 3600)),
            priority_fee_lamports=max(0, to_int(os.getenv("PRIORITY_FEE_LAMPORTS"), 10_000)),
            notify_on_noop=to_bool(os.getenv("NOTIFY_ON_NOOP"), False),
        )

    @classmethod
    def from_redis(cls, redis_config: dict[str, str], defaults: "RuntimeConfig") -> "RuntimeConfig":
        schema_raw = redis_config.get("schema_version") or redis_config.get("config_schema_version")

        windows = defaults.windows
        if redis_config.get("trend_windows"):
            try:
                windows = parse_windows(redis_config["trend_windows"])
            except ValueError:
                windows = defaults.windows

        window_thresholds = defaults.window_thresholds
        if redis_config.get("trend_window_thresholds"):
            try:
                window_thresholds = parse_thresholds(redis_config["trend_window_thresholds"])
            except ValueError:
                window_thresholds = defaults.window_thresholds

        return cls(
            config_schema_version=max(1, to_int(schema_raw, defaults.config_schema_version)),
            trade_enabled=to_bool(redis_config.get("trade_enabled"), defaults.trade_enabled),
            windows=windows,
            default_threshold_pct=to_non_negative_decimal(
                redis_config.get("trend_threshold_pct"),
                defaults.default_threshold_pct,
            ),
            window_thresholds=window_thresholds,
            sell_basis=normalize_choice(
                redis_config.get("sell_basis"),
                (SELL_BASIS_WINDOW, SELL_BASIS_ENTRY),
                defaults.sell_basis,
            ),
            window_policy=normalize_choice(
                redis_config.get("window_policy"),
                (WINDOW_POLICY_SHORT, WINDOW_POLICY_ALL, WINDOW_POLICY_ANY),
                defaults.window_policy,
            ),
            sizing_policy=normalize_choice(
                redis_config.get("sizing_policy"),
                (SIZING_POLICY_FIXED, SIZING_POLICY_BALANCE),
                defaults.sizing_policy,
            ),
            buy_amount_quote=to_non_negative_decimal(redis_config.get("buy_amount_quote"), defaults.buy_amount_quote),
            native_fee_reserve=to_non_negative_decimal(
                redis_config.get("native_fee_reserve"),
                defaults.native_fee_reserve,
            ),
            max_reference_age_seconds=max(
                0,
                to_int(redis_config.get("max_reference_age_seconds"), defaults.max_reference_age_seconds),
            ),
            priority_fee_lamports=max(
                0,
                to_int(redis_config.get("priority_fee_lamports"), defaults.priority_fee_lamports),
            ),
            notify_on_noop=to_bool(redis_config.get("notify_on_noop"), defaults.notify_on_noop),
        )


@dataclass(slots=True, frozen=True)
class PricePoint:
    timestamp: datetime
    price: Decimal
    source: str = PRICE_SOURCE_JUPITER

    def to_document(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "price": decimal_to_str(self.price),
            "source": self.source,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "price": decimal_to_str(self.price),
            "source": self.source,
        }

    @classmethod
    def from_document(cls, payload: dict[str, Any]) -> "PricePoint":
        timestamp = parse_timestamp(payload.get("timestamp"))
        price = to_decimal(payload.get("price"), None)
        if timestamp is None or price is None:
            raise ValueError(f"Malformed price document: {payload}")
        return cls(timestamp=timestamp, price=price, source=str(payload.get("source") or PRICE_SOURCE_JUPITER))


@dataclass(slots=True, frozen=True)
class Position:
    state: PositionState = PositionState.FLAT
    entry_price: Decimal | None = None
    entry_timestamp: datetime | None = None
    quantity: Decimal | None = None

    @classmethod
    def flat(cls) -> "Position":
        return cls()

    @classmethod
    def long(cls, *, entry_price: Decimal, entry_timestamp: datetime, quantity: Decimal) -> "Position":
        return cls(
            state=PositionState.LONG,
            entry_price=entry_price,
            entry_timestamp=entry_timestamp,
            quantity=quantity,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "entry_price": decimal_to_str(self.entry_price),
            "entry_timestamp": self.entry_timestamp.isoformat() if self.entry_timestamp else None,
            "quantity": decimal_to_str(self.quantity),
        }


@dataclass(slots=True, frozen=True)
class TradingSession:
    session_id: str
    sequence: int
    timestamp: datetime
    action: TradeAction
    outcome: SessionOutcome
    amount_in: Decimal
    amount_out: Decimal
    input_mint: str
    output_mint: str
    price: Decimal
    position_before: PositionState
    position_after: PositionState
    tx_signature: str | None = None
    failure_reason: str | None = None
    failure_detail: str | None = None
    realized_profit: Decimal | None = None
    resolves_session_id: str | None = None
    last_valid_block_height: int | None = None
    trigger: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.outcome is SessionOutcome.SUCCESS

    @property
    def awaits_confirmation(self) -> bool:
        return (
            self.outcome is SessionOutcome.FAILED
            and self.failure_reason in PENDING_FAILURE_REASONS
            and bool(self.tx_signature)
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp,
            "action": self.action.value,
            "outcome": self.outcome.value,
            "amount_in": decimal_to_str(self.amount_in),
            "amount_out": decimal_to_str(self.amount_out),
            "input_mint": self.input_mint,
            "output_mint": self.output_mint,
            "price": decimal_to_str(self.price),
            "position_before": self.position_before.value,
            "position_after": self.position_after.value,
            "tx_signature": self.tx_signature,
            "failure_reason": self.failure_reason,
            "failure_detail": self.failure_detail,
            "realized_profit": decimal_to_str(self.realized_profit),
            "resolves_session_id": self.resolves_session_id,
            "last_valid_block_height": self.last_valid_block_height,
            "trigger": self.trigger,
            "metadata": dict(self.metadata),
        }

    def to_dict(self) -> dict[str, Any]:
        payload = self.to_document()
        payload["timestamp"] = self.timestamp.isoformat()
        return payload

    @classmethod
    def from_document(cls, payload: dict[str, Any]) -> "TradingSession":
        timestamp = parse_timestamp(payload.get("timestamp"))
        if timestamp is None:
            raise ValueError(f"Malformed session document: {payload.get('session_id')}")
        block_height = payload.get("last_valid_block_height")
        return cls(
            session_id=str(payload["session_id"]),
            sequence=to_int(payload.get("sequence"), 0),
            timestamp=timestamp,
            action=TradeAction(str(payload["action"])),
            outcome=SessionOutcome(str(payload["outcome"])),
            amount_in=to_decimal(payload.get("amount_in"), Decimal(0)) or Decimal(0),
            amount_out=to_decimal(payload.get("amount_out"), Decimal(0)) or Decimal(0),
            input_mint=str(payload.get("input_mint") or ""),
            output_mint=str(payload.get("output_mint") or ""),
            price=to_decimal(payload.get("price"), Decimal(0)) or Decimal(0),
            position_before=PositionState(str(payload.get("position_before") or PositionState.FLAT.value)),
            position_after=PositionState(str(payload.get("position_after") or PositionState.FLAT.value)),
            tx_signature=payload.get("tx_signature") or None,
            failure_reason=payload.get("failure_reason") or None,
            failure_detail=payload.get("failure_detail") or None,
            realized_profit=to_decimal(payload.get("realized_profit"), None),
            resolves_session_id=payload.get("resolves_session_id") or None,
            last_valid_block_height=None if block_height is None else to_int(block_height, 0),
            trigger=str(payload.get("trigger") or ""),
            metadata=dict(payload.get("metadata") or {}),
        )


@dataclass(slots=True, frozen=True)
class TradingState:
    position: Position = field(default_factory=Position.flat)
    cumulative_profit: Decimal = Decimal(0)
    trade_count: int = 0
    failed_count: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    session_count: int = 0
    last_session_id: str | None = None
    last_trade_price: Decimal | None = None
    pending_session: TradingSession | None = None

    @property
    def next_sequence(self) -> int:
        return self.session_count + 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position.to_dict(),
            "cumulative_profit": decimal_to_str(self.cumulative_profit),
            "trade_count": self.trade_count,
            "failed_count": self.failed_count,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "session_count": self.session_count,
            "last_session_id": self.last_session_id,
            "last_trade_price": decimal_to_str(self.last_trade_price),
            "pending_session_id": self.pending_session.session_id if self.pending_session else None,
        }


@dataclass(slots=True, frozen=True)
class TrendSignal:
    window: TrendWindow
    change_pct: Decimal | None
    reference_price: Decimal | None = None
    reference_timestamp: datetime | None = None
    variance: Decimal | None = None

    @property
    def available(self) -> bool:
        return self.change_pct is not None

    @property
    def direction(self) -> str | None:
        if self.change_pct is None:
            return None
        if self.change_pct > 0:
            return "up"
        if self.change_pct < 0:
            return "down"
        return "stable"

    def to_dict(self) -> dict[str, Any]:
        return {
            "window": self.window.label,
            "change_pct": decimal_to_str(self.change_pct),
            "direction": self.direction,
            "reference_price": decimal_to_str(self.reference_price),
            "reference_timestamp": self.reference_timestamp.isoformat() if self.reference_timestamp else None,
            "variance": decimal_to_str(self.variance),
        }


@dataclass(slots=True, frozen=True)
class TrendReport:
    timestamp: datetime
    current_price: Decimal
    signals: tuple[TrendSignal, ...]

    def signal(self, window: TrendWindow) -> TrendSignal:
        for signal in self.signals:
            if signal.window == window:
                return signal
        return TrendSignal(window=window, change_pct=None)

    def to_dict(self) -> dict[str, Any]:
        return {signal.window.label: signal.to_dict() for signal in self.signals}


@dataclass(slots=True, frozen=True)
class TradeDecision:
    action: TradeAction
    reason: str
    basis: dict[str, Any] = field(default_factory=dict)

    @property
    def should_trade(self) -> bool:
        return self.action is not TradeAction.NOOP

    def to_dict(self) -> dict[str, Any]:
        return {"action": self.action.value, "reason": self.reason, "basis": dict(self.basis)}


@dataclass(slots=True, frozen=True)
class SwapIntent:
    action: TradeAction
    input_mint: str
    output_mint: str
    input_decimals: int
    output_decimals: int
    amount_in: Decimal
    slippage_bps: int
    priority_fee_lamports: int

    @property
    def amount_in_atomic(self) -> int:
        return to_atomic_amount(self.amount_in, self.input_decimals)


@dataclass(slots=True, frozen=True)
class SwapReceipt:
    status: str
    tx_signature: str | None
    amount_in: Decimal
    amount_out: Decimal
    last_valid_block_height: int | None = None
    confirmation_status: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class SignatureCheck:
    status: str
    error: str | None = None


@dataclass(slots=True, frozen=True)
class TradingPerformance:
    total_trades: int
    winning_trades: int
    losing_trades: int
    failed_attempts: int
    total_profit_loss: Decimal
    win_rate: Decimal
    period_days: int | None
    position: Position

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "failed_attempts": self.failed_attempts,
            "total_profit_loss": decimal_to_str(self.total_profit_loss),
            "win_rate": f"{self.win_rate.quantize(Decimal('0.01'))}%",
            "period_days": self.period_days,
            "position": self.position.to_dict(),
        }


@dataclass(slots=True, frozen=True)
class CycleResult:
    cycle_id: str
    trigger: str
    status: str
    action: TradeAction
    started_at: datetime
    finished_at: datetime
    position: Position
    cumulative_profit: Decimal
    price: PricePoint | None = None
    decision: TradeDecision | None = None
    trends: TrendReport | None = None
    session: TradingSession | None = None
    resolved_session: TradingSession | None = None
    error: str | None = None

    @property
    def realized_profit(self) -> Decimal | None:
        return self.session.realized_profit if self.session else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "trigger": self.trigger,
            "status": self.status,
            "action": self.action.value,
            "outcome": self.session.outcome.value if self.session else None,
            "profit": decimal_to_str(self.realized_profit),
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "position": self.position.to_dict(),
            "cumulative_profit": decimal_to_str(self.cumulative_profit),
            "price": self.price.to_dict() if self.price else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "trends": self.trends.to_dict() if self.trends else None,
            "session": self.session.to_dict() if self.session else None,
            "resolved_session": self.resolved_session.to_dict() if self.resolved_session else None,
        }


class TradingStateStore(Protocol):
    async def append_price(self, point: PricePoint) -> bool:
        ...

    async def list_price_history(
        self,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[PricePoint]:
        ...

    async def load_trading_state(self) -> TradingState:
        ...

    async def commit_session(
        self,
        *,
        session: TradingSession,
        state_after: TradingState,
        expected_last_session_id: str | None,
    ) -> None:
        ...

    async def list_sessions(
        self,
        *,
        limit: int | None = None,
        since: datetime | None = None,
    ) -> list[TradingSession]:
        ...

    async def acquire_cycle_lock(self, *, owner: str, ttl_seconds: int) -> bool:
        ...

    async def release_cycle_lock(self, *, owner: str) -> bool:
        ...

    async def record_price(self, *, pair: str, point: PricePoint) -> None:
        ...

    async def record_trend(self, *, pair: str, report: TrendReport, decision: TradeDecision) -> None:
        ...

    async def record_position(self, mapping: dict[str, Any]) -> None:
        ...

    async def update_heartbeat(self) -> None:
        ...

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        ...


class PriceWatcher(Protocol):
    async def fetch_price(self, pair: PairConfig) -> PricePoint:
        ...


class SwapExecutor(Protocol):
    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def healthcheck(self) -> None:
        ...

    async def fetch_balance(self, *, mint: str, decimals: int) -> Decimal | None:
        ...

    async def execute(self, *, intent: SwapIntent, deadline: Any) -> SwapReceipt:
        ...

    async def check_signature(
        self,
        *,
        tx_signature: str,
        last_valid_block_height: int | None,
    ) -> SignatureCheck:
        ...


class Notifier(Protocol):
    async def notify(self, result: CycleResult) -> None:
        ...
