from .deadline import CycleDeadline
from .decision import DecisionEngine
from .engine import TraderEngine
from .errors import (
    BalanceUnavailableError,
    ConfigurationError,
    ConfirmationTimeoutError,
    CycleTimeoutError,
    InsufficientBalanceError,
    InvalidPriceError,
    PositionConflictError,
    RouteUnavailableError,
    StatePersistenceError,
    SubmissionRejectedError,
    SwapError,
    TradingError,
)
from .executors import DryRunSwapExecutor, LiveSwapExecutor, confirmation_backoff_schedule
from .ledger import advance_state, compute_performance, replay_sessions
from .trend import TrendAnalyzer
from .types import (
    CycleResult,
    PairConfig,
    Position,
    PositionState,
    PricePoint,
    RuntimeConfig,
    SessionOutcome,
    TradeAction,
    TradeDecision,
    TradingPerformance,
    TradingSession,
    TradingState,
    TrendReport,
    TrendSignal,
    TrendWindow,
)
from .wallet import SigningKey
from .watcher import JupiterWatcher

__all__ = [
    "BalanceUnavailableError",
    "ConfigurationError",
    "ConfirmationTimeoutError",
    "CycleDeadline",
    "CycleResult",
    "CycleTimeoutError",
    "DecisionEngine",
    "DryRunSwapExecutor",
    "InsufficientBalanceError",
    "InvalidPriceError",
    "JupiterWatcher",
    "LiveSwapExecutor",
    "PairConfig",
    "Position",
    "PositionConflictError",
    "PositionState",
    "PricePoint",
    "RouteUnavailableError",
    "RuntimeConfig",
    "SessionOutcome",
    "SigningKey",
    "StatePersistenceError",
    "SubmissionRejectedError",
    "SwapError",
    "TradeAction",
    "TradeDecision",
    "TraderEngine",
    "TradingError",
    "TradingPerformance",
    "TradingSession",
    "TradingState",
    "TrendAnalyzer",
    "TrendReport",
    "TrendSignal",
    "TrendWindow",
    "advance_state",
    "compute_performance",
    "confirmation_backoff_schedule",
    "replay_sessions",
]
