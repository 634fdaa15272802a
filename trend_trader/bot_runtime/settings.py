from __future__ import annotations

import os
from dataclasses import dataclass

from trend_trader.trading.errors import ConfigurationError
from trend_trader.trading.types import normalize_choice, parse_thresholds, parse_windows, to_bool, to_float, to_int
from trend_trader.trading.watcher import DEFAULT_JUPITER_API_URL

RUN_MODE_LOOP = "loop"
RUN_MODE_SERVE = "serve"
RUN_MODE_ONCE = "once"
RUN_MODES = (RUN_MODE_LOOP, RUN_MODE_SERVE, RUN_MODE_ONCE)

DEFAULT_SOLANA_RPC_URL = "https://api.mainnet-beta.solana.com"


@dataclass(slots=True)
class AppSettings:
    watch_interval_seconds: float
    error_backoff_seconds: float
    jupiter_api_url: str
    jupiter_api_key: str
    jupiter_timeout_seconds: float
    solana_rpc_url: str
    private_key: str
    dry_run: bool
    run_mode: str
    http_host: str
    http_port: int
    cycle_deadline_seconds: float
    cycle_lock_ttl_seconds: int
    pending_expiry_seconds: int
    confirm_max_attempts: int
    confirm_initial_backoff_seconds: float
    confirm_backoff_multiplier: float
    confirm_max_backoff_seconds: float
    rpc_timeout_seconds: float
    line_channel_token: str
    line_user_id: str
    line_push_url: str
    notify_timezone: str
    trend_windows: str
    trend_window_thresholds: str

    @classmethod
    def from_env(cls) -> "AppSettings":
        cycle_deadline_seconds = max(5.0, to_float(os.getenv("CYCLE_DEADLINE_SECONDS"), 240.0))
        return cls(
            watch_interval_seconds=max(1.0, to_float(os.getenv("WATCH_INTERVAL_SECONDS"), 3600.0)),
            error_backoff_seconds=max(0.2, to_float(os.getenv("ERROR_BACKOFF_SECONDS"), 30.0)),
            jupiter_api_url=os.getenv("JUPITER_API_URL", DEFAULT_JUPITER_API_URL).strip(),
            jupiter_api_key=os.getenv("JUPITER_API_KEY", "").strip(),
            jupiter_timeout_seconds=max(1.0, to_float(os.getenv("JUPITER_TIMEOUT_SECONDS"), 8.0)),
            solana_rpc_url=os.getenv("SOLANA_RPC_URL", DEFAULT_SOLANA_RPC_URL).strip(),
            private_key=os.getenv("WALLET_PRIVATE_KEY") or os.getenv("PRIVATE_KEY", ""),
            dry_run=to_bool(os.getenv("DRY_RUN"), True),
            run_mode=normalize_choice(os.getenv("RUN_MODE"), RUN_MODES, RUN_MODE_LOOP),
            http_host=os.getenv("HTTP_HOST", "0.0.0.0").strip() or "0.0.0.0",
            http_port=max(1, to_int(os.getenv("PORT"), 8080)),
            cycle_deadline_seconds=cycle_deadline_seconds,
            cycle_lock_ttl_seconds=max(
                int(cycle_deadline_seconds) + 1,
                to_int(os.getenv("CYCLE_LOCK_TTL_SECONDS"), 300),
            ),
            pending_expiry_seconds=max(0, to_int(os.getenv("PENDING_EXPIRY_SECONDS"), 900)),
            confirm_max_attempts=max(1, to_int(os.getenv("CONFIRM_MAX_ATTEMPTS"), 8)),
            confirm_initial_backoff_seconds=max(
                0.05,
                to_float(os.getenv("CONFIRM_INITIAL_BACKOFF_SECONDS"), 0.5),
            ),
            confirm_backoff_multiplier=max(1.0, to_float(os.getenv("CONFIRM_BACKOFF_MULTIPLIER"), 2.0)),
            confirm_max_backoff_seconds=max(
                0.05,
                to_float(os.getenv("CONFIRM_MAX_BACKOFF_SECONDS"), 8.0),
            ),
            rpc_timeout_seconds=max(1.0, to_float(os.getenv("RPC_TIMEOUT_SECONDS"), 8.0)),
            line_channel_token=os.getenv("LINE_CHANNEL_TOKEN", "").strip(),
            line_user_id=os.getenv("LINE_USER_ID", "").strip(),
            line_push_url=os.getenv("LINE_PUSH_URL", "").strip(),
            notify_timezone=os.getenv("NOTIFY_TIMEZONE", "Asia/Tokyo").strip() or "Asia/Tokyo",
            trend_windows=os.getenv("TREND_WINDOWS", "1h,6h,24h"),
            trend_window_thresholds=os.getenv("TREND_WINDOW_THRESHOLDS", ""),
        )

    def validate(self) -> None:
        if not self.jupiter_api_url:
            raise ConfigurationError("JUPITER_API_URL must not be empty.")
        try:
            parse_windows(self.trend_windows)
        except ValueError as exc:
            raise ConfigurationError(f"TREND_WINDOWS is invalid: {exc}") from exc
        try:
            parse_thresholds(self.trend_window_thresholds)
        except ValueError as exc:
            raise ConfigurationError(f"TREND_WINDOW_THRESHOLDS is invalid: {exc}") from exc
        if self.dry_run:
            return
        if not self.solana_rpc_url:
            raise ConfigurationError("SOLANA_RPC_URL is required when DRY_RUN is false.")
        if not self.private_key.strip():
            raise ConfigurationError("WALLET_PRIVATE_KEY is required when DRY_RUN is false.")
