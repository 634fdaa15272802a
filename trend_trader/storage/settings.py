from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from trend_trader.trading.types import to_bool, to_int

ConfigUpdateHandler = Callable[[dict[str, Any]], Awaitable[None]]


def _sanitize_bot_id(value: str, default: str) -> str:
    normalized = (value.strip() or default).replace("/", "-")
    return normalized or default


@dataclass(slots=True)
class StorageSettings:
    redis_url: str
    redis_config_key: str
    firestore_project_id: str | None
    firestore_config_doc: str
    firestore_config_leaf_doc_id: str
    bot_collection: str
    bot_id: str
    firestore_results_bot_id: str
    dry_run: bool
    firestore_split_dry_run_results: bool
    firestore_dry_run_results_suffix: str
    bot_env: str
    bot_run_id: str
    bot_runs_collection: str
    bot_events_collection: str
    price_history_collection: str
    trading_sessions_collection: str
    state_collection: str
    position_doc_id: str
    config_schema_version: int
    heartbeat_key: str
    price_prefix: str
    trend_prefix: str
    position_key: str
    cycle_lock_key: str
    price_history_query_limit: int

    @classmethod
    def from_env(cls) -> "StorageSettings":
        bot_collection = (os.getenv("BOT_COLLECTION", "bots").strip("/") or "bots")
        bot_id = _sanitize_bot_id(os.getenv("BOT_ID", "sol-trend-trader"), "sol-trend-trader")
        default_config_doc = f"{bot_collection}/{bot_id}/config/runtime"

        dry_run = to_bool(os.getenv("DRY_RUN"), True)
        split_dry_run_results = to_bool(os.getenv("FIRESTORE_SPLIT_DRY_RUN_RESULTS"), True)
        dry_run_suffix = (os.getenv("FIRESTORE_DRY_RUN_RESULTS_SUFFIX", "-dryrun") or "-dryrun").strip()
        if not dry_run_suffix:
            dry_run_suffix = "-dryrun"

        explicit_results_bot_id = _sanitize_bot_id(os.getenv("FIRESTORE_RESULTS_BOT_ID", ""), "")
        if explicit_results_bot_id:
            firestore_results_bot_id = explicit_results_bot_id
        elif dry_run and split_dry_run_results:
            firestore_results_bot_id = _sanitize_bot_id(f"{bot_id}{dry_run_suffix}", bot_id)
        else:
            firestore_results_bot_id = bot_id

        return cls(
            redis_url=os.getenv("REDIS_URL", "redis://redis:6379/0"),
            redis_config_key=os.getenv("REDIS_CONFIG_KEY", "config"),
            firestore_project_id=os.getenv("FIRESTORE_PROJECT_ID") or os.getenv("GCP_PROJECT_ID") or None,
            firestore_config_doc=os.getenv("FIRESTORE_CONFIG_DOC") or default_config_doc,
            firestore_config_leaf_doc_id=os.getenv("FIRESTORE_CONFIG_LEAF_DOC_ID", "runtime"),
            bot_collection=bot_collection,
            bot_id=bot_id,
            firestore_results_bot_id=firestore_results_bot_id,
            dry_run=dry_run,
            firestore_split_dry_run_results=split_dry_run_results,
            firestore_dry_run_results_suffix=dry_run_suffix,
            bot_env=os.getenv("BOT_ENV", "dev"),
            bot_run_id=os.getenv("BOT_RUN_ID")
            or datetime.now(timezone.utc).strftime("run-%Y%m%dT%H%M%SZ"),
            bot_runs_collection=os.getenv("BOT_RUNS_COLLECTION", "runs"),
            bot_events_collection=os.getenv("BOT_EVENTS_COLLECTION", "events"),
            price_history_collection=os.getenv("PRICE_HISTORY_COLLECTION", "price_history"),
            trading_sessions_collection=os.getenv("TRADING_SESSIONS_COLLECTION", "trading_sessions"),
            state_collection=os.getenv("STATE_COLLECTION", "state"),
            position_doc_id=os.getenv("POSITION_DOC_ID", "position"),
            config_schema_version=max(1, to_int(os.getenv("CONFIG_SCHEMA_VERSION"), 1)),
            heartbeat_key=os.getenv("REDIS_HEARTBEAT_KEY", "bot:heartbeat"),
            price_prefix=os.getenv("REDIS_PRICE_PREFIX", "prices"),
            trend_prefix=os.getenv("REDIS_TREND_PREFIX", "trends"),
            position_key=os.getenv("REDIS_POSITION_KEY", "position:current"),
            cycle_lock_key=os.getenv("REDIS_CYCLE_LOCK_KEY", "cycle:lock"),
            price_history_query_limit=max(1, to_int(os.getenv("PRICE_HISTORY_QUERY_LIMIT"), 5000)),
        )

    @property
    def namespaced_cycle_lock_key(self) -> str:
        return f"{self.firestore_results_bot_id}:{self.cycle_lock_key}"
