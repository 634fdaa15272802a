#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from trend_trader.storage.helpers import normalize_doc_path
from trend_trader.trading.types import (
    SELL_BASIS_ENTRY,
    SELL_BASIS_WINDOW,
    SIZING_POLICY_BALANCE,
    SIZING_POLICY_FIXED,
    WINDOW_POLICY_ALL,
    WINDOW_POLICY_ANY,
    WINDOW_POLICY_SHORT,
    RuntimeConfig,
    parse_thresholds,
    parse_windows,
    to_decimal,
)


def parse_args(defaults: dict[str, Any]) -> argparse.Namespace:
    bot_collection = os.getenv("BOT_COLLECTION", "bots").strip("/") or "bots"
    bot_id = (os.getenv("BOT_ID", "sol-trend-trader").strip() or "sol-trend-trader").replace("/", "-")

    parser = argparse.ArgumentParser(
        description="Seed the runtime strategy config document the trend trader mirrors into Redis.",
    )

    target = parser.add_argument_group("target")
    target.add_argument(
        "--project-id",
        default=os.getenv("FIRESTORE_PROJECT_ID") or os.getenv("GCP_PROJECT_ID", ""),
        help="GCP project id. Defaults to FIRESTORE_PROJECT_ID or GCP_PROJECT_ID.",
    )
    target.add_argument(
        "--config-doc",
        default=os.getenv("FIRESTORE_CONFIG_DOC") or f"{bot_collection}/{bot_id}/config/runtime",
        help="Firestore document path; a collection path gets --leaf-doc-id appended.",
    )
    target.add_argument("--leaf-doc-id", default=os.getenv("FIRESTORE_CONFIG_LEAF_DOC_ID", "runtime"))
    target.add_argument(
        "--credentials",
        default=os.getenv("FIREBASE_CREDENTIALS", ""),
        help="Service account json path. Defaults to FIREBASE_CREDENTIALS.",
    )
    target.add_argument("--replace", action="store_true", help="Overwrite the document instead of merging.")
    target.add_argument("--print-only", action="store_true", help="Show the payload without writing it.")

    strategy = parser.add_argument_group("strategy")
    strategy.add_argument("--schema-version", type=int, default=defaults["schema_version"])
    strategy.add_argument(
        "--windows",
        default=defaults["trend_windows"],
        help="Comma separated lookback windows, e.g. 1h,6h,24h.",
    )
    strategy.add_argument("--threshold-pct", default=defaults["trend_threshold_pct"])
    strategy.add_argument(
        "--window-thresholds",
        default=defaults["trend_window_thresholds"],
        help="Per-window thresholds, e.g. 1h=0.5,24h=1.5.",
    )
    strategy.add_argument(
        "--sell-basis",
        choices=(SELL_BASIS_WINDOW, SELL_BASIS_ENTRY),
        default=defaults["sell_basis"],
    )
    strategy.add_argument(
        "--window-policy",
        choices=(WINDOW_POLICY_SHORT, WINDOW_POLICY_ALL, WINDOW_POLICY_ANY),
        default=defaults["window_policy"],
    )
    strategy.add_argument(
        "--sizing-policy",
        choices=(SIZING_POLICY_FIXED, SIZING_POLICY_BALANCE),
        default=defaults["sizing_policy"],
    )
    strategy.add_argument("--buy-amount-quote", default=defaults["buy_amount_quote"])
    strategy.add_argument("--native-fee-reserve", default=defaults["native_fee_reserve"])
    strategy.add_argument("--max-reference-age-seconds", type=int, default=defaults["max_reference_age_seconds"])
    strategy.add_argument("--priority-fee-lamports", type=int, default=defaults["priority_fee_lamports"])
    strategy.add_argument(
        "--trade-enabled",
        action="store_true",
        help="Allow swaps. Without it the seeded config only observes.",
    )
    strategy.add_argument(
        "--notify-on-noop",
        action="store_true",
        help="Send a LINE message for cycles that found no trading opportunity.",
    )

    return parser.parse_args()


def resolve_credentials_path(raw_path: str, repo_root: Path) -> str:
    path = raw_path.strip()
    if path.startswith("/app/"):
        mapped = repo_root / path.removeprefix("/app/")
        if mapped.exists():
            return str(mapped)
    return path


def build_payload(args: argparse.Namespace, defaults: RuntimeConfig) -> dict[str, Any]:
    # The runtime tolerates bad values by falling back; the seed refuses them.
    parse_windows(args.windows)
    parse_thresholds(args.window_thresholds)
    for name in ("threshold_pct", "buy_amount_quote", "native_fee_reserve"):
        value = to_decimal(getattr(args, name), None)
        if value is None or value < 0:
            raise ValueError(f"--{name.replace('_', '-')} must be a non-negative number: {getattr(args, name)!r}")

    raw = {
        "schema_version": str(args.schema_version),
        "trade_enabled": str(args.trade_enabled),
        "trend_windows": args.windows,
        "trend_threshold_pct": args.threshold_pct,
        "trend_window_thresholds": args.window_thresholds,
        "sell_basis": args.sell_basis,
        "window_policy": args.window_policy,
        "sizing_policy": args.sizing_policy,
        "buy_amount_quote": args.buy_amount_quote,
        "native_fee_reserve": args.native_fee_reserve,
        "max_reference_age_seconds": str(args.max_reference_age_seconds),
        "priority_fee_lamports": str(args.priority_fee_lamports),
        "notify_on_noop": str(args.notify_on_noop),
    }
    return RuntimeConfig.from_redis(raw, defaults).to_document()


def main() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    load_dotenv(repo_root / ".env")

    defaults = RuntimeConfig.from_env_defaults()
    args = parse_args(defaults.to_document())

    target_doc_path, path_auto_fixed = normalize_doc_path(args.config_doc, args.leaf_doc_id)
    payload = build_payload(args, defaults)

    if path_auto_fixed:
        print(f"[info] --config-doc '{args.config_doc}' is a collection path; writing '{target_doc_path}'.")

    credentials_path = resolve_credentials_path(args.credentials, repo_root)
    if credentials_path:
        os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = credentials_path

    project_id = args.project_id.strip()
    if not project_id:
        raise ValueError("FIRESTORE_PROJECT_ID is required (set env or --project-id).")

    print(f"[info] project_id={project_id} target_doc={target_doc_path} merge={not args.replace}")
    print(json.dumps(payload, ensure_ascii=False, indent=2))

    if args.print_only:
        print("[info] print-only mode: skipped Firestore write")
        return

    from google.cloud import firestore

    firestore.Client(project=project_id).document(target_doc_path).set(payload, merge=not args.replace)
    print("[ok] runtime config seeded")


if __name__ == "__main__":
    main()
