from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest
from google.api_core import exceptions as gcp_exceptions

from conftest import make_runtime_config
from trend_trader.storage import StorageSettings
from trend_trader.storage import firestore_ops
from trend_trader.storage.firestore_ops import (
    FirestoreStorageOps,
    _commit_session_txn,
    _repair_snapshot_txn,
    price_document_id,
    session_document_id,
)
from trend_trader.storage.helpers import normalize_doc_path, serialize_for_redis
from trend_trader.storage.redis_ops import RedisStorageOps
from trend_trader.trading.errors import PositionConflictError
from trend_trader.trading.ledger import advance_state, replay_sessions
from trend_trader.trading.types import (
    SOL_MINT,
    USDC_MINT,
    PositionState,
    PricePoint,
    RuntimeConfig,
    SessionOutcome,
    TradeAction,
    TradeDecision,
    TradingSession,
    TradingState,
    TrendReport,
    TrendSignal,
    parse_windows,
)


class FakeSnapshot:
    def __init__(self, data: dict[str, Any] | None) -> None:
        self.exists = data is not None
        self._data = data

    def to_dict(self) -> dict[str, Any] | None:
        return self._data


class FakeDocRef:
    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self.data = data

    def get(self, transaction: Any = None) -> FakeSnapshot:
        return FakeSnapshot(self.data)


class FakeTransaction:
    def __init__(self) -> None:
        self.created: list[tuple[Any, dict[str, Any]]] = []
        self.written: list[tuple[Any, dict[str, Any]]] = []

    def create(self, ref: Any, payload: dict[str, Any]) -> None:
        self.created.append((ref, payload))

    def set(self, ref: Any, payload: dict[str, Any]) -> None:
        self.written.append((ref, payload))


def commit(transaction: FakeTransaction, position_ref: FakeDocRef, expected: str | None) -> None:
    _commit_session_txn(
        transaction,
        position_ref=position_ref,
        session_ref="sessions/s2",
        session_payload={"session_id": "s2"},
        position_payload={"last_session_id": "s2"},
        expected_last_session_id=expected,
    )


def test_commit_writes_session_and_snapshot_together():
    transaction = FakeTransaction()
    position_ref = FakeDocRef({"last_session_id": "s1"})

    commit(transaction, position_ref, "s1")

    assert transaction.created == [("sessions/s2", {"session_id": "s2"})]
    assert transaction.written == [(position_ref, {"last_session_id": "s2"})]


def test_first_commit_expects_missing_snapshot():
    transaction = FakeTransaction()
    commit(transaction, FakeDocRef(None), None)
    assert len(transaction.created) == 1


def test_commit_refuses_stale_snapshot():
    transaction = FakeTransaction()

    with pytest.raises(PositionConflictError) as excinfo:
        commit(transaction, FakeDocRef({"last_session_id": "s9"}), "s1")

    assert excinfo.value.actual_last_session_id == "s9"
    assert transaction.created == []
    assert transaction.written == []


def repair(position_ref: FakeDocRef, observed: str | None) -> tuple[bool, FakeTransaction]:
    transaction = FakeTransaction()
    repaired = _repair_snapshot_txn(
        transaction,
        position_ref=position_ref,
        position_payload={"last_session_id": "s1", "session_count": 1},
        observed_last_session_id=observed,
    )
    return repaired, transaction


def test_snapshot_repair_moves_a_lagging_snapshot_forward():
    position_ref = FakeDocRef(None)

    repaired, transaction = repair(position_ref, None)

    assert repaired
    assert transaction.written == [(position_ref, {"last_session_id": "s1", "session_count": 1})]


def test_snapshot_repair_never_moves_a_newer_snapshot_back():
    repaired, transaction = repair(FakeDocRef({"last_session_id": "s2", "session_count": 2}), "s2")

    assert not repaired
    assert transaction.written == []


def test_snapshot_repair_skips_snapshot_changed_since_read():
    repaired, transaction = repair(FakeDocRef({"last_session_id": "s3", "session_count": 0}), None)

    assert not repaired
    assert transaction.written == []


def test_price_document_id_is_stable_per_timestamp_and_source():
    ts = datetime(2026, 3, 1, 12, tzinfo=timezone.utc)
    first = price_document_id(PricePoint(timestamp=ts, price=Decimal("98.4")))
    same = price_document_id(PricePoint(timestamp=ts, price=Decimal("99")))
    other = price_document_id(PricePoint(timestamp=ts, price=Decimal("98.4"), source="other"))

    assert first == same
    assert first != other
    assert len(first) == 32


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (True, "1"),
        (False, "0"),
        (Decimal("0.10"), "0.10"),
        (3, "3"),
        (None, ""),
        ({"a": 1}, '{"a":1}'),
    ],
)
def test_serialize_for_redis(value, expected):
    assert serialize_for_redis(value) == expected


def test_dry_run_results_use_separate_namespace(monkeypatch):
    monkeypatch.setenv("BOT_ID", "sol/trend")
    monkeypatch.setenv("DRY_RUN", "true")
    monkeypatch.delenv("FIRESTORE_RESULTS_BOT_ID", raising=False)
    monkeypatch.delenv("FIRESTORE_SPLIT_DRY_RUN_RESULTS", raising=False)

    settings = StorageSettings.from_env()

    assert settings.bot_id == "sol-trend"
    assert settings.firestore_results_bot_id == "sol-trend-dryrun"
    assert settings.namespaced_cycle_lock_key == "sol-trend-dryrun:cycle:lock"


def test_live_results_use_bot_id(monkeypatch):
    monkeypatch.setenv("BOT_ID", "sol-trend")
    monkeypatch.setenv("DRY_RUN", "false")
    monkeypatch.delenv("FIRESTORE_RESULTS_BOT_ID", raising=False)

    assert StorageSettings.from_env().firestore_results_bot_id == "sol-trend"


class FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.hashes: dict[str, dict[str, str]] = {}

    async def set(self, key: str, value: str, ex: int | None = None, nx: bool = False) -> bool | None:
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    async def eval(self, script: str, numkeys: int, key: str, owner: str, *args: str) -> int:
        if self.values.get(key) != owner:
            return 0
        if "del" in script:
            del self.values[key]
        return 1

    async def hset(self, key: str, mapping: dict[str, str]) -> int:
        self.hashes.setdefault(key, {}).update(mapping)
        return len(mapping)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))


@pytest.fixture
def redis_ops(monkeypatch, logger) -> RedisStorageOps:
    monkeypatch.setenv("BOT_ID", "sol-trend")
    monkeypatch.setenv("DRY_RUN", "false")
    ops = RedisStorageOps()
    ops.settings = StorageSettings.from_env()
    ops._redis = FakeRedis()
    ops._logger = logger
    return ops


@pytest.mark.asyncio
async def test_cycle_lock_is_owned(redis_ops):
    assert await redis_ops.acquire_cycle_lock(owner="a", ttl_seconds=30)
    assert not await redis_ops.acquire_cycle_lock(owner="b", ttl_seconds=30)
    assert not await redis_ops.release_cycle_lock(owner="b")
    assert await redis_ops.release_cycle_lock(owner="a")
    assert await redis_ops.acquire_cycle_lock(owner="b", ttl_seconds=30)


@pytest.mark.asyncio
async def test_trend_cache_flattens_window_changes(redis_ops):
    window = parse_windows("1h")[0]
    report = TrendReport(
        timestamp=datetime(2026, 3, 1, tzinfo=timezone.utc),
        current_price=Decimal("98.40"),
        signals=(TrendSignal(window=window, change_pct=Decimal("-0.606")),),
    )

    await redis_ops.record_trend(
        pair="SOL/USDC",
        report=report,
        decision=TradeDecision(action=TradeAction.BUY, reason="price_drop"),
    )

    cached = redis_ops._redis.hashes["trends:SOL/USDC"]
    assert cached["action"] == "buy"
    assert cached["change_pct_1h"] == "-0.606"
    assert cached["current_price"] == "98.40"


@pytest.mark.asyncio
async def test_position_cache_serializes_nested_values(redis_ops):
    await redis_ops.record_position({"position": {"state": "long"}, "trade_count": 2, "pending_session_id": None})

    cached = redis_ops._redis.hashes[redis_ops.settings.position_key]
    assert cached["position"] == '{"state":"long"}'
    assert cached["trade_count"] == "2"
    assert cached["pending_session_id"] == ""
    assert "updated_at" in cached


def test_runtime_config_round_trips_through_redis_hash():
    defaults = make_runtime_config()
    overrides = {
        "trend_windows": "30m,2h",
        "trend_threshold_pct": "1.25",
        "trade_enabled": "0",
        "sell_basis": "entry",
        "window_policy": "bogus",
        "buy_amount_quote": "abc",
    }

    config = RuntimeConfig.from_redis(overrides, defaults)

    assert [window.label for window in config.windows] == ["30m", "2h"]
    assert config.default_threshold_pct == Decimal("1.25")
    assert config.trade_enabled is False
    assert config.sell_basis == "entry"
    assert config.window_policy == defaults.window_policy
    assert config.buy_amount_quote == defaults.buy_amount_quote
    assert RuntimeConfig.from_redis({}, defaults) == defaults


def test_invalid_windows_in_redis_fall_back_to_defaults():
    defaults = make_runtime_config()
    config = RuntimeConfig.from_redis({"trend_windows": "soon"}, defaults)
    assert config.windows == defaults.windows


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("bots/sol-trend-trader/config/runtime", ("bots/sol-trend-trader/config/runtime", False)),
        ("/bots/sol-trend-trader/config/", ("bots/sol-trend-trader/config/runtime", True)),
    ],
)
def test_normalize_doc_path(raw, expected):
    assert normalize_doc_path(raw, "runtime") == expected


def test_normalize_doc_path_rejects_empty():
    with pytest.raises(ValueError):
        normalize_doc_path("//", "runtime")


def ledger_session(sequence: int, action: TradeAction) -> TradingSession:
    buy = action is TradeAction.BUY
    return TradingSession(
        session_id=f"s{sequence}",
        sequence=sequence,
        timestamp=datetime(2026, 3, 1, sequence, tzinfo=timezone.utc),
        action=action,
        outcome=SessionOutcome.SUCCESS,
        amount_in=Decimal("9.84") if buy else Decimal("0.1"),
        amount_out=Decimal("0.1") if buy else Decimal("9.95"),
        input_mint=USDC_MINT if buy else SOL_MINT,
        output_mint=SOL_MINT if buy else USDC_MINT,
        price=Decimal("98.4") if buy else Decimal("99.5"),
        position_before=PositionState.FLAT if buy else PositionState.LONG,
        position_after=PositionState.LONG if buy else PositionState.FLAT,
        tx_signature=f"sig-{sequence}",
        realized_profit=None if buy else Decimal("0.11"),
    )


class FakeSessionCollection:
    def __init__(self) -> None:
        self.documents: dict[str, dict[str, Any]] = {}

    def document(self, doc_id: str) -> str:
        return doc_id

    def order_by(self, field: str) -> "FakeSessionCollection":
        return self

    def stream(self) -> list[FakeSnapshot]:
        return [FakeSnapshot(self.documents[doc_id]) for doc_id in sorted(self.documents)]


class LedgerTransaction(FakeTransaction):
    def __init__(self, documents: dict[str, dict[str, Any]]) -> None:
        super().__init__()
        self.documents = documents

    def create(self, ref: Any, payload: dict[str, Any]) -> None:
        if ref in self.documents:
            raise gcp_exceptions.AlreadyExists(f"Document already exists: {ref}")
        super().create(ref, payload)
        self.documents[ref] = payload

    def set(self, ref: Any, payload: dict[str, Any]) -> None:
        super().set(ref, payload)
        ref.data = payload


class FakeFirestore:
    def __init__(self, collection: FakeSessionCollection) -> None:
        self.collection = collection

    def transaction(self) -> LedgerTransaction:
        return LedgerTransaction(self.collection.documents)


@pytest.fixture
def ledger_ops(monkeypatch, logger) -> FirestoreStorageOps:
    monkeypatch.setenv("BOT_ID", "sol-trend")
    monkeypatch.setenv("DRY_RUN", "false")
    monkeypatch.setattr(firestore_ops.firestore, "transactional", lambda func: func)
    collection = FakeSessionCollection()
    ops = FirestoreStorageOps()
    ops.settings = StorageSettings.from_env()
    ops._logger = logger
    ops._firestore = FakeFirestore(collection)
    ops._sessions_collection_ref = collection
    ops._position_doc_ref = FakeDocRef(None)
    return ops


async def commit_next(ops: FirestoreStorageOps, state: TradingState, session: TradingSession) -> TradingState:
    state_after = advance_state(state, session)
    await ops.commit_session(session=session, state_after=state_after, expected_last_session_id=state.last_session_id)
    return state_after


def test_session_documents_are_keyed_by_sequence():
    assert session_document_id(ledger_session(7, TradeAction.BUY)) == "000000000007"


@pytest.mark.asyncio
async def test_second_writer_for_a_sequence_is_a_conflict(ledger_ops):
    after_first = await commit_next(ledger_ops, TradingState(), ledger_session(1, TradeAction.BUY))
    second = ledger_session(2, TradeAction.SELL)
    await commit_next(ledger_ops, after_first, second)
    ledger_ops._position_doc_ref.data = after_first.to_dict()

    with pytest.raises(PositionConflictError) as excinfo:
        await commit_next(ledger_ops, after_first, replace(second, session_id="s2-rival"))

    assert excinfo.value.sequence == 2
    documents = ledger_ops._sessions_collection_ref.documents
    assert sorted(documents) == ["000000000001", "000000000002"]
    assert documents["000000000002"]["session_id"] == "s2"


@pytest.mark.asyncio
async def test_stale_ledger_read_never_rewinds_snapshot(ledger_ops):
    first = ledger_session(1, TradeAction.BUY)
    second = ledger_session(2, TradeAction.SELL)
    after_first = await commit_next(ledger_ops, TradingState(), first)
    await commit_next(ledger_ops, after_first, second)
    # The ledger query observed only the first session.
    del ledger_ops._sessions_collection_ref.documents[session_document_id(second)]

    state = await ledger_ops.load_trading_state()

    assert state.last_session_id == "s1"
    assert ledger_ops._position_doc_ref.data["last_session_id"] == "s2"
    with pytest.raises(PositionConflictError) as excinfo:
        await commit_next(ledger_ops, state, replace(second, session_id="s2-rival"))
    assert excinfo.value.actual_last_session_id == "s2"


@pytest.mark.asyncio
async def test_missing_snapshot_is_rebuilt_from_ledger(ledger_ops):
    await commit_next(ledger_ops, TradingState(), ledger_session(1, TradeAction.BUY))
    ledger_ops._position_doc_ref.data = None

    state = await ledger_ops.load_trading_state()

    assert state == replay_sessions([ledger_session(1, TradeAction.BUY)])
    assert ledger_ops._position_doc_ref.data["last_session_id"] == "s1"
    assert ledger_ops._position_doc_ref.data["session_count"] == 1
