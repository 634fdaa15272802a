from __future__ import annotations

import asyncio
import contextlib
import hashlib
import os
from datetime import datetime, timezone
from typing import Any, Awaitable

from google.api_core import exceptions as gcp_exceptions
from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from trend_trader.common import guarded_call, log_event
from trend_trader.trading.errors import PositionConflictError, StatePersistenceError
from trend_trader.trading.ledger import replay_sessions, state_matches_snapshot
from trend_trader.trading.types import PricePoint, TradingSession, TradingState, to_int

from .settings import ConfigUpdateHandler


def price_document_id(point: PricePoint) -> str:
    key = f"{point.timestamp.astimezone(timezone.utc).isoformat()}|{point.source}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


def session_document_id(session: TradingSession) -> str:
    # One document per ledger position; a second writer for the same sequence fails on create.
    return f"{session.sequence:012d}"


def _commit_session_txn(
    transaction: Any,
    *,
    position_ref: Any,
    session_ref: Any,
    session_payload: dict[str, Any],
    position_payload: dict[str, Any],
    expected_last_session_id: str | None,
) -> None:
    snapshot = position_ref.get(transaction=transaction)
    current = (snapshot.to_dict() or {}) if snapshot.exists else {}
    actual_last_session_id = current.get("last_session_id")
    if actual_last_session_id != expected_last_session_id:
        raise PositionConflictError(
            expected_last_session_id=expected_last_session_id,
            actual_last_session_id=actual_last_session_id,
        )

    transaction.create(session_ref, session_payload)
    transaction.set(position_ref, position_payload)


def _repair_snapshot_txn(
    transaction: Any,
    *,
    position_ref: Any,
    position_payload: dict[str, Any],
    observed_last_session_id: str | None,
) -> bool:
    snapshot = position_ref.get(transaction=transaction)
    current = (snapshot.to_dict() or {}) if snapshot.exists else {}
    if current.get("last_session_id") != observed_last_session_id:
        return False
    if to_int(current.get("session_count"), 0) > to_int(position_payload.get("session_count"), 0):
        return False

    transaction.set(position_ref, position_payload)
    return True


class FirestoreStorageOps:
    @staticmethod
    def _doc_id_from_text(value: str) -> str:
        normalized = value.strip().replace("/", "_")
        if not normalized:
            raise ValueError("Document id source must not be empty.")

        if len(normalized) <= 128:
            return normalized

        digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
        return f"{normalized[:96]}-{digest}"

    async def append_price(self, point: PricePoint) -> bool:
        collection_ref = self._require_ref(self._price_history_collection_ref, "price history")
        doc_ref = collection_ref.document(price_document_id(point))
        payload = point.to_document()
        payload["bot_id"] = self.settings.bot_id

        try:
            await asyncio.to_thread(doc_ref.create, payload)
        except gcp_exceptions.AlreadyExists:
            return False
        except gcp_exceptions.GoogleAPICallError as error:
            raise StatePersistenceError(f"Failed to append price point: {error}") from error
        return True

    async def list_price_history(
        self,
        *,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
    ) -> list[PricePoint]:
        collection_ref = self._require_ref(self._price_history_collection_ref, "price history")
        query = collection_ref
        if since is not None:
            query = query.where(filter=FieldFilter("timestamp", ">=", since))
        if until is not None:
            query = query.where(filter=FieldFilter("timestamp", "<=", until))
        query = query.order_by("timestamp", direction=firestore.Query.DESCENDING).limit(
            limit or self.settings.price_history_query_limit
        )

        try:
            snapshots = await asyncio.to_thread(lambda: list(query.stream()))
        except gcp_exceptions.GoogleAPICallError as error:
            raise StatePersistenceError(f"Failed to read price history: {error}") from error

        points: list[PricePoint] = []
        for snapshot in snapshots:
            try:
                points.append(PricePoint.from_document(snapshot.to_dict() or {}))
            except ValueError as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="price_document_malformed",
                    message="Skipping malformed price document",
                    doc_id=snapshot.id,
                    error=str(error),
                )
        points.reverse()
        return points

    async def list_sessions(
        self,
        *,
        limit: int | None = None,
        since: datetime | None = None,
    ) -> list[TradingSession]:
        collection_ref = self._require_ref(self._sessions_collection_ref, "trading sessions")
        if since is not None:
            query = collection_ref.where(filter=FieldFilter("timestamp", ">=", since)).order_by(
                "timestamp",
                direction=firestore.Query.DESCENDING,
            )
        else:
            query = collection_ref.order_by("sequence", direction=firestore.Query.DESCENDING)
        if limit is not None:
            query = query.limit(max(1, limit))

        try:
            snapshots = await asyncio.to_thread(lambda: list(query.stream()))
        except gcp_exceptions.GoogleAPICallError as error:
            raise StatePersistenceError(f"Failed to read trading sessions: {error}") from error
        return [TradingSession.from_document(snapshot.to_dict() or {}) for snapshot in snapshots]

    async def load_trading_state(self) -> TradingState:
        collection_ref = self._require_ref(self._sessions_collection_ref, "trading sessions")
        position_ref = self._require_ref(self._position_doc_ref, "position snapshot")

        query = collection_ref.order_by("sequence")
        try:
            # Snapshot first: the ledger read afterwards can only be newer.
            position_snapshot = await asyncio.to_thread(position_ref.get)
            snapshots = await asyncio.to_thread(lambda: list(query.stream()))
        except gcp_exceptions.GoogleAPICallError as error:
            raise StatePersistenceError(f"Failed to load trading ledger: {error}") from error

        sessions = [TradingSession.from_document(snapshot.to_dict() or {}) for snapshot in snapshots]
        state = replay_sessions(sessions)
        cached = (position_snapshot.to_dict() or {}) if position_snapshot.exists else None

        if not state_matches_snapshot(state, cached):
            await self._repair_position_snapshot(position_ref, state, cached)

        return state

    async def _repair_position_snapshot(
        self,
        position_ref: Any,
        state: TradingState,
        cached: dict[str, Any] | None,
    ) -> None:
        observed_last_session_id = (cached or {}).get("last_session_id")
        repair = firestore.transactional(_repair_snapshot_txn)
        try:
            repaired = await asyncio.to_thread(
                repair,
                self._require_firestore().transaction(),
                position_ref=position_ref,
                position_payload=self._position_payload(state),
                observed_last_session_id=observed_last_session_id,
            )
        except (gcp_exceptions.GoogleAPICallError, ValueError) as error:
            raise StatePersistenceError(f"Failed to repair position snapshot: {error}") from error

        log_event(
            self._logger,
            level="warning",
            event="position_snapshot_repaired" if repaired else "position_snapshot_repair_skipped",
            message=(
                "Position snapshot diverged from the session ledger; rewrote it"
                if repaired
                else "Position snapshot moved on or is ahead of the ledger read; left unchanged"
            ),
            ledger_last_session_id=state.last_session_id,
            snapshot_last_session_id=observed_last_session_id,
            session_count=state.session_count,
        )

    async def commit_session(
        self,
        *,
        session: TradingSession,
        state_after: TradingState,
        expected_last_session_id: str | None,
    ) -> None:
        firestore_client = self._require_firestore()
        collection_ref = self._require_ref(self._sessions_collection_ref, "trading sessions")
        position_ref = self._require_ref(self._position_doc_ref, "position snapshot")

        session_payload = session.to_document()
        session_payload.update(
            {
                "bot_id": self.settings.bot_id,
                "run_id": self.settings.bot_run_id,
                "env": self.settings.bot_env,
                "schema_version": self.settings.config_schema_version,
                "created_at": firestore.SERVER_TIMESTAMP,
            }
        )
        commit = firestore.transactional(_commit_session_txn)
        transaction = firestore_client.transaction()

        try:
            await asyncio.to_thread(
                commit,
                transaction,
                position_ref=position_ref,
                session_ref=collection_ref.document(session_document_id(session)),
                session_payload=session_payload,
                position_payload=self._position_payload(state_after),
                expected_last_session_id=expected_last_session_id,
            )
        except PositionConflictError:
            raise
        except gcp_exceptions.AlreadyExists as error:
            raise PositionConflictError(
                expected_last_session_id=expected_last_session_id,
                actual_last_session_id=None,
                sequence=session.sequence,
            ) from error
        except gcp_exceptions.GoogleAPICallError as error:
            raise StatePersistenceError(f"Failed to commit trading session {session.session_id}: {error}") from error
        except ValueError as error:
            # Raised by the transactional wrapper once its retries are exhausted.
            raise StatePersistenceError(f"Failed to commit trading session {session.session_id}: {error}") from error

    def _position_payload(self, state: TradingState) -> dict[str, Any]:
        payload = state.to_dict()
        payload["bot_id"] = self.settings.bot_id
        payload["updated_at"] = firestore.SERVER_TIMESTAMP
        return payload

    async def mark_run_stopped(self, *, reason: str) -> None:
        if self._run_doc_ref is None:
            return

        payload = {
            "status": "stopped",
            "stop_reason": reason,
            "stopped_at": firestore.SERVER_TIMESTAMP,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }
        await guarded_call(
            lambda: asyncio.to_thread(self._run_doc_ref.set, payload, merge=True),
            logger=self._logger,
            event="run_status_update_failed",
            message="Failed to update run status",
        )

    async def publish_event(
        self,
        *,
        level: str,
        event: str,
        message: str,
        details: dict[str, Any] | None = None,
        event_id: str | None = None,
    ) -> None:
        if self._firestore is None or self._events_collection_ref is None:
            log_event(
                self._logger,
                level="warning",
                event="publish_skipped",
                message="Skipping Firestore event because client is not ready",
            )
            return

        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc),
            "server_timestamp": firestore.SERVER_TIMESTAMP,
            "level": level,
            "event": event,
            "message": message,
            "bot_id": self.settings.bot_id,
            "run_id": self.settings.bot_run_id,
            "env": self.settings.bot_env,
            "schema_version": self.settings.config_schema_version,
        }
        if details:
            payload["details"] = details

        async def write_event() -> None:
            if event_id:
                event_ref = self._events_collection_ref.document(self._doc_id_from_text(event_id))
                await asyncio.to_thread(event_ref.set, payload, merge=True)
                return

            await asyncio.to_thread(self._events_collection_ref.add, payload)

        await guarded_call(
            write_event,
            logger=self._logger,
            event="publish_failed",
            message="Failed to publish Firestore event",
            level="error",
        )

    def start_config_listener(
        self,
        loop: asyncio.AbstractEventLoop,
        on_update: ConfigUpdateHandler | None = None,
    ) -> None:
        if self._config_doc_ref is None:
            raise RuntimeError("StorageGateway is not connected.")
        if self._watch is not None:
            return

        def schedule(coro: Awaitable[None]) -> None:
            task = asyncio.create_task(coro)

            def on_done(done_task: asyncio.Task[None]) -> None:
                with contextlib.suppress(asyncio.CancelledError):
                    error = done_task.exception()
                    if error:
                        log_event(
                            self._logger,
                            level="error",
                            event="config_sync_failed",
                            message="Config sync task failed",
                            error=str(error),
                        )

            task.add_done_callback(on_done)

        def on_snapshot(doc_snapshot: list[Any], _changes: list[Any], _read_time: Any) -> None:
            if not doc_snapshot or loop.is_closed():
                return
            snapshot = doc_snapshot[0]
            data = snapshot.to_dict() if snapshot.exists else {}
            loop.call_soon_threadsafe(schedule, self._handle_config_update(data or {}, on_update))

        self._watch = self._config_doc_ref.on_snapshot(on_snapshot)
        log_event(
            self._logger,
            level="info",
            event="config_watch_started",
            message="Config watcher started",
        )

    async def _handle_config_update(
        self,
        config: dict[str, Any],
        on_update: ConfigUpdateHandler | None,
    ) -> None:
        await self.sync_config_to_redis(config, source="snapshot")
        if on_update:
            await on_update(config)

    async def _ensure_bot_namespace(self) -> None:
        if self._bot_doc_ref is None or self._run_doc_ref is None:
            raise RuntimeError("Firestore namespace references are not initialized.")

        bot_payload: dict[str, Any] = {
            "bot_id": self.settings.bot_id,
            "results_bot_id": self.settings.firestore_results_bot_id,
            "env": self.settings.bot_env,
            "dry_run": self.settings.dry_run,
            "schema_version": self.settings.config_schema_version,
            "config_doc": self._resolved_firestore_config_doc,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }

        run_payload: dict[str, Any] = {
            "run_id": self.settings.bot_run_id,
            "bot_id": self.settings.bot_id,
            "env": self.settings.bot_env,
            "status": "running",
            "pid": os.getpid(),
            "started_at": firestore.SERVER_TIMESTAMP,
            "updated_at": firestore.SERVER_TIMESTAMP,
        }

        await asyncio.gather(
            asyncio.to_thread(self._bot_doc_ref.set, bot_payload, merge=True),
            asyncio.to_thread(self._run_doc_ref.set, run_payload, merge=True),
        )

    def _initialize_namespace_refs(self) -> None:
        firestore_client = self._require_firestore()

        bot_doc_path = f"{self.settings.bot_collection}/{self.settings.firestore_results_bot_id}"
        self._bot_doc_ref = firestore_client.document(bot_doc_path)
        self._run_doc_ref = self._bot_doc_ref.collection(self.settings.bot_runs_collection).document(
            self.settings.bot_run_id
        )
        self._events_collection_ref = self._run_doc_ref.collection(self.settings.bot_events_collection)
        self._price_history_collection_ref = self._bot_doc_ref.collection(self.settings.price_history_collection)
        self._sessions_collection_ref = self._bot_doc_ref.collection(self.settings.trading_sessions_collection)
        self._position_doc_ref = self._bot_doc_ref.collection(self.settings.state_collection).document(
            self.settings.position_doc_id
        )

    def _require_firestore(self) -> firestore.Client:
        if self._firestore is None:
            raise RuntimeError("Firestore client is not initialized.")
        return self._firestore

    @staticmethod
    def _require_ref(ref: Any | None, name: str) -> Any:
        if ref is None:
            raise RuntimeError(f"Firestore {name} reference is not initialized.")
        return ref
