from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Any

from google.cloud import firestore
from redis import asyncio as redis
from redis.asyncio.client import Redis

from trend_trader.common import log_event

from .firestore_ops import FirestoreStorageOps
from .helpers import normalize_doc_path
from .redis_ops import RedisStorageOps
from .settings import StorageSettings

_FIRESTORE_REF_ATTRS = (
    "_bot_doc_ref",
    "_run_doc_ref",
    "_events_collection_ref",
    "_price_history_collection_ref",
    "_sessions_collection_ref",
    "_position_doc_ref",
    "_config_doc_ref",
)


class StorageGateway(FirestoreStorageOps, RedisStorageOps):
    """Trading ledger in Firestore, caches and the cycle lock in Redis."""

    def __init__(self, settings: StorageSettings, logger: logging.Logger) -> None:
        self.settings = settings
        self._logger = logger
        self._redis: Redis | None = None
        self._firestore: firestore.Client | None = None
        self._watch: Any | None = None
        self._resolved_firestore_config_doc = settings.firestore_config_doc
        self._reset_refs()

    @property
    def bot_id(self) -> str:
        return self.settings.bot_id

    @property
    def run_id(self) -> str:
        return self.settings.bot_run_id

    def _reset_refs(self) -> None:
        for attr in _FIRESTORE_REF_ATTRS:
            setattr(self, attr, None)

    async def connect(self) -> None:
        await self._connect_redis()
        self._connect_firestore()
        self._initialize_namespace_refs()
        await self._ensure_bot_namespace()
        await self._load_startup_config()

        log_event(
            self._logger,
            level="info",
            event="firestore_connected",
            message="Connected to Firestore ledger",
            ledger_bot_id=self.settings.firestore_results_bot_id,
            dry_run=self.settings.dry_run,
            config_doc=self._resolved_firestore_config_doc,
        )

    async def _connect_redis(self) -> None:
        client = redis.from_url(self.settings.redis_url, decode_responses=True)
        try:
            await client.ping()
        except Exception:
            await client.aclose()
            raise
        self._redis = client
        log_event(
            self._logger,
            level="info",
            event="redis_connected",
            message="Connected to Redis",
            config_key=self.settings.redis_config_key,
        )

    def _connect_firestore(self) -> None:
        credentials_path = os.getenv("FIREBASE_CREDENTIALS")
        if credentials_path and not os.getenv("GOOGLE_APPLICATION_CREDENTIALS"):
            os.environ["GOOGLE_APPLICATION_CREDENTIALS"] = credentials_path

        self._firestore = firestore.Client(project=self.settings.firestore_project_id)
        self._resolved_firestore_config_doc, auto_fixed = normalize_doc_path(
            self.settings.firestore_config_doc,
            self.settings.firestore_config_leaf_doc_id,
        )
        if auto_fixed:
            log_event(
                self._logger,
                level="warning",
                event="config_doc_path_normalized",
                message="FIRESTORE_CONFIG_DOC pointed at a collection; using its leaf document",
                doc_path=self._resolved_firestore_config_doc,
            )

    async def _load_startup_config(self) -> None:
        self._config_doc_ref = self._require_firestore().document(self._resolved_firestore_config_doc)
        snapshot = await asyncio.to_thread(self._config_doc_ref.get)
        if snapshot.exists:
            await self.sync_config_to_redis(snapshot.to_dict() or {}, source="startup")
            return

        await self.sync_config_to_redis({}, source="startup_missing")
        log_event(
            self._logger,
            level="warning",
            event="config_missing",
            message="Runtime config document does not exist; using environment defaults",
            doc_path=self._resolved_firestore_config_doc,
        )

    async def healthcheck(self) -> None:
        await self._require_redis().ping()
        position_ref = self._require_ref(self._position_doc_ref, "position snapshot")
        await asyncio.to_thread(position_ref.get)

    async def close(self) -> None:
        if self._watch is not None:
            # Snapshot callbacks run on a Firestore thread and may race the unsubscribe.
            with contextlib.suppress(Exception):
                self._watch.unsubscribe()
            self._watch = None

        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

        self._reset_refs()
        self._firestore = None
