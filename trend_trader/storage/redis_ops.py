from __future__ import annotations

import json
from typing import Any

from redis.asyncio.client import Redis

from trend_trader.common import log_event
from trend_trader.trading.types import PricePoint, TradeDecision, TrendReport, decimal_to_str

from .helpers import now_iso as _now_iso
from .helpers import serialize_for_redis as _serialize_for_redis

_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
end
return 0
"""


class RedisStorageOps:
    async def sync_config_to_redis(self, config: dict[str, Any], *, source: str) -> None:
        redis_client = self._require_redis()

        mapping = {str(key): _serialize_for_redis(value) for key, value in config.items()}
        pipeline = redis_client.pipeline(transaction=True)
        pipeline.delete(self.settings.redis_config_key)
        if mapping:
            pipeline.hset(self.settings.redis_config_key, mapping=mapping)
        await pipeline.execute()
        log_event(
            self._logger,
            level="info",
            event="config_synced",
            message="Runtime config synced to Redis",
            items=len(mapping),
            source=source,
        )

    async def get_runtime_config(self) -> dict[str, str]:
        redis_client = self._require_redis()
        return await redis_client.hgetall(self.settings.redis_config_key)

    async def acquire_cycle_lock(self, *, owner: str, ttl_seconds: int) -> bool:
        redis_client = self._require_redis()
        acquired = await redis_client.set(
            self.settings.namespaced_cycle_lock_key,
            owner,
            ex=max(1, ttl_seconds),
            nx=True,
        )
        return bool(acquired)

    async def release_cycle_lock(self, *, owner: str) -> bool:
        redis_client = self._require_redis()
        deleted = await redis_client.eval(
            _COMPARE_AND_DELETE,
            1,
            self.settings.namespaced_cycle_lock_key,
            owner,
        )
        return bool(deleted)

    async def record_price(self, *, pair: str, point: PricePoint) -> None:
        redis_client = self._require_redis()
        redis_key = f"{self.settings.price_prefix}:{pair}"
        await redis_client.hset(
            redis_key,
            mapping={
                "pair": pair,
                "price": decimal_to_str(point.price) or "",
                "source": point.source,
                "observed_at": point.timestamp.isoformat(),
                "updated_at": _now_iso(),
            },
        )

    async def record_trend(self, *, pair: str, report: TrendReport, decision: TradeDecision) -> None:
        redis_client = self._require_redis()
        redis_key = f"{self.settings.trend_prefix}:{pair}"
        mapping: dict[str, str] = {
            "pair": pair,
            "current_price": decimal_to_str(report.current_price) or "",
            "action": decision.action.value,
            "reason": decision.reason,
            "signals": json.dumps(report.to_dict(), ensure_ascii=False, separators=(",", ":")),
            "updated_at": _now_iso(),
        }
        for signal in report.signals:
            mapping[f"change_pct_{signal.window.label}"] = decimal_to_str(signal.change_pct) or ""

        await redis_client.hset(redis_key, mapping=mapping)

    async def record_position(self, mapping: dict[str, Any]) -> None:
        redis_client = self._require_redis()
        payload = {key: _serialize_for_redis(value) for key, value in mapping.items()}
        payload["updated_at"] = _now_iso()
        await redis_client.hset(self.settings.position_key, mapping=payload)

    async def update_heartbeat(self) -> None:
        redis_client = self._require_redis()
        await redis_client.set(self.settings.heartbeat_key, _now_iso())

    def _require_redis(self) -> Redis:
        if self._redis is None:
            raise RuntimeError("Redis client is not initialized.")
        return self._redis
