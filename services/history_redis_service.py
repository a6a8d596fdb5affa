"""
Redis-backed notification history.

Key layout (prefix "reminder"):
- reminder:{sub}:{recipient}:{kind}:{day}  -> "reserved" | "sent" | "failed:<reason>"
- reminder:last:{sub}:{recipient}:{kind}   -> ISO day of the last confirmed send

Reservation is SET NX with a lease TTL: a crashed run's claim simply expires.
Confirmed records are kept for the retention period.
"""
import logging
from datetime import date
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from core.exceptions import StoreUnavailableError
from models.notification import AlertKind, DedupKey, RecordStatus, ReservationStatus

logger = logging.getLogger(__name__)

# Compare-and-set: only touch the key while it is still a reservation
_CAS_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  if ARGV[2] == '' then
    return redis.call('DEL', KEYS[1])
  end
  redis.call('SET', KEYS[1], ARGV[2], 'EX', tonumber(ARGV[3]))
  return 1
end
return 0
"""


class RedisNotificationHistory:
    def __init__(self, client: redis.Redis, lease_sec: int = 3600, retention_days: int = 400, prefix: str = "reminder"):
        self.redis = client
        self.lease_sec = lease_sec
        self.retention_sec = retention_days * 86400
        self.prefix = prefix

    def _last_key(self, subscription_id: str, recipient_id: str, kind: AlertKind) -> str:
        return f"{self.prefix}:last:{subscription_id}:{recipient_id}:{kind.value}"

    async def try_reserve(self, key: DedupKey) -> ReservationStatus:
        try:
            ok = await self.redis.set(key.as_redis_key(self.prefix), RecordStatus.RESERVED.value, nx=True, ex=self.lease_sec)
        except RedisError as e:
            logger.error("Redis try_reserve error for %s: %s", key, e)
            raise StoreUnavailableError(f"history store unavailable: {e}") from e
        return ReservationStatus.RESERVED if ok else ReservationStatus.ALREADY_EXISTS

    async def confirm(self, key: DedupKey) -> None:
        changed = await self._cas(key, RecordStatus.SENT.value)
        if not changed:
            logger.warning("No open reservation to confirm for %s", key)
            return
        try:
            last_key = self._last_key(key.subscription_id, key.recipient_id, key.kind)
            current = await self.redis.get(last_key)
            if current is None or current < key.day.isoformat():
                await self.redis.set(last_key, key.day.isoformat(), ex=self.retention_sec)
        except RedisError as e:
            raise StoreUnavailableError(f"history store unavailable: {e}") from e

    async def release(self, key: DedupKey) -> None:
        await self._cas(key, "")

    async def mark_failed(self, key: DedupKey, reason: str) -> None:
        await self._cas(key, f"{RecordStatus.FAILED.value}:{reason[:200]}")

    async def last_sent_day(self, subscription_id: str, recipient_id: str, kind: AlertKind) -> Optional[date]:
        try:
            value = await self.redis.get(self._last_key(subscription_id, recipient_id, kind))
        except RedisError as e:
            raise StoreUnavailableError(f"history store unavailable: {e}") from e
        return date.fromisoformat(value) if value else None

    async def status(self, key: DedupKey) -> Optional[RecordStatus]:
        try:
            value = await self.redis.get(key.as_redis_key(self.prefix))
        except RedisError as e:
            raise StoreUnavailableError(f"history store unavailable: {e}") from e
        if value is None:
            return None
        # failed values carry the reason after the colon
        return RecordStatus(value.split(":", 1)[0])

    async def _cas(self, key: DedupKey, new_value: str) -> bool:
        try:
            result = await self.redis.eval(
                _CAS_SCRIPT, 1, key.as_redis_key(self.prefix),
                RecordStatus.RESERVED.value, new_value, self.retention_sec,
            )
        except RedisError as e:
            logger.error("Redis history update error for %s: %s", key, e)
            raise StoreUnavailableError(f"history store unavailable: {e}") from e
        return bool(result)
