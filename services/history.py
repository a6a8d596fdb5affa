# services/history.py
"""
Notification history: the dedup store.

A run claims a key with try_reserve() *before* sending. Only one caller can
win a given (subscription, recipient, alert kind, day) key; the loser skips.
After the send:
- success   -> confirm()      (record becomes `sent`, never touched again)
- transient -> release()      (claim dropped so the next run retries)
- permanent -> mark_failed()  (key stays terminal for that day)
status() reports where a key stands; sent and failed are settled.

The in-memory implementation lives here; DB and Redis adapters live in
history_db_service.py / history_redis_service.py.
"""
import asyncio
import logging
from datetime import date, timedelta
from typing import Dict, List, Optional, Protocol

from core.db import utcnow
from models.notification import AlertKind, DedupKey, NotificationRecord, RecordStatus, ReservationStatus

logger = logging.getLogger(__name__)


class NotificationHistory(Protocol):
    async def try_reserve(self, key: DedupKey) -> ReservationStatus: ...

    async def confirm(self, key: DedupKey) -> None: ...

    async def release(self, key: DedupKey) -> None: ...

    async def mark_failed(self, key: DedupKey, reason: str) -> None: ...

    async def last_sent_day(self, subscription_id: str, recipient_id: str, kind: AlertKind) -> Optional[date]: ...

    async def status(self, key: DedupKey) -> Optional[RecordStatus]: ...


class InMemoryNotificationHistory:
    """Dev/test history store. Atomic per key within one event loop."""

    def __init__(self, lease_sec: int = 3600):
        self.lease = timedelta(seconds=lease_sec)
        self._records: Dict[DedupKey, NotificationRecord] = {}
        self._lock = asyncio.Lock()

    async def try_reserve(self, key: DedupKey) -> ReservationStatus:
        async with self._lock:
            existing = self._records.get(key)
            if existing is not None:
                stale = (
                    existing.status == RecordStatus.RESERVED
                    and existing.reserved_at is not None
                    and existing.reserved_at < utcnow() - self.lease
                )
                if not stale:
                    return ReservationStatus.ALREADY_EXISTS
                logger.warning("Reclaiming stale reservation %s", key)
            self._records[key] = NotificationRecord(
                subscription_id=key.subscription_id,
                recipient_id=key.recipient_id,
                kind=key.kind,
                day=key.day,
                status=RecordStatus.RESERVED,
                reserved_at=utcnow(),
            )
            return ReservationStatus.RESERVED

    async def confirm(self, key: DedupKey) -> None:
        async with self._lock:
            record = self._records.get(key)
            if record is None or record.status != RecordStatus.RESERVED:
                logger.warning("confirm() on key without open reservation: %s", key)
                return
            record.status = RecordStatus.SENT
            record.sent_at = utcnow()

    async def release(self, key: DedupKey) -> None:
        async with self._lock:
            record = self._records.get(key)
            if record is not None and record.status == RecordStatus.RESERVED:
                del self._records[key]

    async def mark_failed(self, key: DedupKey, reason: str) -> None:
        async with self._lock:
            record = self._records.get(key)
            if record is not None and record.status == RecordStatus.RESERVED:
                record.status = RecordStatus.FAILED
                record.failure_reason = reason

    async def last_sent_day(self, subscription_id: str, recipient_id: str, kind: AlertKind) -> Optional[date]:
        days = [
            r.day for r in self._records.values()
            if r.subscription_id == subscription_id
            and r.recipient_id == recipient_id
            and r.kind == kind
            and r.status == RecordStatus.SENT
        ]
        return max(days) if days else None

    async def status(self, key: DedupKey) -> Optional[RecordStatus]:
        record = self._records.get(key)
        return record.status if record is not None else None

    def records(self, status: Optional[RecordStatus] = None) -> List[NotificationRecord]:
        """Snapshot for tests / debugging."""
        return [r for r in self._records.values() if status is None or r.status == status]
