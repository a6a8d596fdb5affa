"""
DB-backed notification history using async SQLAlchemy.

- try_reserve -> INSERT into reminder_logs; the UNIQUE
  (subscription_id, recipient_id, alert_kind, day) constraint makes the
  check-and-reserve a single atomic step. IntegrityError means another run
  (or an earlier one) already holds the key.
- A `reserved` row older than the lease belongs to a crashed run and is
  reclaimed with a conditional UPDATE, so only one reclaimer wins.

Each call opens its own session: work units run concurrently and an
AsyncSession must not be shared between tasks.
"""
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.db import utcnow
from core.exceptions import StoreUnavailableError
from models.db_models import DeliveryFailure, ReminderLog
from models.notification import AlertKind, DedupKey, RecordStatus, ReservationStatus
import logging

logger = logging.getLogger(__name__)


def _key_filter(key: DedupKey):
    return (
        ReminderLog.subscription_id == key.subscription_id,
        ReminderLog.recipient_id == key.recipient_id,
        ReminderLog.alert_kind == key.kind.value,
        ReminderLog.day == key.day,
    )


class NotificationHistoryDBService:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession], lease_sec: int = 3600):
        self.session_maker = session_maker
        self.lease = timedelta(seconds=lease_sec)

    async def try_reserve(self, key: DedupKey) -> ReservationStatus:
        try:
            async with self.session_maker() as session:
                session.add(ReminderLog(
                    subscription_id=key.subscription_id,
                    recipient_id=key.recipient_id,
                    alert_kind=key.kind.value,
                    day=key.day,
                    status=RecordStatus.RESERVED.value,
                    reserved_at=utcnow(),
                ))
                try:
                    await session.commit()
                    return ReservationStatus.RESERVED
                except IntegrityError:
                    await session.rollback()

                # Key exists: only an abandoned reservation can be taken over
                cutoff = utcnow() - self.lease
                result = await session.execute(
                    update(ReminderLog)
                    .where(*_key_filter(key))
                    .where(ReminderLog.status == RecordStatus.RESERVED.value)
                    .where(ReminderLog.reserved_at < cutoff)
                    .values(reserved_at=utcnow())
                )
                await session.commit()
                if result.rowcount == 1:
                    logger.warning("Reclaimed stale reservation %s", key)
                    return ReservationStatus.RESERVED
                return ReservationStatus.ALREADY_EXISTS
        except SQLAlchemyError as e:
            logger.error("DB try_reserve error for %s: %s", key, e)
            raise StoreUnavailableError(f"history store unavailable: {e}") from e

    async def confirm(self, key: DedupKey) -> None:
        await self._transition(key, status=RecordStatus.SENT.value, sent_at=utcnow())

    async def mark_failed(self, key: DedupKey, reason: str) -> None:
        await self._transition(key, status=RecordStatus.FAILED.value, failure_reason=reason[:500])

    async def release(self, key: DedupKey) -> None:
        try:
            async with self.session_maker() as session:
                await session.execute(
                    delete(ReminderLog)
                    .where(*_key_filter(key))
                    .where(ReminderLog.status == RecordStatus.RESERVED.value)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("DB release error for %s: %s", key, e)
            raise StoreUnavailableError(f"history store unavailable: {e}") from e

    async def last_sent_day(self, subscription_id: str, recipient_id: str, kind: AlertKind) -> Optional[date]:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(func.max(ReminderLog.day))
                    .where(ReminderLog.subscription_id == subscription_id)
                    .where(ReminderLog.recipient_id == recipient_id)
                    .where(ReminderLog.alert_kind == kind.value)
                    .where(ReminderLog.status == RecordStatus.SENT.value)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("DB last_sent_day error: %s", e)
            raise StoreUnavailableError(f"history store unavailable: {e}") from e

    async def status(self, key: DedupKey) -> Optional[RecordStatus]:
        try:
            async with self.session_maker() as session:
                result = await session.execute(select(ReminderLog.status).where(*_key_filter(key)))
                value = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error("DB status error for %s: %s", key, e)
            raise StoreUnavailableError(f"history store unavailable: {e}") from e
        return RecordStatus(value) if value is not None else None

    async def _transition(self, key: DedupKey, **values) -> None:
        """reserved -> sent|failed. Rows in any other state are left untouched."""
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    update(ReminderLog)
                    .where(*_key_filter(key))
                    .where(ReminderLog.status == RecordStatus.RESERVED.value)
                    .values(**values)
                )
                await session.commit()
                if result.rowcount != 1:
                    logger.warning("No open reservation to update for %s", key)
        except SQLAlchemyError as e:
            logger.error("DB history update error for %s: %s", key, e)
            raise StoreUnavailableError(f"history store unavailable: {e}") from e


class DeliveryFailureDBReporter:
    """Writes terminal failure markers to delivery_failures for ops/alerting."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def report(self, key: DedupKey, reason: str) -> None:
        logger.error(
            "Permanent delivery failure sub=%s recipient=%s kind=%s: %s",
            key.subscription_id, key.recipient_id, key.kind.value, reason,
        )
        try:
            async with self.session_maker() as session:
                session.add(DeliveryFailure(
                    subscription_id=key.subscription_id,
                    recipient_id=key.recipient_id,
                    alert_kind=key.kind.value,
                    day=key.day,
                    reason=reason[:500],
                ))
                await session.commit()
        except SQLAlchemyError as e:
            # the failure is already logged above; alerting storage is best effort
            logger.error("Could not persist delivery failure for %s: %s", key, e)
