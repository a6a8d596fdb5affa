"""
DB-backed subscription repository using async SQLAlchemy.

- list_active          -> SELECT * FROM subscriptions WHERE is_active=1
- resolve_users        -> SELECT * FROM users WHERE id IN (...)
- advance_renewal_date -> UPDATE subscriptions SET renewal_date=:new, renewal_notice_from=:expected
                          WHERE id=:id AND renewal_date=:expected
                          (rowcount 1 = we advanced it, 0 = another run did)
- clear_renewal_notice -> UPDATE subscriptions SET renewal_notice_from=NULL
                          WHERE id=:id AND renewal_notice_from=:expected

Store errors are raised as StoreUnavailableError so the dispatcher can abort
the run instead of silently treating the store as empty.
"""

from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from core.exceptions import StoreUnavailableError
from models import db_models
from models.subscription import BillingCycle, Subscription
from models.user import User
from services.subscription_service import AdvanceOutcome
import logging

logger = logging.getLogger(__name__)


class SubscriptionDBService:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def list_active(self) -> List[Subscription]:
        try:
            async with self.session_maker() as session:
                stmt = select(db_models.Subscription).where(db_models.Subscription.is_active == True)  # noqa: E712
                result = await session.execute(stmt)
                rows = result.unique().scalars().all()
        except (SQLAlchemyError, OSError) as e:
            logger.error("DB list_active error: %s", e)
            raise StoreUnavailableError(f"subscription store unavailable: {e}") from e

        subs = []
        for row in rows:
            try:
                subs.append(self._to_model(row))
            except ValueError as e:
                # one malformed row must not take the whole run down
                logger.warning("Skipping malformed subscription %s: %s", row.id, e)
        return subs

    async def resolve_users(self, ids: Iterable[str]) -> Dict[str, User]:
        wanted = {uid for uid in ids if uid}
        if not wanted:
            return {}
        try:
            async with self.session_maker() as session:
                result = await session.execute(select(db_models.User).where(db_models.User.id.in_(wanted)))
                users = result.scalars().all()
        except (SQLAlchemyError, OSError) as e:
            logger.error("DB resolve_users error: %s", e)
            raise StoreUnavailableError(f"subscription store unavailable: {e}") from e
        return {
            u.id: User(id=u.id, name=u.name, email=u.email, phone=u.phone)
            for u in users
            if u.email
        }

    async def advance_renewal_date(self, subscription_id: str, expected_old_date: date, new_date: date) -> AdvanceOutcome:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    update(db_models.Subscription)
                    .where(db_models.Subscription.id == subscription_id)
                    .where(db_models.Subscription.renewal_date == expected_old_date)
                    .values(renewal_date=new_date, renewal_notice_from=expected_old_date)
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error("DB advance_renewal_date error for %s: %s", subscription_id, e)
            raise StoreUnavailableError(f"subscription store unavailable: {e}") from e

        if result.rowcount == 1:
            logger.info("Advanced renewal date of %s: %s -> %s", subscription_id, expected_old_date, new_date)
            return AdvanceOutcome.SUCCESS
        logger.info("Renewal advance conflict for %s (expected %s)", subscription_id, expected_old_date)
        return AdvanceOutcome.CONFLICT

    async def clear_renewal_notice(self, subscription_id: str, renewal_notice_from: date) -> None:
        try:
            async with self.session_maker() as session:
                await session.execute(
                    update(db_models.Subscription)
                    .where(db_models.Subscription.id == subscription_id)
                    .where(db_models.Subscription.renewal_notice_from == renewal_notice_from)
                    .values(renewal_notice_from=None)
                )
                await session.commit()
        except (SQLAlchemyError, OSError) as e:
            logger.error("DB clear_renewal_notice error for %s: %s", subscription_id, e)
            raise StoreUnavailableError(f"subscription store unavailable: {e}") from e

    @staticmethod
    def _to_model(row: db_models.Subscription) -> Subscription:
        """Convert ORM Subscription to the pydantic Subscription model."""
        shared = row.shared_with or []
        if isinstance(shared, str):
            # legacy rows stored "id1;id2"
            shared = [s.strip() for s in shared.split(";")]
        return Subscription(
            id=row.id,
            user_id=row.user_id,
            name=row.name,
            amount=Decimal(str(row.amount)),
            billing_cycle=BillingCycle(row.billing_cycle),
            renewal_date=row.renewal_date,
            trial=bool(row.trial),
            auto_renewal=bool(row.auto_renewal),
            shared_with={s for s in shared if s},
            is_active=bool(row.is_active),
            renewal_notice_from=row.renewal_notice_from,
        )
