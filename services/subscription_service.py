from enum import Enum
from datetime import date
from typing import Dict, Iterable, List, Optional, Protocol
import asyncio
import logging

from models.subscription import Subscription
from models.user import User

logger = logging.getLogger(__name__)


class AdvanceOutcome(str, Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"


class SubscriptionRepository(Protocol):
    async def list_active(self) -> List[Subscription]: ...

    async def resolve_users(self, ids: Iterable[str]) -> Dict[str, User]: ...

    async def advance_renewal_date(self, subscription_id: str, expected_old_date: date, new_date: date) -> AdvanceOutcome: ...

    async def clear_renewal_notice(self, subscription_id: str, renewal_notice_from: date) -> None: ...


class InMemorySubscriptionRepository:
    """
    In-memory store for local dev (MYSQL_ASYNC_URL=disabled) and tests.
    advance_renewal_date is a compare-and-swap on the prior date and leaves the
    prior date behind as the pending renewal notice marker.
    """

    def __init__(self, subscriptions: Optional[Iterable[Subscription]] = None, users: Optional[Iterable[User]] = None):
        self.subscriptions: Dict[str, Subscription] = {s.id: s for s in subscriptions or []}
        self.users: Dict[str, User] = {u.id: u for u in users or []}
        self._lock = asyncio.Lock()

    def add_subscription(self, sub: Subscription) -> None:
        self.subscriptions[sub.id] = sub

    def add_user(self, user: User) -> None:
        self.users[user.id] = user

    async def list_active(self) -> List[Subscription]:
        return [s for s in self.subscriptions.values() if s.is_active]

    async def resolve_users(self, ids: Iterable[str]) -> Dict[str, User]:
        return {uid: self.users[uid] for uid in ids if uid in self.users}

    async def advance_renewal_date(self, subscription_id: str, expected_old_date: date, new_date: date) -> AdvanceOutcome:
        async with self._lock:
            sub = self.subscriptions.get(subscription_id)
            if sub is None or sub.renewal_date != expected_old_date:
                logger.info("Renewal advance conflict for %s (expected %s)", subscription_id, expected_old_date)
                return AdvanceOutcome.CONFLICT
            self.subscriptions[subscription_id] = sub.model_copy(
                update={"renewal_date": new_date, "renewal_notice_from": expected_old_date}
            )
            return AdvanceOutcome.SUCCESS

    async def clear_renewal_notice(self, subscription_id: str, renewal_notice_from: date) -> None:
        async with self._lock:
            sub = self.subscriptions.get(subscription_id)
            if sub is not None and sub.renewal_notice_from == renewal_notice_from:
                self.subscriptions[subscription_id] = sub.model_copy(update={"renewal_notice_from": None})
