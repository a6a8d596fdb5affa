import asyncio
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

import pytest
import pytest_asyncio


# Ensure project root is on sys.path so `services.*` imports work
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


# Explicitly enable pytest-asyncio plugin for async tests/fixtures
pytest_plugins = ("pytest_asyncio",)


from core.db import create_all, create_engine_and_sessionmaker
from models.notification import SendResult
from models.subscription import BillingCycle, Subscription
from models.user import User
from services.dispatcher import Dispatcher
from services.history import InMemoryNotificationHistory
from services.subscription_service import InMemorySubscriptionRepository


TODAY = date(2024, 3, 15)


def make_subscription(**overrides) -> Subscription:
    data = dict(
        id="sub-1",
        user_id="owner",
        name="Netflix",
        amount=Decimal("15.49"),
        billing_cycle=BillingCycle.MONTHLY,
        renewal_date=TODAY,
        trial=False,
        auto_renewal=False,
        shared_with=set(),
    )
    data.update(overrides)
    return Subscription(**data)


class RecordingNotifier:
    """Notifier double: records sends, can fail or block on demand."""

    def __init__(self):
        self.sent: List[tuple] = []
        self.fail_for: dict = {}  # recipient id -> SendResult to return (consumed once)
        self.gate: Optional[asyncio.Event] = None
        self.delay: float = 0.0

    async def send(self, recipient, kind, content):
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        failure = self.fail_for.pop(recipient.id, None)
        if failure is not None:
            return failure
        self.sent.append((recipient.id, kind, content.subject))
        return SendResult.success()


class RecordingFailureReporter:
    def __init__(self):
        self.reports = []

    async def report(self, key, reason):
        self.reports.append((key, reason))


@pytest.fixture()
def users():
    return [
        User(id="owner", name="Olivia", email="olivia@example.com", phone="+15550000001"),
        User(id="friend", name="Frank", email="frank@example.com"),
        User(id="sister", name="Sara", email="sara@example.com"),
    ]


@pytest.fixture()
def repo(users):
    return InMemorySubscriptionRepository(users=users)


@pytest.fixture()
def history():
    return InMemoryNotificationHistory()


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def failure_reporter():
    return RecordingFailureReporter()


@pytest.fixture()
def dispatcher(repo, history, notifier, failure_reporter):
    return Dispatcher(repo, history, notifier, failure_reporter=failure_reporter, send_timeout=1.0, max_concurrency=4)


@pytest_asyncio.fixture()
async def session_maker(tmp_path):
    """SQLite (aiosqlite) database with all tables created."""
    engine, maker = create_engine_and_sessionmaker(f"sqlite+aiosqlite:///{tmp_path / 'reminders.db'}")
    await create_all(engine)
    yield maker
    await engine.dispose()
