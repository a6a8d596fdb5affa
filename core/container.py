# core/container.py
"""
Composition root: every collaborator is built once at process start and
passed explicitly to the dispatcher / scheduler (no module-level clients).

Fallbacks for local dev:
- MYSQL_ASYNC_URL=disabled -> in-memory subscription + history stores
- no EMAIL_USER            -> console notifier
"""
from dataclasses import dataclass
from typing import Any, Optional
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from config.settings import Settings
from core.db import create_engine_and_sessionmaker
from services.clock import SystemClock
from services.dispatcher import Dispatcher
from services.history import InMemoryNotificationHistory, NotificationHistory
from services.notification_service import (
    ChannelNotifier,
    ConsoleNotifier,
    FailureReporter,
    LoggingFailureReporter,
    Notifier,
)
from services.subscription_service import InMemorySubscriptionRepository, SubscriptionRepository
from workers.scheduler import DailyCadence, IntervalCadence, SchedulerLoop

logger = logging.getLogger(__name__)


@dataclass
class Container:
    clock: SystemClock
    subscriptions: SubscriptionRepository
    history: NotificationHistory
    notifier: Notifier
    failure_reporter: FailureReporter
    dispatcher: Dispatcher
    scheduler: SchedulerLoop
    engine: Optional[AsyncEngine] = None
    redis: Optional[Any] = None

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def _build_notifier(settings: Settings) -> Notifier:
    if not (settings.EMAIL_USER and settings.EMAIL_PASS):
        logger.warning("EMAIL_USER/EMAIL_PASS not set; notifications go to the console")
        return ConsoleNotifier()

    from tools.notifier import EmailSender, SmsSender

    email = EmailSender(
        settings.EMAIL_HOST, settings.EMAIL_PORT, settings.EMAIL_USER, settings.EMAIL_PASS,
        from_name=settings.EMAIL_FROM_NAME, timeout=settings.SEND_TIMEOUT_SEC,
    )
    sms = None
    if settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_PHONE_NUMBER:
        sms = SmsSender(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN, settings.TWILIO_PHONE_NUMBER)
    else:
        logger.info("Twilio not configured; SMS channel disabled")
    return ChannelNotifier(email, sms)


def build_container(settings: Settings) -> Container:
    clock = SystemClock(settings.REFERENCE_TIMEZONE)
    engine = None
    session_maker = None
    redis_client = None

    if settings.db_enabled:
        from services.history_db_service import DeliveryFailureDBReporter
        from services.subscription_db_service import SubscriptionDBService

        engine, session_maker = create_engine_and_sessionmaker(settings.MYSQL_ASYNC_URL, echo=settings.DEBUG)
        subscriptions: SubscriptionRepository = SubscriptionDBService(session_maker)
        failure_reporter: FailureReporter = DeliveryFailureDBReporter(session_maker)
    else:
        logger.warning("MYSQL_ASYNC_URL is 'disabled' - using in-memory subscription store")
        subscriptions = InMemorySubscriptionRepository()
        failure_reporter = LoggingFailureReporter()

    backend = settings.HISTORY_BACKEND.lower()
    if backend == "redis":
        from infra.redis_client import create_redis
        from services.history_redis_service import RedisNotificationHistory

        redis_client = create_redis(settings.REDIS_URL)
        history: NotificationHistory = RedisNotificationHistory(
            redis_client, lease_sec=settings.RESERVATION_LEASE_SEC, retention_days=settings.HISTORY_RETENTION_DAYS,
        )
    elif backend == "db" and session_maker is not None:
        from services.history_db_service import NotificationHistoryDBService

        history = NotificationHistoryDBService(session_maker, lease_sec=settings.RESERVATION_LEASE_SEC)
    else:
        if backend != "memory":
            logger.warning("HISTORY_BACKEND=%s unavailable without a DB; using in-memory history", backend)
        history = InMemoryNotificationHistory(lease_sec=settings.RESERVATION_LEASE_SEC)

    notifier = _build_notifier(settings)
    dispatcher = Dispatcher(
        subscriptions,
        history,
        notifier,
        failure_reporter=failure_reporter,
        send_timeout=settings.SEND_TIMEOUT_SEC,
        max_concurrency=settings.MAX_CONCURRENT_SENDS,
        expired_policy=settings.EXPIRED_RENOTIFY_POLICY.lower(),
    )
    if settings.RUN_INTERVAL_SEC > 0:
        cadence = IntervalCadence(settings.RUN_INTERVAL_SEC)
    else:
        cadence = DailyCadence(settings.RUN_HOUR_UTC)
    scheduler = SchedulerLoop(dispatcher, clock, cadence)

    return Container(
        clock=clock,
        subscriptions=subscriptions,
        history=history,
        notifier=notifier,
        failure_reporter=failure_reporter,
        dispatcher=dispatcher,
        scheduler=scheduler,
        engine=engine,
        redis=redis_client,
    )
