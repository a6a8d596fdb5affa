# services/dispatcher.py
"""
Dispatcher: one reminder run for a given day.

For each active subscription:
1. resolve owner + shared users (missing owner -> skip, missing shared -> drop)
2. ask the eligibility engine for today's alert
3. renewal event -> advance renewal_date (compare-and-swap) before any send;
   a conflict means another run owns this renewal, so nothing is sent.
   The swap also stores the consumed date as a pending-notice marker; the
   renewal notice is re-sent on later runs until every recipient settles
4. per recipient: reserve the dedup key, send, then confirm / release / fail

Work units run concurrently; sends are bounded by a semaphore and a per-send
timeout. The history reservation is the only synchronization point between
overlapping runs.
"""
import asyncio
import logging
from datetime import date
from typing import Dict, List, Optional, Tuple

from core.exceptions import StoreUnavailableError
from models.notification import (
    AlertDecision,
    AlertKind,
    DedupKey,
    RecordStatus,
    ReservationStatus,
    RunReport,
    SendResult,
)
from models.subscription import Subscription
from models.user import User
from services import billing, eligibility
from services.history import NotificationHistory
from services.notification_service import FailureReporter, LoggingFailureReporter, Notifier
from services.subscription_service import AdvanceOutcome, SubscriptionRepository
from services.templates import render

logger = logging.getLogger(__name__)

RENOTIFY_ONCE = "once"
RENOTIFY_DAILY = "daily"


class Dispatcher:
    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        history: NotificationHistory,
        notifier: Notifier,
        failure_reporter: Optional[FailureReporter] = None,
        send_timeout: float = 30.0,
        max_concurrency: int = 10,
        expired_policy: str = RENOTIFY_ONCE,
    ):
        if expired_policy not in (RENOTIFY_ONCE, RENOTIFY_DAILY):
            raise ValueError(f"Unknown EXPIRED re-notify policy: {expired_policy}")
        self.subscriptions = subscriptions
        self.history = history
        self.notifier = notifier
        self.failure_reporter = failure_reporter or LoggingFailureReporter()
        self.send_timeout = send_timeout
        self.max_concurrency = max_concurrency
        self.expired_policy = expired_policy

    async def run_once(self, today: date, stop_event: Optional[asyncio.Event] = None) -> RunReport:
        """
        Process every active subscription for `today`.

        Raises StoreUnavailableError when the subscription or history store
        cannot be reached; everything else is counted in the report.
        """
        report = RunReport(day=today)
        subs = await self.subscriptions.list_active()
        report.subscriptions = len(subs)
        logger.info("Reminder run for %s: %d active subscriptions", today.isoformat(), len(subs))

        semaphore = asyncio.Semaphore(self.max_concurrency)
        results = await asyncio.gather(
            *(self._process_subscription(sub, today, report, semaphore, stop_event) for sub in subs),
            return_exceptions=True,
        )

        store_error = None
        for sub, res in zip(subs, results):
            if isinstance(res, StoreUnavailableError):
                store_error = store_error or res
            elif isinstance(res, Exception):
                report.errors += 1
                logger.error("Unexpected error processing subscription %s: %r", sub.id, res, exc_info=res)
        if store_error is not None:
            logger.error("Reminder run for %s aborted: %s", today.isoformat(), store_error)
            raise store_error

        logger.info("Reminder run for %s finished: %s", today.isoformat(), report.as_dict())
        return report

    async def _process_subscription(
        self,
        sub: Subscription,
        today: date,
        report: RunReport,
        semaphore: asyncio.Semaphore,
        stop_event: Optional[asyncio.Event],
    ) -> None:
        if stop_event is not None and stop_event.is_set():
            report.deferred += 1
            return

        decision = eligibility.decide(sub, today)
        if decision is None and sub.renewal_notice_from is None:
            return

        recipients = await self._resolve_recipients(sub)
        if recipients is None:
            report.unresolved += 1
            return

        if sub.renewal_notice_from is not None:
            # an earlier run applied a renewal whose notice has not settled
            report.pending_notices += 1
            settled = await self._send_renewal_notice(sub, recipients, report, semaphore, stop_event)
            if not settled and decision is not None and decision.renewal_event:
                logger.info("Subscription %s: previous renewal notice outstanding; renewal waits", sub.id)
                return

        if decision is None:
            return
        report.decisions += 1

        if decision.renewal_event:
            renewed_to = billing.advance(sub.renewal_date, sub.billing_cycle)
            outcome = await self.subscriptions.advance_renewal_date(sub.id, sub.renewal_date, renewed_to)
            if outcome is AdvanceOutcome.CONFLICT:
                # another run advanced it and owns the renewal notice
                report.conflicts += 1
                logger.info("Subscription %s already renewed by another run; skipping", sub.id)
                return
            report.renewals += 1
            logger.info("Subscription %s auto-renewed: %s -> %s", sub.id, sub.renewal_date, renewed_to)
            renewed = sub.model_copy(update={"renewal_date": renewed_to, "renewal_notice_from": sub.renewal_date})
            await self._send_renewal_notice(renewed, recipients, report, semaphore, stop_event)
            return

        units = [
            (
                AlertDecision(
                    subscription_id=sub.id,
                    kind=decision.kind,
                    recipient=user,
                    content=render(decision.kind, sub, user),
                ),
                DedupKey(sub.id, user.id, decision.kind, today),
            )
            for user in recipients
        ]
        await self._deliver_all(sub, units, report, semaphore, stop_event)

    async def _send_renewal_notice(
        self,
        sub: Subscription,
        recipients: List[User],
        report: RunReport,
        semaphore: asyncio.Semaphore,
        stop_event: Optional[asyncio.Event],
    ) -> bool:
        """
        Deliver the notice of the renewal recorded in `sub.renewal_notice_from`.

        Keys carry the consumed renewal date, so a retry on a later day finds the
        recipients already notified. Returns True and clears the marker once
        every recipient is sent or permanently failed.
        """
        event_day = sub.renewal_notice_from
        kind = AlertKind.RENEWAL_REMINDER
        units = [
            (
                AlertDecision(
                    subscription_id=sub.id,
                    kind=kind,
                    recipient=user,
                    content=render(kind, sub, user, sub.renewal_date),
                ),
                DedupKey(sub.id, user.id, kind, event_day),
            )
            for user in recipients
        ]
        await self._deliver_all(sub, units, report, semaphore, stop_event)

        for _, key in units:
            if await self.history.status(key) not in (RecordStatus.SENT, RecordStatus.FAILED):
                logger.warning("Renewal notice for %s (%s) not settled for %s; retrying next run",
                               sub.id, event_day, key.recipient_id)
                return False
        await self.subscriptions.clear_renewal_notice(sub.id, event_day)
        return True

    async def _deliver_all(
        self,
        sub: Subscription,
        units: List[Tuple[AlertDecision, DedupKey]],
        report: RunReport,
        semaphore: asyncio.Semaphore,
        stop_event: Optional[asyncio.Event],
    ) -> None:
        results = await asyncio.gather(
            *(self._deliver(sub, alert, key, report, semaphore, stop_event) for alert, key in units),
            return_exceptions=True,
        )
        # let every recipient settle before surfacing the first failure
        for res in results:
            if isinstance(res, Exception):
                raise res

    async def _resolve_recipients(self, sub: Subscription) -> Optional[List[User]]:
        """Owner + shared users in recipient order; None when the owner is unknown."""
        ids = sub.recipient_ids()
        users: Dict[str, User] = await self.subscriptions.resolve_users(ids)
        if sub.user_id not in users:
            logger.warning("Owner %s of subscription %s not found; skipping", sub.user_id, sub.id)
            return None
        missing = [uid for uid in ids if uid not in users]
        if missing:
            logger.warning("Dropping unresolved shared users %s for subscription %s", missing, sub.id)
        return [users[uid] for uid in ids if uid in users]

    async def _deliver(
        self,
        sub: Subscription,
        alert: AlertDecision,
        key: DedupKey,
        report: RunReport,
        semaphore: asyncio.Semaphore,
        stop_event: Optional[asyncio.Event],
    ) -> None:
        async with semaphore:
            if stop_event is not None and stop_event.is_set():
                report.deferred += 1
                return

            if alert.kind is AlertKind.EXPIRED and self.expired_policy == RENOTIFY_ONCE:
                last = await self.history.last_sent_day(sub.id, alert.recipient.id, AlertKind.EXPIRED)
                if last is not None and last >= sub.renewal_date:
                    report.duplicates += 1
                    return

            if await self.history.try_reserve(key) is ReservationStatus.ALREADY_EXISTS:
                report.duplicates += 1
                logger.debug("Already notified: %s", key)
                return

            result = await self._send(alert)

            if result.ok:
                await self.history.confirm(key)
                report.sent += 1
            elif result.permanent:
                await self.history.mark_failed(key, result.reason or "permanent failure")
                await self.failure_reporter.report(key, result.reason or "permanent failure")
                report.permanent_failures += 1
            else:
                await self.history.release(key)
                report.transient_failures += 1
                logger.warning(
                    "Transient delivery failure sub=%s recipient=%s kind=%s: %s",
                    sub.id, alert.recipient.id, alert.kind.value, result.reason,
                )

    async def _send(self, alert: AlertDecision) -> SendResult:
        try:
            return await asyncio.wait_for(
                self.notifier.send(alert.recipient, alert.kind, alert.content),
                timeout=self.send_timeout,
            )
        except asyncio.TimeoutError:
            return SendResult.transient(f"send timed out after {self.send_timeout}s")
        except Exception as e:
            logger.exception("Notifier raised for %s: %s", alert.recipient.id, e)
            return SendResult.transient(str(e))
