import asyncio
from datetime import date, timedelta

import pytest

from conftest import TODAY, make_subscription
from core.exceptions import StoreUnavailableError
from models.notification import AlertKind, RecordStatus, SendResult
from services.dispatcher import Dispatcher


def _sent_kinds(notifier):
    return sorted((rid, kind) for rid, kind, _ in notifier.sent)


@pytest.mark.asyncio
async def test_trial_expiry_reaches_owner_and_shared_users(repo, history, notifier, dispatcher):
    """Scenario A: trial ending in two days notifies every recipient."""
    repo.add_subscription(make_subscription(trial=True, renewal_date=TODAY + timedelta(days=2), shared_with={"friend", "sister"}))

    report = await dispatcher.run_once(TODAY)

    assert report.sent == 3
    assert _sent_kinds(notifier) == [
        ("friend", AlertKind.TRIAL_EXPIRY),
        ("owner", AlertKind.TRIAL_EXPIRY),
        ("sister", AlertKind.TRIAL_EXPIRY),
    ]
    assert len(history.records(RecordStatus.SENT)) == 3


@pytest.mark.asyncio
async def test_auto_renewal_advances_date_and_records_once(repo, history, notifier, dispatcher):
    """Scenario B: overdue auto-renewal renews once, one record per recipient."""
    repo.add_subscription(make_subscription(
        auto_renewal=True, renewal_date=TODAY - timedelta(days=1), shared_with={"friend"},
    ))

    report = await dispatcher.run_once(TODAY)

    assert report.renewals == 1
    assert repo.subscriptions["sub-1"].renewal_date == date(2024, 4, 14)
    assert _sent_kinds(notifier) == [("friend", AlertKind.RENEWAL_REMINDER), ("owner", AlertKind.RENEWAL_REMINDER)]
    assert all("Renewed" in subject for _, _, subject in notifier.sent)
    records = history.records(RecordStatus.SENT)
    assert sorted(r.recipient_id for r in records) == ["friend", "owner"]
    # renewal notices are keyed by the renewal date they consumed
    assert all(r.day == TODAY - timedelta(days=1) and r.kind is AlertKind.RENEWAL_REMINDER for r in records)
    assert repo.subscriptions["sub-1"].renewal_notice_from is None

    # same day again: new date is in the future, nothing re-fires
    again = await dispatcher.run_once(TODAY)
    assert again.renewals == 0
    assert again.sent == 0
    assert repo.subscriptions["sub-1"].renewal_date == date(2024, 4, 14)


@pytest.mark.asyncio
async def test_expired_for_all_recipients(repo, notifier, dispatcher):
    """Scenario C."""
    repo.add_subscription(make_subscription(renewal_date=TODAY - timedelta(days=1), shared_with={"sister"}))

    report = await dispatcher.run_once(TODAY)

    assert report.sent == 2
    assert _sent_kinds(notifier) == [("owner", AlertKind.EXPIRED), ("sister", AlertKind.EXPIRED)]


@pytest.mark.asyncio
async def test_second_run_same_day_sends_nothing(repo, history, notifier, dispatcher):
    repo.add_subscription(make_subscription(renewal_date=TODAY, shared_with={"friend"}))

    first = await dispatcher.run_once(TODAY)
    second = await dispatcher.run_once(TODAY)

    assert first.sent == 2
    assert second.sent == 0
    assert second.duplicates == 2
    assert len(notifier.sent) == 2
    assert len(history.records()) == 2


@pytest.mark.asyncio
async def test_concurrent_runs_send_exactly_once(repo, history, notifier, dispatcher):
    """Scenario D: two overlapping runs, one send and one skip."""
    repo.add_subscription(make_subscription(renewal_date=TODAY))
    notifier.delay = 0.05

    a, b = await asyncio.gather(dispatcher.run_once(TODAY), dispatcher.run_once(TODAY))

    assert a.sent + b.sent == 1
    assert a.duplicates + b.duplicates == 1
    assert len(notifier.sent) == 1
    assert len(history.records()) == 1


@pytest.mark.asyncio
async def test_concurrent_runs_renew_exactly_once(repo, notifier, dispatcher):
    repo.add_subscription(make_subscription(auto_renewal=True, billing_cycle="WEEKLY", renewal_date=TODAY - timedelta(days=1)))

    a, b = await asyncio.gather(dispatcher.run_once(TODAY), dispatcher.run_once(TODAY))

    assert a.renewals + b.renewals == 1
    assert a.conflicts + b.conflicts == 1
    assert len(notifier.sent) == 1
    assert repo.subscriptions["sub-1"].renewal_date == TODAY + timedelta(days=6)


@pytest.mark.asyncio
async def test_transient_failure_is_retried_next_run(repo, history, notifier, dispatcher):
    """Scenario E: no record after a transient failure; retry writes exactly one."""
    repo.add_subscription(make_subscription(renewal_date=TODAY, shared_with={"friend"}))
    notifier.fail_for["friend"] = SendResult.transient("smtp unavailable")

    first = await dispatcher.run_once(TODAY)
    assert first.sent == 1
    assert first.transient_failures == 1
    assert [r.recipient_id for r in history.records()] == ["owner"]

    second = await dispatcher.run_once(TODAY)
    assert second.sent == 1
    assert second.duplicates == 1
    friend_records = [r for r in history.records() if r.recipient_id == "friend"]
    assert len(friend_records) == 1
    assert friend_records[0].status is RecordStatus.SENT


@pytest.mark.asyncio
async def test_timeout_counts_as_transient_failure(repo, history, notifier, failure_reporter):
    repo.add_subscription(make_subscription(renewal_date=TODAY))
    notifier.delay = 0.5
    dispatcher = Dispatcher(repo, history, notifier, failure_reporter=failure_reporter, send_timeout=0.01)

    report = await dispatcher.run_once(TODAY)

    assert report.transient_failures == 1
    assert history.records() == []


@pytest.mark.asyncio
async def test_permanent_failure_is_terminal_and_reported(repo, history, notifier, failure_reporter, dispatcher):
    repo.add_subscription(make_subscription(renewal_date=TODAY))
    notifier.fail_for["owner"] = SendResult.permanent_failure("recipient refused")

    report = await dispatcher.run_once(TODAY)
    again = await dispatcher.run_once(TODAY)

    assert report.permanent_failures == 1
    assert again.duplicates == 1
    assert [r.status for r in history.records()] == [RecordStatus.FAILED]
    assert len(failure_reporter.reports) == 1
    assert failure_reporter.reports[0][1] == "recipient refused"


@pytest.mark.asyncio
async def test_unknown_owner_skips_subscription(repo, notifier, dispatcher):
    repo.add_subscription(make_subscription(user_id="ghost", renewal_date=TODAY, shared_with={"friend"}))
    repo.add_subscription(make_subscription(id="sub-2", renewal_date=TODAY))

    report = await dispatcher.run_once(TODAY)

    assert report.unresolved == 1
    assert _sent_kinds(notifier) == [("owner", AlertKind.PAYMENT_DUE)]


@pytest.mark.asyncio
async def test_unknown_owner_does_not_renew(repo, dispatcher):
    repo.add_subscription(make_subscription(user_id="ghost", auto_renewal=True, renewal_date=TODAY - timedelta(days=1)))

    await dispatcher.run_once(TODAY)

    assert repo.subscriptions["sub-1"].renewal_date == TODAY - timedelta(days=1)


@pytest.mark.asyncio
async def test_unresolved_shared_users_are_dropped(repo, notifier, dispatcher):
    repo.add_subscription(make_subscription(renewal_date=TODAY, shared_with={"nobody", "friend", "owner"}))

    report = await dispatcher.run_once(TODAY)

    assert report.sent == 2
    assert _sent_kinds(notifier) == [("friend", AlertKind.PAYMENT_DUE), ("owner", AlertKind.PAYMENT_DUE)]


@pytest.mark.asyncio
async def test_expired_notifies_once_per_overdue_period(repo, notifier, dispatcher):
    repo.add_subscription(make_subscription(renewal_date=TODAY - timedelta(days=1)))

    await dispatcher.run_once(TODAY)
    next_day = await dispatcher.run_once(TODAY + timedelta(days=1))

    assert next_day.sent == 0
    assert next_day.duplicates == 1
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_expired_daily_policy_renotifies(repo, history, notifier, failure_reporter):
    dispatcher = Dispatcher(repo, history, notifier, failure_reporter=failure_reporter, expired_policy="daily")
    repo.add_subscription(make_subscription(renewal_date=TODAY - timedelta(days=1)))

    await dispatcher.run_once(TODAY)
    await dispatcher.run_once(TODAY)
    await dispatcher.run_once(TODAY + timedelta(days=1))

    assert len(notifier.sent) == 2


def test_unknown_expired_policy_rejected(repo, history, notifier):
    with pytest.raises(ValueError):
        Dispatcher(repo, history, notifier, expired_policy="weekly")


@pytest.mark.asyncio
async def test_stop_event_defers_unstarted_work(repo, notifier, dispatcher):
    repo.add_subscription(make_subscription(renewal_date=TODAY))
    stop = asyncio.Event()
    stop.set()

    report = await dispatcher.run_once(TODAY, stop_event=stop)

    assert report.deferred == 1
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_store_failure_aborts_run(repo, notifier, dispatcher):
    async def broken():
        raise StoreUnavailableError("db down")

    repo.list_active = broken

    with pytest.raises(StoreUnavailableError):
        await dispatcher.run_once(TODAY)
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_history_failure_aborts_run(repo, history, notifier, dispatcher):
    repo.add_subscription(make_subscription(renewal_date=TODAY))

    async def broken(key):
        raise StoreUnavailableError("history down")

    history.try_reserve = broken

    with pytest.raises(StoreUnavailableError):
        await dispatcher.run_once(TODAY)


@pytest.mark.asyncio
async def test_notifier_crash_is_contained(repo, history, failure_reporter):
    class ExplodingNotifier:
        async def send(self, recipient, kind, content):
            raise RuntimeError("boom")

    repo.add_subscription(make_subscription(renewal_date=TODAY))
    dispatcher = Dispatcher(repo, history, ExplodingNotifier(), failure_reporter=failure_reporter)

    report = await dispatcher.run_once(TODAY)

    assert report.transient_failures == 1
    assert history.records() == []


@pytest.mark.asyncio
async def test_renewal_notice_redelivered_after_transient_failure(repo, history, notifier, dispatcher):
    """A shared user missed by a renewal run still gets the notice on the next run."""
    repo.add_subscription(make_subscription(
        auto_renewal=True, renewal_date=TODAY - timedelta(days=1), shared_with={"friend"},
    ))
    notifier.fail_for["friend"] = SendResult.transient("smtp unavailable")

    first = await dispatcher.run_once(TODAY)
    assert first.renewals == 1
    assert first.sent == 1
    assert first.transient_failures == 1
    assert repo.subscriptions["sub-1"].renewal_notice_from == TODAY - timedelta(days=1)

    # next day: the date is far in the future, the notice is still owed
    second = await dispatcher.run_once(TODAY + timedelta(days=1))
    assert second.renewals == 0
    assert second.pending_notices == 1
    assert second.sent == 1
    assert second.duplicates == 1
    assert _sent_kinds(notifier) == [("friend", AlertKind.RENEWAL_REMINDER), ("owner", AlertKind.RENEWAL_REMINDER)]
    assert all("Renewed" in subject for _, _, subject in notifier.sent)
    assert repo.subscriptions["sub-1"].renewal_notice_from is None

    third = await dispatcher.run_once(TODAY + timedelta(days=2))
    assert third.pending_notices == 0
    assert len(notifier.sent) == 2


@pytest.mark.asyncio
async def test_renewal_notice_sent_after_run_aborted_past_renewal(repo, history, notifier, dispatcher):
    """Renewal applied, then the history store failed before any send."""
    repo.add_subscription(make_subscription(
        auto_renewal=True, renewal_date=TODAY - timedelta(days=1), shared_with={"friend"},
    ))
    working_reserve = history.try_reserve

    async def broken(key):
        raise StoreUnavailableError("history down")

    history.try_reserve = broken
    with pytest.raises(StoreUnavailableError):
        await dispatcher.run_once(TODAY)
    assert repo.subscriptions["sub-1"].renewal_date == date(2024, 4, 14)
    assert notifier.sent == []

    history.try_reserve = working_reserve
    report = await dispatcher.run_once(TODAY)

    assert report.renewals == 0
    assert report.sent == 2
    assert _sent_kinds(notifier) == [("friend", AlertKind.RENEWAL_REMINDER), ("owner", AlertKind.RENEWAL_REMINDER)]
    assert repo.subscriptions["sub-1"].renewal_date == date(2024, 4, 14)
    assert repo.subscriptions["sub-1"].renewal_notice_from is None


@pytest.mark.asyncio
async def test_renewal_notice_settles_on_permanent_failure(repo, history, notifier, failure_reporter, dispatcher):
    repo.add_subscription(make_subscription(
        auto_renewal=True, renewal_date=TODAY - timedelta(days=1), shared_with={"friend"},
    ))
    notifier.fail_for["friend"] = SendResult.permanent_failure("mailbox does not exist")

    report = await dispatcher.run_once(TODAY)

    assert report.permanent_failures == 1
    assert len(failure_reporter.reports) == 1
    assert repo.subscriptions["sub-1"].renewal_notice_from is None


@pytest.mark.asyncio
async def test_next_renewal_waits_for_outstanding_notice(repo, notifier, dispatcher):
    """Two cycles overdue: the second renewal is applied only after the first notice went out."""
    repo.add_subscription(make_subscription(
        auto_renewal=True, billing_cycle="WEEKLY", renewal_date=TODAY - timedelta(days=10), shared_with={"friend"},
    ))
    notifier.fail_for["friend"] = SendResult.transient("smtp unavailable")

    await dispatcher.run_once(TODAY)
    assert repo.subscriptions["sub-1"].renewal_date == TODAY - timedelta(days=3)

    notifier.fail_for["friend"] = SendResult.transient("smtp unavailable")
    blocked = await dispatcher.run_once(TODAY)
    assert blocked.renewals == 0
    assert repo.subscriptions["sub-1"].renewal_date == TODAY - timedelta(days=3)
    assert repo.subscriptions["sub-1"].renewal_notice_from == TODAY - timedelta(days=10)

    caught_up = await dispatcher.run_once(TODAY)
    assert caught_up.pending_notices == 1
    assert caught_up.renewals == 1
    assert repo.subscriptions["sub-1"].renewal_date == TODAY + timedelta(days=4)
    assert repo.subscriptions["sub-1"].renewal_notice_from is None
    # one notice per renewal event per recipient
    assert _sent_kinds(notifier) == [
        ("friend", AlertKind.RENEWAL_REMINDER),
        ("friend", AlertKind.RENEWAL_REMINDER),
        ("owner", AlertKind.RENEWAL_REMINDER),
        ("owner", AlertKind.RENEWAL_REMINDER),
    ]
