# services/eligibility.py
"""
Eligibility engine: maps (subscription, today) to at most one alert.

Rules are evaluated top to bottom, first match wins:

    offset < 0, trial or no auto-renewal     -> EXPIRED
    offset < 0, auto-renewal                 -> RENEWAL_REMINDER (renewal event)
    trial, 0 <= offset <= 3                  -> TRIAL_EXPIRY
    auto-renewal, 0 < offset <= 2            -> RENEWAL_REMINDER (upcoming)
    offset == 0                              -> PAYMENT_DUE

where offset = renewal_date - today in days. No I/O.
"""
from datetime import date
from typing import Optional

from models.notification import AlertKind, EligibilityResult
from models.subscription import Subscription
from services.clock import days_between

TRIAL_WINDOW_DAYS = 3
RENEWAL_WINDOW_DAYS = 2


def decide(subscription: Subscription, today: date) -> Optional[EligibilityResult]:
    if not subscription.is_active:
        return None

    offset = days_between(today, subscription.renewal_date)

    if offset < 0:
        if subscription.trial or not subscription.auto_renewal:
            return EligibilityResult(kind=AlertKind.EXPIRED)
        return EligibilityResult(kind=AlertKind.RENEWAL_REMINDER, renewal_event=True)

    if subscription.trial and offset <= TRIAL_WINDOW_DAYS:
        return EligibilityResult(kind=AlertKind.TRIAL_EXPIRY)

    if subscription.auto_renewal and 0 < offset <= RENEWAL_WINDOW_DAYS:
        return EligibilityResult(kind=AlertKind.RENEWAL_REMINDER)

    if offset == 0:
        return EligibilityResult(kind=AlertKind.PAYMENT_DUE)

    return None
