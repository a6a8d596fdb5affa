# services/billing.py
import calendar
from datetime import date, timedelta

from models.subscription import BillingCycle


def _add_months(d: date, months: int) -> date:
    """Add calendar months, clipping the day to the target month's last day."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(d.day, last_day))


def advance(current_renewal_date: date, billing_cycle: BillingCycle) -> date:
    """
    Next renewal date after one billing cycle.

    Jan 31 + MONTHLY -> Feb 28/29; Feb 29 + YEARLY -> Feb 28 on non-leap years.
    """
    cycle = BillingCycle(billing_cycle)
    if cycle is BillingCycle.WEEKLY:
        return current_renewal_date + timedelta(days=7)
    if cycle is BillingCycle.MONTHLY:
        return _add_months(current_renewal_date, 1)
    if cycle is BillingCycle.YEARLY:
        return _add_months(current_renewal_date, 12)
    raise ValueError(f"Unsupported billing cycle: {billing_cycle}")
