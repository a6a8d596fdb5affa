# services/templates.py
"""
Message text per alert kind (email subject/body + one-line SMS).
"""
from datetime import date
from typing import Callable, Dict, Optional

from models.notification import AlertKind, RenderedContent
from models.subscription import Subscription
from models.user import User


def _greeting(user: User) -> str:
    return f"Hello {user.name or 'there'},"


def _trial_expiry(sub: Subscription, user: User, renewed_to: Optional[date]) -> RenderedContent:
    return RenderedContent(
        subject=f"{sub.name} Trial Ending Soon",
        body=(
            f"{_greeting(user)}\n\nYour trial for {sub.name} will end on {sub.renewal_date.isoformat()}. "
            "Please consider subscribing to continue using the service.\n\nThanks,\nTeam"
        ),
        sms=f"Your {sub.name} trial ends on {sub.renewal_date.isoformat()}. Consider subscribing!",
    )


def _renewal_reminder(sub: Subscription, user: User, renewed_to: Optional[date]) -> RenderedContent:
    if renewed_to is not None:
        return RenderedContent(
            subject=f"{sub.name} Subscription Renewed",
            body=(
                f"{_greeting(user)}\n\nYour {sub.name} subscription auto-renewed for {sub.amount} "
                f"({sub.billing_cycle.value}). The next renewal date is {renewed_to.isoformat()}.\n\nThanks,\nTeam"
            ),
            sms=f"{sub.name} auto-renewed. Next renewal on {renewed_to.isoformat()}.",
        )
    return RenderedContent(
        subject=f"{sub.name} Subscription Renewal Reminder",
        body=(
            f"{_greeting(user)}\n\nYour {sub.name} subscription will auto-renew on "
            f"{sub.renewal_date.isoformat()} for {sub.amount} {sub.billing_cycle.value}.\n\nThanks,\nTeam"
        ),
        sms=f"{sub.name} renews on {sub.renewal_date.isoformat()} for {sub.amount}.",
    )


def _payment_due(sub: Subscription, user: User, renewed_to: Optional[date]) -> RenderedContent:
    return RenderedContent(
        subject=f"{sub.name} Payment Due Today",
        body=(
            f"{_greeting(user)}\n\nYour {sub.name} payment of {sub.amount} is due today "
            f"({sub.renewal_date.isoformat()}).\n\nThanks,\nTeam"
        ),
        sms=f"{sub.name} payment of {sub.amount} due today!",
    )


def _expired(sub: Subscription, user: User, renewed_to: Optional[date]) -> RenderedContent:
    what = "trial" if sub.trial else "subscription"
    return RenderedContent(
        subject=f"{sub.name} Subscription Expired",
        body=f"{_greeting(user)}\n\nYour {sub.name} {what} expired on {sub.renewal_date.isoformat()}.\n\nThanks,\nTeam",
        sms=f"{sub.name} {what} expired on {sub.renewal_date.isoformat()}.",
    )


TEMPLATES: Dict[AlertKind, Callable[[Subscription, User, Optional[date]], RenderedContent]] = {
    AlertKind.TRIAL_EXPIRY: _trial_expiry,
    AlertKind.RENEWAL_REMINDER: _renewal_reminder,
    AlertKind.PAYMENT_DUE: _payment_due,
    AlertKind.EXPIRED: _expired,
}


def render(kind: AlertKind, subscription: Subscription, user: User, renewed_to: Optional[date] = None) -> RenderedContent:
    """Render content for one recipient; `renewed_to` is set only for a renewal event."""
    return TEMPLATES[kind](subscription, user, renewed_to)
