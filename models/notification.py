# models/notification.py
"""
Notification-side value types: alert kinds, engine output, dedup keys,
history records and delivery results.
"""
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from models.user import User


class AlertKind(str, Enum):
    TRIAL_EXPIRY = "TRIAL_EXPIRY"
    RENEWAL_REMINDER = "RENEWAL_REMINDER"
    PAYMENT_DUE = "PAYMENT_DUE"
    EXPIRED = "EXPIRED"


class RecordStatus(str, Enum):
    RESERVED = "reserved"
    SENT = "sent"
    FAILED = "failed"


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    ALREADY_EXISTS = "already_exists"


class EligibilityResult(BaseModel):
    """What the engine decided for one subscription on one day."""
    kind: AlertKind
    renewal_event: bool = False


class RenderedContent(BaseModel):
    subject: str
    body: str
    sms: str


class AlertDecision(BaseModel):
    subscription_id: str
    kind: AlertKind
    recipient: User
    content: RenderedContent


@dataclass(frozen=True)
class DedupKey:
    subscription_id: str
    recipient_id: str
    kind: AlertKind
    day: date

    def as_redis_key(self, prefix: str = "reminder") -> str:
        return f"{prefix}:{self.subscription_id}:{self.recipient_id}:{self.kind.value}:{self.day.isoformat()}"


class NotificationRecord(BaseModel):
    subscription_id: str
    recipient_id: str
    kind: AlertKind
    day: date
    status: RecordStatus = RecordStatus.RESERVED
    reserved_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @property
    def key(self) -> DedupKey:
        return DedupKey(self.subscription_id, self.recipient_id, self.kind, self.day)


@dataclass(frozen=True)
class SendResult:
    ok: bool
    permanent: bool = False
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "SendResult":
        return cls(ok=True)

    @classmethod
    def transient(cls, reason: str) -> "SendResult":
        return cls(ok=False, permanent=False, reason=reason)

    @classmethod
    def permanent_failure(cls, reason: str) -> "SendResult":
        return cls(ok=False, permanent=True, reason=reason)


@dataclass
class RunReport:
    """Counters for a single dispatcher run."""
    day: date
    subscriptions: int = 0
    decisions: int = 0
    sent: int = 0
    duplicates: int = 0
    transient_failures: int = 0
    permanent_failures: int = 0
    unresolved: int = 0
    renewals: int = 0
    conflicts: int = 0
    deferred: int = 0
    pending_notices: int = 0
    errors: int = 0

    def as_dict(self) -> dict:
        return {
            "day": self.day.isoformat(),
            "subscriptions": self.subscriptions,
            "decisions": self.decisions,
            "sent": self.sent,
            "duplicates": self.duplicates,
            "transient_failures": self.transient_failures,
            "permanent_failures": self.permanent_failures,
            "unresolved": self.unresolved,
            "renewals": self.renewals,
            "conflicts": self.conflicts,
            "deferred": self.deferred,
            "pending_notices": self.pending_notices,
            "errors": self.errors,
        }
