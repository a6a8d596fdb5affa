"""
SQLAlchemy ORM models.

Purpose:
- Define User, Subscription, ReminderLog (notification history) and
  DeliveryFailure tables
- Use SQLAlchemy async-compatible models
- Tables are created by create_db_schema.py / core.db.create_all

Production notes:
- reminder_logs carries the dedup unique constraint; never drop it, the
  dispatcher relies on INSERT failing for an existing key
- Consider partitioning reminder_logs by day once history grows
"""

from sqlalchemy import Column, Integer, String, DateTime, Date, JSON, Boolean, Numeric, UniqueConstraint
from sqlalchemy.orm import relationship
from core.db import Base, utcnow


class User(Base):
    """
    Represents a user who owns or shares subscriptions.
    """
    __tablename__ = "users"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=False, index=True)
    phone = Column(String(20), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # --- relationships ---
    # One User -> many owned Subscriptions
    subscriptions = relationship(
        "Subscription",
        primaryjoin="User.id == foreign(Subscription.user_id)",
        back_populates="owner",
        lazy="selectin",
        viewonly=True,
    )


class Subscription(Base):
    """
    Represents a paid (or trial) subscription that recipients are reminded about.

    Columns:
    - user_id: owner identifier
    - amount/billing_cycle: price and cadence (WEEKLY, MONTHLY, YEARLY)
    - renewal_date: next due date; only the billing advancer moves it
    - trial/auto_renewal: drive the eligibility table
    - shared_with: JSON list of user ids that also receive reminders
    - is_active: soft delete flag
    - renewal_notice_from: renewal date of an applied renewal whose notice has
      not reached every recipient yet (NULL once settled)
    """
    __tablename__ = "subscriptions"

    id = Column(String(100), primary_key=True)
    user_id = Column(String(100), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    billing_cycle = Column(String(20), nullable=False)
    renewal_date = Column(Date, nullable=False, index=True)
    trial = Column(Boolean, default=False)
    auto_renewal = Column(Boolean, default=False)
    shared_with = Column(JSON, nullable=True)
    is_active = Column(Boolean, default=True, index=True)
    renewal_notice_from = Column(Date, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # --- relationships ---
    owner = relationship(
        "User",
        primaryjoin="foreign(Subscription.user_id) == User.id",
        back_populates="subscriptions",
        lazy="joined",
        viewonly=True,
    )


class ReminderLog(Base):
    """
    One row per (subscription, recipient, alert kind, day).

    status: reserved (claimed by a run, send in flight) -> sent | failed.
    """
    __tablename__ = "reminder_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(String(100), index=True, nullable=False)
    recipient_id = Column(String(100), index=True, nullable=False)
    alert_kind = Column(String(32), nullable=False)
    day = Column(Date, nullable=False)
    status = Column(String(16), nullable=False, default="reserved")
    failure_reason = Column(String(500), nullable=True)
    reserved_at = Column(DateTime, default=utcnow)
    sent_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("subscription_id", "recipient_id", "alert_kind", "day", name="ux_reminder_dedup_key"),
    )


class DeliveryFailure(Base):
    """
    Terminal failure marker for permanent delivery errors (bad address etc.).
    Read by ops / alerting, never by the dispatcher.
    """
    __tablename__ = "delivery_failures"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(String(100), index=True, nullable=False)
    recipient_id = Column(String(100), index=True, nullable=False)
    alert_kind = Column(String(32), nullable=False)
    day = Column(Date, nullable=False)
    reason = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=utcnow)
