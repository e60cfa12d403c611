from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Profile(Base):
    __tablename__ = "profiles"
    __table_args__ = (CheckConstraint("plan IN ('free', 'pro', 'team')", name="ck_profiles_plan"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    full_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    plan: Mapped[str] = mapped_column(String(16), nullable=False, default="free")
    billing_customer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class Upload(Base):
    __tablename__ = "uploads"
    __table_args__ = (Index("ix_uploads_account_id", "account_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("profiles.id"), nullable=False)
    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class UsageCounter(Base):
    __tablename__ = "usage_counters"
    __table_args__ = (
        UniqueConstraint("account_id", "period", name="uq_usage_counters_account_period"),
        CheckConstraint("consumed_count >= 0", name="ck_usage_counters_count"),
        CheckConstraint("consumed_bytes >= 0", name="ck_usage_counters_bytes"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("profiles.id"), nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    consumed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    consumed_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class AuthEvent(Base):
    __tablename__ = "auth_events"
    __table_args__ = (
        CheckConstraint(
            "event_type IN ('signup_success', 'signup_failure', 'login_success', 'login_failure', "
            "'email_verified', 'account_locked', 'ip_blocked', 'account_deleted')",
            name="ck_auth_events_event_type",
        ),
        Index("ix_auth_events_type_email_created", "event_type", "email", "created_at"),
        Index("ix_auth_events_type_account_created", "event_type", "account_id", "created_at"),
        Index("ix_auth_events_type_origin_created", "event_type", "origin_address", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    account_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    origin_address: Mapped[str] = mapped_column(String(64), nullable=False)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes.
    event_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class ExternalEventRecord(Base):
    __tablename__ = "external_events"

    external_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        CheckConstraint("plan_type IN ('pro', 'team')", name="ck_subscriptions_plan_type"),
        CheckConstraint(
            "status IN ('trialing', 'active', 'past_due', 'canceled', 'suspended', 'incomplete', 'unpaid')",
            name="ck_subscriptions_status",
        ),
        Index("ix_subscriptions_account_id", "account_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("profiles.id"), nullable=False)
    external_subscription_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    plan_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    current_period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


SUBSCRIPTION_EVENT_TYPES = (
    "created",
    "trial_started",
    "trial_converted",
    "trial_canceled",
    "upgraded",
    "downgraded",
    "canceled",
    "reactivated",
    "payment_succeeded",
    "payment_failed",
    "suspended",
    "resumed",
)


class SubscriptionEvent(Base):
    """Lifecycle history of a subscription, one row per applied change."""

    __tablename__ = "subscription_events"
    __table_args__ = (
        CheckConstraint(
            "event_type IN (" + ", ".join(f"'{name}'" for name in SUBSCRIPTION_EVENT_TYPES) + ")",
            name="ck_subscription_events_event_type",
        ),
        Index("ix_subscription_events_account_created", "account_id", "created_at"),
        Index("ix_subscription_events_subscription_created", "subscription_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_id: Mapped[int] = mapped_column(Integer, ForeignKey("subscriptions.id"), nullable=False)
    account_id: Mapped[str] = mapped_column(String(36), ForeignKey("profiles.id"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    previous_plan: Mapped[str | None] = mapped_column(String(16), nullable=True)
    new_plan: Mapped[str | None] = mapped_column(String(16), nullable=True)
    previous_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    event_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class CleanupTask(Base):
    __tablename__ = "cleanup_tasks"
    __table_args__ = (
        CheckConstraint("kind IN ('storage', 'identity')", name="ck_cleanup_tasks_kind"),
        CheckConstraint("status IN ('pending', 'done')", name="ck_cleanup_tasks_status"),
        Index("ix_cleanup_tasks_status_created", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    target: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
