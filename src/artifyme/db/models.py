"""SQLAlchemy ORM models — single source of truth for the database schema.

Learn: Declarative ORM mapping with SQLAlchemy 2.0 style (Mapped[] + mapped_column).
Each class = one table. Alembic auto-generates migrations by comparing these
models to the actual DB.

Key concepts:
- UUID primary keys (generic Uuid type — native uuid on PostgreSQL)
- JSON columns that become JSONB on PostgreSQL
- Soft delete via a nullable deleted_at timestamp
- Status columns are plain strings with a small known vocabulary
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_uuid() -> uuid.UUID:
    return uuid.uuid4()


# ══════════════════════════════════════════════════════════════
# Users
# ══════════════════════════════════════════════════════════════


class User(Base):
    """A customer, linked to a Keycloak account by keycloak_id.

    Learn: The row is created lazily on the first authenticated call,
    seeded with the signup bonus. Deleting an account only stamps
    deleted_at; the auth layer blocks soft-deleted users.
    """

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    keycloak_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    preferences: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=utcnow, onupdate=utcnow
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Relationships (load explicitly with selectinload — no lazy IO in async)
    subscription: Mapped[Optional["Subscription"]] = relationship(
        back_populates="user", uselist=False, lazy="raise"
    )
    transformations: Mapped[list["Transformation"]] = relationship(
        back_populates="user", lazy="raise"
    )


# ══════════════════════════════════════════════════════════════
# Transformations (jobs)
# ══════════════════════════════════════════════════════════════


class Transformation(Base):
    """One requested image transformation, tracked by its job id.

    Learn: status moves pending → completed | failed exactly once, driven
    by the n8n completion webhook. The id doubles as the job id used in
    the Redis relay key and the n8n callback payload.
    """

    __tablename__ = "transformations"
    __table_args__ = (
        Index("idx_transformations_user_created", "user_id", "created_at"),
        Index("idx_transformations_status", "status"),
        Index("idx_transformations_style", "style"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    style: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, completed, failed
    input_image_data: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    output_image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    user: Mapped["User"] = relationship(back_populates="transformations", lazy="raise")


# ══════════════════════════════════════════════════════════════
# Payments
# ══════════════════════════════════════════════════════════════


class Order(Base):
    """A payment record for a credit package or a subscription.

    Learn: amount is in minor units (cents/centavos). The provider
    reference (Stripe checkout session id or Asaas payment id) is filled
    in once the provider call succeeds. The webhook flips the status.
    """

    __tablename__ = "orders"
    __table_args__ = (
        Index("idx_orders_user_created", "user_id", "created_at"),
        Index("idx_orders_status", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # credits, subscription
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending"
    )  # pending, completed, failed
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_provider: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    meta: Mapped[dict] = mapped_column(
        "metadata", JsonType, nullable=False, default=dict
    )  # package_id, credits, plan, billing_cycle, subscription_id
    # Note: Python attr is "meta" because "metadata" is reserved by SQLAlchemy.
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=utcnow, onupdate=utcnow
    )

    user: Mapped["User"] = relationship(lazy="raise")


class Subscription(Base):
    """A user's plan subscription (at most one row per user).

    Learn: The row exists from the moment the user starts a checkout,
    in 'inactive' status. Provider webhooks activate, renew, and cancel it.
    """

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), unique=True, nullable=False
    )
    plan: Mapped[str] = mapped_column(String(20), nullable=False)  # basic, pro, premium
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)  # monthly, yearly
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="inactive"
    )  # active, inactive, cancelled
    payment_provider: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    provider_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    current_period_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=utcnow, onupdate=utcnow
    )

    user: Mapped["User"] = relationship(back_populates="subscription", lazy="raise")


# ══════════════════════════════════════════════════════════════
# Single-use account tokens
# ══════════════════════════════════════════════════════════════


class PasswordResetToken(Base):
    """Single-use, time-limited password reset token (bcrypt-hashed secret)."""

    __tablename__ = "password_reset_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    token_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=utcnow
    )


class AccountReactivationToken(Base):
    """Single-use, time-limited token that undoes a soft delete."""

    __tablename__ = "account_reactivation_tokens"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=new_uuid)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False, index=True
    )
    token_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=utcnow
    )


# ══════════════════════════════════════════════════════════════
# Webhook audit trail
# ══════════════════════════════════════════════════════════════


class WebhookDelivery(Base):
    """One inbound provider callback, as received.

    Learn: An audit trail only. Deliveries are not deduplicated — a
    provider retry is processed again and logged as a new row.
    """

    __tablename__ = "webhook_deliveries"
    __table_args__ = (
        Index("idx_webhook_deliveries_provider_created", "provider", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)  # stripe, asaas, n8n
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Optional[dict]] = mapped_column(JsonType, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="received"
    )  # received, processed, failed, ignored
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), default=utcnow
    )
