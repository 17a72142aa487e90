"""SQLAlchemy database models for hotspot payment reconciliation."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_COMPLETED, PAYMENT_FAILED)

DIRECT_PAYMENT_PLAN_NAME = "Direct Payment"
CALLBACK_PLAN_NAME = "From Callback"

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only auto-increments INTEGER PRIMARY KEY columns
BigIntegerPK = BigInteger().with_variant(Integer(), "sqlite")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Payment(Base):
    """
    Payment records table.

    One row per STK push. Created in ``pending`` state once the provider has
    accepted the push, and moved to ``completed``/``failed`` exactly once by
    the callback reconciler.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    plan_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    plan_name: Mapped[str] = mapped_column(
        String(255), nullable=False, default=DIRECT_PAYMENT_PLAN_NAME
    )
    payment_type: Mapped[str] = mapped_column(String(32), nullable=False, default="direct")
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, index=True)
    account_reference: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PAYMENT_PENDING, index=True
    )

    # Provider correlation identifiers
    merchant_request_id: Mapped[Optional[str]] = mapped_column(
        String(128), unique=True, nullable=True
    )
    checkout_request_id: Mapped[Optional[str]] = mapped_column(
        String(128), unique=True, nullable=True
    )

    # Provider result, populated on reconciliation
    mpesa_receipt_number: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, index=True
    )
    result_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result_desc: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    callback_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    callback_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    # Audit
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="valid_status",
        ),
        Index("idx_payments_status_created", "status", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(id={self.id}, checkout_request_id={self.checkout_request_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class GuestUser(Base):
    """
    Guest users table.

    Stand-in identity for anonymous hotspot customers, created lazily when a
    payment is initiated without an authenticated user. Never updated.
    """

    __tablename__ = "guest_users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    phone: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    username: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default="guest")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        return f"<GuestUser(id={self.id}, username={self.username})>"


class CallbackLog(Base):
    """
    Provider delivery log table.

    Append-only record of every inbound provider delivery (STK callbacks,
    status query results, C2B confirmations) with the reconciliation outcome.
    """

    __tablename__ = "callback_logs"

    id: Mapped[int] = mapped_column(BigIntegerPK, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    merchant_request_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    checkout_request_id: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True, index=True
    )
    result_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        return (
            f"<CallbackLog(id={self.id}, source={self.source}, "
            f"checkout_request_id={self.checkout_request_id}, outcome={self.outcome})>"
        )
