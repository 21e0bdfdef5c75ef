"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class OrderRecord(Base):
    """
    ORM model for orders table.

    One row per checkout attempt, keyed by the merchant trade number.
    The status column only ever moves pending -> terminal.
    """

    __tablename__ = "orders"

    trade_number: Mapped[str] = mapped_column(String(64), primary_key=True)

    # Product snapshot at checkout time
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    product_name: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    gateway_trade_seq: Mapped[str | None] = mapped_column(String(100), nullable=True)
    period_trade_number: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Forwarding to the persistence collaborator
    sync_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_order_amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'expired')",
            name="ck_order_status",
        ),
        CheckConstraint(
            "sync_status IN ('pending', 'in_flight', 'synced', 'failed')",
            name="ck_order_sync_status",
        ),
        CheckConstraint("kind IN ('one_time', 'subscription')", name="ck_order_kind"),
        Index("idx_orders_status", "status"),
        Index("idx_orders_sync_status", "sync_status"),
        Index("idx_orders_created_at", "created_at"),
    )


class PeriodChargeRecord(Base):
    """
    ORM model for period_charges table.

    One row per recurring subscription charge (`<trade number>_<n>`). The
    composite primary key makes a repeated notification a no-op insert.
    """

    __tablename__ = "period_charges"

    trade_number: Mapped[str] = mapped_column(
        String(64), ForeignKey("orders.trade_number", ondelete="CASCADE"), primary_key=True
    )
    sequence: Mapped[int] = mapped_column(Integer, primary_key=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    gateway_trade_seq: Mapped[str | None] = mapped_column(String(100), nullable=True)
    period_trade_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    paid_at: Mapped[str | None] = mapped_column(String(32), nullable=True)

    sync_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("sequence >= 1", name="ck_period_charge_sequence_positive"),
        CheckConstraint(
            "status IN ('completed', 'failed', 'expired')",
            name="ck_period_charge_status",
        ),
        CheckConstraint(
            "sync_status IN ('pending', 'in_flight', 'synced', 'failed')",
            name="ck_period_charge_sync_status",
        ),
        Index("idx_period_charges_sync_status", "sync_status"),
    )
