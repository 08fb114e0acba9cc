"""Payment and ReviewFlag model definitions."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class PaymentMethod(str, Enum):
    GATEWAY = "gateway"
    OFFLINE = "offline"


class PaymentOutcome(str, Enum):
    """What a received payment signal did to its booking."""
    APPLIED = "applied"
    DUPLICATE_BOOKING = "duplicate_booking"
    MISMATCHED = "mismatched"
    ORPHANED = "orphaned"


class ReviewReason(str, Enum):
    AMOUNT_MISMATCH = "amount_mismatch"
    PAYMENT_FOR_INACTIVE_BOOKING = "payment_for_inactive_booking"


class Payment(Base):
    """A payment signal received for a booking, keyed by the external transaction reference."""

    __tablename__ = "payments"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    transaction_ref: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    gateway_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    method: Mapped[str] = mapped_column(String(16), nullable=False, default=PaymentMethod.GATEWAY.value)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)

    received_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_payment_amount_non_negative"),
        CheckConstraint("length(transaction_ref) > 0", name="ck_payment_transaction_ref_not_empty"),
    )

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, booking_id={self.booking_id}, "
            f"transaction_ref='{self.transaction_ref}', amount={self.amount}, outcome={self.outcome})>"
        )


class ReviewFlag(Base):
    """A consistency problem on a booking that operations must look at."""

    __tablename__ = "review_flags"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    payment_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("payments.id", ondelete="SET NULL"),
        nullable=True
    )
    reason: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON string

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    resolved_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ReviewFlag(id={self.id}, booking_id={self.booking_id}, "
            f"reason={self.reason}, resolved_at={self.resolved_at})>"
        )
