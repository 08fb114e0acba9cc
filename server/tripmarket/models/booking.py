"""Booking and SeatHold model definitions."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class HoldStatus(str, Enum):
    """Seat hold status enumeration."""
    ACTIVE = "active"
    COMMITTED = "committed"
    RELEASED = "released"


class BookingStatus(str, Enum):
    """Booking lifecycle states."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (BookingStatus.CANCELLED, BookingStatus.EXPIRED)


class PaymentStatus(str, Enum):
    """Payment progress of a booking."""
    UNPAID = "unpaid"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMPLETED = "completed"
    FAILED = "failed"


class ChargeMode(str, Enum):
    """Whether the booking charges the full total or only the prebooking deposit."""
    FULL = "full"
    DEPOSIT = "deposit"


class SeatHold(Base):
    """Seats taken from a trip's counter on behalf of one booking."""

    __tablename__ = "seat_holds"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    trip_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("trips.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    seats: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=HoldStatus.ACTIVE.value,
        index=True
    )
    release_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("seats > 0", name="ck_seat_hold_seats_positive"),
    )

    def __repr__(self) -> str:
        return (
            f"<SeatHold(id={self.id}, trip_id={self.trip_id}, "
            f"seats={self.seats}, status={self.status})>"
        )


class Booking(Base):
    """A traveler's booking of seats on a trip. Rows are never deleted."""

    __tablename__ = "bookings"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)

    trip_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("trips.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    hold_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("seat_holds.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True
    )

    # Pricing snapshot, in paise
    seats: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    full_price_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    charge_mode: Mapped[str] = mapped_column(String(16), nullable=False, default=ChargeMode.FULL.value)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    price_breakdown: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON string

    booking_status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=BookingStatus.PENDING.value,
        index=True
    )
    payment_status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=PaymentStatus.UNPAID.value
    )
    hold_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    # Participant contact
    participant_name: Mapped[str] = mapped_column(String(255), nullable=False)
    participant_email: Mapped[str] = mapped_column(String(255), nullable=False)
    participant_phone: Mapped[str] = mapped_column(String(32), nullable=False)
    special_requirements: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Referral attribution
    referrer_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    referral_discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    gateway_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_due: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("seats > 0", name="ck_booking_seats_positive"),
        CheckConstraint("total_amount >= 0", name="ck_booking_total_non_negative"),
        CheckConstraint("total_amount <= full_price_amount", name="ck_booking_total_within_full_price"),
        CheckConstraint("length(code) > 0", name="ck_booking_code_not_empty"),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, code='{self.code}', trip_id={self.trip_id}, "
            f"seats={self.seats}, booking_status={self.booking_status}, "
            f"payment_status={self.payment_status})>"
        )
