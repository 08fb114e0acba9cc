"""Trip model definition."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class Trip(Base):
    """
    A bookable trip with its pricing rules and seat inventory.

    All amounts are integer minor units (paise). ``seats_consumed`` counts
    seats held by pending bookings plus seats committed to confirmed ones and
    is only ever changed through the inventory service's conditional updates.
    """

    __tablename__ = "trips"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    organizer_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    destination: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    starts_on: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Pricing, in paise
    base_price: Mapped[int] = mapped_column(Integer, nullable=False)
    original_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    prebooking_amount: Mapped[int | None] = mapped_column(Integer, nullable=True)
    early_bird_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    early_bird_deadline: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    couple_discount_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    couple_discount_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)

    referral_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    referral_discount_percent: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    referral_min_purchases: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Inventory
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    seats_consumed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("capacity > 0", name="ck_trip_capacity_positive"),
        CheckConstraint("seats_consumed >= 0", name="ck_trip_seats_consumed_non_negative"),
        CheckConstraint("seats_consumed <= capacity", name="ck_trip_seats_consumed_within_capacity"),
        CheckConstraint("base_price >= 0", name="ck_trip_base_price_non_negative"),
        CheckConstraint("referral_min_purchases >= 0", name="ck_trip_referral_min_purchases"),
    )

    @property
    def remaining_seats(self) -> int:
        return self.capacity - self.seats_consumed

    def __repr__(self) -> str:
        return (
            f"<Trip(id={self.id}, title='{self.title}', capacity={self.capacity}, "
            f"seats_consumed={self.seats_consumed}, is_active={self.is_active})>"
        )
