"""Referral code and referral ledger model definitions."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from ..core.database import Base


class ReferralType(str, Enum):
    SIGNUP = "signup"
    PURCHASE = "purchase"


class ReferralStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class ReferralCode(Base):
    """A user's shareable referral code, stored upper case."""

    __tablename__ = "referral_codes"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<ReferralCode(user_id='{self.user_id}', code='{self.code}', is_active={self.is_active})>"


class Referral(Base):
    """
    One referral ledger entry.

    Signup referrals are unique per referred user and purchase referrals per
    booking, both through dedupe_key. Completed rows are never updated.
    """

    __tablename__ = "referrals"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    referrer_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    referred_user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    referral_type: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ReferralStatus.PENDING.value)

    trip_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("trips.id", ondelete="SET NULL"), nullable=True
    )
    booking_id: Mapped[UUID | None] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True
    )
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # "signup:<referred user>" or "purchase:<booking id>"
    dedupe_key: Mapped[str] = mapped_column(String(96), nullable=False)

    converted_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_referral_dedupe_key"),
    )

    def __repr__(self) -> str:
        return (
            f"<Referral(referrer_id='{self.referrer_id}', referred_user_id='{self.referred_user_id}', "
            f"type={self.referral_type}, status={self.status})>"
        )
