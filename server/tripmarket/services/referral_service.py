"""Referral ledger: attribution at signup and purchase, plus incentive reporting."""

import logging
import secrets
import string
from typing import Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import utcnow
from ..core.observability import MetricsCollector, get_logger
from ..models.referral import Referral, ReferralCode, ReferralStatus, ReferralType
from ..models.trip import Trip
from ..schemas.pricing import ReferralContext

logger = logging.getLogger(__name__)
audit = get_logger("tripmarket.referrals")

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8


class PurchaseAttribution(BaseModel):
    """Outcome of attributing a purchase, with the referrer's incentive standing."""

    recorded: bool
    referrer_id: str
    completed_purchases: int
    min_purchases: int
    eligible: bool


class ReferralService:
    """Service for referral codes and the referral ledger."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def normalize_code(code: str) -> str:
        return code.strip().upper()

    async def get_code_for_user(self, user_id: str) -> Optional[ReferralCode]:
        result = await self.db.execute(select(ReferralCode).where(ReferralCode.user_id == user_id))
        return result.scalar_one_or_none()

    async def get_or_create_code(self, user_id: str) -> ReferralCode:
        """Return the user's referral code, generating one on first use."""
        existing = await self.get_code_for_user(user_id)
        if existing:
            return existing

        for _ in range(5):
            candidate = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
            record = ReferralCode(user_id=user_id, code=candidate, is_active=True)
            self.db.add(record)
            try:
                await self.db.commit()
            except IntegrityError:
                # Code collision, or a concurrent request created this user's code
                await self.db.rollback()
                existing = await self.get_code_for_user(user_id)
                if existing:
                    return existing
                continue

            logger.info("Referral code created", extra={"user_id": user_id, "code": candidate})
            return record

        raise RuntimeError("Could not allocate a unique referral code")

    async def resolve_active_code(self, code: str) -> Optional[ReferralCode]:
        result = await self.db.execute(
            select(ReferralCode).where(
                ReferralCode.code == self.normalize_code(code),
                ReferralCode.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def attribute_signup(self, code: Optional[str], new_user_id: str) -> Optional[Referral]:
        """
        Record a completed signup referral for ``new_user_id``.

        Never raises for bad input: an unknown or inactive code, a self
        referral, or a user who was already referred records nothing and
        returns None so that signup is never blocked.
        """
        if not code or not code.strip():
            return None

        referral_code = await self.resolve_active_code(code)
        if referral_code is None:
            logger.info(
                "Signup referral ignored - code invalid or inactive",
                extra={"code": self.normalize_code(code), "new_user_id": new_user_id}
            )
            return None

        if referral_code.user_id == new_user_id:
            logger.info("Signup referral ignored - self referral", extra={"new_user_id": new_user_id})
            return None

        if await self.find_referrer(new_user_id) is not None:
            logger.info("Signup referral ignored - user already referred", extra={"new_user_id": new_user_id})
            return None

        referral = Referral(
            referrer_id=referral_code.user_id,
            referred_user_id=new_user_id,
            referral_type=ReferralType.SIGNUP.value,
            status=ReferralStatus.COMPLETED.value,
            dedupe_key=f"signup:{new_user_id}",
            converted_at=utcnow(),
        )
        self.db.add(referral)
        try:
            await self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent signup attribution for the same user
            await self.db.rollback()
            logger.info("Signup referral ignored - user already referred", extra={"new_user_id": new_user_id})
            return None

        MetricsCollector.record_referral(ReferralType.SIGNUP.value)
        audit.info(
            "referral_signup_recorded",
            referrer_id=referral.referrer_id,
            referred_user_id=new_user_id,
        )
        return referral

    async def find_referrer(self, user_id: str) -> Optional[str]:
        """The user who referred ``user_id`` at signup, if any."""
        result = await self.db.execute(
            select(Referral.referrer_id).where(
                Referral.referred_user_id == user_id,
                Referral.referral_type == ReferralType.SIGNUP.value,
                Referral.status == ReferralStatus.COMPLETED.value,
            )
        )
        return result.scalar_one_or_none()

    async def count_completed_purchases(self, referrer_id: str) -> int:
        total = await self.db.scalar(
            select(func.count()).select_from(Referral).where(
                Referral.referrer_id == referrer_id,
                Referral.referral_type == ReferralType.PURCHASE.value,
                Referral.status == ReferralStatus.COMPLETED.value,
            )
        )
        return total or 0

    async def referral_context(self, user_id: str, trip: Trip) -> ReferralContext:
        """Pricing input describing whether ``user_id`` was referred and whether the referrer qualifies."""
        referrer_id = await self.find_referrer(user_id)
        if referrer_id is None:
            return ReferralContext()

        completed = await self.count_completed_purchases(referrer_id)
        return ReferralContext(
            is_referred=True,
            referrer_id=referrer_id,
            referrer_completed_purchases=completed,
            threshold_met=completed >= (trip.referral_min_purchases or 0),
        )

    async def attribute_purchase(
        self,
        referrer_id: str,
        referred_user_id: str,
        booking_id: UUID,
        trip_id: Optional[UUID] = None,
        discount_amount: int = 0,
        min_purchases: int = 0,
    ) -> PurchaseAttribution:
        """
        Record a completed purchase referral for a confirmed booking.

        Idempotent per booking. Does not commit; runs inside the caller's
        confirmation transaction, whose compare-and-swap admits one caller per
        booking. Eligibility is reported, never acted on.
        """
        dedupe_key = f"purchase:{booking_id}"
        existing = await self.db.scalar(select(Referral.id).where(Referral.dedupe_key == dedupe_key))
        recorded = existing is None

        if recorded:
            self.db.add(Referral(
                referrer_id=referrer_id,
                referred_user_id=referred_user_id,
                referral_type=ReferralType.PURCHASE.value,
                status=ReferralStatus.COMPLETED.value,
                trip_id=trip_id,
                booking_id=booking_id,
                discount_amount=discount_amount,
                dedupe_key=dedupe_key,
                converted_at=utcnow(),
            ))
            await self.db.flush()

        completed = await self.count_completed_purchases(referrer_id)
        eligible = completed >= min_purchases

        if recorded:
            MetricsCollector.record_referral(ReferralType.PURCHASE.value)
            audit.info(
                "referral_purchase_recorded",
                referrer_id=referrer_id,
                referred_user_id=referred_user_id,
                booking_id=str(booking_id),
                completed_purchases=completed,
                eligible=eligible,
            )

        return PurchaseAttribution(
            recorded=recorded,
            referrer_id=referrer_id,
            completed_purchases=completed,
            min_purchases=min_purchases,
            eligible=eligible,
        )

    async def list_referrals(self, referrer_id: str) -> list[Referral]:
        result = await self.db.execute(
            select(Referral)
            .where(Referral.referrer_id == referrer_id)
            .order_by(Referral.created_at.desc())
        )
        return list(result.scalars())

    async def stats(self, referrer_id: str) -> dict[str, int]:
        """
        Signups, purchases and pending count for a referrer.

        ``referred_discount_total`` is what the referred travelers saved, not a
        payout to the referrer; no referrer reward is modelled.
        """
        referrals = await self.list_referrals(referrer_id)
        completed = [r for r in referrals if r.status == ReferralStatus.COMPLETED.value]
        return {
            "total_signups": sum(1 for r in completed if r.referral_type == ReferralType.SIGNUP.value),
            "total_purchases": sum(1 for r in completed if r.referral_type == ReferralType.PURCHASE.value),
            "referred_discount_total": sum(r.discount_amount or 0 for r in completed),
            "pending_referrals": sum(1 for r in referrals if r.status == ReferralStatus.PENDING.value),
        }
