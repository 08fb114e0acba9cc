#!/usr/bin/env python3
"""Setup script: migrate the database and seed a sample trip."""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import func, select

from tripmarket.core.clock import utcnow
from tripmarket.core.database import async_session_factory, close_db
from tripmarket.models import Trip
from tripmarket.schemas.trip import CreateTripRequest
from tripmarket.services.trip_service import TripService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DB_DIR = Path(__file__).resolve().parent.parent / "server" / "db"

SAMPLE_ORGANIZER = "organizer-demo"


def migrate_database() -> None:
    """Run Alembic migrations up to head."""
    alembic_cfg = Config(str(DB_DIR / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(DB_DIR / "alembic"))

    logger.info("Running database migrations...")
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed")


async def create_sample_data() -> None:
    """Create a sample trip unless trips already exist."""
    async with async_session_factory() as db:
        existing = await db.scalar(select(func.count()).select_from(Trip))
        if existing:
            logger.info("Sample data already exists, skipping...")
            return

        trip = await TripService(db).create_trip(
            CreateTripRequest(
                title="Spiti Valley Winter Expedition",
                destination="Spiti",
                description="Eight days across the frozen valley with local guides",
                starts_on=utcnow() + timedelta(days=60),
                base_price=800000,
                original_price=950000,
                prebooking_amount=200000,
                early_bird_price=720000,
                early_bird_deadline=utcnow() + timedelta(days=21),
                couple_discount_enabled=True,
                couple_discount_percent=Decimal("10"),
                referral_enabled=True,
                referral_discount_percent=Decimal("5"),
                referral_min_purchases=1,
                capacity=20,
            ),
            organizer_id=SAMPLE_ORGANIZER,
        )
        logger.info("Sample trip created", extra={"trip_id": str(trip.id)})

    await close_db()


def main() -> None:
    logger.info("Starting trip marketplace setup...")
    migrate_database()
    asyncio.run(create_sample_data())
    logger.info("Setup completed. Start the API with: uvicorn tripmarket.main:app --reload")


if __name__ == "__main__":
    main()
