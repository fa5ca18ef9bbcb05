"""
EventSwap Platform - Seed Script
Creates demo accounts and one published listing for local development.
Called on startup when SEED_DEMO_DATA is set and the users table is empty.
"""
import logging
import uuid
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from eventswap.auth import hash_password
from eventswap.encryption import encrypt_pii, normalize_tax_id
from eventswap.models import Listing, ListingStatus, User, UserRole, utcnow

logger = logging.getLogger("eventswap.seed")

DEMO_PASSWORD = "password123"

SELLER_ID = uuid.UUID("e5e5e5e5-0001-4000-8000-000000000001")
BUYER_ID = uuid.UUID("e5e5e5e5-0002-4000-8000-000000000002")
MEDIATOR_ID = uuid.UUID("e5e5e5e5-0003-4000-8000-000000000003")
LISTING_ID = uuid.UUID("e5e5e5e5-1001-4000-8000-000000000001")


async def seed_database(session: AsyncSession) -> bool:
    """Insert seed data if the users table is empty. Returns True when seeded."""
    existing = await session.scalar(select(User.id).limit(1))
    if existing is not None:
        logger.info("⏭  Database already seeded, skipping.")
        return False

    logger.info("🌱 Seeding database with demo data…")
    password_hash = hash_password(DEMO_PASSWORD)

    seller = User(
        id=SELLER_ID,
        full_name="Marina Couto",
        email="seller@eventswap.dev",
        password_hash=password_hash,
        role=UserRole.MEMBER,
        is_verified=True,
        balance=Decimal("0.00"),
    )
    buyer = User(
        id=BUYER_ID,
        full_name="Rafael Lima",
        email="buyer@eventswap.dev",
        password_hash=password_hash,
        tax_id_encrypted=encrypt_pii(normalize_tax_id("529.982.247-25")),
        role=UserRole.MEMBER,
        is_verified=True,
        balance=Decimal("0.00"),
    )
    mediator = User(
        id=MEDIATOR_ID,
        full_name="EventSwap Mediation",
        email="mediator@eventswap.dev",
        password_hash=password_hash,
        role=UserRole.MEDIATOR,
        is_verified=True,
        balance=Decimal("0.00"),
    )
    session.add_all([seller, buyer, mediator])
    await session.flush()

    session.add(Listing(
        id=LISTING_ID,
        seller_id=seller.id,
        title="Buffet for 80 guests, Saturday evening",
        category="buffet",
        event_date=utcnow() + timedelta(days=90),
        venue_name="Espaço Jardim das Flores",
        asking_price=Decimal("4500.00"),
        original_price=Decimal("6200.00"),
        status=ListingStatus.ACTIVE,
    ))
    await session.commit()

    logger.info("✅ Seed complete: 3 users, 1 listing (password: %s)", DEMO_PASSWORD)
    return True
