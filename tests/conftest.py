"""
Shared fixtures: a scratch SQLite database per test, recording adapters,
a controllable clock, and factories for users and listings.
"""
import os
import tempfile

from cryptography.fernet import Fernet

# Settings are cached on first import, so the environment goes first.
os.environ.setdefault("FERNET_KEY", Fernet.generate_key().decode())
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite+aiosqlite:///" + os.path.join(tempfile.gettempdir(), "eventswap_default.db"),
)
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("WEBHOOK_TOKEN", "test-webhook-token")

import uuid  # noqa: E402
from datetime import datetime, timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Any, Dict, List, Optional, Tuple  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from eventswap.adapters.fraud import (  # noqa: E402
    FraudAssessment,
    FraudSignalAdapter,
    RiskLevel,
    Recommendation,
)
from eventswap.adapters.notification import NotificationAdapter, drain_notifications  # noqa: E402
from eventswap.adapters.payment import MockPaymentProcessor  # noqa: E402
from eventswap.config import get_settings  # noqa: E402
from eventswap.database import Base, build_engine, build_session_factory  # noqa: E402
from eventswap.encryption import encrypt_pii  # noqa: E402
from eventswap.models import Listing, ListingStatus, User, UserRole  # noqa: E402
from eventswap.services.disputes import DisputeService  # noqa: E402
from eventswap.services.escrow import EscrowService  # noqa: E402
from eventswap.services.listings import ListingService  # noqa: E402
from eventswap.services.messaging import MessagingService  # noqa: E402
from eventswap.services.offers import OfferService  # noqa: E402

BUYER_TAX_ID = "52998224725"


# ── Test doubles ──


class RecordingNotifier(NotificationAdapter):
    def __init__(self):
        self.sent: List[Tuple[uuid.UUID, str, Dict[str, Any]]] = []

    async def notify(self, user_id, category, payload):
        self.sent.append((user_id, category, payload))

    def categories(self) -> List[str]:
        return [category for _, category, _ in self.sent]


class FixedFraudSignals(FraudSignalAdapter):
    def __init__(self, recommendation: Recommendation = Recommendation.ALLOW, score: int = 0):
        self.recommendation = recommendation
        self.score_value = score
        self.calls = []

    def score(self, account, listing):
        self.calls.append((account, listing))
        return FraudAssessment(score=self.score_value, level=RiskLevel.LOW, recommendation=self.recommendation)


class Clock:
    """Injectable ``now``; starts on Monday 2026-03-02 10:00 UTC."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 10, 0)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current += timedelta(**delta)
        return self.current


# ── Infrastructure ──


@pytest.fixture
def settings():
    return get_settings()


@pytest_asyncio.fixture
async def sessions(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'eventswap.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await drain_notifications()
    await engine.dispose()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def payments():
    return MockPaymentProcessor()


@pytest.fixture
def fraud():
    return FixedFraudSignals()


@pytest_asyncio.fixture
async def escrow(sessions, payments, notifier, fraud, settings, clock):
    service = EscrowService(sessions, payments, notifier=notifier, fraud=fraud, settings=settings, now=clock)
    yield service
    await service.drain()


@pytest.fixture
def offers(sessions, escrow, notifier, settings, clock):
    return OfferService(sessions, escrow, notifier=notifier, settings=settings, now=clock)


@pytest.fixture
def disputes(sessions, escrow, notifier, settings, clock):
    return DisputeService(sessions, escrow, notifier=notifier, settings=settings, now=clock)


@pytest.fixture
def listings(sessions, fraud, settings, clock):
    return ListingService(sessions, fraud=fraud, settings=settings, now=clock)


@pytest.fixture
def chat(sessions, settings):
    return MessagingService(sessions, settings=settings)


# ── Factories ──


@pytest.fixture
def make_user(sessions):
    async def factory(
        name: str = "User",
        tax_id: Optional[str] = None,
        role: UserRole = UserRole.MEMBER,
        password_hash: Optional[str] = None,
    ) -> User:
        user = User(
            full_name=name,
            email=f"{name.lower().replace(' ', '.')}.{uuid.uuid4().hex[:6]}@example.com",
            tax_id_encrypted=encrypt_pii(tax_id) if tax_id else None,
            role=role,
            is_verified=True,
            balance=Decimal("0.00"),
            password_hash=password_hash,
        )
        async with sessions() as session:
            async with session.begin():
                session.add(user)
        return user

    return factory


@pytest.fixture
def make_listing(sessions):
    async def factory(
        seller: User,
        price: str = "1000.00",
        status: ListingStatus = ListingStatus.ACTIVE,
        seller_fee_percent: Optional[str] = None,
    ) -> Listing:
        listing = Listing(
            seller_id=seller.id,
            title="Wedding venue, 120 guests",
            category="venue",
            asking_price=Decimal(price),
            original_price=Decimal(price) + Decimal("500"),
            seller_fee_percent=Decimal(seller_fee_percent) if seller_fee_percent else None,
            status=status,
        )
        async with sessions() as session:
            async with session.begin():
                session.add(listing)
        return listing

    return factory


@pytest_asyncio.fixture
async def seller(make_user):
    return await make_user("Seller")


@pytest_asyncio.fixture
async def buyer(make_user):
    return await make_user("Buyer", tax_id=BUYER_TAX_ID)


@pytest_asyncio.fixture
async def mediator(make_user):
    return await make_user("Mediator", role=UserRole.MEDIATOR)


@pytest_asyncio.fixture
async def listing(make_listing, seller):
    return await make_listing(seller)


async def fetch(sessions, model, entity_id):
    async with sessions() as session:
        return await session.get(model, entity_id)


async def held_transaction(escrow: EscrowService, listing: Listing, buyer: User):
    """Create, charge and settle a transaction so it sits in ESCROW_HELD."""
    txn = await escrow.create_transaction(listing.id, buyer.id)
    result = await escrow.request_payment(txn.id, buyer.id)
    assert result.error is None
    await escrow.on_payment_settled(result.payment.external_id)
    return txn, result.payment
