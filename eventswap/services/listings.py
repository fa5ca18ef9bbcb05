"""
EventSwap Platform - Listings
Sellers publish transferable reservations. A listing starts as DRAFT and
only becomes sellable (ACTIVE) after passing risk screening.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventswap.adapters.fraud import (
    AccountFacts,
    FraudSignalAdapter,
    ListingFacts,
    PermissiveFraudSignals,
    Recommendation,
)
from eventswap.config import Settings, get_settings
from eventswap.exceptions import (
    FraudBlocked,
    InvalidAmount,
    InvalidListingState,
    NotAuthorized,
    NotFoundError,
)
from eventswap.models import Listing, ListingStatus, User, utcnow
from eventswap.services.fees import round2

logger = logging.getLogger("eventswap.listings")

ACTIVATABLE = (ListingStatus.DRAFT, ListingStatus.PENDING_REVIEW)


class ListingService:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        fraud: Optional[FraudSignalAdapter] = None,
        settings: Optional[Settings] = None,
        now=utcnow,
    ):
        self._sessions = sessions
        self.fraud = fraud or PermissiveFraudSignals()
        self.settings = settings or get_settings()
        self._now = now

    async def create_listing(
        self,
        seller_id: uuid.UUID,
        title: str,
        asking_price: Decimal,
        category: Optional[str] = None,
        event_date: Optional[datetime] = None,
        venue_name: Optional[str] = None,
        original_price: Optional[Decimal] = None,
        seller_fee_percent: Optional[Decimal] = None,
    ) -> Listing:
        price = round2(asking_price)
        low, high = self.settings.LISTING_MIN_PRICE, self.settings.LISTING_MAX_PRICE
        if not low <= price <= high:
            raise InvalidAmount(
                f"Asking price must be between {low} and {high}.",
                {"asking_price": str(price), "minimum": str(low), "maximum": str(high)},
            )

        async with self._sessions() as session:
            async with session.begin():
                listing = Listing(
                    seller_id=seller_id,
                    title=title.strip(),
                    category=category,
                    event_date=event_date,
                    venue_name=venue_name,
                    asking_price=price,
                    original_price=round2(original_price) if original_price is not None else None,
                    seller_fee_percent=seller_fee_percent,
                    status=ListingStatus.DRAFT,
                )
                session.add(listing)
                await session.flush()

        logger.info("📝 Listing %s created by %s at %s", listing.id, seller_id, price)
        return listing

    async def activate_listing(self, listing_id: uuid.UUID, actor_id: uuid.UUID) -> Listing:
        """
        Publish a listing after risk screening:
          block  → SUSPENDED and FraudBlocked
          review → PENDING_REVIEW
          allow  → ACTIVE
        """
        blocked_score = None
        async with self._sessions() as session:
            async with session.begin():
                listing = await session.scalar(
                    select(Listing).where(Listing.id == listing_id).with_for_update()
                )
                if listing is None:
                    raise NotFoundError("Listing", listing_id)
                if listing.seller_id != actor_id:
                    raise NotAuthorized("Only the seller can publish this listing.")
                if listing.status not in ACTIVATABLE:
                    raise InvalidListingState(listing.id, listing.status.value, "activate")

                seller = await session.get(User, listing.seller_id)
                now = self._now()
                assessment = self.fraud.score(
                    AccountFacts(
                        user_id=seller.id,
                        account_age_days=max(0, (now - (seller.created_at or now)).days),
                        is_verified=bool(seller.is_verified),
                        has_payer_identity=seller.has_payer_identity,
                    ),
                    ListingFacts(
                        listing_id=listing.id,
                        asking_price=Decimal(listing.asking_price),
                        original_price=listing.original_price,
                    ),
                )

                if assessment.recommendation == Recommendation.BLOCK:
                    listing.status = ListingStatus.SUSPENDED
                    blocked_score = assessment.score
                elif assessment.recommendation == Recommendation.REVIEW:
                    listing.status = ListingStatus.PENDING_REVIEW
                else:
                    listing.status = ListingStatus.ACTIVE

        if blocked_score is not None:
            logger.warning("🚫 Listing %s suspended by risk screening (score=%d)", listing.id, blocked_score)
            raise FraudBlocked("Listing", blocked_score)

        logger.info("📢 Listing %s is now %s", listing.id, listing.status.value)
        return listing

    async def get_listing(self, listing_id: uuid.UUID) -> Listing:
        async with self._sessions() as session:
            listing = await session.get(Listing, listing_id)
        if listing is None:
            raise NotFoundError("Listing", listing_id)
        return listing
