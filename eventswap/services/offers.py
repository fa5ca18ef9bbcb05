"""
EventSwap Platform - Offer Negotiation Engine
A buyer proposes a price, the seller accepts, rejects or counters.
Acceptance hands off to the escrow engine inside the same unit of work, so
an offer is never ACCEPTED without its INITIATED transaction (and vice versa).
"""
import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventswap.adapters.notification import (
    LoggingNotificationAdapter,
    NotificationAdapter,
    dispatch_notification,
)
from eventswap.config import Settings, get_settings
from eventswap.database import lost_race_as
from eventswap.exceptions import (
    ConcurrentModification,
    DuplicatePendingOffer,
    InvalidAmount,
    ListingUnavailable,
    NotAuthorized,
    NotFoundError,
    NotPending,
    OfferExpired,
    SelfPurchase,
)
from eventswap.models import (
    Listing,
    ListingStatus,
    Offer,
    OfferStatus,
    Transaction,
    User,
    utcnow,
)
from eventswap.services.escrow import EscrowService
from eventswap.services.fees import round2

logger = logging.getLogger("eventswap.offers")


class OfferAction(str, enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    COUNTER = "counter"


@dataclass
class RespondResult:
    offer: Offer
    transaction: Optional[Transaction] = None


def _clean(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    text = text.strip()
    return text or None


class OfferService:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        escrow: EscrowService,
        notifier: Optional[NotificationAdapter] = None,
        settings: Optional[Settings] = None,
        now=utcnow,
    ):
        self._sessions = sessions
        self.escrow = escrow
        self.notifier = notifier or LoggingNotificationAdapter()
        self.settings = settings or get_settings()
        self._now = now

    def _notify(self, user_id: uuid.UUID, category: str, offer: Offer, **extra) -> None:
        payload = {"offer_id": str(offer.id), "listing_id": str(offer.listing_id), "status": offer.status.value}
        payload.update(extra)
        dispatch_notification(self.notifier, user_id, category, payload)

    @staticmethod
    async def _lock_offer(session: AsyncSession, offer_id: uuid.UUID) -> Offer:
        offer = await session.scalar(
            select(Offer).where(Offer.id == offer_id).with_for_update()
        )
        if offer is None:
            raise NotFoundError("Offer", offer_id)
        return offer

    # ═══════════════════════════════════════════════════════
    #  create_offer()
    # ═══════════════════════════════════════════════════════

    async def create_offer(
        self,
        listing_id: uuid.UUID,
        buyer_id: uuid.UUID,
        amount: Decimal,
        message: Optional[str] = None,
    ) -> Offer:
        amount = round2(amount)
        if amount <= 0:
            raise InvalidAmount("Offer amount must be greater than zero.", {"amount": str(amount)})

        try:
            async with self._sessions() as session:
                async with session.begin():
                    listing = await session.scalar(
                        select(Listing).where(Listing.id == listing_id).with_for_update()
                    )
                    if listing is None:
                        raise NotFoundError("Listing", listing_id)
                    if listing.status != ListingStatus.ACTIVE:
                        raise ListingUnavailable(listing.id, listing.status.value)
                    if listing.seller_id == buyer_id:
                        raise SelfPurchase()

                    ceiling = round2(Decimal(listing.asking_price) * self.settings.OFFER_MAX_ASKING_RATIO)
                    if amount > ceiling:
                        raise InvalidAmount(
                            "Offer cannot exceed the allowed share of the asking price.",
                            {"amount": str(amount), "maximum": str(ceiling)},
                        )

                    now = self._now()
                    existing = await session.scalar(
                        select(Offer).where(
                            Offer.listing_id == listing.id,
                            Offer.buyer_id == buyer_id,
                            Offer.status == OfferStatus.PENDING,
                        ).with_for_update()
                    )
                    if existing is not None:
                        if existing.expires_at > now:
                            raise DuplicatePendingOffer(existing.id)
                        existing.status = OfferStatus.EXPIRED
                        await session.flush()

                    offer = Offer(
                        listing_id=listing.id,
                        buyer_id=buyer_id,
                        seller_id=listing.seller_id,
                        amount=amount,
                        message=_clean(message),
                        status=OfferStatus.PENDING,
                        expires_at=now + timedelta(hours=self.settings.OFFER_TTL_HOURS),
                    )
                    session.add(offer)
                    await session.flush()
        except IntegrityError:
            async with self._sessions() as session:
                existing_id = await session.scalar(
                    select(Offer.id).where(
                        Offer.listing_id == listing_id,
                        Offer.buyer_id == buyer_id,
                        Offer.status == OfferStatus.PENDING,
                    )
                )
            if existing_id is not None:
                raise DuplicatePendingOffer(existing_id) from None
            raise ConcurrentModification("Offer") from None

        logger.info("📨 Offer %s of %s on listing %s by %s", offer.id, amount, listing_id, buyer_id)
        self._notify(offer.seller_id, "offer_received", offer, amount=str(amount))
        return offer

    # ═══════════════════════════════════════════════════════
    #  respond()
    # ═══════════════════════════════════════════════════════

    @lost_race_as(lambda offer_id: NotPending(offer_id, "already answered"))
    async def respond(
        self,
        offer_id: uuid.UUID,
        action: OfferAction,
        actor_id: uuid.UUID,
        counter_amount: Optional[Decimal] = None,
        counter_message: Optional[str] = None,
    ) -> RespondResult:
        """
        Seller's answer to a PENDING offer.

        Guards, in order: seller only, still PENDING, not past expiry
        (an overdue offer is expired on the spot and OfferExpired raised).
        """
        action = OfferAction(action)
        expired = False
        txn = None
        try:
            async with self._sessions() as session:
                async with session.begin():
                    offer = await self._lock_offer(session, offer_id)
                    if offer.seller_id != actor_id:
                        raise NotAuthorized("Only the seller can respond to this offer.")
                    if offer.status != OfferStatus.PENDING:
                        raise NotPending(offer.id, offer.status.value)

                    now = self._now()
                    if offer.expires_at <= now:
                        offer.status = OfferStatus.EXPIRED
                        await session.flush()
                        expired = True

                    elif action == OfferAction.ACCEPT:
                        offer.status = OfferStatus.ACCEPTED
                        offer.responded_at = now
                        await session.flush()
                        txn = await self.escrow.create_in_session(
                            session,
                            offer.listing_id,
                            offer.buyer_id,
                            agreed_price=Decimal(offer.amount),
                            offer_id=offer.id,
                        )

                    elif action == OfferAction.REJECT:
                        offer.status = OfferStatus.REJECTED
                        offer.responded_at = now
                        await session.flush()

                    else:
                        if counter_amount is None or round2(counter_amount) <= 0:
                            raise InvalidAmount(
                                "Counter amount must be greater than zero.",
                                {"counter_amount": str(counter_amount)},
                            )
                        offer.status = OfferStatus.COUNTERED
                        offer.counter_amount = round2(counter_amount)
                        offer.counter_message = _clean(counter_message)
                        offer.responded_at = now
                        await session.flush()
        except IntegrityError:
            raise ConcurrentModification("Offer") from None

        if expired:
            logger.info("⌛ Offer %s expired before the seller answered", offer.id)
            raise OfferExpired(offer.id)

        if action == OfferAction.ACCEPT:
            logger.info("🤝 Offer %s accepted, transaction %s created", offer.id, txn.code)
            await self._expire_siblings(offer)
            self._notify(offer.buyer_id, "offer_accepted", offer, transaction_id=str(txn.id))
            self.escrow.notify_parties([txn.buyer_id, txn.seller_id], "transaction_created", txn)
        elif action == OfferAction.REJECT:
            logger.info("Offer %s rejected", offer.id)
            self._notify(offer.buyer_id, "offer_rejected", offer)
        else:
            logger.info("↩️  Offer %s countered with %s", offer.id, offer.counter_amount)
            self._notify(
                offer.buyer_id, "offer_countered", offer,
                counter_amount=str(offer.counter_amount),
            )
        return RespondResult(offer=offer, transaction=txn)

    async def _expire_siblings(self, accepted: Offer) -> None:
        """Best effort: a failure here never undoes the acceptance."""
        try:
            async with self._sessions() as session:
                async with session.begin():
                    result = await session.execute(
                        update(Offer)
                        .where(
                            Offer.listing_id == accepted.listing_id,
                            Offer.status == OfferStatus.PENDING,
                            Offer.id != accepted.id,
                        )
                        .values(status=OfferStatus.EXPIRED, version=Offer.version + 1)
                        .execution_options(synchronize_session=False)
                    )
            if result.rowcount:
                logger.info("Expired %d sibling offer(s) on listing %s", result.rowcount, accepted.listing_id)
        except Exception as exc:
            logger.error("Failed to expire sibling offers on listing %s: %s", accepted.listing_id, exc)

    # ═══════════════════════════════════════════════════════
    #  Sweeps & reads
    # ═══════════════════════════════════════════════════════

    async def expire_stale_offers(self) -> int:
        async with self._sessions() as session:
            async with session.begin():
                result = await session.execute(
                    update(Offer)
                    .where(Offer.status == OfferStatus.PENDING, Offer.expires_at <= self._now())
                    .values(status=OfferStatus.EXPIRED, version=Offer.version + 1)
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount:
            logger.info("⌛ Expired %d stale offer(s)", result.rowcount)
        return result.rowcount or 0

    async def get_offer(self, offer_id: uuid.UUID, viewer: User) -> Offer:
        async with self._sessions() as session:
            offer = await session.get(Offer, offer_id)
        if offer is None:
            raise NotFoundError("Offer", offer_id)
        if viewer.id not in (offer.buyer_id, offer.seller_id) and not viewer.is_authority:
            raise NotAuthorized("Only the buyer or seller can view this offer.")
        return offer

    async def list_for_listing(self, listing_id: uuid.UUID, viewer: User) -> List[Offer]:
        """Sellers see every offer on their listing; buyers see their own."""
        async with self._sessions() as session:
            listing = await session.get(Listing, listing_id)
            if listing is None:
                raise NotFoundError("Listing", listing_id)
            query = select(Offer).where(Offer.listing_id == listing_id)
            if listing.seller_id != viewer.id and not viewer.is_authority:
                query = query.where(Offer.buyer_id == viewer.id)
            result = await session.scalars(query.order_by(Offer.created_at.desc()))
            return list(result)
