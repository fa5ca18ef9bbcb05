import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select

from conftest import fetch
from eventswap.adapters.notification import drain_notifications
from eventswap.exceptions import (
    DuplicatePendingOffer,
    InvalidAmount,
    ListingUnavailable,
    MissingPayerIdentity,
    NotAuthorized,
    NotPending,
    OfferExpired,
    SelfPurchase,
    StateConflictError,
)
from eventswap.models import ListingStatus, Offer, OfferStatus, Transaction, TransactionStatus
from eventswap.services.offers import OfferAction, RespondResult


@pytest_asyncio.fixture
async def rival(make_user):
    return await make_user("Rival", tax_id="39053344705")


class TestCreateOffer:
    @pytest.mark.asyncio
    async def test_pending_offer_with_ttl(self, offers, listing, buyer, clock, notifier):
        offer = await offers.create_offer(listing.id, buyer.id, Decimal("900"), message="  Can you do 900?  ")

        assert offer.status == OfferStatus.PENDING
        assert offer.amount == Decimal("900.00")
        assert offer.message == "Can you do 900?"
        assert offer.seller_id == listing.seller_id
        assert offer.expires_at == clock() + timedelta(hours=48)

        await drain_notifications()
        assert notifier.categories() == ["offer_received"]

    @pytest.mark.asyncio
    async def test_one_pending_offer_per_buyer(self, offers, listing, buyer):
        first = await offers.create_offer(listing.id, buyer.id, Decimal("900"))
        with pytest.raises(DuplicatePendingOffer) as exc:
            await offers.create_offer(listing.id, buyer.id, Decimal("950"))
        assert exc.value.details["existing_offer_id"] == str(first.id)

    @pytest.mark.asyncio
    async def test_overdue_pending_offer_is_superseded(self, sessions, offers, listing, buyer, clock):
        first = await offers.create_offer(listing.id, buyer.id, Decimal("900"))
        clock.advance(hours=49)

        second = await offers.create_offer(listing.id, buyer.id, Decimal("950"))

        assert second.status == OfferStatus.PENDING
        assert (await fetch(sessions, Offer, first.id)).status == OfferStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_seller_cannot_offer_on_own_listing(self, offers, listing, seller):
        with pytest.raises(SelfPurchase):
            await offers.create_offer(listing.id, seller.id, Decimal("900"))

    @pytest.mark.asyncio
    async def test_amount_ceiling(self, offers, listing, buyer):
        with pytest.raises(InvalidAmount):
            await offers.create_offer(listing.id, buyer.id, Decimal("1500.01"))
        offer = await offers.create_offer(listing.id, buyer.id, Decimal("1500.00"))
        assert offer.amount == Decimal("1500.00")

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, offers, listing, buyer):
        with pytest.raises(InvalidAmount):
            await offers.create_offer(listing.id, buyer.id, Decimal("0"))

    @pytest.mark.asyncio
    async def test_listing_must_be_active(self, offers, make_listing, seller, buyer):
        draft = await make_listing(seller, status=ListingStatus.DRAFT)
        with pytest.raises(ListingUnavailable):
            await offers.create_offer(draft.id, buyer.id, Decimal("900"))


class TestRespond:
    @pytest.mark.asyncio
    async def test_accept_creates_transaction_and_expires_siblings(
        self, sessions, offers, listing, buyer, rival, seller, notifier,
    ):
        offer = await offers.create_offer(listing.id, buyer.id, Decimal("900"))
        sibling = await offers.create_offer(listing.id, rival.id, Decimal("850"))

        result = await offers.respond(offer.id, OfferAction.ACCEPT, seller.id)

        assert result.offer.status == OfferStatus.ACCEPTED
        txn = result.transaction
        assert txn.status == TransactionStatus.INITIATED
        assert txn.offer_id == offer.id
        assert txn.agreed_price == Decimal("900.00")
        assert txn.platform_fee == Decimal("72.00")
        assert txn.seller_net == Decimal("828.00")
        assert txn.buyer_total == Decimal("945.00")

        assert (await fetch(sessions, Offer, sibling.id)).status == OfferStatus.EXPIRED

        await drain_notifications()
        assert "offer_accepted" in notifier.categories()
        assert notifier.categories().count("transaction_created") == 2

    @pytest.mark.asyncio
    async def test_second_accept_is_not_pending(self, sessions, offers, listing, buyer, seller):
        offer = await offers.create_offer(listing.id, buyer.id, Decimal("900"))
        await offers.respond(offer.id, OfferAction.ACCEPT, seller.id)

        with pytest.raises(NotPending):
            await offers.respond(offer.id, OfferAction.ACCEPT, seller.id)

        async with sessions() as session:
            created = list(await session.scalars(select(Transaction).where(Transaction.offer_id == offer.id)))
        assert len(created) == 1

    @pytest.mark.asyncio
    async def test_simultaneous_accepts_create_one_transaction(self, sessions, offers, listing, buyer, seller):
        offer = await offers.create_offer(listing.id, buyer.id, Decimal("900"))

        outcomes = await asyncio.gather(
            offers.respond(offer.id, OfferAction.ACCEPT, seller.id),
            offers.respond(offer.id, OfferAction.ACCEPT, seller.id),
            return_exceptions=True,
        )

        accepted = [o for o in outcomes if isinstance(o, RespondResult)]
        conflicts = [o for o in outcomes if isinstance(o, StateConflictError)]
        assert len(accepted) == 1
        assert len(conflicts) == 1, outcomes

        async with sessions() as session:
            created = list(await session.scalars(select(Transaction).where(Transaction.offer_id == offer.id)))
        assert [txn.id for txn in created] == [accepted[0].transaction.id]
        assert (await fetch(sessions, Offer, offer.id)).status == OfferStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_accept_racing_reject_has_one_winner(self, sessions, offers, listing, buyer, seller):
        offer = await offers.create_offer(listing.id, buyer.id, Decimal("900"))

        outcomes = await asyncio.gather(
            offers.respond(offer.id, OfferAction.ACCEPT, seller.id),
            offers.respond(offer.id, OfferAction.REJECT, seller.id),
            return_exceptions=True,
        )

        winners = [o for o in outcomes if isinstance(o, RespondResult)]
        assert len(winners) == 1
        assert all(isinstance(o, (RespondResult, NotPending)) for o in outcomes), outcomes

        stored = await fetch(sessions, Offer, offer.id)
        assert stored.status == winners[0].offer.status
        async with sessions() as session:
            created = list(await session.scalars(select(Transaction).where(Transaction.offer_id == offer.id)))
        assert len(created) == (1 if stored.status == OfferStatus.ACCEPTED else 0)


    @pytest.mark.asyncio
    async def test_acceptance_runs_transaction_guards(self, sessions, offers, listing, make_user, seller):
        anonymous = await make_user("No Identity")
        offer = await offers.create_offer(listing.id, anonymous.id, Decimal("900"))

        with pytest.raises(MissingPayerIdentity):
            await offers.respond(offer.id, OfferAction.ACCEPT, seller.id)

        assert (await fetch(sessions, Offer, offer.id)).status == OfferStatus.PENDING
        async with sessions() as session:
            created = await session.scalar(select(Transaction).where(Transaction.offer_id == offer.id))
        assert created is None

    @pytest.mark.asyncio
    async def test_only_seller_responds(self, offers, listing, buyer):
        offer = await offers.create_offer(listing.id, buyer.id, Decimal("900"))
        with pytest.raises(NotAuthorized):
            await offers.respond(offer.id, OfferAction.REJECT, buyer.id)

    @pytest.mark.asyncio
    async def test_reject(self, offers, listing, buyer, seller, clock):
        offer = await offers.create_offer(listing.id, buyer.id, Decimal("900"))
        result = await offers.respond(offer.id, "reject", seller.id)
        assert result.offer.status == OfferStatus.REJECTED
        assert result.offer.responded_at == clock()
        assert result.transaction is None

    @pytest.mark.asyncio
    async def test_counter(self, offers, listing, buyer, seller):
        offer = await offers.create_offer(listing.id, buyer.id, Decimal("900"))
        result = await offers.respond(
            offer.id, OfferAction.COUNTER, seller.id,
            counter_amount=Decimal("960"), counter_message=" Meet me at 960 ",
        )
        assert result.offer.status == OfferStatus.COUNTERED
        assert result.offer.counter_amount == Decimal("960.00")
        assert result.offer.counter_message == "Meet me at 960"

    @pytest.mark.asyncio
    async def test_counter_requires_amount(self, offers, listing, buyer, seller):
        offer = await offers.create_offer(listing.id, buyer.id, Decimal("900"))
        with pytest.raises(InvalidAmount):
            await offers.respond(offer.id, OfferAction.COUNTER, seller.id)

    @pytest.mark.asyncio
    async def test_overdue_offer_expires_on_response(self, sessions, offers, listing, buyer, seller, clock):
        offer = await offers.create_offer(listing.id, buyer.id, Decimal("900"))
        clock.advance(hours=48, seconds=1)

        with pytest.raises(OfferExpired):
            await offers.respond(offer.id, OfferAction.ACCEPT, seller.id)

        assert (await fetch(sessions, Offer, offer.id)).status == OfferStatus.EXPIRED


class TestSweepsAndReads:
    @pytest.mark.asyncio
    async def test_expire_stale_offers(self, offers, listing, buyer, rival, clock):
        await offers.create_offer(listing.id, buyer.id, Decimal("900"))
        await offers.create_offer(listing.id, rival.id, Decimal("800"))

        assert await offers.expire_stale_offers() == 0
        clock.advance(hours=49)
        assert await offers.expire_stale_offers() == 2
        assert await offers.expire_stale_offers() == 0

    @pytest.mark.asyncio
    async def test_buyers_only_see_their_own_offers(self, offers, listing, buyer, rival, seller):
        mine = await offers.create_offer(listing.id, buyer.id, Decimal("900"))
        await offers.create_offer(listing.id, rival.id, Decimal("800"))

        assert [o.id for o in await offers.list_for_listing(listing.id, buyer)] == [mine.id]
        assert len(await offers.list_for_listing(listing.id, seller)) == 2

        with pytest.raises(NotAuthorized):
            await offers.get_offer(mine.id, rival)
