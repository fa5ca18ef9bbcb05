from decimal import Decimal

import pytest

from conftest import fetch, held_transaction
from eventswap.models import Offer, OfferStatus, Transaction, TransactionStatus
from eventswap.services.scheduler import SweepScheduler


class TestSweepScheduler:
    @pytest.mark.asyncio
    async def test_run_all_once(
        self, sessions, escrow, offers, make_listing, seller, buyer, settings, clock,
    ):
        unpaid = await escrow.create_transaction((await make_listing(seller)).id, buyer.id)
        released, _ = await held_transaction(escrow, await make_listing(seller), buyer)
        await escrow.mark_seller_transferred(released.id, seller.id)
        offer = await offers.create_offer((await make_listing(seller)).id, buyer.id, Decimal("700"))

        clock.advance(days=10)
        await SweepScheduler(escrow, offers, settings).run_all_once()

        assert (await fetch(sessions, Transaction, unpaid.id)).status == TransactionStatus.CANCELLED
        assert (await fetch(sessions, Transaction, released.id)).status == TransactionStatus.COMPLETED
        assert (await fetch(sessions, Offer, offer.id)).status == OfferStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_failing_sweep_is_contained(self, escrow, offers, settings, monkeypatch):
        async def boom():
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(escrow, "run_auto_release", boom)
        scheduler = SweepScheduler(escrow, offers, settings)
        await scheduler.run_all_once()

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, escrow, offers, settings):
        scheduler = SweepScheduler(escrow, offers, settings)
        scheduler.start()
        assert scheduler.running
        assert {job.id for job in scheduler._scheduler.get_jobs()} == {
            "auto_release", "offer_expiry", "payment_deadline",
        }
        scheduler.shutdown()
        assert not scheduler.running
