import re
from datetime import datetime
from decimal import Decimal

import pytest

from eventswap.exceptions import CodeAllocationExhausted
from eventswap.models import Transaction, TransactionStatus
from eventswap.services.codes import (
    DISPUTE_PREFIX,
    DISPUTE_SUFFIX_LENGTH,
    TRANSACTION_PREFIX,
    TRANSACTION_SUFFIX_LENGTH,
    allocate_code,
    generate_code,
)


class TestGenerateCode:
    def test_transaction_format(self):
        code = generate_code(TRANSACTION_PREFIX, TRANSACTION_SUFFIX_LENGTH, now=datetime(2026, 5, 1))
        assert re.fullmatch(r"TXN-2026-[A-Z0-9]{4}", code)

    def test_dispute_format(self):
        code = generate_code(DISPUTE_PREFIX, DISPUTE_SUFFIX_LENGTH, now=datetime(2027, 1, 1))
        assert re.fullmatch(r"DSP-2027-[A-Z0-9]{6}", code)


async def _store_transaction(sessions, code, buyer, seller, listing):
    async with sessions() as session:
        async with session.begin():
            session.add(Transaction(
                code=code,
                listing_id=listing.id,
                buyer_id=buyer.id,
                seller_id=seller.id,
                agreed_price=Decimal("100"),
                platform_fee=Decimal("8"),
                platform_fee_rate=Decimal("8"),
                seller_net=Decimal("92"),
                buyer_fee=Decimal("5"),
                buyer_total=Decimal("105"),
                status=TransactionStatus.CANCELLED,
                payment_deadline=datetime(2026, 1, 1),
            ))


class TestAllocateCode:
    @pytest.mark.asyncio
    async def test_retries_past_a_collision(self, sessions, buyer, seller, listing):
        await _store_transaction(sessions, "TXN-2026-AAAA", buyer, seller, listing)
        candidates = iter(["TXN-2026-AAAA", "TXN-2026-BBBB"])

        async with sessions() as session:
            code = await allocate_code(
                session, Transaction.code, TRANSACTION_PREFIX, TRANSACTION_SUFFIX_LENGTH,
                attempts=5, generator=lambda prefix, length: next(candidates),
            )
        assert code == "TXN-2026-BBBB"

    @pytest.mark.asyncio
    async def test_exhaustion_is_a_distinct_error(self, sessions, buyer, seller, listing):
        await _store_transaction(sessions, "TXN-2026-ZZZZ", buyer, seller, listing)
        calls = []

        def always_taken(prefix, length):
            calls.append(prefix)
            return "TXN-2026-ZZZZ"

        async with sessions() as session:
            with pytest.raises(CodeAllocationExhausted) as exc:
                await allocate_code(
                    session, Transaction.code, TRANSACTION_PREFIX, TRANSACTION_SUFFIX_LENGTH,
                    attempts=5, generator=always_taken,
                )
        assert len(calls) == 5
        assert exc.value.kind == "resource_exhausted"
        assert exc.value.details == {"prefix": "TXN", "attempts": 5}
