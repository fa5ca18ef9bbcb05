import pytest
from sqlalchemy import select

from conftest import held_transaction
from eventswap.exceptions import ChatSuspended, NotAuthorized
from eventswap.models import ChatViolation, TransactionStatus
from eventswap.services.content_filter import FilterMode, Violation
from eventswap.services.messaging import PenaltyLevel, filter_mode_for, penalty_level


class TestPenaltyLadder:
    @pytest.mark.parametrize(
        "count, level",
        [
            (0, PenaltyLevel.NONE),
            (1, PenaltyLevel.WARNING),
            (2, PenaltyLevel.WARNING),
            (3, PenaltyLevel.RESTRICTED),
            (4, PenaltyLevel.RESTRICTED),
            (5, PenaltyLevel.SUSPENDED),
            (40, PenaltyLevel.SUSPENDED),
        ],
    )
    def test_levels(self, count, level, settings):
        assert penalty_level(count, settings) == level

    def test_filter_mode_follows_custody(self):
        assert filter_mode_for(TransactionStatus.INITIATED) == FilterMode.PRE_ESCROW
        assert filter_mode_for(TransactionStatus.AWAITING_PAYMENT) == FilterMode.PRE_ESCROW
        assert filter_mode_for(TransactionStatus.ESCROW_HELD) == FilterMode.POST_ESCROW
        assert filter_mode_for(TransactionStatus.DISPUTE_OPENED) == FilterMode.POST_ESCROW


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_clean_message_is_delivered(self, chat, escrow, listing, buyer, seller):
        txn = await escrow.create_transaction(listing.id, buyer.id)

        result = await chat.send_message(txn.id, buyer.id, "Is the date still 15/03/2026 at 18h?")

        assert result.delivered
        assert result.penalty_level == PenaltyLevel.NONE
        assert result.message.was_filtered is False
        assert [m.id for m in await chat.list_messages(txn.id, seller)] == [result.message.id]

    @pytest.mark.asyncio
    async def test_contact_before_escrow_is_blocked_and_recorded(self, sessions, chat, escrow, listing, buyer, seller):
        txn = await escrow.create_transaction(listing.id, buyer.id)

        result = await chat.send_message(txn.id, buyer.id, "Me liga no 99999-8888")

        assert not result.delivered
        assert result.message is None
        assert result.penalty_level == PenaltyLevel.WARNING
        assert result.explanation.startswith("Phone numbers")
        assert await chat.list_messages(txn.id, seller) == []

        async with sessions() as session:
            violations = list(await session.scalars(select(ChatViolation)))
        assert len(violations) == 1
        assert violations[0].violation_type == Violation.PHONE.value
        assert violations[0].snippet == "Me liga no 99999-8888"

    @pytest.mark.asyncio
    async def test_repeat_offenders_are_suspended(self, chat, escrow, listing, buyer):
        txn = await escrow.create_transaction(listing.id, buyer.id)

        levels = []
        for _ in range(5):
            result = await chat.send_message(txn.id, buyer.id, "chama no whatsapp")
            levels.append(result.penalty_level)

        assert levels == [
            PenaltyLevel.WARNING,
            PenaltyLevel.WARNING,
            PenaltyLevel.RESTRICTED,
            PenaltyLevel.RESTRICTED,
            PenaltyLevel.SUSPENDED,
        ]
        assert await chat.get_penalty_level(buyer.id) == PenaltyLevel.SUSPENDED

        with pytest.raises(ChatSuspended):
            await chat.send_message(txn.id, buyer.id, "ok, see you there")

    @pytest.mark.asyncio
    async def test_contact_allowed_once_funds_are_held(self, chat, escrow, listing, buyer, seller):
        txn, _ = await held_transaction(escrow, listing, buyer)

        result = await chat.send_message(txn.id, seller.id, "Me liga no 99999-8888 para combinar")

        assert result.delivered
        assert result.message.content == "Me liga no 99999-8888 para combinar"
        assert await chat.get_penalty_level(seller.id) == PenaltyLevel.NONE

    @pytest.mark.asyncio
    async def test_outsiders_cannot_chat(self, chat, escrow, listing, buyer, mediator):
        txn = await escrow.create_transaction(listing.id, buyer.id)

        with pytest.raises(NotAuthorized):
            await chat.send_message(txn.id, mediator.id, "hello")
        assert await chat.list_messages(txn.id, mediator) == []
