"""
EventSwap Platform - Transaction Chat
Messages between buyer and seller pass through the content filter. The
filter is strict until the buyer's money is held in escrow; blocked
messages are never delivered and count towards the sender's penalty level.
"""
import enum
import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventswap.config import Settings, get_settings
from eventswap.exceptions import ChatSuspended, NotAuthorized, NotFoundError
from eventswap.models import ChatViolation, Message, Transaction, TransactionStatus, User
from eventswap.services.content_filter import (
    FilterMode,
    MessageAnalysis,
    analyze,
    describe_violations,
)

logger = logging.getLogger("eventswap.messaging")

POST_ESCROW_STATUSES = frozenset({
    TransactionStatus.ESCROW_HELD,
    TransactionStatus.TRANSFER_PENDING,
    TransactionStatus.COMPLETED,
    TransactionStatus.DISPUTE_OPENED,
    TransactionStatus.DISPUTE_RESOLVED,
})

SNIPPET_LENGTH = 120


class PenaltyLevel(str, enum.Enum):
    NONE = "none"
    WARNING = "warning"
    RESTRICTED = "restricted"
    SUSPENDED = "suspended"


def penalty_level(violation_count: int, settings: Optional[Settings] = None) -> PenaltyLevel:
    settings = settings or get_settings()
    if violation_count <= 0:
        return PenaltyLevel.NONE
    if violation_count <= settings.CHAT_WARNING_LIMIT:
        return PenaltyLevel.WARNING
    if violation_count <= settings.CHAT_RESTRICTED_LIMIT:
        return PenaltyLevel.RESTRICTED
    return PenaltyLevel.SUSPENDED


def filter_mode_for(status: TransactionStatus) -> FilterMode:
    if status in POST_ESCROW_STATUSES:
        return FilterMode.POST_ESCROW
    return FilterMode.PRE_ESCROW


@dataclass
class SendResult:
    delivered: bool
    analysis: MessageAnalysis
    penalty_level: PenaltyLevel
    message: Optional[Message] = None
    explanation: Optional[str] = None


class MessagingService:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
    ):
        self._sessions = sessions
        self.settings = settings or get_settings()

    @staticmethod
    async def _participant_transaction(
        session: AsyncSession, transaction_id: uuid.UUID, user_id: uuid.UUID,
    ) -> Transaction:
        txn = await session.get(Transaction, transaction_id)
        if txn is None:
            raise NotFoundError("Transaction", transaction_id)
        if user_id not in (txn.buyer_id, txn.seller_id):
            raise NotAuthorized("Only the buyer and seller can use this chat.")
        return txn

    @staticmethod
    async def count_violations(session: AsyncSession, user_id: uuid.UUID) -> int:
        return await session.scalar(
            select(func.count(ChatViolation.id)).where(ChatViolation.user_id == user_id)
        ) or 0

    async def get_penalty_level(self, user_id: uuid.UUID) -> PenaltyLevel:
        async with self._sessions() as session:
            count = await self.count_violations(session, user_id)
        return penalty_level(count, self.settings)

    async def send_message(self, transaction_id: uuid.UUID, sender_id: uuid.UUID, text: str) -> SendResult:
        async with self._sessions() as session:
            async with session.begin():
                txn = await self._participant_transaction(session, transaction_id, sender_id)

                count = await self.count_violations(session, sender_id)
                level = penalty_level(count, self.settings)
                if level == PenaltyLevel.SUSPENDED:
                    logger.warning("🚫 Suspended user %s tried to chat on %s", sender_id, txn.code)
                    raise ChatSuspended(sender_id)

                analysis = analyze(text, filter_mode_for(txn.status))

                if analysis.is_blocked:
                    session.add(ChatViolation(
                        user_id=sender_id,
                        transaction_id=txn.id,
                        violation_type=analysis.violations[0].value,
                        snippet=text[:SNIPPET_LENGTH],
                    ))
                    level = penalty_level(count + 1, self.settings)
                    logger.warning(
                        "🚫 Message from %s on %s blocked (%s, %s): %s",
                        sender_id, txn.code, analysis.severity.value, level.value,
                        ", ".join(v.value for v in analysis.violations),
                    )
                    return SendResult(
                        delivered=False,
                        analysis=analysis,
                        penalty_level=level,
                        explanation=describe_violations(analysis.violations),
                    )

                message = Message(
                    transaction_id=txn.id,
                    sender_id=sender_id,
                    content=analysis.sanitized_text,
                    was_filtered=analysis.sanitized_text != text,
                )
                session.add(message)
                await session.flush()

        logger.info("💬 Message %s delivered on %s", message.id, txn.code)
        return SendResult(delivered=True, analysis=analysis, penalty_level=level, message=message)

    async def list_messages(self, transaction_id: uuid.UUID, viewer: User) -> List[Message]:
        async with self._sessions() as session:
            txn = await session.get(Transaction, transaction_id)
            if txn is None:
                raise NotFoundError("Transaction", transaction_id)
            if viewer.id not in (txn.buyer_id, txn.seller_id) and not viewer.is_authority:
                raise NotAuthorized("Only participants can read this chat.")
            result = await session.scalars(
                select(Message)
                .where(Message.transaction_id == transaction_id)
                .order_by(Message.created_at)
            )
            return list(result)
