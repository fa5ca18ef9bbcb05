"""
EventSwap Platform - Dispute Subsystem
A participant freezes a custody-phase transaction; a mediator or admin
decides how the held money moves.

Opening a dispute and the transaction's DISPUTE_OPENED transition commit
together, and so do the resolution and DISPUTE_RESOLVED, so a dispute is
never OPEN while its transaction has already left DISPUTE_OPENED.
"""
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import select
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
    DescriptionTooLong,
    DescriptionTooShort,
    DisputeAlreadyOpen,
    DisputePolicyMissing,
    InvalidAmount,
    InvalidDisputeState,
    InvalidOutcome,
    InvalidTransactionState,
    NotAuthorized,
    NotFoundError,
    ReasonInvalid,
)
from eventswap.models import (
    OPEN_DISPUTE_STATUSES,
    Dispute,
    DisputeOutcome,
    DisputeReason,
    DisputeStatus,
    Transaction,
    TransactionStatus,
    User,
    utcnow,
)
from eventswap.services.codes import DISPUTE_PREFIX, DISPUTE_SUFFIX_LENGTH, allocate_code
from eventswap.services.escrow import RACE_LOST, EscrowService
from eventswap.services.fees import round2

logger = logging.getLogger("eventswap.disputes")

DESCRIPTION_MIN_LENGTH = 50
DESCRIPTION_MAX_LENGTH = 2000

DISPUTABLE_STATUSES = (TransactionStatus.ESCROW_HELD, TransactionStatus.TRANSFER_PENDING)

RESOLVED_STATUS = {
    DisputeOutcome.REFUND_BUYER: DisputeStatus.RESOLVED_BUYER,
    DisputeOutcome.RELEASE_SELLER: DisputeStatus.RESOLVED_SELLER,
    DisputeOutcome.SPLIT: DisputeStatus.RESOLVED_SPLIT,
}


@dataclass(frozen=True)
class FundMovement:
    buyer_refund: Decimal
    seller_credit: Decimal


def parse_reason(reason) -> DisputeReason:
    try:
        return DisputeReason(reason)
    except ValueError:
        raise ReasonInvalid(reason) from None


def parse_outcome(outcome) -> DisputeOutcome:
    try:
        return DisputeOutcome(outcome)
    except ValueError:
        raise InvalidOutcome(outcome) from None


def validate_description(description: str) -> str:
    text = (description or "").strip()
    if len(text) < DESCRIPTION_MIN_LENGTH:
        raise DescriptionTooShort(DESCRIPTION_MIN_LENGTH, len(text))
    if len(text) > DESCRIPTION_MAX_LENGTH:
        raise DescriptionTooLong(DESCRIPTION_MAX_LENGTH, len(text))
    return text


def compute_fund_movement(
    outcome: DisputeOutcome,
    agreed_price: Decimal,
    seller_net: Decimal,
    buyer_total: Decimal,
    split_buyer_share: Optional[Decimal] = None,
) -> FundMovement:
    """
    Map a decision to exactly one fund movement.

    REFUND_BUYER   buyer gets buyer_total back, seller nothing
    RELEASE_SELLER seller is credited seller_net
    SPLIT          buyer gets agreed_price * share, seller seller_net * (1 - share)
    """
    outcome = parse_outcome(outcome)

    if outcome == DisputeOutcome.REFUND_BUYER:
        return FundMovement(buyer_refund=round2(buyer_total), seller_credit=Decimal("0.00"))

    if outcome == DisputeOutcome.RELEASE_SELLER:
        return FundMovement(buyer_refund=Decimal("0.00"), seller_credit=round2(seller_net))

    if outcome == DisputeOutcome.SPLIT:
        if split_buyer_share is None:
            raise DisputePolicyMissing(outcome.value)
        share = Decimal(str(split_buyer_share))
        if not Decimal("0") < share < Decimal("1"):
            raise InvalidAmount(
                "Split share must be strictly between 0 and 1.",
                {"split_buyer_share": str(share)},
            )
        return FundMovement(
            buyer_refund=round2(Decimal(agreed_price) * share),
            seller_credit=round2(Decimal(seller_net) * (Decimal("1") - share)),
        )

    # New outcomes must come with their own rule
    raise DisputePolicyMissing(outcome.value)


def _dispute_race(action: str):
    return lost_race_as(lambda dispute_id: InvalidDisputeState(dispute_id, RACE_LOST, action))


class DisputeService:
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

    def _notify(self, user_ids: Iterable[uuid.UUID], category: str, dispute: Dispute, **extra) -> None:
        payload = {
            "dispute_id": str(dispute.id),
            "protocol": dispute.protocol,
            "transaction_id": str(dispute.transaction_id),
            "status": dispute.status.value,
        }
        payload.update(extra)
        for user_id in user_ids:
            dispatch_notification(self.notifier, user_id, category, payload)

    @staticmethod
    async def _lock_dispute(session: AsyncSession, dispute_id: uuid.UUID) -> Dispute:
        dispute = await session.scalar(
            select(Dispute).where(Dispute.id == dispute_id).with_for_update()
        )
        if dispute is None:
            raise NotFoundError("Dispute", dispute_id)
        return dispute

    # ═══════════════════════════════════════════════════════
    #  open()
    # ═══════════════════════════════════════════════════════

    @lost_race_as(lambda transaction_id: InvalidTransactionState(transaction_id, RACE_LOST, "open a dispute on"))
    async def open_dispute(
        self,
        transaction_id: uuid.UUID,
        opener_id: uuid.UUID,
        reason,
        description: str,
        evidence: Optional[List[str]] = None,
    ) -> Dispute:
        reason = parse_reason(reason)
        text = validate_description(description)
        references = [str(ref).strip() for ref in (evidence or []) if str(ref).strip()]

        try:
            async with self._sessions() as session:
                async with session.begin():
                    txn = await self.escrow.lock_transaction(session, transaction_id)
                    if opener_id not in (txn.buyer_id, txn.seller_id):
                        raise NotAuthorized("Only the buyer or seller can open a dispute.")
                    if txn.status not in DISPUTABLE_STATUSES:
                        raise InvalidTransactionState(txn.id, txn.status.value, "open a dispute on")

                    existing = await session.scalar(
                        select(Dispute.id).where(
                            Dispute.transaction_id == txn.id,
                            Dispute.status.in_(list(OPEN_DISPUTE_STATUSES)),
                        )
                    )
                    if existing is not None:
                        raise DisputeAlreadyOpen(existing)

                    protocol = await allocate_code(
                        session, Dispute.protocol, DISPUTE_PREFIX, DISPUTE_SUFFIX_LENGTH,
                        attempts=self.settings.CODE_ALLOCATION_ATTEMPTS,
                    )
                    dispute = Dispute(
                        protocol=protocol,
                        transaction_id=txn.id,
                        opener_id=opener_id,
                        reason=reason,
                        description=text,
                        evidence=references,
                        status=DisputeStatus.OPEN,
                    )
                    session.add(dispute)
                    await self.escrow.enter_dispute(session, txn)
        except IntegrityError:
            raise ConcurrentModification("Dispute") from None

        logger.info("⚖️  Dispute %s opened on %s by %s (%s)", protocol, txn.code, opener_id, reason.value)
        self._notify([txn.buyer_id, txn.seller_id], "dispute_opened", dispute, reason=reason.value)
        return dispute

    # ═══════════════════════════════════════════════════════
    #  Review & resolution (authority only)
    # ═══════════════════════════════════════════════════════

    @_dispute_race("start review of")
    async def start_review(self, dispute_id: uuid.UUID, authority: User) -> Dispute:
        if not authority.is_authority:
            raise NotAuthorized("Only a mediator or admin can review disputes.")

        async with self._sessions() as session:
            async with session.begin():
                dispute = await self._lock_dispute(session, dispute_id)
                if dispute.status != DisputeStatus.OPEN:
                    raise InvalidDisputeState(dispute.id, dispute.status.value, "start review of")
                dispute.status = DisputeStatus.UNDER_REVIEW
                dispute.reviewer_id = authority.id
                await session.flush()

        logger.info("🔎 Dispute %s under review by %s", dispute.protocol, authority.email)
        return dispute

    @_dispute_race("resolve")
    async def resolve(
        self,
        dispute_id: uuid.UUID,
        authority: User,
        outcome,
        resolution_note: Optional[str] = None,
        split_buyer_share: Optional[Decimal] = None,
    ) -> Dispute:
        """
        Decide a dispute and move the held funds accordingly.

        The dispute, the transaction, the seller ledger and the listing are
        updated in one unit of work; a buyer refund is issued through the
        payment adapter after commit.
        """
        if not authority.is_authority:
            raise NotAuthorized("Only a mediator or admin can resolve disputes.")
        outcome = parse_outcome(outcome)
        if split_buyer_share is None:
            split_buyer_share = self.settings.DISPUTE_SPLIT_BUYER_SHARE

        async with self._sessions() as session:
            async with session.begin():
                dispute = await self._lock_dispute(session, dispute_id)
                if dispute.status not in OPEN_DISPUTE_STATUSES:
                    raise InvalidDisputeState(dispute.id, dispute.status.value, "resolve")

                txn: Transaction = await self.escrow.lock_transaction(session, dispute.transaction_id)
                if txn.status != TransactionStatus.DISPUTE_OPENED:
                    raise InvalidTransactionState(txn.id, txn.status.value, "resolve the dispute on")

                movement = compute_fund_movement(
                    outcome,
                    Decimal(txn.agreed_price),
                    Decimal(txn.seller_net),
                    Decimal(txn.buyer_total),
                    split_buyer_share,
                )

                now = self._now()
                dispute.status = RESOLVED_STATUS[outcome]
                dispute.outcome = outcome
                dispute.resolution_note = (resolution_note or "").strip() or None
                dispute.resolved_by_id = authority.id
                dispute.resolved_at = now
                dispute.buyer_refund = movement.buyer_refund
                dispute.seller_credit = movement.seller_credit
                await session.flush()

                payment = await self.escrow.leave_dispute(
                    session, txn, movement.buyer_refund, movement.seller_credit,
                )

        logger.info(
            "⚖️  Dispute %s resolved as %s by %s: buyer refund %s, seller credit %s",
            dispute.protocol, outcome.value, authority.email, movement.buyer_refund, movement.seller_credit,
        )
        if movement.buyer_refund > 0:
            if payment is not None:
                self.escrow.refund_in_background(payment.external_id, movement.buyer_refund)
            else:
                logger.error("❌ No settled payment for %s, refund of %s must be issued manually",
                             txn.code, movement.buyer_refund)
        self._notify(
            [txn.buyer_id, txn.seller_id], "dispute_resolved", dispute,
            outcome=outcome.value,
            buyer_refund=str(movement.buyer_refund),
            seller_credit=str(movement.seller_credit),
        )
        return dispute

    # ═══════════════════════════════════════════════════════
    #  Reads
    # ═══════════════════════════════════════════════════════

    async def get_dispute(self, dispute_id: uuid.UUID, viewer: User) -> Dispute:
        async with self._sessions() as session:
            dispute = await session.get(Dispute, dispute_id)
            if dispute is None:
                raise NotFoundError("Dispute", dispute_id)
            txn = await session.get(Transaction, dispute.transaction_id)
        if viewer.id not in (txn.buyer_id, txn.seller_id) and not viewer.is_authority:
            raise NotAuthorized("Only participants can view this dispute.")
        return dispute

    async def list_for_transaction(self, transaction_id: uuid.UUID, viewer: User) -> List[Dispute]:
        async with self._sessions() as session:
            txn = await session.get(Transaction, transaction_id)
            if txn is None:
                raise NotFoundError("Transaction", transaction_id)
            if viewer.id not in (txn.buyer_id, txn.seller_id) and not viewer.is_authority:
                raise NotAuthorized("Only participants can view these disputes.")
            result = await session.scalars(
                select(Dispute)
                .where(Dispute.transaction_id == transaction_id)
                .order_by(Dispute.created_at.desc())
            )
            return list(result)
