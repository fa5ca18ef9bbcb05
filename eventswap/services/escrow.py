"""
EventSwap Platform - Escrow Transaction Engine
Sequences payment custody for one agreed sale:

  INITIATED → AWAITING_PAYMENT → PAYMENT_CONFIRMED → ESCROW_HELD
            → TRANSFER_PENDING → COMPLETED

with CANCELLED before payment, REFUNDED after payment, and
DISPUTE_OPENED → DISPUTE_RESOLVED from the custody states.

Guarantees:
  - Pessimistic row locking (SELECT … FOR UPDATE) on the transaction row
  - Optimistic version check on every status write, so a racing writer
    (buyer confirmation vs auto-release sweep) loses with InvalidTransactionState
  - Settlement callbacks are idempotent through the webhook_events ledger
  - Payment / notification side effects run after commit and never roll back
    a committed transition
"""
import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from eventswap.adapters.fraud import (
    AccountFacts,
    FraudSignalAdapter,
    ListingFacts,
    PermissiveFraudSignals,
    Recommendation,
)
from eventswap.adapters.notification import (
    LoggingNotificationAdapter,
    NotificationAdapter,
    dispatch_notification,
)
from eventswap.adapters.payment import PaymentAdapter, describe_failure
from eventswap.config import Settings, get_settings
from eventswap.database import lost_race_as
from eventswap.encryption import decrypt_pii
from eventswap.exceptions import (
    ConcurrentModification,
    DuplicateActiveTransaction,
    FraudBlocked,
    InvalidAmount,
    InvalidTransactionState,
    ListingUnavailable,
    MissingPayerIdentity,
    NotAuthorized,
    NotFoundError,
    PaymentDeadlineExpired,
    SelfPurchase,
    StateConflictError,
)
from eventswap.models import (
    ACTIVE_TRANSACTION_STATUSES,
    Listing,
    ListingStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Transaction,
    TransactionStatus,
    User,
    WebhookEvent,
    utcnow,
)
from eventswap.services.codes import TRANSACTION_PREFIX, TRANSACTION_SUFFIX_LENGTH, allocate_code
from eventswap.services.fees import compute_buyer_total, compute_fees

logger = logging.getLogger("eventswap.escrow")

S = TransactionStatus

ALLOWED_TRANSITIONS: Dict[TransactionStatus, Set[TransactionStatus]] = {
    S.INITIATED: {S.AWAITING_PAYMENT, S.CANCELLED},
    S.AWAITING_PAYMENT: {S.PAYMENT_CONFIRMED, S.INITIATED, S.CANCELLED},
    S.PAYMENT_CONFIRMED: {S.ESCROW_HELD, S.REFUNDED},
    S.ESCROW_HELD: {S.TRANSFER_PENDING, S.DISPUTE_OPENED, S.REFUNDED},
    S.TRANSFER_PENDING: {S.COMPLETED, S.DISPUTE_OPENED},
    S.DISPUTE_OPENED: {S.DISPUTE_RESOLVED},
    S.COMPLETED: set(),
    S.CANCELLED: set(),
    S.REFUNDED: set(),
    S.DISPUTE_RESOLVED: set(),
}

CANCELLABLE = (S.INITIATED, S.AWAITING_PAYMENT)
REFUNDABLE = (S.PAYMENT_CONFIRMED, S.ESCROW_HELD)

# Settlement event outcomes
APPLIED = "applied"
DUPLICATE = "duplicate"
IGNORED = "ignored"


RACE_LOST = "changed concurrently"


def _transaction_race(action: str):
    return lost_race_as(lambda transaction_id: InvalidTransactionState(transaction_id, RACE_LOST, action))


_charge_race = lost_race_as(lambda external_id: ConcurrentModification("Payment"))


def advance(txn: Transaction, target: TransactionStatus, action: str) -> None:
    """Move ``txn`` to ``target`` if the state table allows it."""
    if target not in ALLOWED_TRANSITIONS[txn.status]:
        raise InvalidTransactionState(txn.id, txn.status.value, action)
    txn.status = target


def add_business_days(start: datetime, days: int) -> datetime:
    """``start`` plus ``days`` weekdays; Saturday and Sunday are skipped."""
    current = start
    remaining = days
    while remaining > 0:
        current += timedelta(days=1)
        if current.weekday() < 5:
            remaining -= 1
    return current


@dataclass
class PaymentRequestResult:
    transaction: Transaction
    payment: Payment
    error: Optional[str] = None

    @property
    def pending_retry(self) -> bool:
        return self.error is not None


class EscrowService:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        payments: PaymentAdapter,
        notifier: Optional[NotificationAdapter] = None,
        fraud: Optional[FraudSignalAdapter] = None,
        settings: Optional[Settings] = None,
        now=utcnow,
    ):
        self._sessions = sessions
        self.payments = payments
        self.notifier = notifier or LoggingNotificationAdapter()
        self.fraud = fraud or PermissiveFraudSignals()
        self.settings = settings or get_settings()
        self._now = now
        self._background: Set[asyncio.Task] = set()

    # ─────────────────────────────────────────────
    #  Helpers
    # ─────────────────────────────────────────────

    def notify_parties(self, user_ids: Iterable[uuid.UUID], category: str, txn: Transaction, **extra: Any) -> None:
        payload = {"transaction_id": str(txn.id), "code": txn.code, "status": txn.status.value}
        payload.update(extra)
        for user_id in user_ids:
            dispatch_notification(self.notifier, user_id, category, payload)

    def _in_background(self, coro: Awaitable[None], what: str) -> None:
        async def runner():
            try:
                await coro
            except Exception as exc:
                logger.error("❌ Background %s failed: %s", what, exc)

        task = asyncio.get_running_loop().create_task(runner())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for background adapter calls (shutdown and tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def refund_in_background(self, external_id: str, amount: Decimal) -> None:
        self._in_background(
            self.payments.refund_charge(external_id, amount),
            f"refund of {amount} on {external_id}",
        )

    @staticmethod
    async def lock_transaction(session: AsyncSession, transaction_id: uuid.UUID) -> Transaction:
        txn = await session.scalar(
            select(Transaction)
            .where(Transaction.id == transaction_id)
            .with_for_update()  # Pessimistic lock, serializes writers per transaction
        )
        if txn is None:
            raise NotFoundError("Transaction", transaction_id)
        return txn

    @staticmethod
    async def move_listing(
        session: AsyncSession,
        listing_id: uuid.UUID,
        from_statuses: Iterable[ListingStatus],
        to_status: ListingStatus,
    ) -> None:
        await session.execute(
            update(Listing)
            .where(Listing.id == listing_id, Listing.status.in_(list(from_statuses)))
            .values(status=to_status)
        )

    @staticmethod
    async def credit_seller(session: AsyncSession, seller_id: uuid.UUID, amount: Decimal) -> None:
        if amount <= 0:
            return
        await session.execute(
            update(User)
            .where(User.id == seller_id)
            .values(balance=User.balance + amount)
        )

    async def _find_active(self, listing_id: uuid.UUID, buyer_id: uuid.UUID) -> Optional[uuid.UUID]:
        async with self._sessions() as session:
            return await self._active_transaction_id(session, listing_id, buyer_id)

    @staticmethod
    async def _active_transaction_id(
        session: AsyncSession, listing_id: uuid.UUID, buyer_id: uuid.UUID,
    ) -> Optional[uuid.UUID]:
        return await session.scalar(
            select(Transaction.id).where(
                Transaction.listing_id == listing_id,
                Transaction.buyer_id == buyer_id,
                Transaction.status.in_(list(ACTIVE_TRANSACTION_STATUSES)),
            )
        )

    # ═══════════════════════════════════════════════════════
    #  create()
    # ═══════════════════════════════════════════════════════

    async def create_transaction(
        self,
        listing_id: uuid.UUID,
        buyer_id: uuid.UUID,
        agreed_price: Optional[Decimal] = None,
    ) -> Transaction:
        """Direct purchase at ``agreed_price`` (the asking price by default)."""
        try:
            async with self._sessions() as session:
                async with session.begin():
                    txn = await self.create_in_session(session, listing_id, buyer_id, agreed_price)
        except IntegrityError:
            existing = await self._find_active(listing_id, buyer_id)
            if existing is not None:
                raise DuplicateActiveTransaction(existing) from None
            raise ConcurrentModification("Transaction") from None

        self.notify_parties([txn.buyer_id, txn.seller_id], "transaction_created", txn)
        return txn

    async def create_in_session(
        self,
        session: AsyncSession,
        listing_id: uuid.UUID,
        buyer_id: uuid.UUID,
        agreed_price: Optional[Decimal] = None,
        offer_id: Optional[uuid.UUID] = None,
    ) -> Transaction:
        """
        Run every creation guard and insert an INITIATED transaction inside
        the caller's unit of work (also used by offer acceptance).
        """
        listing = await session.scalar(
            select(Listing).where(Listing.id == listing_id).with_for_update()
        )
        if listing is None:
            raise NotFoundError("Listing", listing_id)
        if listing.status != ListingStatus.ACTIVE:
            raise ListingUnavailable(listing.id, listing.status.value)
        if listing.seller_id == buyer_id:
            raise SelfPurchase()

        buyer = await session.get(User, buyer_id)
        if buyer is None:
            raise NotFoundError("User", buyer_id)
        if not buyer.has_payer_identity:
            raise MissingPayerIdentity(buyer.id)

        existing = await self._active_transaction_id(session, listing.id, buyer.id)
        if existing is not None:
            raise DuplicateActiveTransaction(existing)

        price = Decimal(agreed_price) if agreed_price is not None else Decimal(listing.asking_price)
        if price <= 0:
            raise InvalidAmount("Agreed price must be greater than zero.", {"agreed_price": str(price)})

        now = self._now()
        assessment = self.fraud.score(
            AccountFacts(
                user_id=buyer.id,
                account_age_days=max(0, (now - (buyer.created_at or now)).days),
                is_verified=bool(buyer.is_verified),
                has_payer_identity=buyer.has_payer_identity,
            ),
            ListingFacts(
                listing_id=listing.id,
                asking_price=Decimal(listing.asking_price),
                original_price=listing.original_price,
            ),
        )
        if assessment.recommendation == Recommendation.BLOCK:
            logger.warning(
                "🚫 Transaction blocked by risk screening: buyer %s listing %s (score=%d)",
                buyer.id, listing.id, assessment.score,
            )
            raise FraudBlocked("Transaction", assessment.score)

        fees = compute_fees(price, listing.seller_fee_percent)
        charge = compute_buyer_total(price)
        code = await allocate_code(
            session, Transaction.code, TRANSACTION_PREFIX, TRANSACTION_SUFFIX_LENGTH,
            attempts=self.settings.CODE_ALLOCATION_ATTEMPTS,
        )

        txn = Transaction(
            code=code,
            listing_id=listing.id,
            buyer_id=buyer.id,
            seller_id=listing.seller_id,
            offer_id=offer_id,
            agreed_price=price,
            platform_fee=fees.platform_fee,
            platform_fee_rate=fees.platform_fee_rate,
            seller_net=fees.seller_net,
            buyer_fee=charge.buyer_fee,
            buyer_total=charge.buyer_total,
            status=TransactionStatus.INITIATED,
            needs_review=assessment.recommendation == Recommendation.REVIEW,
            payment_deadline=now + timedelta(hours=self.settings.PAYMENT_DEADLINE_HOURS),
        )
        session.add(txn)
        await session.flush()

        if txn.needs_review:
            logger.warning("⚠️  Transaction %s flagged for manual review (score=%d)", code, assessment.score)
        logger.info(
            "✅ Transaction %s created: price %s, fee %s, seller net %s, buyer total %s",
            code, price, fees.platform_fee, fees.seller_net, charge.buyer_total,
        )
        return txn

    # ═══════════════════════════════════════════════════════
    #  requestPayment()
    # ═══════════════════════════════════════════════════════

    @_transaction_race("request payment for")
    async def request_payment(
        self,
        transaction_id: uuid.UUID,
        actor_id: uuid.UUID,
        method: PaymentMethod = PaymentMethod.PIX,
    ) -> PaymentRequestResult:
        """
        Ask the processor for a charge of ``buyer_total``.

        A processor failure is recorded as a FAILED payment and reported on
        the result; the transaction stays INITIATED so the buyer can retry.
        """
        deadline_lapsed = False
        async with self._sessions() as session:
            async with session.begin():
                txn = await self.lock_transaction(session, transaction_id)
                if txn.buyer_id != actor_id:
                    raise NotAuthorized("Only the buyer can pay for this transaction.")
                if txn.status != TransactionStatus.INITIATED:
                    raise InvalidTransactionState(txn.id, txn.status.value, "request payment for")

                now = self._now()
                if txn.payment_deadline <= now:
                    advance(txn, TransactionStatus.CANCELLED, "cancel")
                    txn.cancelled_at = now
                    txn.cancellation_reason = "payment deadline expired"
                    await session.flush()
                    deadline_lapsed = True
                else:
                    buyer = await session.get(User, txn.buyer_id)
                    payment = Payment(
                        transaction_id=txn.id,
                        payer_id=txn.buyer_id,
                        payee_id=txn.seller_id,
                        method=method,
                        gross_amount=txn.buyer_total,
                        net_amount=txn.seller_net,
                    )
                    error = None
                    try:
                        charge = await self.payments.create_charge(
                            decrypt_pii(buyer.tax_id_encrypted), txn.buyer_total, method, txn.code,
                        )
                    except Exception as exc:
                        error = describe_failure(exc)
                        payment.status = PaymentStatus.FAILED
                        payment.failure_reason = error
                        logger.error("❌ Charge creation failed for %s: %s", txn.code, error)
                    else:
                        payment.status = PaymentStatus.PENDING
                        payment.external_id = charge.external_id
                        payment.checkout_payload = charge.payload
                        advance(txn, TransactionStatus.AWAITING_PAYMENT, "request payment for")
                    session.add(payment)
                    await session.flush()

        if deadline_lapsed:
            logger.info("⌛ Transaction %s cancelled lazily, payment deadline passed", txn.code)
            self.notify_parties([txn.buyer_id, txn.seller_id], "transaction_cancelled", txn)
            raise PaymentDeadlineExpired(txn.id)

        if error is None:
            logger.info("💳 Payment %s requested for %s (%s %s)", payment.external_id, txn.code, method.value, txn.buyer_total)
            self.notify_parties([txn.buyer_id], "payment_requested", txn, method=method.value)
        return PaymentRequestResult(transaction=txn, payment=payment, error=error)

    # ═══════════════════════════════════════════════════════
    #  Settlement callbacks
    # ═══════════════════════════════════════════════════════

    async def _record_event(
        self, session: AsyncSession, event: str, external_id: str, payload: Optional[dict],
    ) -> bool:
        """Insert into the callback ledger; False when the key was already processed."""
        key = f"{event}_{external_id}"
        seen = await session.scalar(select(WebhookEvent.id).where(WebhookEvent.event_key == key))
        if seen is not None:
            return False
        session.add(WebhookEvent(
            event_key=key,
            event=event,
            external_id=external_id,
            payload=json.dumps(payload, default=str) if payload is not None else None,
        ))
        await session.flush()
        return True

    async def _lock_payment(self, session: AsyncSession, external_id: str) -> Optional[Payment]:
        return await session.scalar(
            select(Payment).where(Payment.external_id == external_id).with_for_update()
        )

    @_charge_race
    async def on_payment_settled(
        self, external_id: str, event: str = "PAYMENT_CONFIRMED", payload: Optional[dict] = None,
    ) -> str:
        """
        AWAITING_PAYMENT → PAYMENT_CONFIRMED → ESCROW_HELD, exactly once per charge.

        A charge we do not know yet is not written to the ledger, so the
        processor's redelivery is processed once the Payment row exists.
        Money captured on a charge that can no longer be honored (failed,
        cancelled or superseded) is sent back through the processor.
        """
        stranded = None
        try:
            async with self._sessions() as session:
                async with session.begin():
                    payment = await self._lock_payment(session, external_id)
                    if payment is None:
                        logger.warning("Settlement for unknown charge %s not recorded", external_id)
                        return IGNORED

                    if not await self._record_event(session, event, external_id, payload):
                        logger.info("Duplicate settlement %s for %s absorbed", event, external_id)
                        return DUPLICATE
                    if payment.status in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED):
                        logger.info("Charge %s already %s, replay absorbed", external_id, payment.status.value)
                        return DUPLICATE

                    txn = await self.lock_transaction(session, payment.transaction_id)
                    if payment.status != PaymentStatus.PENDING or txn.status != TransactionStatus.AWAITING_PAYMENT:
                        logger.error(
                            "❌ Charge %s (%s) settled while %s is %s, refunding %s",
                            external_id, payment.status.value, txn.code, txn.status.value, payment.gross_amount,
                        )
                        payment.status = PaymentStatus.REFUNDED
                        payment.paid_at = self._now()
                        stranded = payment
                        await session.flush()
                    else:
                        await self._hold_escrow(session, payment, txn)
        except IntegrityError:
            logger.info("Concurrent delivery of %s for %s absorbed", event, external_id)
            return DUPLICATE

        if stranded is not None:
            self.refund_in_background(stranded.external_id, Decimal(stranded.gross_amount))
            self.notify_parties([txn.buyer_id], "payment_refunded", txn, external_id=external_id)
            return IGNORED

        logger.info("🔒 Escrow held for %s (%s)", txn.code, txn.buyer_total)
        self.notify_parties([txn.buyer_id, txn.seller_id], "payment_confirmed", txn)
        return APPLIED

    async def _hold_escrow(self, session: AsyncSession, payment: Payment, txn: Transaction) -> None:
        now = self._now()
        payment.status = PaymentStatus.SUCCEEDED
        payment.paid_at = now

        advance(txn, TransactionStatus.PAYMENT_CONFIRMED, "confirm payment for")
        txn.payment_confirmed_at = now
        await session.flush()

        advance(txn, TransactionStatus.ESCROW_HELD, "hold escrow for")
        txn.escrow_held_at = now
        await session.flush()

        await self.move_listing(session, txn.listing_id, [ListingStatus.ACTIVE], ListingStatus.RESERVED)

    @_charge_race
    async def on_payment_failed(
        self, external_id: str, reason: str, event: str = "PAYMENT_FAILED", payload: Optional[dict] = None,
    ) -> str:
        """The charge will not settle: back to INITIATED so the buyer can retry before the deadline."""
        try:
            async with self._sessions() as session:
                async with session.begin():
                    payment = await self._lock_payment(session, external_id)
                    if payment is None:
                        logger.warning("Failure callback for unknown charge %s not recorded", external_id)
                        return IGNORED
                    if not await self._record_event(session, event, external_id, payload):
                        return DUPLICATE
                    if payment.status != PaymentStatus.PENDING:
                        logger.warning("Failure callback for %s charge %s ignored", payment.status.value, external_id)
                        return IGNORED

                    payment.status = PaymentStatus.FAILED
                    payment.failure_reason = reason

                    txn = await self.lock_transaction(session, payment.transaction_id)
                    if txn.status == TransactionStatus.AWAITING_PAYMENT:
                        advance(txn, TransactionStatus.INITIATED, "reopen payment for")
                    await session.flush()
        except IntegrityError:
            return DUPLICATE

        logger.info("Charge %s for %s failed: %s", external_id, txn.code, reason)
        self.notify_parties([txn.buyer_id], "payment_failed", txn, reason=reason)
        return APPLIED

    @_charge_race
    async def on_payment_refunded(
        self, external_id: str, event: str = "PAYMENT_REFUNDED", payload: Optional[dict] = None,
    ) -> str:
        """The processor refunded a settled charge on its own initiative."""
        try:
            async with self._sessions() as session:
                async with session.begin():
                    payment = await self._lock_payment(session, external_id)
                    if payment is None:
                        logger.warning("Refund callback for unknown charge %s not recorded", external_id)
                        return IGNORED
                    if not await self._record_event(session, event, external_id, payload):
                        return DUPLICATE
                    if payment.status == PaymentStatus.REFUNDED:
                        return DUPLICATE
                    payment.status = PaymentStatus.REFUNDED

                    txn = await self.lock_transaction(session, payment.transaction_id)
                    reopened = txn.status in REFUNDABLE
                    if reopened:
                        advance(txn, TransactionStatus.REFUNDED, "refund")
                        txn.refunded_at = self._now()
                        txn.cancellation_reason = "refunded by payment processor"
                    await session.flush()
                    if reopened:
                        await self.move_listing(session, txn.listing_id, [ListingStatus.RESERVED], ListingStatus.ACTIVE)
        except IntegrityError:
            return DUPLICATE

        logger.info("💸 Charge %s refunded by processor (%s now %s)", external_id, txn.code, txn.status.value)
        self.notify_parties([txn.buyer_id, txn.seller_id], "transaction_refunded", txn)
        return APPLIED

    # ═══════════════════════════════════════════════════════
    #  Custody transitions
    # ═══════════════════════════════════════════════════════

    @_transaction_race("mark transfer for")
    async def mark_seller_transferred(self, transaction_id: uuid.UUID, actor_id: uuid.UUID) -> Transaction:
        """Seller attests the reservation was transferred; starts the auto-release window."""
        async with self._sessions() as session:
            async with session.begin():
                txn = await self.lock_transaction(session, transaction_id)
                if txn.seller_id != actor_id:
                    raise NotAuthorized("Only the seller can mark the transfer.")
                if txn.status != TransactionStatus.ESCROW_HELD:
                    raise InvalidTransactionState(txn.id, txn.status.value, "mark transfer for")

                now = self._now()
                advance(txn, TransactionStatus.TRANSFER_PENDING, "mark transfer for")
                txn.seller_transferred_at = now
                txn.auto_release_at = add_business_days(now, self.settings.AUTO_RELEASE_BUSINESS_DAYS)
                await session.flush()

        logger.info("📦 Transfer marked for %s, auto-release at %s", txn.code, txn.auto_release_at)
        self.notify_parties([txn.buyer_id, txn.seller_id], "transfer_marked", txn,
                     auto_release_at=txn.auto_release_at.isoformat())
        return txn

    async def _complete(self, session: AsyncSession, txn: Transaction, auto: bool) -> None:
        now = self._now()
        action = "auto-release" if auto else "confirm"
        advance(txn, TransactionStatus.COMPLETED, action)
        txn.completed_at = now
        txn.auto_released = auto
        if not auto:
            txn.buyer_confirmed_at = now
        await session.flush()

        await self.credit_seller(session, txn.seller_id, Decimal(txn.seller_net))
        await self.move_listing(
            session, txn.listing_id, [ListingStatus.RESERVED, ListingStatus.ACTIVE], ListingStatus.SOLD,
        )

    @_transaction_race("confirm")
    async def confirm_by_buyer(self, transaction_id: uuid.UUID, actor_id: uuid.UUID) -> Transaction:
        """Buyer confirms receipt; the seller net is released to the seller's ledger."""
        async with self._sessions() as session:
            async with session.begin():
                txn = await self.lock_transaction(session, transaction_id)
                if txn.buyer_id != actor_id:
                    raise NotAuthorized("Only the buyer can confirm the transfer.")
                if txn.status != TransactionStatus.TRANSFER_PENDING:
                    raise InvalidTransactionState(txn.id, txn.status.value, "confirm")
                await self._complete(session, txn, auto=False)

        logger.info("✅ %s completed by buyer, %s released to seller %s", txn.code, txn.seller_net, txn.seller_id)
        self.notify_parties([txn.buyer_id, txn.seller_id], "transaction_completed", txn)
        return txn

    async def auto_release(self, transaction_id: uuid.UUID) -> bool:
        """
        System-attributed completion of an elapsed TRANSFER_PENDING transaction.
        Returns False (no-op) when it is not eligible or another writer won.
        """
        try:
            async with self._sessions() as session:
                async with session.begin():
                    txn = await self.lock_transaction(session, transaction_id)
                    if txn.status != TransactionStatus.TRANSFER_PENDING:
                        return False
                    if txn.auto_release_at is None or txn.auto_release_at > self._now():
                        return False
                    await self._complete(session, txn, auto=True)
        except StateConflictError as exc:
            logger.info("Auto-release of %s skipped: %s", transaction_id, exc.message)
            return False
        except StaleDataError:
            logger.info("Auto-release of %s skipped: completed concurrently", transaction_id)
            return False

        logger.info("⏰ %s auto-released, %s credited to seller %s", txn.code, txn.seller_net, txn.seller_id)
        self.notify_parties([txn.buyer_id, txn.seller_id], "transaction_completed", txn, auto_released=True)
        return True

    async def run_auto_release(self) -> int:
        """Sweep: release every TRANSFER_PENDING transaction whose window elapsed."""
        async with self._sessions() as session:
            due: List[uuid.UUID] = list(await session.scalars(
                select(Transaction.id).where(
                    Transaction.status == TransactionStatus.TRANSFER_PENDING,
                    Transaction.auto_release_at <= self._now(),
                )
            ))

        released = 0
        for transaction_id in due:
            if await self.auto_release(transaction_id):
                released += 1
        if due:
            logger.info("⏰ Auto-release sweep: %d/%d released", released, len(due))
        return released

    # ═══════════════════════════════════════════════════════
    #  Cancellation & refunds
    # ═══════════════════════════════════════════════════════

    @_transaction_race("cancel")
    async def _cancel_unit(self, transaction_id: uuid.UUID, reason: str, actor: Optional[User]) -> Transaction:
        async with self._sessions() as session:
            async with session.begin():
                txn = await self.lock_transaction(session, transaction_id)
                if actor is not None and not (
                    actor.id in (txn.buyer_id, txn.seller_id) or actor.is_authority
                ):
                    raise NotAuthorized("Only participants can cancel this transaction.")
                if txn.status not in CANCELLABLE:
                    raise InvalidTransactionState(txn.id, txn.status.value, "cancel")

                advance(txn, TransactionStatus.CANCELLED, "cancel")
                txn.cancelled_at = self._now()
                txn.cancellation_reason = reason
                await session.flush()

                await session.execute(
                    update(Payment)
                    .where(Payment.transaction_id == txn.id, Payment.status == PaymentStatus.PENDING)
                    .values(status=PaymentStatus.FAILED, failure_reason="transaction cancelled")
                )

        logger.info("🛑 %s cancelled: %s", txn.code, reason)
        self.notify_parties([txn.buyer_id, txn.seller_id], "transaction_cancelled", txn, reason=reason)
        return txn

    async def cancel(self, transaction_id: uuid.UUID, actor: User, reason: str) -> Transaction:
        """Plain cancellation, allowed only before money has moved."""
        return await self._cancel_unit(transaction_id, reason, actor)

    async def expire_unpaid(self) -> int:
        """Sweep: cancel transactions whose payment deadline passed without settlement."""
        async with self._sessions() as session:
            overdue: List[uuid.UUID] = list(await session.scalars(
                select(Transaction.id).where(
                    Transaction.status.in_(list(CANCELLABLE)),
                    Transaction.payment_deadline <= self._now(),
                )
            ))

        cancelled = 0
        for transaction_id in overdue:
            try:
                await self._cancel_unit(transaction_id, "payment deadline expired", None)
                cancelled += 1
            except StateConflictError as exc:
                logger.info("Deadline expiry of %s skipped: %s", transaction_id, exc.message)
        return cancelled

    @_transaction_race("refund")
    async def refund(self, transaction_id: uuid.UUID, actor: User, reason: str) -> Transaction:
        """Authority-driven refund after payment; reactivates the listing."""
        if not actor.is_authority:
            raise NotAuthorized("Only a mediator or admin can refund a transaction.")

        async with self._sessions() as session:
            async with session.begin():
                txn = await self.lock_transaction(session, transaction_id)
                if txn.status not in REFUNDABLE:
                    raise InvalidTransactionState(txn.id, txn.status.value, "refund")

                advance(txn, TransactionStatus.REFUNDED, "refund")
                txn.refunded_at = self._now()
                txn.cancellation_reason = reason
                await session.flush()

                payment = await session.scalar(
                    select(Payment)
                    .where(Payment.transaction_id == txn.id, Payment.status == PaymentStatus.SUCCEEDED)
                    .with_for_update()
                )
                if payment is not None:
                    payment.status = PaymentStatus.REFUNDED
                    await session.flush()
                await self.move_listing(session, txn.listing_id, [ListingStatus.RESERVED], ListingStatus.ACTIVE)

        logger.info("💸 %s refunded by %s: %s", txn.code, actor.email, reason)
        if payment is not None:
            self.refund_in_background(payment.external_id, Decimal(payment.gross_amount))
        self.notify_parties([txn.buyer_id, txn.seller_id], "transaction_refunded", txn, reason=reason)
        return txn

    # ═══════════════════════════════════════════════════════
    #  Dispute hooks (called inside the dispute's unit of work)
    # ═══════════════════════════════════════════════════════

    async def enter_dispute(self, session: AsyncSession, txn: Transaction) -> None:
        advance(txn, TransactionStatus.DISPUTE_OPENED, "open a dispute on")
        await session.flush()

    async def leave_dispute(
        self,
        session: AsyncSession,
        txn: Transaction,
        buyer_refund: Decimal,
        seller_credit: Decimal,
    ) -> Optional[Payment]:
        """
        DISPUTE_OPENED → DISPUTE_RESOLVED with the decided fund movement.
        Returns the settled payment when the buyer is owed a refund.
        """
        advance(txn, TransactionStatus.DISPUTE_RESOLVED, "resolve the dispute on")
        txn.completed_at = self._now()
        await session.flush()

        await self.credit_seller(session, txn.seller_id, seller_credit)

        payment = None
        if buyer_refund > 0:
            payment = await session.scalar(
                select(Payment)
                .where(Payment.transaction_id == txn.id, Payment.status == PaymentStatus.SUCCEEDED)
                .with_for_update()
            )
            if payment is not None and buyer_refund >= Decimal(payment.gross_amount):
                payment.status = PaymentStatus.REFUNDED
                await session.flush()

        if seller_credit > 0:
            await self.move_listing(session, txn.listing_id, [ListingStatus.RESERVED], ListingStatus.SOLD)
        else:
            await self.move_listing(session, txn.listing_id, [ListingStatus.RESERVED], ListingStatus.ACTIVE)
        return payment

    # ═══════════════════════════════════════════════════════
    #  Reads
    # ═══════════════════════════════════════════════════════

    async def get_transaction(self, transaction_id: uuid.UUID, viewer: User) -> Transaction:
        async with self._sessions() as session:
            txn = await session.get(Transaction, transaction_id)
        if txn is None:
            raise NotFoundError("Transaction", transaction_id)
        if viewer.id not in (txn.buyer_id, txn.seller_id) and not viewer.is_authority:
            raise NotAuthorized("Only participants can view this transaction.")
        return txn

    async def list_for_user(self, user_id: uuid.UUID) -> List[Transaction]:
        async with self._sessions() as session:
            result = await session.scalars(
                select(Transaction)
                .where((Transaction.buyer_id == user_id) | (Transaction.seller_id == user_id))
                .order_by(Transaction.created_at.desc())
            )
            return list(result)

    async def list_payments(self, transaction_id: uuid.UUID) -> List[Payment]:
        async with self._sessions() as session:
            result = await session.scalars(
                select(Payment)
                .where(Payment.transaction_id == transaction_id)
                .order_by(Payment.created_at)
            )
            return list(result)
