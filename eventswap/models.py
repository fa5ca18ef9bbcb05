"""
EventSwap Platform - SQLAlchemy ORM Models
All tables use UUID primary keys. Money columns are fixed-point Numeric(12, 2).
Status enums store their literal tokens (e.g. ESCROW_HELD) so collaborators
can match on exact strings.
"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)

from eventswap.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ═══════════════════════════════════════════════════════
#  ENUMS
# ═══════════════════════════════════════════════════════


class UserRole(str, enum.Enum):
    MEMBER = "MEMBER"
    MEDIATOR = "MEDIATOR"
    ADMIN = "ADMIN"


AUTHORITY_ROLES = (UserRole.MEDIATOR, UserRole.ADMIN)


class ListingStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PENDING_REVIEW = "PENDING_REVIEW"
    ACTIVE = "ACTIVE"
    RESERVED = "RESERVED"
    SOLD = "SOLD"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    SUSPENDED = "SUSPENDED"


class OfferStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    COUNTERED = "COUNTERED"
    EXPIRED = "EXPIRED"


class TransactionStatus(str, enum.Enum):
    INITIATED = "INITIATED"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    ESCROW_HELD = "ESCROW_HELD"
    TRANSFER_PENDING = "TRANSFER_PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    DISPUTE_OPENED = "DISPUTE_OPENED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"


TERMINAL_TRANSACTION_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.CANCELLED,
    TransactionStatus.REFUNDED,
    TransactionStatus.DISPUTE_RESOLVED,
})

ACTIVE_TRANSACTION_STATUSES = frozenset(TransactionStatus) - TERMINAL_TRANSACTION_STATUSES


class PaymentMethod(str, enum.Enum):
    PIX = "PIX"
    CARD = "CARD"
    BOLETO = "BOLETO"


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class DisputeReason(str, enum.Enum):
    LISTING_MISMATCH = "LISTING_MISMATCH"
    TRANSFER_REJECTED = "TRANSFER_REJECTED"
    MISSING_DOCUMENTATION = "MISSING_DOCUMENTATION"
    PAYMENT_ISSUES = "PAYMENT_ISSUES"
    OTHER = "OTHER"


class DisputeStatus(str, enum.Enum):
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    RESOLVED_BUYER = "RESOLVED_BUYER"
    RESOLVED_SELLER = "RESOLVED_SELLER"
    RESOLVED_SPLIT = "RESOLVED_SPLIT"


OPEN_DISPUTE_STATUSES = frozenset({DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW})


class DisputeOutcome(str, enum.Enum):
    REFUND_BUYER = "REFUND_BUYER"
    RELEASE_SELLER = "RELEASE_SELLER"
    SPLIT = "SPLIT"


def _in_clause(statuses) -> str:
    return "status IN (%s)" % ", ".join(
        "'%s'" % s.value for s in sorted(statuses, key=lambda s: s.value)
    )


# ═══════════════════════════════════════════════════════
#  MODELS
# ═══════════════════════════════════════════════════════


class User(Base):
    """Platform account. Buyer and seller are per-transaction roles, not account roles."""
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    full_name = Column(String(120), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(128), nullable=True)  # passlib bcrypt hash
    tax_id_encrypted = Column(String(512), nullable=True)  # Fernet-encrypted CPF
    role = Column(SAEnum(UserRole, name="user_role_enum"), nullable=False, default=UserRole.MEMBER)
    is_verified = Column(Boolean, default=False)
    balance = Column(Numeric(12, 2), default=0, nullable=False)  # seller ledger
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def has_payer_identity(self) -> bool:
        return bool(self.tax_id_encrypted)

    @property
    def is_authority(self) -> bool:
        return self.role in AUTHORITY_ROLES

    def __repr__(self) -> str:
        return f"<User {self.full_name} ({self.role.value})>"


class Listing(Base):
    """An advertised, transferable event reservation."""
    __tablename__ = "listings"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    seller_id = Column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title = Column(String(200), nullable=False)  # e.g. "Buffet for 80 guests"
    category = Column(String(60), nullable=True)  # e.g. "venue", "photographer"
    event_date = Column(DateTime, nullable=True)
    venue_name = Column(String(200), nullable=True)
    asking_price = Column(Numeric(12, 2), nullable=False)
    original_price = Column(Numeric(12, 2), nullable=True)
    seller_fee_percent = Column(Numeric(5, 2), nullable=True)  # overrides the platform rate
    status = Column(
        SAEnum(ListingStatus, name="listing_status_enum"),
        default=ListingStatus.DRAFT,
        nullable=False,
    )
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Listing {self.title} - {self.status.value}>"


class Offer(Base):
    """A non-binding price proposal by a buyer on a listing."""
    __tablename__ = "offers"
    __table_args__ = (
        Index(
            "uq_offers_one_pending_per_buyer",
            "listing_id",
            "buyer_id",
            unique=True,
            postgresql_where=text("status = 'PENDING'"),
            sqlite_where=text("status = 'PENDING'"),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    listing_id = Column(
        Uuid(as_uuid=True), ForeignKey("listings.id", ondelete="CASCADE"), nullable=False
    )
    buyer_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    seller_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    message = Column(Text, nullable=True)
    status = Column(
        SAEnum(OfferStatus, name="offer_status_enum"),
        default=OfferStatus.PENDING,
        nullable=False,
    )
    counter_amount = Column(Numeric(12, 2), nullable=True)  # set only when COUNTERED
    counter_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    responded_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Offer {self.amount} on {self.listing_id} - {self.status.value}>"


class Transaction(Base):
    """Escrow custody for one agreed sale."""
    __tablename__ = "transactions"
    __table_args__ = (
        Index(
            "uq_transactions_one_active_per_buyer",
            "listing_id",
            "buyer_id",
            unique=True,
            postgresql_where=text(_in_clause(ACTIVE_TRANSACTION_STATUSES)),
            sqlite_where=text(_in_clause(ACTIVE_TRANSACTION_STATUSES)),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = Column(String(20), unique=True, nullable=False)  # TXN-2026-AB12
    listing_id = Column(Uuid(as_uuid=True), ForeignKey("listings.id"), nullable=False)
    buyer_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    seller_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    offer_id = Column(Uuid(as_uuid=True), ForeignKey("offers.id"), nullable=True)

    agreed_price = Column(Numeric(12, 2), nullable=False)
    platform_fee = Column(Numeric(12, 2), nullable=False)
    platform_fee_rate = Column(Numeric(5, 2), nullable=False)  # percent
    seller_net = Column(Numeric(12, 2), nullable=False)
    buyer_fee = Column(Numeric(12, 2), nullable=False)
    buyer_total = Column(Numeric(12, 2), nullable=False)

    status = Column(
        SAEnum(TransactionStatus, name="transaction_status_enum"),
        default=TransactionStatus.INITIATED,
        nullable=False,
    )
    needs_review = Column(Boolean, default=False, nullable=False)  # fraud screening flag

    payment_deadline = Column(DateTime, nullable=False)
    payment_confirmed_at = Column(DateTime, nullable=True)
    escrow_held_at = Column(DateTime, nullable=True)
    seller_transferred_at = Column(DateTime, nullable=True)
    auto_release_at = Column(DateTime, nullable=True)
    buyer_confirmed_at = Column(DateTime, nullable=True)
    auto_released = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Transaction {self.code} - {self.status.value}>"


class Payment(Base):
    """One attempted charge for a transaction. Retries produce new rows."""
    __tablename__ = "payments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(
        Uuid(as_uuid=True), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    payer_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    payee_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    external_id = Column(String(100), unique=True, nullable=True)  # processor reference
    method = Column(SAEnum(PaymentMethod, name="payment_method_enum"), nullable=False)
    gross_amount = Column(Numeric(12, 2), nullable=False)  # buyer total
    net_amount = Column(Numeric(12, 2), nullable=False)  # seller net
    status = Column(
        SAEnum(PaymentStatus, name="payment_status_enum"),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    checkout_payload = Column(Text, nullable=True)  # PIX copy-paste or redirect URL
    failure_reason = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Payment {self.external_id} {self.gross_amount} - {self.status.value}>"


class Dispute(Base):
    """Freezes a transaction's custody until an authority decides."""
    __tablename__ = "disputes"
    __table_args__ = (
        Index(
            "uq_disputes_one_open_per_transaction",
            "transaction_id",
            unique=True,
            postgresql_where=text(_in_clause(OPEN_DISPUTE_STATUSES)),
            sqlite_where=text(_in_clause(OPEN_DISPUTE_STATUSES)),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    protocol = Column(String(20), unique=True, nullable=False)  # DSP-2026-AB12CD
    transaction_id = Column(
        Uuid(as_uuid=True), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    opener_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    reason = Column(SAEnum(DisputeReason, name="dispute_reason_enum"), nullable=False)
    description = Column(Text, nullable=False)
    evidence = Column(JSON, nullable=False, default=list)  # opaque storage references
    status = Column(
        SAEnum(DisputeStatus, name="dispute_status_enum"),
        default=DisputeStatus.OPEN,
        nullable=False,
    )
    outcome = Column(SAEnum(DisputeOutcome, name="dispute_outcome_enum"), nullable=True)
    resolution_note = Column(Text, nullable=True)
    reviewer_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    resolved_by_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    buyer_refund = Column(Numeric(12, 2), nullable=True)
    seller_credit = Column(Numeric(12, 2), nullable=True)
    created_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<Dispute {self.protocol} - {self.status.value}>"


class Message(Base):
    """Chat message between the two participants of a transaction."""
    __tablename__ = "messages"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(
        Uuid(as_uuid=True), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    sender_id = Column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    content = Column(Text, nullable=False)  # sanitized text
    was_filtered = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<Message in {self.transaction_id} by {self.sender_id}>"


class ChatViolation(Base):
    """A blocked chat message, counted towards the sender's penalty level."""
    __tablename__ = "chat_violations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    transaction_id = Column(
        Uuid(as_uuid=True), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    violation_type = Column(String(64), nullable=False)
    snippet = Column(String(120), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<ChatViolation {self.violation_type} by {self.user_id}>"


class WebhookEvent(Base):
    """Ledger of processed payment callbacks; the unique key absorbs replays."""
    __tablename__ = "webhook_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_key = Column(String(160), unique=True, nullable=False)  # "<event>_<external_id>"
    event = Column(String(50), nullable=False)
    external_id = Column(String(100), nullable=False)
    payload = Column(Text, nullable=True)
    processed_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<WebhookEvent {self.event_key}>"


class AuditLog(Base):
    """Immutable audit trail for financial and negotiation state changes."""
    __tablename__ = "audit_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    action = Column(String(20), nullable=False)  # INSERT, UPDATE
    table_name = Column(String(100), nullable=False)  # e.g. "transactions"
    record_id = Column(String(64), nullable=False)  # UUID of the affected row
    changes = Column(Text, nullable=True)  # JSON: {"field": {"old": ..., "new": ...}}
    snapshot = Column(Text, nullable=True)  # JSON: full row snapshot at time of event
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} {self.table_name} [{self.record_id}]>"
