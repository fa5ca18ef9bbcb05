"""
EventSwap Platform - Escrow Transaction Pydantic Schemas
Request/response models for transactions, payments and processor callbacks.
"""
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from eventswap.models import PaymentMethod, PaymentStatus, TransactionStatus


class TransactionCreateRequest(BaseModel):
    """Direct purchase of a listing at its asking price."""

    model_config = {"extra": "forbid"}

    listing_id: UUID
    method: PaymentMethod = PaymentMethod.PIX


class PaymentRequest(BaseModel):
    model_config = {"extra": "forbid"}

    method: PaymentMethod = PaymentMethod.PIX


class ReasonRequest(BaseModel):
    """Body for cancel / refund."""

    model_config = {"extra": "forbid"}

    reason: str = Field(..., min_length=3, max_length=500)


class PaymentResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: UUID
    external_id: Optional[str] = None
    method: PaymentMethod
    gross_amount: float
    status: PaymentStatus
    checkout_payload: Optional[str] = None
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None


class TransactionResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: UUID
    code: str
    listing_id: UUID
    buyer_id: UUID
    seller_id: UUID
    offer_id: Optional[UUID] = None
    agreed_price: float
    platform_fee: float
    platform_fee_rate: float
    seller_net: float
    buyer_fee: float
    buyer_total: float
    status: TransactionStatus
    needs_review: bool
    payment_deadline: datetime
    auto_release_at: Optional[datetime] = None
    auto_released: bool = False
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None


class CheckoutResponse(BaseModel):
    """Transaction plus the outcome of the payment attempt."""

    transaction: TransactionResponse
    payment: Optional[PaymentResponse] = None
    payment_pending_retry: bool = False
    payment_error: Optional[str] = None


# ═══════════════════════════════════════════════════════
#  Payment processor callback
# ═══════════════════════════════════════════════════════


class WebhookPayment(BaseModel):
    id: str = Field(..., description="Processor charge reference")
    status: Optional[str] = None
    failure_reason: Optional[str] = Field(None, alias="failureReason")


class PaymentWebhook(BaseModel):
    """Callback body sent by the processor; unknown fields are tolerated."""

    event: str = Field(..., examples=["PAYMENT_CONFIRMED"])
    payment: WebhookPayment


class WebhookAck(BaseModel):
    received: bool = True
    result: str
    detail: Optional[Dict[str, Any]] = None
