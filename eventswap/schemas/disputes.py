"""
EventSwap Platform - Dispute & Chat Pydantic Schemas
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from eventswap.models import DisputeOutcome, DisputeReason, DisputeStatus


# ═══════════════════════════════════════════════════════
#  Disputes
# ═══════════════════════════════════════════════════════


class DisputeOpenRequest(BaseModel):
    """
    Reason and description are checked by the dispute service so the
    caller gets ReasonInvalid / DescriptionTooShort instead of a generic 422.
    """

    model_config = {"extra": "forbid"}

    transaction_id: UUID
    reason: str = Field(..., examples=["TRANSFER_REJECTED"])
    description: str
    evidence: List[str] = Field(default_factory=list, max_length=20)


class DisputeResolveRequest(BaseModel):
    model_config = {"extra": "forbid"}

    outcome: str = Field(..., examples=["REFUND_BUYER"])
    resolution_note: Optional[str] = Field(None, max_length=2000)
    split_buyer_share: Optional[Decimal] = Field(None, description="Fraction refunded to the buyer on SPLIT")


class DisputeResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: UUID
    protocol: str
    transaction_id: UUID
    opener_id: UUID
    reason: DisputeReason
    description: str
    evidence: List[str] = []
    status: DisputeStatus
    outcome: Optional[DisputeOutcome] = None
    resolution_note: Optional[str] = None
    buyer_refund: Optional[float] = None
    seller_credit: Optional[float] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


# ═══════════════════════════════════════════════════════
#  Chat
# ═══════════════════════════════════════════════════════


class MessageSendRequest(BaseModel):
    model_config = {"extra": "forbid"}

    content: str = Field(..., min_length=1, max_length=2000)


class MessageResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: UUID
    transaction_id: UUID
    sender_id: Optional[UUID] = None
    content: str
    was_filtered: bool
    created_at: Optional[datetime] = None


class MessageSendResponse(BaseModel):
    delivered: bool
    message: Optional[MessageResponse] = None
    severity: str
    violations: List[str] = []
    explanation: Optional[str] = None
    penalty_level: str
