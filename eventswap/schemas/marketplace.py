"""
EventSwap Platform - Listing & Offer Pydantic Schemas
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from eventswap.models import ListingStatus, OfferStatus
from eventswap.services.offers import OfferAction


# ═══════════════════════════════════════════════════════
#  Listings
# ═══════════════════════════════════════════════════════


class ListingCreateRequest(BaseModel):
    model_config = {"extra": "forbid"}

    title: str = Field(..., min_length=3, max_length=200, examples=["Buffet for 80 guests"])
    asking_price: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    category: Optional[str] = Field(None, max_length=60, examples=["buffet"])
    event_date: Optional[datetime] = None
    venue_name: Optional[str] = Field(None, max_length=200)
    original_price: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    seller_fee_percent: Optional[Decimal] = Field(None, ge=0, le=100, description="Overrides the platform rate")


class ListingResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: UUID
    seller_id: UUID
    title: str
    category: Optional[str] = None
    event_date: Optional[datetime] = None
    venue_name: Optional[str] = None
    asking_price: float
    original_price: Optional[float] = None
    status: ListingStatus
    created_at: Optional[datetime] = None


# ═══════════════════════════════════════════════════════
#  Offers
# ═══════════════════════════════════════════════════════


class OfferCreateRequest(BaseModel):
    model_config = {"extra": "forbid"}

    listing_id: UUID
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    message: Optional[str] = Field(None, max_length=1000)


class OfferRespondRequest(BaseModel):
    model_config = {"extra": "forbid"}

    action: OfferAction
    counter_amount: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)
    counter_message: Optional[str] = Field(None, max_length=1000)


class OfferResponse(BaseModel):
    model_config = {"from_attributes": True}

    id: UUID
    listing_id: UUID
    buyer_id: UUID
    seller_id: UUID
    amount: float
    message: Optional[str] = None
    status: OfferStatus
    counter_amount: Optional[float] = None
    counter_message: Optional[str] = None
    created_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    expires_at: datetime


class OfferRespondResponse(BaseModel):
    offer: OfferResponse
    transaction_id: Optional[UUID] = None
    transaction_code: Optional[str] = None
