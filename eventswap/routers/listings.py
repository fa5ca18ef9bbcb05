"""
EventSwap Platform - Listing & Offer Routers
"""
import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status

from eventswap.auth import get_current_user
from eventswap.dependencies import get_listing_service, get_offer_service
from eventswap.middleware.rate_limit import RATE_LIMIT_WRITE, limiter
from eventswap.models import User
from eventswap.schemas.marketplace import (
    ListingCreateRequest,
    ListingResponse,
    OfferCreateRequest,
    OfferRespondRequest,
    OfferRespondResponse,
    OfferResponse,
)
from eventswap.services.listings import ListingService
from eventswap.services.offers import OfferService

logger = logging.getLogger("eventswap.api")

listings_router = APIRouter(prefix="/api/listings", tags=["Listings"])
offers_router = APIRouter(prefix="/api/offers", tags=["Offers"])


# ═══════════════════════════════════════════════════════
#  Listings
# ═══════════════════════════════════════════════════════


@listings_router.post("", response_model=ListingResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(RATE_LIMIT_WRITE)
async def create_listing(
    request: Request,
    payload: ListingCreateRequest,
    user: User = Depends(get_current_user),
    listings: ListingService = Depends(get_listing_service),
):
    listing = await listings.create_listing(user.id, **payload.model_dump())
    return ListingResponse.model_validate(listing)


@listings_router.post("/{listing_id}/activate", response_model=ListingResponse)
async def activate_listing(
    listing_id: UUID,
    user: User = Depends(get_current_user),
    listings: ListingService = Depends(get_listing_service),
):
    """Publish a DRAFT listing; risk screening may hold it for review."""
    listing = await listings.activate_listing(listing_id, user.id)
    return ListingResponse.model_validate(listing)


@listings_router.get("/{listing_id}", response_model=ListingResponse)
async def get_listing(listing_id: UUID, listings: ListingService = Depends(get_listing_service)):
    return ListingResponse.model_validate(await listings.get_listing(listing_id))


@listings_router.get("/{listing_id}/offers", response_model=List[OfferResponse])
async def list_offers(
    listing_id: UUID,
    user: User = Depends(get_current_user),
    offers: OfferService = Depends(get_offer_service),
):
    return [OfferResponse.model_validate(o) for o in await offers.list_for_listing(listing_id, user)]


# ═══════════════════════════════════════════════════════
#  Offers
# ═══════════════════════════════════════════════════════


@offers_router.post("", response_model=OfferResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(RATE_LIMIT_WRITE)
async def create_offer(
    request: Request,
    payload: OfferCreateRequest,
    user: User = Depends(get_current_user),
    offers: OfferService = Depends(get_offer_service),
):
    offer = await offers.create_offer(payload.listing_id, user.id, payload.amount, payload.message)
    return OfferResponse.model_validate(offer)


@offers_router.get("/{offer_id}", response_model=OfferResponse)
async def get_offer(
    offer_id: UUID,
    user: User = Depends(get_current_user),
    offers: OfferService = Depends(get_offer_service),
):
    return OfferResponse.model_validate(await offers.get_offer(offer_id, user))


@offers_router.post("/{offer_id}/respond", response_model=OfferRespondResponse)
@limiter.limit(RATE_LIMIT_WRITE)
async def respond_to_offer(
    request: Request,
    offer_id: UUID,
    payload: OfferRespondRequest,
    user: User = Depends(get_current_user),
    offers: OfferService = Depends(get_offer_service),
):
    """Seller accepts, rejects or counters. Acceptance returns the new transaction."""
    result = await offers.respond(
        offer_id,
        payload.action,
        user.id,
        counter_amount=payload.counter_amount,
        counter_message=payload.counter_message,
    )
    txn = result.transaction
    return OfferRespondResponse(
        offer=OfferResponse.model_validate(result.offer),
        transaction_id=txn.id if txn else None,
        transaction_code=txn.code if txn else None,
    )
