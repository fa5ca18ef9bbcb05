"""
EventSwap Platform - Dispute & Chat Routers
"""
import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status

from eventswap.auth import get_current_user, require_authority
from eventswap.dependencies import get_dispute_service, get_messaging_service
from eventswap.middleware.rate_limit import RATE_LIMIT_CHAT, RATE_LIMIT_WRITE, limiter
from eventswap.models import User
from eventswap.schemas.disputes import (
    DisputeOpenRequest,
    DisputeResolveRequest,
    DisputeResponse,
    MessageResponse,
    MessageSendRequest,
    MessageSendResponse,
)
from eventswap.services.disputes import DisputeService
from eventswap.services.messaging import MessagingService

logger = logging.getLogger("eventswap.api")

disputes_router = APIRouter(prefix="/api/disputes", tags=["Disputes"])
messages_router = APIRouter(prefix="/api/messages", tags=["Messages"])


# ═══════════════════════════════════════════════════════
#  Disputes
# ═══════════════════════════════════════════════════════


@disputes_router.post("", response_model=DisputeResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(RATE_LIMIT_WRITE)
async def open_dispute(
    request: Request,
    payload: DisputeOpenRequest,
    user: User = Depends(get_current_user),
    disputes: DisputeService = Depends(get_dispute_service),
):
    dispute = await disputes.open_dispute(
        payload.transaction_id, user.id, payload.reason, payload.description, payload.evidence,
    )
    return DisputeResponse.model_validate(dispute)


@disputes_router.get("/{dispute_id}", response_model=DisputeResponse)
async def get_dispute(
    dispute_id: UUID,
    user: User = Depends(get_current_user),
    disputes: DisputeService = Depends(get_dispute_service),
):
    return DisputeResponse.model_validate(await disputes.get_dispute(dispute_id, user))


@disputes_router.get("/by-transaction/{transaction_id}", response_model=List[DisputeResponse])
async def list_disputes(
    transaction_id: UUID,
    user: User = Depends(get_current_user),
    disputes: DisputeService = Depends(get_dispute_service),
):
    return [DisputeResponse.model_validate(d) for d in await disputes.list_for_transaction(transaction_id, user)]


@disputes_router.post("/{dispute_id}/review", response_model=DisputeResponse)
async def start_review(
    dispute_id: UUID,
    authority: User = Depends(require_authority),
    disputes: DisputeService = Depends(get_dispute_service),
):
    return DisputeResponse.model_validate(await disputes.start_review(dispute_id, authority))


@disputes_router.post("/{dispute_id}/resolve", response_model=DisputeResponse)
async def resolve_dispute(
    dispute_id: UUID,
    payload: DisputeResolveRequest,
    authority: User = Depends(require_authority),
    disputes: DisputeService = Depends(get_dispute_service),
):
    dispute = await disputes.resolve(
        dispute_id,
        authority,
        payload.outcome,
        resolution_note=payload.resolution_note,
        split_buyer_share=payload.split_buyer_share,
    )
    return DisputeResponse.model_validate(dispute)


# ═══════════════════════════════════════════════════════
#  Chat
# ═══════════════════════════════════════════════════════


@messages_router.post("/{transaction_id}", response_model=MessageSendResponse)
@limiter.limit(RATE_LIMIT_CHAT)
async def send_message(
    request: Request,
    transaction_id: UUID,
    payload: MessageSendRequest,
    user: User = Depends(get_current_user),
    chat: MessagingService = Depends(get_messaging_service),
):
    """Blocked messages return delivered=false with the reason, not an error."""
    result = await chat.send_message(transaction_id, user.id, payload.content)
    return MessageSendResponse(
        delivered=result.delivered,
        message=MessageResponse.model_validate(result.message) if result.message else None,
        severity=result.analysis.severity.value,
        violations=[v.value for v in result.analysis.violations],
        explanation=result.explanation,
        penalty_level=result.penalty_level.value,
    )


@messages_router.get("/{transaction_id}", response_model=List[MessageResponse])
async def list_messages(
    transaction_id: UUID,
    user: User = Depends(get_current_user),
    chat: MessagingService = Depends(get_messaging_service),
):
    return [MessageResponse.model_validate(m) for m in await chat.list_messages(transaction_id, user)]
