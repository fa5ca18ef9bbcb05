"""
EventSwap Platform - Escrow Transaction Router
Thin HTTP layer over the escrow engine: every guard and state change lives
in EscrowService, domain errors are mapped to status codes by the app.
"""
import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Request, status

from eventswap.auth import get_current_user, require_authority
from eventswap.dependencies import get_escrow_service
from eventswap.middleware.rate_limit import RATE_LIMIT_WRITE, limiter
from eventswap.models import User
from eventswap.schemas.escrow import (
    CheckoutResponse,
    PaymentRequest,
    PaymentResponse,
    ReasonRequest,
    TransactionCreateRequest,
    TransactionResponse,
)
from eventswap.services.escrow import EscrowService, PaymentRequestResult

logger = logging.getLogger("eventswap.api")

router = APIRouter(prefix="/api/transactions", tags=["Transactions"])


def _checkout(result: PaymentRequestResult) -> CheckoutResponse:
    return CheckoutResponse(
        transaction=TransactionResponse.model_validate(result.transaction),
        payment=PaymentResponse.model_validate(result.payment),
        payment_pending_retry=result.pending_retry,
        payment_error=result.error,
    )


@router.post("", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(RATE_LIMIT_WRITE)
async def create_transaction(
    request: Request,
    payload: TransactionCreateRequest,
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow_service),
):
    """
    Buy a listing at its asking price and immediately request the charge.

    A processor failure does not undo the transaction: the response carries
    ``payment_pending_retry`` and the buyer retries through /pay.
    """
    txn = await escrow.create_transaction(payload.listing_id, user.id)
    result = await escrow.request_payment(txn.id, user.id, payload.method)
    return _checkout(result)


@router.get("", response_model=List[TransactionResponse])
async def list_my_transactions(
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow_service),
):
    return [TransactionResponse.model_validate(t) for t in await escrow.list_for_user(user.id)]


@router.get("/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: UUID,
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow_service),
):
    return TransactionResponse.model_validate(await escrow.get_transaction(transaction_id, user))


@router.get("/{transaction_id}/payments", response_model=List[PaymentResponse])
async def list_payments(
    transaction_id: UUID,
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow_service),
):
    await escrow.get_transaction(transaction_id, user)
    return [PaymentResponse.model_validate(p) for p in await escrow.list_payments(transaction_id)]


@router.post("/{transaction_id}/pay", response_model=CheckoutResponse)
@limiter.limit(RATE_LIMIT_WRITE)
async def pay(
    request: Request,
    transaction_id: UUID,
    payload: PaymentRequest,
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow_service),
):
    """Retry (or first attempt of) the charge for an INITIATED transaction."""
    return _checkout(await escrow.request_payment(transaction_id, user.id, payload.method))


@router.post("/{transaction_id}/cancel", response_model=TransactionResponse)
async def cancel_transaction(
    transaction_id: UUID,
    payload: ReasonRequest,
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow_service),
):
    return TransactionResponse.model_validate(await escrow.cancel(transaction_id, user, payload.reason))


@router.post("/{transaction_id}/transferred", response_model=TransactionResponse)
async def mark_transferred(
    transaction_id: UUID,
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow_service),
):
    """Seller attests the reservation was handed over at the venue."""
    return TransactionResponse.model_validate(await escrow.mark_seller_transferred(transaction_id, user.id))


@router.post("/{transaction_id}/confirm", response_model=TransactionResponse)
async def confirm_receipt(
    transaction_id: UUID,
    user: User = Depends(get_current_user),
    escrow: EscrowService = Depends(get_escrow_service),
):
    return TransactionResponse.model_validate(await escrow.confirm_by_buyer(transaction_id, user.id))


@router.post("/{transaction_id}/refund", response_model=TransactionResponse)
async def refund_transaction(
    transaction_id: UUID,
    payload: ReasonRequest,
    authority: User = Depends(require_authority),
    escrow: EscrowService = Depends(get_escrow_service),
):
    return TransactionResponse.model_validate(await escrow.refund(transaction_id, authority, payload.reason))
