"""
EventSwap Platform - Payment Adapter
Boundary to the external payment processor. The processor creates a charge
synchronously and reports settlement later through the webhook router.

Every call is bounded by the adapter's own timeout; timeouts and processor
errors surface as PaymentAdapterError.
"""
import asyncio
import hashlib
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from eventswap.exceptions import PaymentAdapterError
from eventswap.models import PaymentMethod

logger = logging.getLogger("eventswap.payments")


@dataclass(frozen=True)
class ChargeResult:
    external_id: str
    payload: str  # PIX copy-paste code, boleto line or card redirect URL


class PaymentAdapter(ABC):
    """Abstract payment processor client."""

    timeout_seconds: float = 15.0

    async def create_charge(
        self,
        payer_identity: str,
        amount: Decimal,
        method: PaymentMethod,
        reference: str,
    ) -> ChargeResult:
        try:
            return await asyncio.wait_for(
                self._create_charge(payer_identity, amount, method, reference),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise PaymentAdapterError(
                f"Payment processor timed out after {self.timeout_seconds}s",
                {"reference": reference},
            )

    async def refund_charge(self, external_id: str, amount: Decimal) -> None:
        try:
            await asyncio.wait_for(
                self._refund_charge(external_id, amount),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise PaymentAdapterError(
                f"Refund timed out after {self.timeout_seconds}s",
                {"external_id": external_id},
            )

    @abstractmethod
    async def _create_charge(
        self,
        payer_identity: str,
        amount: Decimal,
        method: PaymentMethod,
        reference: str,
    ) -> ChargeResult:
        ...

    @abstractmethod
    async def _refund_charge(self, external_id: str, amount: Decimal) -> None:
        ...


# Payer tax ids that make the mock processor decline the charge
DECLINE_IDENTITIES = {
    "00000000000": "invalid_payer_document",
    "11111111111": "payer_blocked",
}


class MockPaymentProcessor(PaymentAdapter):
    """
    In-process stand-in for the real processor (development and demos).

    - Tax ids listed in DECLINE_IDENTITIES are declined
    - Everything else returns a pending charge with a deterministic payload
    """

    def __init__(self, checkout_base_url: str = "https://pay.eventswap.local/checkout"):
        self.checkout_base_url = checkout_base_url
        self.refunds: list[tuple[str, Decimal]] = []

    async def _create_charge(
        self,
        payer_identity: str,
        amount: Decimal,
        method: PaymentMethod,
        reference: str,
    ) -> ChargeResult:
        digits = "".join(ch for ch in payer_identity if ch.isdigit())
        if digits in DECLINE_IDENTITIES:
            raise PaymentAdapterError(
                "Charge declined by processor",
                {"reason": DECLINE_IDENTITIES[digits], "reference": reference},
            )

        external_id = f"pay_{uuid.uuid4().hex[:20]}"
        fingerprint = hashlib.sha256(f"{external_id}:{amount}".encode("utf-8")).hexdigest()

        if method == PaymentMethod.PIX:
            payload = f"00020126580014BR.GOV.BCB.PIX0136{fingerprint[:36]}5204000053039865406{amount}"
        elif method == PaymentMethod.BOLETO:
            payload = " ".join(
                str(int(fingerprint[i:i + 10], 16))[:10] for i in range(0, 40, 10)
            )
        else:
            payload = f"{self.checkout_base_url}/{external_id}"

        logger.info("💳 Mock charge %s created: %s %s for %s", external_id, method.value, amount, reference)
        return ChargeResult(external_id=external_id, payload=payload)

    async def _refund_charge(self, external_id: str, amount: Decimal) -> None:
        self.refunds.append((external_id, amount))
        logger.info("💸 Mock refund of %s issued for %s", amount, external_id)


def describe_failure(exc: Exception) -> Optional[str]:
    """Short reason string stored on a failed Payment row."""
    if isinstance(exc, PaymentAdapterError):
        reason = exc.details.get("reason")
        return f"{exc.message} ({reason})" if reason else exc.message
    return str(exc) or exc.__class__.__name__
