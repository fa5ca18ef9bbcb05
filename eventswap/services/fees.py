"""
EventSwap Platform - Fee Calculator
Turns an agreed price into platform fee, seller net and buyer total.

All amounts are Decimal, rounded half-up to cents at every step so that an
intermediate value is never reused unrounded.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from eventswap.config import get_settings

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

Number = Union[Decimal, int, str]


def round2(value: Number) -> Decimal:
    """Round to two decimal places, half-up."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class SellerFees:
    platform_fee: Decimal
    platform_fee_rate: Decimal  # percent, e.g. Decimal("8")
    seller_net: Decimal


@dataclass(frozen=True)
class BuyerCharge:
    buyer_fee: Decimal
    buyer_total: Decimal


def compute_fees(
    agreed_price: Number,
    seller_fee_percent: Optional[Number] = None,
    minimum_fee: Optional[Number] = None,
) -> SellerFees:
    """
    Platform fee = max(minimum fee, round2(price * rate)),
    seller net = round2(price - platform fee).

    The caller validates ``agreed_price > 0``.
    """
    settings = get_settings()
    price = round2(agreed_price)
    rate = Decimal(
        seller_fee_percent if seller_fee_percent is not None else settings.SELLER_FEE_PERCENT
    )
    floor = round2(minimum_fee if minimum_fee is not None else settings.MINIMUM_FEE)

    fee = max(floor, round2(price * rate / HUNDRED))
    return SellerFees(
        platform_fee=fee,
        platform_fee_rate=rate,
        seller_net=round2(price - fee),
    )


def compute_buyer_total(
    agreed_price: Number,
    buyer_fee_percent: Optional[Number] = None,
) -> BuyerCharge:
    """Buyer surcharge on top of the agreed price."""
    settings = get_settings()
    price = round2(agreed_price)
    rate = Decimal(
        buyer_fee_percent if buyer_fee_percent is not None else settings.BUYER_FEE_PERCENT
    )
    buyer_fee = round2(price * rate / HUNDRED)
    return BuyerCharge(buyer_fee=buyer_fee, buyer_total=round2(price + buyer_fee))
