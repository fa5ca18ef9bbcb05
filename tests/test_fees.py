from decimal import Decimal

import pytest

from eventswap.services.fees import compute_buyer_total, compute_fees, round2


class TestRound2:
    def test_half_up(self):
        assert round2(Decimal("0.005")) == Decimal("0.01")
        assert round2(Decimal("2.345")) == Decimal("2.35")
        assert round2(Decimal("2.344")) == Decimal("2.34")

    def test_accepts_strings_and_ints(self):
        assert round2("10") == Decimal("10.00")
        assert round2(7) == Decimal("7.00")


class TestSellerFees:
    def test_rate_applies_above_floor(self):
        fees = compute_fees(Decimal("1000"), seller_fee_percent=Decimal("12"), minimum_fee=Decimal("2.00"))
        assert fees.platform_fee == Decimal("120.00")
        assert fees.seller_net == Decimal("880.00")
        assert fees.platform_fee_rate == Decimal("12")

    def test_intermediate_is_rounded(self):
        fees = compute_fees(Decimal("99.99"), seller_fee_percent=Decimal("12"), minimum_fee=Decimal("2.00"))
        # 99.99 * 12% = 11.9988 -> 12.00
        assert fees.platform_fee == Decimal("12.00")
        assert fees.seller_net == Decimal("87.99")

    def test_minimum_fee_floor(self):
        fees = compute_fees(Decimal("10"), seller_fee_percent=Decimal("5"), minimum_fee=Decimal("2.00"))
        assert fees.platform_fee == Decimal("2.00")
        assert fees.seller_net == Decimal("8.00")

    def test_defaults_come_from_settings(self, settings):
        fees = compute_fees(Decimal("1000"))
        assert fees.platform_fee_rate == settings.SELLER_FEE_PERCENT
        assert fees.platform_fee == max(settings.MINIMUM_FEE, round2(Decimal("1000") * settings.SELLER_FEE_PERCENT / 100))

    @pytest.mark.parametrize("price", ["0.01", "1", "33.33", "57.77", "999.99", "12345.67", "500000"])
    def test_net_plus_fee_equals_price(self, price, settings):
        fees = compute_fees(Decimal(price))
        assert fees.seller_net + fees.platform_fee == round2(Decimal(price))
        assert fees.platform_fee >= settings.MINIMUM_FEE


class TestBuyerTotal:
    @pytest.mark.parametrize(
        "price, fee, total",
        [
            ("1000", "50.00", "1050.00"),
            ("50", "2.50", "52.50"),
            ("99.99", "5.00", "104.99"),
        ],
    )
    def test_surcharge(self, price, fee, total):
        charge = compute_buyer_total(Decimal(price), buyer_fee_percent=Decimal("5"))
        assert charge.buyer_fee == Decimal(fee)
        assert charge.buyer_total == Decimal(total)
