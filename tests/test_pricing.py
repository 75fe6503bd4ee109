"""Tests for the pricing calculator."""

from decimal import Decimal

import pytest

from storefront_orders import pricing
from storefront_orders.errors import ValidationError
from storefront_orders.models import DiscountType


def D(value):
    return Decimal(value)


class TestPrice:
    def test_standard_order(self):
        result = pricing.price([(D("500.00"), 1)])
        assert result.subtotal == D("500.00")
        assert result.shipping_cost == D("50.00")
        assert result.tax == D("90.00")
        assert result.total == D("640.00")

    @pytest.mark.parametrize("method", ["standard", "expedited", "overnight", "pickup"])
    @pytest.mark.parametrize("lines", [
        [(D("0.01"), 1)],
        [(D("199.99"), 3), (D("49.50"), 2)],
        [(D("999.99"), 1)],
        [(D("1000.00"), 1)],
        [(D("333.33"), 3), (D("0.005"), 7)],
    ])
    @pytest.mark.parametrize("discount", ["0", "25.00", "0.015", "5000", "-10"])
    def test_total_identity_holds(self, method, lines, discount):
        result = pricing.price(
            lines,
            shipping_method=method,
            discount=D(discount),
            discount_code="CODE",
            discount_type=DiscountType.FIXED,
        )
        assert result.total == result.subtotal + result.shipping_cost - result.discount_amount + result.tax
        assert D("0") <= result.discount_amount <= result.subtotal
        assert result.total >= 0

    @pytest.mark.parametrize("tax_rate", [None, "0", "0.05", "0.125"])
    def test_total_identity_with_tax_override(self, tax_rate):
        result = pricing.price(
            [(D("123.45"), 2)],
            tax_rate=D(tax_rate) if tax_rate else None,
            discount=D("10"),
        )
        assert result.total == result.subtotal + result.shipping_cost - result.discount_amount + result.tax

    def test_free_shipping_at_threshold(self):
        result = pricing.price([(D("500.00"), 2)], shipping_method="overnight")
        assert result.subtotal == D("1000.00")
        assert result.shipping_cost == D("0.00")
        assert result.total == D("1180.00")

    def test_just_below_threshold_pays_shipping(self):
        result = pricing.price([(D("999.99"), 1)])
        assert result.shipping_cost == D("50.00")

    @pytest.mark.parametrize("method,cost", [
        ("standard", "50.00"),
        ("expedited", "100.00"),
        ("overnight", "200.00"),
        ("pickup", "0.00"),
    ])
    def test_shipping_methods(self, method, cost):
        result = pricing.price([(D("100.00"), 1)], shipping_method=method)
        assert result.shipping_cost == D(cost)

    def test_unknown_shipping_method(self):
        with pytest.raises(ValidationError):
            pricing.price([(D("100.00"), 1)], shipping_method="teleport")

    def test_tax_rate_override(self):
        result = pricing.price([(D("500.00"), 1)], tax_rate=D("0.05"))
        assert result.tax == D("25.00")

    def test_discount_clamped_to_subtotal(self):
        result = pricing.price([(D("500.00"), 1)], discount=D("2000"), discount_code="BIG")
        assert result.discount_amount == D("500.00")
        assert result.total == D("140.00")

    def test_negative_discount_ignored(self):
        result = pricing.price([(D("500.00"), 1)], discount=D("-10"), discount_code="NEG")
        assert result.discount_amount == D("0.00")
        assert result.discount_code is None
        assert result.discount_type == DiscountType.NONE

    def test_rounds_half_up(self):
        result = pricing.price([(D("10.005"), 1)], shipping_method="pickup")
        assert result.subtotal == D("10.01")
        assert result.tax == D("1.80")

    def test_deterministic(self):
        lines = [(D("333.33"), 3)]
        assert pricing.price(lines) == pricing.price(lines)
