"""
Pricing calculator.

Pure and deterministic: given the same lines and inputs it always returns the
same breakdown, and it never touches inventory. It runs once for the checkout
preview and once, authoritatively, when the order is created.
"""
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Tuple

from . import config
from .errors import ValidationError
from .models import DiscountType
from .schemas import PriceBreakdown

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def shipping_cost(method: str, subtotal: Decimal) -> Decimal:
    """Flat rate by method; free above the configured threshold."""
    if method not in config.SHIPPING_RATES:
        raise ValidationError(f"Unknown shipping method '{method}'")
    if subtotal >= config.FREE_SHIPPING_THRESHOLD:
        return to_money(0)
    return to_money(config.SHIPPING_RATES[method])


def price(
    lines: Iterable[Tuple[Decimal, int]],
    shipping_method: str = "standard",
    tax_rate: Optional[Decimal] = None,
    discount: Decimal = Decimal("0"),
    discount_code: Optional[str] = None,
    discount_type: DiscountType = DiscountType.NONE,
) -> PriceBreakdown:
    """
    Compute the price breakdown of an order.

    Args:
        lines: (unit_price, quantity) pairs
        shipping_method: One of the configured shipping methods
        tax_rate: Override of the default tax rate (fraction, e.g. 0.18)
        discount: Requested discount; clamped to [0, subtotal]
        discount_code: Promo code the discount came from, if any
        discount_type: How the discount was computed

    Returns:
        PriceBreakdown with ``total = subtotal + shipping - discount + tax``
    """
    subtotal = to_money(sum((Decimal(str(unit)) * qty for unit, qty in lines), Decimal("0")))
    shipping = shipping_cost(shipping_method, subtotal)
    rate = config.TAX_RATE if tax_rate is None else Decimal(str(tax_rate))
    tax = to_money(subtotal * rate)
    discount_amount = to_money(min(max(Decimal(str(discount)), Decimal("0")), subtotal))

    return PriceBreakdown(
        subtotal=subtotal,
        shipping_cost=shipping,
        shipping_method=shipping_method,
        tax=tax,
        discount_amount=discount_amount,
        discount_code=discount_code if discount_amount > 0 else None,
        discount_type=discount_type if discount_amount > 0 else DiscountType.NONE,
        total=subtotal + shipping - discount_amount + tax,
    )
