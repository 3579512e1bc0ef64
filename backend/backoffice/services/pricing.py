# Overview: Order pricing policy (tier discount, walk-in shipping, sales tax) in integer cents.

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from ..errors import ValidationError


TIER_DISCOUNT_PERCENT = {
    "retail": 0,
    "wholesale": 10,
    "vip": 15,
}

DELIVERY_TYPES = {"delivery", "pickup"}


def _percent_of(amount_cents: int, basis_points: int) -> int:
    """amount * bps / 10000, rounded half-up to the nearest cent."""
    return (amount_cents * basis_points + 5000) // 10000


@dataclass(frozen=True)
class OrderQuote:
    subtotal_cents: int
    discount_cents: int
    discount_type: str | None
    discount_percentage: int
    shipping_fee_cents: int
    tax_cents: int
    total_cents: int


def quote_order(
    *,
    line_subtotals: list[int],
    customer_type: str | None,
    delivery_type: str,
    is_walk_in: bool,
) -> OrderQuote:
    """
    Price an order from its line subtotals.

    - discount: tier percentage of subtotal (retail 0, wholesale 10, vip 15)
    - shipping: flat fee only for walk-in customers choosing delivery
    - tax: SALES_TAX_RATE_BPS of subtotal
    - total = subtotal - discount + shipping + tax
    """
    if delivery_type not in DELIVERY_TYPES:
        raise ValidationError("invalid delivery_type", {"delivery_type": delivery_type})

    subtotal = sum(line_subtotals)

    discount_type = None
    discount_percentage = 0
    if customer_type:
        if customer_type not in TIER_DISCOUNT_PERCENT:
            raise ValidationError("unknown customer type", {"customer_type": customer_type})
        discount_percentage = TIER_DISCOUNT_PERCENT[customer_type]
        if discount_percentage:
            discount_type = customer_type
    discount = _percent_of(subtotal, discount_percentage * 100)

    shipping_fee = 0
    if delivery_type == "delivery" and is_walk_in:
        shipping_fee = int(current_app.config.get("WALK_IN_SHIPPING_FEE_CENTS", 1000))

    tax = _percent_of(subtotal, int(current_app.config.get("SALES_TAX_RATE_BPS", 1000)))

    return OrderQuote(
        subtotal_cents=subtotal,
        discount_cents=discount,
        discount_type=discount_type,
        discount_percentage=discount_percentage,
        shipping_fee_cents=shipping_fee,
        tax_cents=tax,
        total_cents=subtotal - discount + shipping_fee + tax,
    )
