from decimal import Decimal
from typing import Optional

from app.features.discount.models.discount_code import AppliesTo, DiscountType, PERIOD_BENEFITS
from app.platform.utils.money import ZERO, as_decimal, round_money


def compute_discount(code, purchase_amount, period_price=None) -> Decimal:
    """
    Discount for one purchase.

    percent: amount * value / 100. fixed: value. free_month / free_trial: the
    caller-supplied price of the granted period (zero when not supplied).
    The result never exceeds ``max_discount`` or the purchase amount.
    """
    amount = as_decimal(purchase_amount)
    if amount <= 0:
        return ZERO

    value = as_decimal(code.value)
    if code.type == DiscountType.percent:
        discount = amount * value / Decimal(100)
    elif code.type == DiscountType.fixed:
        discount = value
    elif code.type in PERIOD_BENEFITS:
        discount = as_decimal(period_price)
    else:
        discount = ZERO

    if code.max_discount is not None:
        discount = min(discount, as_decimal(code.max_discount))

    return round_money(min(discount, amount))


def final_amount(purchase_amount, discount_amount) -> Decimal:
    return round_money(max(ZERO, as_decimal(purchase_amount) - as_decimal(discount_amount)))


def applies_to_product(code, product_type: Optional[str], product_id: Optional[str]) -> bool:
    """An unknown product type is accepted; a known mismatch is not."""
    if code.applies_to != AppliesTo.all and product_type and code.applies_to.value != product_type:
        return False
    if code.applies_to_products and product_id and product_id not in code.applies_to_products:
        return False
    return True
