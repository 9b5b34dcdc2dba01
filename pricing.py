"""
Checkout amount computation.

Discounts are applied to a running remainder in a fixed order:
quantity tier -> coupon -> online payment -> reward points. The shipping
rate enters the remainder at the quantity-tier stage and stays there, so the
final amount carries it exactly once. The store API prices orders with the
same function, which keeps the customer-facing estimate and the charged
amount identical.
"""

from decimal import ROUND_CEILING, ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence

from schemas import (
    CartLine,
    DiscountBreakdown,
    DiscountContext,
    PaymentMethod,
    PriceQuote,
    QuantityTier,
    RewardPointsDiscount,
    ShippingOption,
)

ZERO = Decimal("0")
ONE = Decimal("1")
ONLINE_PAYMENT_RATE = Decimal("0.05")
DEFAULT_REWARD_POINT_VALUE = Decimal("0.5")

DEFAULT_QUANTITY_TIERS = (
    QuantityTier(threshold_quantity=5, percentage=Decimal("20")),
    QuantityTier(threshold_quantity=3, percentage=Decimal("15")),
    QuantityTier(threshold_quantity=2, percentage=Decimal("5")),
)


class ShippingNotSelected(ValueError):
    """Raised when an amount is requested before a shipping option exists."""


def _floor(value: Decimal) -> Decimal:
    # Toward zero; every amount here is non-negative.
    return value.quantize(ONE, rounding=ROUND_DOWN)


def _round(value: Decimal) -> Decimal:
    return value.quantize(ONE, rounding=ROUND_HALF_UP)


def _as_method(payment_method) -> Optional[PaymentMethod]:
    if payment_method is None or isinstance(payment_method, PaymentMethod):
        return payment_method
    return PaymentMethod(payment_method)


def select_quantity_tier(total_quantity: int, tiers: Optional[Sequence[QuantityTier]] = None) -> Optional[QuantityTier]:
    """Highest threshold the quantity reaches, or None."""
    candidates = tiers if tiers is not None else DEFAULT_QUANTITY_TIERS
    for tier in sorted(candidates, key=lambda t: t.threshold_quantity, reverse=True):
        if total_quantity >= tier.threshold_quantity:
            return tier
    return None


def quantity_discount(base: Decimal, tier: Optional[QuantityTier]) -> Decimal:
    if tier is None:
        return ZERO
    return _floor(base * tier.percentage / Decimal(100))


def online_payment_discount(remainder: Decimal, payment_method) -> Decimal:
    method = _as_method(payment_method)
    if method is None or not method.is_online or remainder <= ZERO:
        return ZERO
    return _round(remainder * ONLINE_PAYMENT_RATE)


def reward_discount_for(points: int, point_value: Decimal = DEFAULT_REWARD_POINT_VALUE) -> RewardPointsDiscount:
    if points <= 0:
        return RewardPointsDiscount(points_redeemed=0, discount_amount=ZERO, point_value=point_value)
    return RewardPointsDiscount(
        points_redeemed=points, discount_amount=_floor(Decimal(points) * point_value), point_value=point_value
    )


def points_for_discount(discount: Decimal, point_value: Decimal, available: int) -> int:
    """Points needed to cover `discount`, rounded up and capped at `available`."""
    if discount <= ZERO or point_value <= ZERO:
        return 0
    return min(available, int((discount / point_value).to_integral_value(rounding=ROUND_CEILING)))


def coupon_discount_for(
    discount_type: str, discount_value: Decimal, base: Decimal, max_discount: Optional[Decimal] = None
) -> Decimal:
    """Resolve a stored coupon rule against the post-quantity remainder.

    Only the store API calls this; the checkout core receives the resolved
    amount and never re-derives it.
    """
    if base <= ZERO:
        return ZERO
    if discount_type == "percentage":
        amount = _floor(base * Decimal(discount_value) / Decimal(100))
        if max_discount is not None:
            amount = min(amount, Decimal(max_discount))
        return amount
    return min(Decimal(discount_value), base)


def cart_totals(cart_lines: Iterable[CartLine]):
    subtotal = ZERO
    total_quantity = 0
    for line in cart_lines:
        subtotal += line.line_total
        total_quantity += line.quantity
    return subtotal, total_quantity


def compute_final_amount(
    cart_lines: List[CartLine],
    shipping_option: Optional[ShippingOption],
    discounts: Optional[DiscountContext] = None,
    payment_method=None,
) -> PriceQuote:
    if shipping_option is None:
        raise ShippingNotSelected("Select a shipping option before pricing the order")

    discounts = discounts or DiscountContext()
    subtotal, total_quantity = cart_totals(cart_lines)
    shipping = Decimal(shipping_option.rate)

    # 1. quantity tier on subtotal + shipping
    tier = select_quantity_tier(total_quantity, discounts.quantity_tiers)
    remainder = subtotal + shipping
    qty_discount = quantity_discount(remainder, tier)
    remainder -= qty_discount

    # 2. coupon, already resolved by the server
    coupon_discount = ZERO
    if discounts.coupon is not None:
        coupon_discount = min(Decimal(discounts.coupon.discount_amount), max(remainder, ZERO))
    remainder -= coupon_discount

    # 3. online payment
    online_discount = online_payment_discount(remainder, payment_method)
    remainder -= online_discount

    # 4. reward points, never more than what is left
    requested_reward = ZERO
    requested_points = points_used = 0
    reward = ZERO
    if discounts.reward_points is not None:
        requested_reward = Decimal(discounts.reward_points.discount_amount)
        requested_points = points_used = discounts.reward_points.points_redeemed
        reward = min(requested_reward, max(remainder, ZERO))
        if reward < requested_reward:
            # only the points that bought the effective discount are spent
            points_used = points_for_discount(reward, discounts.reward_points.point_value, requested_points)
    remainder -= reward

    final_amount = _round(max(remainder, ZERO))

    breakdown = DiscountBreakdown(
        subtotal=subtotal,
        shipping=shipping,
        total_quantity=total_quantity,
        quantity_percentage=tier.percentage if tier else ZERO,
        quantity_discount=qty_discount,
        coupon_code=discounts.coupon.code if discounts.coupon else None,
        coupon_discount=coupon_discount,
        online_payment_discount=online_discount,
        reward_points_requested=requested_points,
        reward_points_redeemed=points_used,
        reward_discount_requested=requested_reward,
        reward_discount=reward,
        final_amount=final_amount,
    )
    return PriceQuote(final_amount=final_amount, breakdown=breakdown)
