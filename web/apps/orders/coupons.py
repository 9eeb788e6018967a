"""Coupon evaluation.

``CouponEvaluator.evaluate`` decides whether a coupon applies to a cart total
for a given user and how much it takes off. It reads the per-user redemption
count through the coupon store but never writes: redemption is recorded by
the order lifecycle inside the order transaction.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from django.utils import timezone

from .domain import Coupon, CouponStore, DiscountType, round_half_up
from .errors import ValidationError


@dataclass(frozen=True)
class CouponEvaluation:
    valid: bool
    discount_amount: int = 0
    reason: Optional[str] = None


def validate_terms(discount_type: DiscountType, value) -> Decimal:
    """Check the coupon value invariant.

    Percentage coupons take a value in (0, 100]; fixed coupons any positive
    amount.

    Returns:
        Decimal: The value, normalized.

    Raises:
        ValidationError: When the value is out of range.
    """
    try:
        v = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError("coupon value must be a number", code="INVALID_COUPON_VALUE")
    if discount_type == DiscountType.PERCENTAGE and not (0 < v <= 100):
        raise ValidationError("percentage must be in (0, 100]", code="INVALID_COUPON_VALUE")
    if discount_type == DiscountType.FIXED and v <= 0:
        raise ValidationError("fixed discount must be positive", code="INVALID_COUPON_VALUE")
    return v


class CouponEvaluator:
    """Side-effect free coupon check and discount computation."""

    def __init__(self, coupons: CouponStore, clock: Callable[[], datetime] = timezone.now):
        self.coupons = coupons
        self.clock = clock

    def evaluate(self, coupon: Coupon, cart_total: int, user_id: int) -> CouponEvaluation:
        """Evaluate ``coupon`` against a cart.

        Checks run in a fixed order and the first failing one is reported:
        active flag, validity window, global usage limit, per-user limit,
        minimum purchase.

        Args:
            coupon: The coupon record.
            cart_total: Cart total before discount.
            user_id: Redeeming user.

        Returns:
            CouponEvaluation: ``valid`` with the discount, or the failure reason.
        """
        if not coupon.is_active:
            return CouponEvaluation(False, reason="COUPON_INACTIVE")

        now = self.clock()
        if not coupon.is_permanent:
            if coupon.starts_at and now < coupon.starts_at:
                return CouponEvaluation(False, reason="COUPON_NOT_STARTED")
            if coupon.ends_at and now > coupon.ends_at:
                return CouponEvaluation(False, reason="COUPON_EXPIRED")

        if coupon.usage_limit > 0 and coupon.used_count >= coupon.usage_limit:
            return CouponEvaluation(False, reason="COUPON_USAGE_LIMIT")

        if self.coupons.user_redemptions(coupon.code, user_id) >= coupon.user_usage_limit:
            return CouponEvaluation(False, reason="COUPON_ALREADY_USED")

        if cart_total < coupon.min_purchase:
            return CouponEvaluation(False, reason="COUPON_MIN_PURCHASE")

        return CouponEvaluation(True, discount_amount=self.discount_for(coupon, cart_total))

    @staticmethod
    def discount_for(coupon: Coupon, cart_total: int) -> int:
        if coupon.discount_type == DiscountType.PERCENTAGE:
            amount = round_half_up(Decimal(cart_total) * coupon.value / 100)
            if coupon.max_discount:
                amount = min(amount, coupon.max_discount)
            return min(amount, cart_total)
        return min(round_half_up(coupon.value), cart_total)
