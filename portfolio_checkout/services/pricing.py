from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from ..schemas import AppliedCoupon, Coupon, ProductRef, ProductType, Quote

CENT = Decimal("0.01")


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def coupon_rejection(coupon: Coupon, base_amount: Decimal, product: ProductRef, now: datetime) -> Optional[str]:
    """Reason the coupon cannot be applied, or None when it can."""
    if coupon.valid_from and _aware(now) < _aware(coupon.valid_from):
        return "Coupon is not active yet."
    if coupon.valid_until and _aware(now) > _aware(coupon.valid_until):
        return "Coupon has expired."
    if coupon.min_order_value and base_amount < coupon.min_order_value:
        return f"Minimum order value is {coupon.min_order_value}."
    if not coupon.apply_to_all:
        allowed = coupon.bundles if product.product_type is ProductType.BUNDLE else coupon.portfolios
        if product.product_id not in allowed:
            return "Coupon does not apply to this product."
    if coupon.discount_type not in ("percentage", "fixed") or coupon.discount_value <= 0:
        return "Coupon configuration is invalid."
    return None


def quote(
    base_amount: Decimal,
    coupon: Optional[Coupon],
    product: ProductRef,
    *,
    rounding: str = "ROUND_HALF_UP",
    now: Optional[datetime] = None,
) -> Quote:
    """Final charge for ``base_amount`` with an optional coupon.

    The discount is clamped so ``0 <= final_amount <= base_amount``; a coupon
    that fails validation leaves the amount untouched.
    """
    base_amount = Decimal(base_amount).quantize(CENT, rounding=rounding)
    if coupon is None:
        return Quote(base_amount=base_amount, discount=Decimal("0.00"), final_amount=base_amount)

    rejection = coupon_rejection(coupon, base_amount, product, now or datetime.now(timezone.utc))
    if rejection:
        return Quote(
            base_amount=base_amount,
            discount=Decimal("0.00"),
            final_amount=base_amount,
            rejection=rejection,
        )

    if coupon.discount_type == "percentage":
        discount = base_amount * coupon.discount_value / Decimal(100)
        if coupon.max_discount_amount > 0:
            discount = min(discount, coupon.max_discount_amount)
    else:
        discount = coupon.discount_value
    discount = min(max(discount, Decimal(0)), base_amount).quantize(CENT, rounding=rounding)

    final_amount = (base_amount - discount).quantize(CENT, rounding=rounding)
    return Quote(
        base_amount=base_amount,
        discount=discount,
        final_amount=final_amount,
        coupon=AppliedCoupon(code=coupon.code, discount=discount),
    )
