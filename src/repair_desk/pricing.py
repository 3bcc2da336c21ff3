"""Per-line pricing rules.

Every function in this module is pure: the same inputs always produce the same
outputs, so callers may recompute a line on every edit without caching. No
rounding happens here; currency values are rounded once at the order
aggregate level (see :mod:`repair_desk.aggregation`).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from . import log
from .constants import DiscountType, ItemKind
from .errors import ValidationError

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class DiscountSpec:
    """Discount attached to a line item."""

    type: DiscountType = DiscountType.PERCENT
    value: Decimal = ZERO


NO_DISCOUNT = DiscountSpec()


@dataclass(frozen=True)
class LinePricing:
    """Values derived from a single line item."""

    selling_price: Decimal
    cost_price: Decimal
    discount_amount: Decimal
    total_price: Decimal
    profit: Decimal


def to_decimal(value: Any, *, field_name: str = "value") -> Decimal:
    """Coerce ``value`` into a :class:`~decimal.Decimal`.

    Floats go through ``str`` so ``0.1`` becomes ``Decimal("0.1")`` rather than
    its binary expansion.

    Raises:
        ValidationError: If ``value`` is ``None`` or not numeric.
    """

    if isinstance(value, Decimal):
        return value
    if value is None or isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field_name} must be a number, got {value!r}") from exc


def coerce_kind(kind: Any) -> ItemKind:
    """Return ``kind`` as an :class:`ItemKind`, rejecting unknown values."""

    try:
        return ItemKind(kind)
    except ValueError as exc:
        raise ValidationError(f"Unsupported item kind: {kind}") from exc


def coerce_discount(discount: Optional[DiscountSpec]) -> DiscountSpec:
    """Normalise a discount spec, defaulting to no discount."""

    if discount is None:
        return NO_DISCOUNT
    try:
        discount_type = DiscountType(discount.type)
    except ValueError as exc:
        raise ValidationError(f"Unsupported discount type: {discount.type}") from exc
    return DiscountSpec(type=discount_type, value=to_decimal(discount.value, field_name="Discount value"))


def require_quantity(quantity: Any) -> int:
    """Validate that a line quantity is an integer of at least one."""

    if isinstance(quantity, bool) or not isinstance(quantity, (int, Decimal)):
        log.error("Quantity validation failed: %r", quantity)
        raise ValidationError("Quantity must be a whole number")
    if quantity != int(quantity) or quantity < 1:
        log.error("Quantity validation failed: %s", quantity)
        raise ValidationError("Quantity must be at least 1")
    return int(quantity)


def require_nonnegative(amount: Decimal, *, field_name: str) -> None:
    """Validate that a monetary value is zero or positive."""

    if amount < ZERO:
        log.error("%s validation failed: %s", field_name, amount)
        raise ValidationError(f"{field_name} must be zero or positive")


def require_discount_within(discount: DiscountSpec, selling_price: Decimal) -> None:
    """Refuse a discount worth more than the line it applies to."""

    if discount.type == DiscountType.PERCENT and discount.value > HUNDRED:
        log.error("Percent discount validation failed: %s", discount.value)
        raise ValidationError("Percent discount cannot exceed 100")
    if discount.type == DiscountType.FIXED and discount.value > selling_price:
        log.error("Fixed discount validation failed: %s > %s", discount.value, selling_price)
        raise ValidationError("Fixed discount cannot exceed the item's selling price")


def discount_amount(selling_price: Decimal, discount: DiscountSpec) -> Decimal:
    """Return the money taken off ``selling_price`` by ``discount``."""

    if discount.type == DiscountType.PERCENT:
        return selling_price * discount.value / HUNDRED
    return discount.value


def validate_line(
    *,
    name: str,
    kind: Any,
    quantity: Any,
    unit_price: Any,
    unit_cost: Any,
    discount: Optional[DiscountSpec] = None,
) -> None:
    """Reject line inputs the calculator cannot price.

    A discount may never exceed the value of the line: percent discounts are
    capped at 100 and fixed discounts at the selling price. Overflowing
    discounts are refused instead of being clamped.

    Raises:
        ValidationError: On the first invalid field encountered.
    """

    if not name or not str(name).strip():
        raise ValidationError("Item name cannot be empty")
    coerce_kind(kind)
    qty = require_quantity(quantity)
    price = to_decimal(unit_price, field_name="Unit price")
    cost = to_decimal(unit_cost, field_name="Unit cost")
    require_nonnegative(price, field_name="Unit price")
    require_nonnegative(cost, field_name="Unit cost")

    spec = coerce_discount(discount)
    require_nonnegative(spec.value, field_name="Discount value")
    require_discount_within(spec, price * qty)


def compute_line(
    *,
    kind: Any,
    quantity: Any,
    unit_price: Any,
    unit_cost: Any = ZERO,
    discount: Optional[DiscountSpec] = None,
) -> LinePricing:
    """Derive totals and profit for a single line item.

    Services carry no cost, so their whole discounted total is profit. Parts
    and accessories subtract ``unit_cost × quantity``.

    Args:
        kind: One of :class:`ItemKind` (enum or its string value).
        quantity: Whole number of units, at least one.
        unit_price: Price per unit charged to the client.
        unit_cost: Purchase cost per unit.
        discount: Optional :class:`DiscountSpec`.

    Returns:
        LinePricing: Unrounded derived values.

    Raises:
        ValidationError: If the quantity is not a positive integer, any
            amount is negative, or the discount exceeds the line.
    """

    item_kind = coerce_kind(kind)
    qty = require_quantity(quantity)
    price = to_decimal(unit_price, field_name="Unit price")
    cost = to_decimal(unit_cost, field_name="Unit cost")
    require_nonnegative(price, field_name="Unit price")
    require_nonnegative(cost, field_name="Unit cost")
    spec = coerce_discount(discount)
    require_nonnegative(spec.value, field_name="Discount value")

    selling_price = price * qty
    cost_price = cost * qty
    require_discount_within(spec, selling_price)
    discount_value = discount_amount(selling_price, spec)
    total_price = selling_price - discount_value
    if item_kind == ItemKind.SERVICE:
        profit = total_price
    else:
        profit = total_price - cost_price

    return LinePricing(
        selling_price=selling_price,
        cost_price=cost_price,
        discount_amount=discount_value,
        total_price=total_price,
        profit=profit,
    )


def suggested_part_price(unit_cost: Any, markup: Any) -> Decimal:
    """Default selling price of a stocked part: its cost times the shop markup."""

    cost = to_decimal(unit_cost, field_name="Unit cost")
    factor = to_decimal(markup, field_name="Markup")
    require_nonnegative(cost, field_name="Unit cost")
    require_nonnegative(factor, field_name="Markup")
    return cost * factor
