"""
Pricing Engine
==============
Pure price computation for a drop order.

Same inputs always produce the same breakdown: no clock, no randomness,
no I/O. The storefront calls it for display and the reservation core
re-derives it authoritatively; client-submitted totals are never used.

    unit_price   = sum(item base + selected surcharges)  or drop.price if no items
    subtotal     = unit_price * quantity
    booking_fee  = fee_per_package * quantity
    delivery_fee = drop.delivery_fee if delivery requested else 0
    tax_amount   = (subtotal + delivery_fee + booking_fee) * tax_rate
    total        = subtotal + delivery_fee + booking_fee + tax_amount

Every component is rounded half-up to cents and the total is the sum of the
rounded components, so the breakdown always adds up.
"""

import math
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, Any, Optional
from dataclasses import dataclass, asdict

from catalog import Drop
from errors import InvalidAmount, InvalidPricingInput
from selection import Selections


CENT = Decimal("0.01")


# ============================================================================
# BREAKDOWN
# ============================================================================

@dataclass(frozen=True)
class PriceBreakdown:
    """Money breakdown for one order; all amounts in major currency units."""
    unit_price: float
    quantity: int
    subtotal: float
    booking_fee: float
    delivery_fee: float
    tax_rate: float
    tax_amount: float
    total: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# HELPERS
# ============================================================================

def _decimal(value: Any, field_name: str) -> Decimal:
    """Convert to Decimal, rejecting non-finite and negative values."""
    if isinstance(value, bool):
        raise InvalidPricingInput(f"{field_name} must be a number", {"field": field_name})

    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidPricingInput(
            f"{field_name} must be a number: {value!r}", {"field": field_name}
        )

    if not math.isfinite(number):
        raise InvalidPricingInput(
            f"{field_name} must be finite: {value!r}", {"field": field_name}
        )

    if number < 0:
        raise InvalidPricingInput(
            f"{field_name} cannot be negative: {value!r}", {"field": field_name}
        )

    try:
        return Decimal(str(number))
    except InvalidOperation:
        raise InvalidPricingInput(
            f"{field_name} is not a valid amount: {value!r}", {"field": field_name}
        )


def _to_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _check_quantity(quantity: Any) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidPricingInput(
            f"Quantity must be a whole number: {quantity!r}", {"field": "quantity"}
        )
    if quantity < 1:
        raise InvalidPricingInput(
            f"Quantity must be at least 1: {quantity}", {"field": "quantity"}
        )
    return quantity


# ============================================================================
# ENGINE
# ============================================================================

def calculate_unit_price(drop: Drop, selections: Optional[Selections] = None) -> Decimal:
    """
    Price of one package with the given modifier picks.

    Raises:
        InvalidPricingInput: If a selection references an unknown id
    """
    selections = selections or {}

    if not drop.menu_items:
        return _decimal(drop.price, "price")

    unit = Decimal("0")

    for item in drop.menu_items:
        unit += _decimal(item.base_price, f"{item.id}.basePrice")
        item_picks = selections.get(item.id) or {}

        for group_id, option_ids in item_picks.items():
            group = item.get_group(group_id)
            if group is None:
                raise InvalidPricingInput(
                    f"Unknown modifier group {group_id!r} on item {item.id!r}",
                    {"item_id": item.id, "group_id": group_id}
                )

            for option_id in option_ids:
                option = group.get_option(option_id)
                if option is None:
                    raise InvalidPricingInput(
                        f"Unknown option {option_id!r} in group {group_id!r}",
                        {"item_id": item.id, "group_id": group_id, "option_id": option_id}
                    )
                unit += _decimal(option.additional_price, f"{option_id}.additionalPrice")

    unknown_items = set(selections) - {item.id for item in drop.menu_items}
    if unknown_items:
        raise InvalidPricingInput(
            f"Unknown menu items: {', '.join(sorted(unknown_items))}",
            {"item_ids": sorted(unknown_items)}
        )

    return unit


def calculate_price(
    drop: Drop,
    selections: Optional[Selections],
    quantity: int,
    booking_fee_per_package: float,
    delivery_requested: bool = False
) -> PriceBreakdown:
    """
    Compute the full money breakdown for an order.

    Args:
        drop: Drop being ordered
        selections: {item_id: {group_id: [option_id, ...]}}
        quantity: Number of packages (>= 1)
        booking_fee_per_package: Platform fee per package
        delivery_requested: Whether the drop's flat delivery fee applies

    Returns:
        PriceBreakdown

    Raises:
        InvalidPricingInput: Quantity < 1 or any component non-finite/negative
    """
    quantity = _check_quantity(quantity)

    unit_price = calculate_unit_price(drop, selections)
    fee_per_package = _decimal(booking_fee_per_package, "booking_fee_per_package")
    tax_rate = _decimal(drop.tax_rate or 0, "tax_rate")

    subtotal = _to_cents(unit_price * quantity)
    booking_fee = _to_cents(fee_per_package * quantity)
    delivery_fee = (
        _to_cents(_decimal(drop.delivery_fee or 0, "delivery_fee"))
        if delivery_requested
        else Decimal("0.00")
    )
    tax_amount = _to_cents((subtotal + delivery_fee + booking_fee) * tax_rate)
    total = subtotal + delivery_fee + booking_fee + tax_amount

    breakdown = PriceBreakdown(
        unit_price=float(_to_cents(unit_price)),
        quantity=quantity,
        subtotal=float(subtotal),
        booking_fee=float(booking_fee),
        delivery_fee=float(delivery_fee),
        tax_rate=float(tax_rate),
        tax_amount=float(tax_amount),
        total=float(total),
    )

    for name, amount in breakdown.to_dict().items():
        if not math.isfinite(amount):
            raise InvalidPricingInput(f"{name} is not finite", {"field": name})

    return breakdown


def unlocked_reward(drop: Drop, quantity: int) -> Optional[str]:
    """Reward of the highest quantity tier the order reaches, if any."""
    reached = [tier for tier in drop.quantity_tiers if quantity >= tier.threshold]
    if not reached:
        return None
    return max(reached, key=lambda tier: tier.threshold).reward


def to_minor_units(amount: Any) -> int:
    """
    Convert a major-unit amount (dollars) to integer minor units (cents).

    Raises:
        InvalidAmount: Not finite, not a whole number of cents, or not positive
    """
    try:
        number = float(amount)
    except (TypeError, ValueError):
        raise InvalidAmount("Invalid purchase amount.", {"amount": amount})

    if not math.isfinite(number):
        raise InvalidAmount("Invalid purchase amount.", {"amount": amount})

    cents = Decimal(str(number)) * 100
    if cents != cents.to_integral_value() or cents <= 0:
        raise InvalidAmount("Invalid purchase amount.", {"amount": amount})

    return int(cents)
