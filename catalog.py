"""
Catalog Module
==============
Immutable value types for drops and their menu trees.

A drop's menu is a tree: MenuItem -> ModifierGroup -> ModifierOption.
Every node carries an explicit id; order selections reference option ids,
never embedded option objects, so the catalog can change without drifting
the prices frozen on existing orders.

Lifecycle status (upcoming / live / sold_out / ended) is derived from the
clock and the remaining quantity; it is never trusted from storage.
"""

import logging
import math
from typing import Dict, List, Any, Optional, Tuple
from datetime import datetime, timezone
from dataclasses import dataclass, field
from enum import Enum

from errors import DropNotApproved, DropNotLive, InsufficientInventory


logger = logging.getLogger(__name__)


# ============================================================================
# LIMITS
# ============================================================================

MAX_MENU_ITEMS = 50
MAX_GROUPS_PER_ITEM = 20
MAX_OPTIONS_PER_GROUP = 50
MAX_NAME_LENGTH = 200


# ============================================================================
# ENUMS
# ============================================================================

class ApprovalStatus(Enum):
    """Admin review state of a drop."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DropStatus(Enum):
    """Derived lifecycle state of a drop."""
    UPCOMING = "upcoming"
    LIVE = "live"
    SOLD_OUT = "sold_out"
    ENDED = "ended"


# ============================================================================
# PARSING HELPERS
# ============================================================================

def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware datetime.

    Naive values are taken as UTC.

    Raises:
        ValueError: If value is not a timestamp
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    return parsed


def parse_money(value: Any, field_name: str) -> float:
    """
    Parse a non-negative, finite monetary amount.

    Raises:
        ValueError: If value is missing, non-numeric, negative, or non-finite
    """
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be a number")

    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field_name} must be a number: {value!r}")

    if not math.isfinite(amount) or amount < 0:
        raise ValueError(f"{field_name} must be a non-negative amount: {value!r}")

    return amount


def _parse_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer")

    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"{field_name} must be an integer: {value!r}")
        return int(value)

    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field_name} must be an integer: {value!r}")


def _parse_name(value: Any, field_name: str) -> str:
    name = str(value or "").strip()
    if not name or len(name) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} must be 1-{MAX_NAME_LENGTH} characters")
    return name


def _pick(raw: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """First present key wins; stored JSON uses camelCase, Python snake_case."""
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return default


# ============================================================================
# MENU TREE
# ============================================================================

@dataclass(frozen=True)
class ModifierOption:
    """A priced add-on inside a modifier group."""
    id: str
    name: str
    additional_price: float = 0.0

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ModifierOption":
        return cls(
            id=_parse_name(raw.get("id"), "option id"),
            name=_parse_name(raw.get("name"), "option name"),
            additional_price=parse_money(
                _pick(raw, "additionalPrice", "additional_price", default=0),
                "additionalPrice"
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "additionalPrice": self.additional_price,
        }


@dataclass(frozen=True)
class ModifierGroup:
    """
    Named set of options with selection bounds.

    min_select == 0 makes the group optional; max_select caps the picks.
    """
    id: str
    name: str
    min_select: int
    max_select: int
    options: Tuple[ModifierOption, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if self.min_select < 0:
            raise ValueError(f"Group {self.id}: minSelect cannot be negative")
        if self.max_select < 1 or self.max_select < self.min_select:
            raise ValueError(
                f"Group {self.id}: maxSelect must be >= max(1, minSelect)"
            )
        if self.min_select > len(self.options):
            raise ValueError(
                f"Group {self.id}: minSelect exceeds number of options"
            )
        ids = [option.id for option in self.options]
        if len(ids) != len(set(ids)):
            raise ValueError(f"Group {self.id}: duplicate option ids")

    @property
    def is_required(self) -> bool:
        return self.min_select > 0

    def get_option(self, option_id: str) -> Optional[ModifierOption]:
        for option in self.options:
            if option.id == option_id:
                return option
        return None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ModifierGroup":
        raw_options = raw.get("options") or []
        if not isinstance(raw_options, list) or len(raw_options) > MAX_OPTIONS_PER_GROUP:
            raise ValueError("options must be a list of at most "
                             f"{MAX_OPTIONS_PER_GROUP} entries")

        return cls(
            id=_parse_name(raw.get("id"), "group id"),
            name=_parse_name(raw.get("name"), "group name"),
            min_select=_parse_int(_pick(raw, "minSelect", "min_select", default=0), "minSelect"),
            max_select=_parse_int(_pick(raw, "maxSelect", "max_select", default=1), "maxSelect"),
            options=tuple(ModifierOption.from_dict(o) for o in raw_options),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "minSelect": self.min_select,
            "maxSelect": self.max_select,
            "options": [option.to_dict() for option in self.options],
        }


@dataclass(frozen=True)
class MenuItem:
    """A dish in a drop; every unit of the drop includes one of each item."""
    id: str
    name: str
    base_price: float
    description: str = ""
    modifier_groups: Tuple[ModifierGroup, ...] = field(default_factory=tuple)

    def get_group(self, group_id: str) -> Optional[ModifierGroup]:
        for group in self.modifier_groups:
            if group.id == group_id:
                return group
        return None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "MenuItem":
        raw_groups = _pick(raw, "modifierGroups", "modifier_groups", default=[])
        if not isinstance(raw_groups, list) or len(raw_groups) > MAX_GROUPS_PER_ITEM:
            raise ValueError("modifierGroups must be a list of at most "
                             f"{MAX_GROUPS_PER_ITEM} entries")

        groups = tuple(ModifierGroup.from_dict(g) for g in raw_groups)
        group_ids = [group.id for group in groups]
        if len(group_ids) != len(set(group_ids)):
            raise ValueError(f"Item {raw.get('id')}: duplicate group ids")

        return cls(
            id=_parse_name(raw.get("id"), "item id"),
            name=_parse_name(raw.get("name"), "item name"),
            base_price=parse_money(
                _pick(raw, "basePrice", "base_price", default=0),
                "basePrice"
            ),
            description=str(raw.get("description") or ""),
            modifier_groups=groups,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "basePrice": self.base_price,
            "description": self.description,
            "modifierGroups": [group.to_dict() for group in self.modifier_groups],
        }


@dataclass(frozen=True)
class QuantityTier:
    """Reward unlocked when a single order reaches a quantity threshold."""
    threshold: int
    reward: str

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "QuantityTier":
        threshold = _parse_int(raw.get("threshold"), "threshold")
        if threshold < 1:
            raise ValueError("tier threshold must be at least 1")
        return cls(threshold=threshold, reward=_parse_name(raw.get("reward"), "reward"))

    def to_dict(self) -> Dict[str, Any]:
        return {"threshold": self.threshold, "reward": self.reward}


# ============================================================================
# DROP
# ============================================================================

@dataclass(frozen=True)
class Drop:
    """
    A time-boxed, finite-inventory menu release from a vendor.

    Invariant: 0 <= quantity_remaining <= total_quantity.
    """
    id: str
    creator_id: str
    name: str
    start_date: datetime
    end_date: datetime
    price: float
    total_quantity: int
    quantity_remaining: int
    approval_status: ApprovalStatus = ApprovalStatus.PENDING
    tax_rate: float = 0.0
    delivery_available: bool = False
    delivery_fee: float = 0.0
    menu_items: Tuple[MenuItem, ...] = field(default_factory=tuple)
    quantity_tiers: Tuple[QuantityTier, ...] = field(default_factory=tuple)
    image: str = ""
    chef: str = ""
    location: str = ""
    category: str = ""
    description: str = ""

    def __post_init__(self):
        if self.total_quantity < 0:
            raise ValueError("total_quantity cannot be negative")
        if not 0 <= self.quantity_remaining <= self.total_quantity:
            raise ValueError(
                f"quantity_remaining must be within 0..{self.total_quantity}: "
                f"{self.quantity_remaining}"
            )
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        if not 0 <= self.tax_rate < 1:
            raise ValueError(f"tax_rate must be a fraction in [0, 1): {self.tax_rate}")

    # ------------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------------

    def status(self, now: Optional[datetime] = None) -> DropStatus:
        """Derive lifecycle status from the clock and remaining stock."""
        now = now or utcnow()

        if now < self.start_date:
            return DropStatus.UPCOMING
        if self.quantity_remaining == 0:
            return DropStatus.SOLD_OUT
        if now > self.end_date:
            return DropStatus.ENDED
        return DropStatus.LIVE

    def is_within_window(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.start_date <= now <= self.end_date

    @property
    def is_approved(self) -> bool:
        return self.approval_status == ApprovalStatus.APPROVED

    def check_purchasable(self, quantity: int, now: Optional[datetime] = None):
        """
        Verify this drop can accept an order of `quantity` units right now.

        Raises:
            DropNotApproved: Approval state is not approved
            DropNotLive: Current time is outside the schedule window
            InsufficientInventory: Fewer than `quantity` units remain
        """
        if not self.is_approved:
            raise DropNotApproved(
                "This drop is not approved for booking.",
                {"drop_id": self.id, "approval_status": self.approval_status.value}
            )

        if not self.is_within_window(now):
            raise DropNotLive(
                "This drop is not currently accepting orders.",
                {
                    "drop_id": self.id,
                    "start_date": self.start_date.isoformat(),
                    "end_date": self.end_date.isoformat(),
                }
            )

        if self.quantity_remaining < quantity:
            raise InsufficientInventory(
                f"Only {self.quantity_remaining} left in stock.",
                {
                    "drop_id": self.id,
                    "requested": quantity,
                    "remaining": self.quantity_remaining,
                }
            )

    # ------------------------------------------------------------------------
    # Menu lookup
    # ------------------------------------------------------------------------

    def get_menu_item(self, item_id: str) -> Optional[MenuItem]:
        for item in self.menu_items:
            if item.id == item_id:
                return item
        return None

    # ------------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------------

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Drop":
        """
        Build a drop from a stored row.

        Raises:
            ValueError: If the row is structurally invalid
        """
        raw_items = raw.get("menu_items") or []
        if not isinstance(raw_items, list) or len(raw_items) > MAX_MENU_ITEMS:
            raise ValueError(f"menu_items must be a list of at most {MAX_MENU_ITEMS}")

        items = tuple(MenuItem.from_dict(i) for i in raw_items)
        item_ids = [item.id for item in items]
        if len(item_ids) != len(set(item_ids)):
            raise ValueError("duplicate menu item ids")

        tiers = tuple(sorted(
            (QuantityTier.from_dict(t) for t in raw.get("quantity_tiers") or []),
            key=lambda tier: tier.threshold
        ))

        total = _parse_int(raw.get("total_quantity"), "total_quantity")
        remaining = _parse_int(
            _pick(raw, "quantity_remaining", default=total),
            "quantity_remaining"
        )

        return cls(
            id=str(raw.get("id") or ""),
            creator_id=str(raw.get("creator_id") or ""),
            name=_parse_name(raw.get("name"), "name"),
            start_date=parse_timestamp(raw.get("start_date")),
            end_date=parse_timestamp(raw.get("end_date")),
            price=parse_money(_pick(raw, "price", default=0), "price"),
            total_quantity=total,
            quantity_remaining=remaining,
            approval_status=ApprovalStatus(raw.get("approval_status") or "pending"),
            tax_rate=parse_money(_pick(raw, "tax_rate", default=0), "tax_rate"),
            delivery_available=bool(raw.get("delivery_available", False)),
            delivery_fee=parse_money(_pick(raw, "delivery_fee", default=0), "delivery_fee"),
            menu_items=items,
            quantity_tiers=tiers,
            image=str(raw.get("image") or ""),
            chef=str(raw.get("chef") or ""),
            location=str(raw.get("location") or ""),
            category=str(raw.get("category") or ""),
            description=str(raw.get("description") or ""),
        )

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Serialize with the derived lifecycle status included."""
        return {
            "id": self.id,
            "creator_id": self.creator_id,
            "name": self.name,
            "chef": self.chef,
            "image": self.image,
            "location": self.location,
            "category": self.category,
            "description": self.description,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "price": self.price,
            "tax_rate": self.tax_rate,
            "total_quantity": self.total_quantity,
            "quantity_remaining": self.quantity_remaining,
            "approval_status": self.approval_status.value,
            "status": self.status(now).value,
            "delivery_available": self.delivery_available,
            "delivery_fee": self.delivery_fee,
            "menu_items": [item.to_dict() for item in self.menu_items],
            "quantity_tiers": [tier.to_dict() for tier in self.quantity_tiers],
        }

    def to_row(self) -> Dict[str, Any]:
        """Serialize for storage (no derived fields)."""
        row = self.to_dict()
        row.pop("status")
        return row


def drops_by_start(drops: List[Drop]) -> List[Drop]:
    """Order drops the way the storefront lists them."""
    return sorted(drops, key=lambda drop: drop.start_date)
