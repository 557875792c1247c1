"""
Order Module
============
Persisted purchase records and the payment state machine.

State transitions (the only edges that exist):
    PENDING -> PAID
    PENDING -> FAILED
    PAID    -> REFUNDED

Terminal states: FAILED, REFUNDED

Orders are never deleted and never move backward. total_paid is written
once, at reservation time, and never again.
"""

import logging
from typing import Dict, List, Any, Optional
from datetime import datetime
from dataclasses import dataclass, field, asdict, replace
from enum import Enum

from prometheus_client import Counter

from catalog import parse_timestamp
from selection import Selections


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

order_state_transitions = Counter(
    'order_payment_transitions_total',
    'Order payment status transitions',
    ['from_state', 'to_state']
)
order_transition_rejections = Counter(
    'order_payment_transition_rejections_total',
    'Order payment transitions refused by the state machine',
    ['from_state', 'to_state']
)


# ============================================================================
# PAYMENT STATE
# ============================================================================

class PaymentStatus(Enum):
    """Payment lifecycle of an order."""
    PENDING = "pending"      # Reserved, awaiting payment
    PAID = "paid"            # Confirmed by the payment provider
    FAILED = "failed"        # Payment failed/expired, inventory released (terminal)
    REFUNDED = "refunded"    # Paid then refunded (terminal)


VALID_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.REFUNDED: set(),
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    """Check whether current -> target is an edge of the state machine."""
    return target in VALID_TRANSITIONS.get(current, set())


def record_transition(current: PaymentStatus, target: PaymentStatus, order_id: str):
    """Log and count an applied transition."""
    order_state_transitions.labels(
        from_state=current.value,
        to_state=target.value
    ).inc()

    logger.info(f"Order {order_id}: {current.value} → {target.value}")


def record_rejected_transition(current: PaymentStatus, target: PaymentStatus, order_id: str):
    """Log and count a transition that the state machine refused."""
    order_transition_rejections.labels(
        from_state=current.value,
        to_state=target.value
    ).inc()

    logger.info(
        f"Order {order_id}: ignoring {current.value} → {target.value}"
    )


# ============================================================================
# RESERVATION REQUEST
# ============================================================================

@dataclass(frozen=True)
class ReservationRequest:
    """Everything the storefront submits to reserve a drop."""
    drop_id: str
    customer_name: str
    customer_email: str
    quantity: int
    user_id: Optional[str] = None
    delivery_requested: bool = False
    delivery_address: Optional[str] = None
    selections: Selections = field(default_factory=dict)
    order_notes: Optional[str] = None
    is_bulk: bool = False


# ============================================================================
# ORDER RECORD
# ============================================================================

@dataclass(frozen=True)
class Order:
    """
    Immutable view of a stored order row.

    drop_name and drop_image are copied at reservation time so the order
    keeps displaying correctly if the drop is edited later.
    """
    id: str
    drop_id: str
    drop_name: str
    customer_name: str
    customer_email: str
    quantity: int
    subtotal: float
    booking_fee: float
    delivery_fee: float
    tax_rate: float
    tax_amount: float
    total_paid: float
    payment_status: PaymentStatus
    timestamp: datetime
    drop_image: str = ""
    user_id: Optional[str] = None
    selected_items: List[Dict[str, Any]] = field(default_factory=list)
    delivery_requested: bool = False
    delivery_address: Optional[str] = None
    order_notes: Optional[str] = None
    is_bulk: bool = False
    unlocked_reward: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    paid_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def with_status(self, status: PaymentStatus, **changes) -> "Order":
        """Copy with a new payment status (caller has checked the edge)."""
        return replace(self, payment_status=status, **changes)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Order":
        """Build from a `purchases` row."""
        paid_at = row.get("paid_at")

        return cls(
            id=str(row["id"]),
            drop_id=str(row["drop_id"]),
            drop_name=row.get("drop_name") or "",
            drop_image=row.get("drop_image") or "",
            user_id=row.get("user_id"),
            customer_name=row.get("customer_name") or "",
            customer_email=row.get("customer_email") or "",
            quantity=int(row["quantity"]),
            selected_items=list(row.get("selected_items") or []),
            subtotal=float(row.get("subtotal") or 0),
            booking_fee=float(row.get("booking_fee") or 0),
            delivery_fee=float(row.get("delivery_fee") or 0),
            tax_rate=float(row.get("tax_rate") or 0),
            tax_amount=float(row.get("tax_amount") or 0),
            total_paid=float(row["total_paid"]),
            payment_status=PaymentStatus(row.get("payment_status") or "pending"),
            delivery_requested=bool(row.get("delivery_requested", False)),
            delivery_address=row.get("delivery_address"),
            order_notes=row.get("order_notes"),
            is_bulk=bool(row.get("is_bulk", False)),
            unlocked_reward=row.get("unlocked_reward"),
            stripe_checkout_session_id=row.get("stripe_checkout_session_id"),
            stripe_payment_intent_id=row.get("stripe_payment_intent_id"),
            timestamp=parse_timestamp(row.get("timestamp") or row.get("created_at")),
            paid_at=parse_timestamp(paid_at) if paid_at else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-ready dictionary (same keys as the row)."""
        data = asdict(self)
        data["payment_status"] = self.payment_status.value
        data["timestamp"] = self.timestamp.isoformat()
        data["paid_at"] = self.paid_at.isoformat() if self.paid_at else None
        return data
