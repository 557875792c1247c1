"""
Inventory Reservation Module
============================
Turns a validated purchase request into a pending order without ever
overselling a drop.

Flow:
    validate request -> load drop -> modifier gate -> server-side price
    -> advisory availability check -> atomic reserve (database)

The atomic reserve is the only step that mutates inventory. It re-checks
approval, schedule window and stock inside the same transaction that
decrements quantity_remaining and inserts the order, so two buyers racing
for the last unit cannot both win. The advisory check only produces a
clearer error earlier.
"""

import logging
import re
from typing import Dict, List, Any, Optional, Callable
from datetime import datetime, timedelta

from prometheus_client import Counter, Histogram

from catalog import Drop, utcnow
from config import PricingConfig, ReservationConfig
from errors import (
    DropNotFound,
    InvalidOrderRequest,
    MarketplaceError,
)
from order import Order, ReservationRequest
from pricing import PriceBreakdown, calculate_price, unlocked_reward
from selection import Selections, freeze_selections, validate_selections


logger = logging.getLogger(__name__)


# ============================================================================
# LIMITS
# ============================================================================

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
MAX_CUSTOMER_NAME_LENGTH = 200
MAX_EMAIL_LENGTH = 254
MAX_ADDRESS_LENGTH = 500
MAX_NOTES_LENGTH = 1000


# ============================================================================
# METRICS
# ============================================================================

reservations_total = Counter(
    'reservations_total',
    'Reservation attempts',
    ['result']
)
reservation_value = Histogram(
    'reservation_value_dollars',
    'Order total at reservation time',
    buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 5000)
)
inventory_released_total = Counter(
    'inventory_released_units_total',
    'Units returned to drops from failed or abandoned orders',
    ['reason']
)


# ============================================================================
# REQUEST VALIDATION
# ============================================================================

def validate_request(request: ReservationRequest, pricing: PricingConfig) -> None:
    """
    Check the shape of a reservation request.

    Raises:
        InvalidOrderRequest: Naming the offending field
    """
    quantity = request.quantity
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise InvalidOrderRequest(
            "Quantity must be at least 1.",
            {"field": "quantity", "value": quantity}
        )

    limit = pricing.max_bulk_quantity if request.is_bulk else pricing.max_standard_quantity
    if quantity > limit:
        kind = "bulk" if request.is_bulk else "standard"
        raise InvalidOrderRequest(
            f"Quantity must be between 1 and {limit} for a {kind} order.",
            {"field": "quantity", "value": quantity, "max": limit, "is_bulk": request.is_bulk}
        )

    name = (request.customer_name or "").strip()
    if not name or len(name) > MAX_CUSTOMER_NAME_LENGTH:
        raise InvalidOrderRequest(
            "Customer name is required.",
            {"field": "customerName"}
        )

    email = (request.customer_email or "").strip()
    if len(email) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(email):
        raise InvalidOrderRequest(
            "A valid email address is required.",
            {"field": "customerEmail"}
        )

    if request.delivery_requested:
        address = (request.delivery_address or "").strip()
        if not address:
            raise InvalidOrderRequest(
                "Delivery address is required for delivery orders.",
                {"field": "deliveryAddress"}
            )
        if len(address) > MAX_ADDRESS_LENGTH:
            raise InvalidOrderRequest(
                f"Delivery address must be at most {MAX_ADDRESS_LENGTH} characters.",
                {"field": "deliveryAddress"}
            )

    if request.order_notes and len(request.order_notes) > MAX_NOTES_LENGTH:
        raise InvalidOrderRequest(
            f"Order notes must be at most {MAX_NOTES_LENGTH} characters.",
            {"field": "orderNotes"}
        )


# ============================================================================
# RESERVATION SERVICE
# ============================================================================

class InventoryReservation:
    """
    Reservation entrypoint.

    Holds no state of its own; every call is an independent unit whose
    atomicity comes from the database.
    """

    def __init__(
        self,
        database,
        pricing: PricingConfig,
        reservation: ReservationConfig,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = database
        self.pricing = pricing
        self.reservation = reservation
        self.clock = clock

    async def _load_drop(self, drop_id: str) -> Drop:
        drop = await self.db.get_drop(drop_id)
        if drop is None:
            raise DropNotFound("Drop not found.", {"drop_id": drop_id})
        return drop

    def _price(
        self,
        drop: Drop,
        selections: Optional[Selections],
        quantity: int,
        delivery_requested: bool
    ) -> PriceBreakdown:
        validate_selections(drop, selections)
        return calculate_price(
            drop,
            selections,
            quantity,
            self.pricing.booking_fee_per_package,
            delivery_requested=delivery_requested,
        )

    async def quote(
        self,
        drop_id: str,
        selections: Optional[Selections],
        quantity: int,
        delivery_requested: bool = False
    ) -> Dict[str, Any]:
        """
        Price an order for display without touching inventory.

        Returns:
            Breakdown plus the reward tier the quantity unlocks
        """
        drop = await self._load_drop(drop_id)
        breakdown = self._price(drop, selections, quantity, delivery_requested)

        return {
            **breakdown.to_dict(),
            "unlocked_reward": unlocked_reward(drop, quantity),
            "quantity_remaining": drop.quantity_remaining,
        }

    async def reserve(self, request: ReservationRequest) -> Order:
        """
        Reserve inventory and create a pending order.

        Args:
            request: Customer, quantity, delivery and modifier choices

        Returns:
            The created order with the server-computed total_paid

        Raises:
            InvalidOrderRequest, IncompleteSelection, InvalidPricingInput
            DropNotFound, DropNotApproved, DropNotLive, InsufficientInventory
            PersistenceError: Retry with a fresh attempt
        """
        try:
            order = await self._reserve(request)
        except MarketplaceError as e:
            reservations_total.labels(result=e.code).inc()
            logger.info(
                f"Reservation rejected for drop {request.drop_id}: "
                f"{e.code} ({e.message})"
            )
            raise

        reservations_total.labels(result="success").inc()
        reservation_value.observe(order.total_paid)

        logger.info(
            f"Reserved {order.quantity} of drop {order.drop_id} "
            f"as order {order.id} (total=${order.total_paid:.2f})"
        )

        return order

    async def _reserve(self, request: ReservationRequest) -> Order:
        validate_request(request, self.pricing)

        drop = await self._load_drop(request.drop_id)

        if request.delivery_requested and not drop.delivery_available:
            raise InvalidOrderRequest(
                "Delivery is not available for this drop.",
                {"field": "deliveryRequested", "drop_id": drop.id}
            )

        breakdown = self._price(
            drop,
            request.selections,
            request.quantity,
            request.delivery_requested
        )

        now = self.clock()
        drop.check_purchasable(request.quantity, now)

        order_fields = {
            "drop_name": drop.name,
            "drop_image": drop.image,
            "user_id": request.user_id,
            "customer_name": request.customer_name.strip(),
            "customer_email": request.customer_email.strip().lower(),
            "selected_items": freeze_selections(drop, request.selections),
            "subtotal": breakdown.subtotal,
            "booking_fee": breakdown.booking_fee,
            "delivery_fee": breakdown.delivery_fee,
            "tax_rate": breakdown.tax_rate,
            "tax_amount": breakdown.tax_amount,
            "total_paid": breakdown.total,
            "delivery_requested": request.delivery_requested,
            "delivery_address": (
                request.delivery_address.strip()
                if request.delivery_requested and request.delivery_address
                else None
            ),
            "order_notes": (request.order_notes or "").strip() or None,
            "is_bulk": request.is_bulk,
            "unlocked_reward": unlocked_reward(drop, request.quantity),
        }

        return await self.db.reserve(drop.id, request.quantity, order_fields, now=now)

    # ========================================================================
    # ABANDONED ORDERS
    # ========================================================================

    async def release_abandoned_orders(self, now: Optional[datetime] = None) -> List[Order]:
        """
        Return stock held by pending orders that never reached checkout.

        Orders with a checkout session are left alone; the provider's
        session expiry event releases those.
        """
        now = now or self.clock()
        cutoff = now - timedelta(minutes=self.reservation.pending_order_ttl_minutes)

        released = await self.db.release_abandoned_orders(cutoff)

        for order in released:
            inventory_released_total.labels(reason="abandoned").inc(order.quantity)
            logger.info(
                f"Released abandoned order {order.id}: "
                f"{order.quantity} unit(s) back to drop {order.drop_id}"
            )

        return released
