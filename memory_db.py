"""
In-Memory Database
==================
Process-local persistence with the same async contract as SupabaseDatabase.

Used for local development (DATABASE_BACKEND=memory) and tests. Every
operation runs start-to-finish under one lock, the local equivalent of a
database transaction: the reserve sequence (verify, decrement, insert)
cannot interleave with another reserve, so the last unit is sold once.
"""

import logging
import threading
import uuid
from typing import Dict, List, Any, Optional
from datetime import datetime
from dataclasses import replace

from catalog import ApprovalStatus, Drop, utcnow
from errors import DropNotFound
from order import Order, PaymentStatus


logger = logging.getLogger(__name__)


class InMemoryDatabase:
    """Dict-backed store; a threading.Lock stands in for transactions."""

    def __init__(self):
        self._lock = threading.Lock()
        self._drops: Dict[str, Drop] = {}
        self._orders: Dict[str, Order] = {}
        self._waitlist: List[Dict[str, Any]] = []

        self.read_count = 0
        self.write_count = 0

    # ========================================================================
    # DROPS
    # ========================================================================

    async def get_drop(self, drop_id: str) -> Optional[Drop]:
        with self._lock:
            self.read_count += 1
            return self._drops.get(drop_id)

    async def list_drops(
        self,
        approval_status: Optional[ApprovalStatus] = None,
        creator_id: Optional[str] = None
    ) -> List[Drop]:
        with self._lock:
            self.read_count += 1
            drops = [
                drop for drop in self._drops.values()
                if (approval_status is None or drop.approval_status == approval_status)
                and (creator_id is None or drop.creator_id == creator_id)
            ]
        return sorted(drops, key=lambda drop: drop.start_date)

    async def insert_drop(self, drop: Drop) -> Drop:
        with self._lock:
            if not drop.id:
                drop = replace(drop, id=str(uuid.uuid4()))
            self._drops[drop.id] = drop
            self.write_count += 1
            return drop

    async def update_drop_approval(
        self,
        drop_id: str,
        expected: ApprovalStatus,
        target: ApprovalStatus
    ) -> Optional[Drop]:
        with self._lock:
            drop = self._drops.get(drop_id)
            if drop is None or drop.approval_status != expected:
                return None
            drop = replace(drop, approval_status=target)
            self._drops[drop_id] = drop
            self.write_count += 1
            return drop

    # ========================================================================
    # RESERVATION
    # ========================================================================

    async def reserve(
        self,
        drop_id: str,
        quantity: int,
        order_fields: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> Order:
        """
        Verify, decrement and insert as one locked unit.

        Raises:
            DropNotFound, DropNotApproved, DropNotLive, InsufficientInventory
        """
        now = now or utcnow()

        with self._lock:
            drop = self._drops.get(drop_id)
            if drop is None:
                raise DropNotFound("Drop not found.", {"drop_id": drop_id})

            drop.check_purchasable(quantity, now)

            self._drops[drop_id] = replace(
                drop,
                quantity_remaining=drop.quantity_remaining - quantity
            )

            order = Order.from_row({
                **order_fields,
                "id": str(uuid.uuid4()),
                "drop_id": drop_id,
                "quantity": quantity,
                "payment_status": PaymentStatus.PENDING.value,
                "timestamp": now.isoformat(),
            })
            self._orders[order.id] = order
            self.write_count += 1
            return order

    def _restock(self, order: Order):
        drop = self._drops.get(order.drop_id)
        if drop is None:
            logger.warning(f"Cannot restock order {order.id}: drop {order.drop_id} missing")
            return
        self._drops[drop.id] = replace(
            drop,
            quantity_remaining=min(
                drop.total_quantity,
                drop.quantity_remaining + order.quantity
            )
        )

    async def fail_and_release(
        self,
        order_id: str,
        session_id: Optional[str] = None
    ) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.payment_status != PaymentStatus.PENDING:
                return None
            # Events for a replaced session must not fail the order
            if (
                session_id
                and order.stripe_checkout_session_id
                and order.stripe_checkout_session_id != session_id
            ):
                return None

            changes = {}
            if session_id:
                changes["stripe_checkout_session_id"] = session_id
            order = order.with_status(PaymentStatus.FAILED, **changes)
            self._orders[order_id] = order
            self._restock(order)
            self.write_count += 1
            return order

    async def release_abandoned_orders(self, cutoff: datetime) -> List[Order]:
        released = []
        with self._lock:
            for order in list(self._orders.values()):
                if (
                    order.payment_status == PaymentStatus.PENDING
                    and not order.stripe_checkout_session_id
                    and order.timestamp < cutoff
                ):
                    failed = order.with_status(PaymentStatus.FAILED)
                    self._orders[order.id] = failed
                    self._restock(failed)
                    released.append(failed)
            self.write_count += len(released)
        return released

    # ========================================================================
    # ORDERS
    # ========================================================================

    async def get_order(self, order_id: str) -> Optional[Order]:
        with self._lock:
            self.read_count += 1
            return self._orders.get(order_id)

    async def list_orders(
        self,
        user_id: Optional[str] = None,
        drop_ids: Optional[List[str]] = None
    ) -> List[Order]:
        with self._lock:
            self.read_count += 1
            orders = [
                order for order in self._orders.values()
                if (user_id is None or order.user_id == user_id)
                and (drop_ids is None or order.drop_id in drop_ids)
            ]
        return sorted(orders, key=lambda order: order.timestamp, reverse=True)

    async def set_checkout_session(
        self,
        order_id: str,
        session_id: str,
        expected_session_id: Optional[str] = None
    ) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.payment_status != PaymentStatus.PENDING:
                return None
            if order.stripe_checkout_session_id != expected_session_id:
                return None
            order = replace(order, stripe_checkout_session_id=session_id)
            self._orders[order_id] = order
            self.write_count += 1
            return order

    async def mark_paid(
        self,
        order_id: str,
        session_id: Optional[str],
        payment_intent_id: Optional[str],
        paid_at: datetime
    ) -> Optional[Order]:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.payment_status != PaymentStatus.PENDING:
                return None
            order = order.with_status(
                PaymentStatus.PAID,
                stripe_checkout_session_id=session_id or order.stripe_checkout_session_id,
                stripe_payment_intent_id=payment_intent_id,
                paid_at=paid_at,
            )
            self._orders[order_id] = order
            self.write_count += 1
            return order

    async def mark_refunded(self, payment_intent_id: str) -> List[Order]:
        refunded = []
        with self._lock:
            for order in list(self._orders.values()):
                if (
                    order.stripe_payment_intent_id == payment_intent_id
                    and order.payment_status == PaymentStatus.PAID
                ):
                    order = order.with_status(PaymentStatus.REFUNDED)
                    self._orders[order.id] = order
                    refunded.append(order)
            self.write_count += len(refunded)
        return refunded

    async def find_orders_by_payment_intent(self, payment_intent_id: str) -> List[Order]:
        with self._lock:
            self.read_count += 1
            return [
                order for order in self._orders.values()
                if order.stripe_payment_intent_id == payment_intent_id
            ]

    # ========================================================================
    # WAITLIST
    # ========================================================================

    async def add_waitlist_entry(
        self,
        drop_id: str,
        email: str,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        with self._lock:
            for entry in self._waitlist:
                if entry["drop_id"] == drop_id and entry["email"] == email:
                    return dict(entry)
            entry = {
                "id": str(uuid.uuid4()),
                "drop_id": drop_id,
                "email": email,
                "user_id": user_id,
                "timestamp": utcnow().isoformat(),
            }
            self._waitlist.append(entry)
            self.write_count += 1
            return dict(entry)

    async def list_waitlist(self, drop_ids: List[str]) -> List[Dict[str, Any]]:
        with self._lock:
            entries = [dict(e) for e in self._waitlist if e["drop_id"] in drop_ids]
        return sorted(entries, key=lambda entry: entry["timestamp"], reverse=True)

    # ========================================================================
    # STATS & MONITORING
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        return {
            "backend": "memory",
            "reads": self.read_count,
            "writes": self.write_count,
            "drops": len(self._drops),
            "orders": len(self._orders),
        }

    def is_healthy(self) -> bool:
        return True
