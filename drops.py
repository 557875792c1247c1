"""
Drop Service
============
Vendor submission, admin approval, storefront listing and the waitlist.

Approval transitions:
    pending  -> approved | rejected   (admin review)
    rejected -> pending               (vendor resubmits)

Submitted drops always land pending with quantity_remaining equal to
total_quantity, whatever the payload says.
"""

import logging
from typing import Dict, List, Any, Optional, Callable
from datetime import datetime

from catalog import ApprovalStatus, Drop, DropStatus, drops_by_start, utcnow
from errors import (
    DropNotFound,
    InvalidApprovalTransition,
    InvalidDropSubmission,
    InvalidOrderRequest,
)
from order import Order
from reservation import EMAIL_PATTERN, MAX_EMAIL_LENGTH


logger = logging.getLogger(__name__)


APPROVAL_TRANSITIONS = {
    ApprovalStatus.PENDING: {ApprovalStatus.APPROVED, ApprovalStatus.REJECTED},
    ApprovalStatus.REJECTED: {ApprovalStatus.PENDING},
    ApprovalStatus.APPROVED: set(),
}

# Storefront hides drops that can no longer be bought or waited for
STOREFRONT_STATUSES = {DropStatus.UPCOMING, DropStatus.LIVE, DropStatus.SOLD_OUT}


class DropService:
    """Drop catalogue operations outside the purchase path."""

    def __init__(self, database, clock: Callable[[], datetime] = utcnow):
        self.db = database
        self.clock = clock

    async def get_drop(self, drop_id: str) -> Drop:
        drop = await self.db.get_drop(drop_id)
        if drop is None:
            raise DropNotFound("Drop not found.", {"drop_id": drop_id})
        return drop

    async def list_storefront(self, include_ended: bool = False) -> List[Drop]:
        """Approved drops, soonest first."""
        drops = await self.db.list_drops(approval_status=ApprovalStatus.APPROVED)
        if include_ended:
            return drops_by_start(drops)

        now = self.clock()
        return drops_by_start([d for d in drops if d.status(now) in STOREFRONT_STATUSES])

    async def list_for_review(self, approval_status: Optional[str] = None) -> List[Drop]:
        """All drops, optionally filtered by approval state (admin view)."""
        status = None
        if approval_status:
            try:
                status = ApprovalStatus(approval_status)
            except ValueError:
                raise InvalidDropSubmission(
                    f"Unknown approval status: {approval_status}",
                    {"field": "approval_status"}
                )
        return await self.db.list_drops(approval_status=status)

    # ========================================================================
    # VENDOR
    # ========================================================================

    async def submit_drop(self, payload: Dict[str, Any], creator_id: str) -> Drop:
        """
        Store a vendor's drop for review.

        Raises:
            InvalidDropSubmission: Payload does not describe a valid drop
        """
        if not creator_id:
            raise InvalidDropSubmission("creator_id is required.", {"field": "creator_id"})

        row = dict(payload)
        row["creator_id"] = creator_id
        row["approval_status"] = ApprovalStatus.PENDING.value
        row["quantity_remaining"] = row.get("total_quantity")

        try:
            drop = Drop.from_dict(row)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            raise InvalidDropSubmission(str(e) or "Invalid drop.", {"creator_id": creator_id})

        if drop.total_quantity < 1:
            raise InvalidDropSubmission(
                "total_quantity must be at least 1.",
                {"field": "total_quantity"}
            )

        if drop.delivery_fee and not drop.delivery_available:
            raise InvalidDropSubmission(
                "delivery_fee is set but delivery is not available.",
                {"field": "delivery_fee"}
            )

        stored = await self.db.insert_drop(drop)

        logger.info(
            f"Drop {stored.id} submitted by {creator_id} "
            f"({stored.total_quantity} units, {len(stored.menu_items)} menu items)"
        )

        return stored

    async def list_vendor_drops(self, creator_id: str) -> List[Drop]:
        return await self.db.list_drops(creator_id=creator_id)

    async def list_vendor_orders(self, creator_id: str) -> List[Order]:
        drops = await self.db.list_drops(creator_id=creator_id)
        return await self.db.list_orders(drop_ids=[d.id for d in drops])

    async def list_vendor_waitlist(self, creator_id: str) -> List[Dict[str, Any]]:
        drops = await self.db.list_drops(creator_id=creator_id)
        return await self.db.list_waitlist([d.id for d in drops])

    # ========================================================================
    # ADMIN
    # ========================================================================

    async def set_approval(self, drop_id: str, target: str) -> Drop:
        """
        Move a drop along the approval state machine.

        Raises:
            DropNotFound
            InvalidApprovalTransition: Edge not allowed, or the drop changed
                concurrently
        """
        try:
            target_status = ApprovalStatus(target)
        except ValueError:
            raise InvalidApprovalTransition(
                f"Unknown approval status: {target}",
                {"drop_id": drop_id, "target": target}
            )

        drop = await self.get_drop(drop_id)
        current = drop.approval_status

        if target_status not in APPROVAL_TRANSITIONS[current]:
            raise InvalidApprovalTransition(
                f"Cannot move a {current.value} drop to {target_status.value}.",
                {"drop_id": drop_id, "from": current.value, "to": target_status.value}
            )

        updated = await self.db.update_drop_approval(drop_id, current, target_status)
        if updated is None:
            raise InvalidApprovalTransition(
                "Drop approval changed concurrently, reload and retry.",
                {"drop_id": drop_id, "from": current.value, "to": target_status.value}
            )

        logger.info(f"Drop {drop_id}: approval {current.value} → {target_status.value}")
        return updated

    # ========================================================================
    # CUSTOMERS
    # ========================================================================

    async def join_waitlist(
        self,
        drop_id: str,
        email: str,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Register interest in a drop; joining twice is a no-op.

        Raises:
            InvalidOrderRequest: Email is not valid
            DropNotFound
        """
        email = (email or "").strip().lower()
        if len(email) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(email):
            raise InvalidOrderRequest("A valid email address is required.", {"field": "email"})

        await self.get_drop(drop_id)

        entry = await self.db.add_waitlist_entry(drop_id, email, user_id)
        logger.info(f"Waitlist entry for drop {drop_id}")
        return entry

    async def list_user_orders(self, user_id: str) -> List[Order]:
        return await self.db.list_orders(user_id=user_id)
