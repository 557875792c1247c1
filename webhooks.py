"""
Payment Reconciliation Listener
===============================
Applies Stripe webhook events to orders. This is the only code path that
marks an order paid.

Events handled:
    checkout.session.completed                pending -> paid
    checkout.session.async_payment_succeeded  pending -> paid
    checkout.session.async_payment_failed     pending -> failed (+ restock)
    checkout.session.expired                  pending -> failed (+ restock)
    charge.refunded                           paid    -> refunded

Delivery is at-least-once and unordered. Every write is conditional on the
expected current status, so replays and late arrivals change nothing.
Unknown event types are acknowledged and ignored.
"""

import json
from typing import Dict, Any, Optional, Callable, Awaitable
from datetime import datetime

import stripe
import structlog
from prometheus_client import Counter

from catalog import utcnow
from errors import InvalidSignature
from order import (
    PaymentStatus,
    record_rejected_transition,
    record_transition,
)
from reservation import inventory_released_total


logger = structlog.get_logger(__name__)


# ============================================================================
# METRICS
# ============================================================================

webhook_events_total = Counter(
    'webhook_events_total',
    'Stripe webhook events by type and outcome',
    ['event_type', 'result']
)


EventHandler = Callable[[Dict[str, Any], str], Awaitable[str]]


class PaymentReconciler:
    """Verifies, routes and applies Stripe webhook events."""

    def __init__(
        self,
        database,
        webhook_secret: str,
        tolerance: int = 300,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = database
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        self.clock = clock

        self._handlers: Dict[str, EventHandler] = {
            "checkout.session.completed": self._on_session_completed,
            "checkout.session.async_payment_succeeded": self._on_session_paid,
            "checkout.session.async_payment_failed": self._on_session_failed,
            "checkout.session.expired": self._on_session_failed,
            "charge.refunded": self._on_charge_refunded,
        }

    @property
    def supported_events(self):
        return list(self._handlers.keys())

    # ========================================================================
    # ENTRYPOINT
    # ========================================================================

    def verify(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Check the Stripe-Signature header against the untouched body.

        Raises:
            InvalidSignature: Missing header, bad signature, stale timestamp,
                or a body that is not a JSON event
        """
        if not signature:
            raise InvalidSignature("Missing Stripe-Signature header.")

        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidSignature("Webhook payload is not valid UTF-8.")

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, self.webhook_secret, self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise InvalidSignature("Invalid Stripe webhook signature.")

        try:
            event = json.loads(payload)
        except ValueError:
            raise InvalidSignature("Webhook payload is not valid JSON.")

        if not isinstance(event, dict) or not isinstance(event.get("type"), str):
            raise InvalidSignature("Webhook payload is not a Stripe event.")

        return event

    async def handle(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, bool]:
        """
        Verify and apply one webhook delivery.

        Returns:
            {"received": True} once the event is applied or ignored

        Raises:
            InvalidSignature: Nothing is read or written
            PersistenceError: Propagated so Stripe redelivers
        """
        try:
            event = self.verify(raw_body, signature)
        except InvalidSignature:
            webhook_events_total.labels(event_type="unverified", result="invalid_signature").inc()
            raise

        event_type = event["type"]
        event_id = event.get("id", "unknown")

        handler = self._handlers.get(event_type)
        if handler is None:
            webhook_events_total.labels(event_type="other", result="ignored").inc()
            logger.info("webhook_ignored", event_type=event_type, event_id=event_id)
            return {"received": True}

        data_object = (event.get("data") or {}).get("object") or {}

        logger.info("webhook_received", event_type=event_type, event_id=event_id)

        result = await handler(data_object, event_id)

        webhook_events_total.labels(event_type=event_type, result=result).inc()
        logger.info(
            "webhook_processed",
            event_type=event_type,
            event_id=event_id,
            result=result
        )

        return {"received": True}

    # ========================================================================
    # CHECKOUT SESSION EVENTS
    # ========================================================================

    @staticmethod
    def _purchase_id(session: Dict[str, Any]) -> Optional[str]:
        metadata = session.get("metadata") or {}
        return metadata.get("purchase_id") or session.get("client_reference_id")

    @staticmethod
    def _payment_intent_id(obj: Dict[str, Any]) -> Optional[str]:
        intent = obj.get("payment_intent")
        if isinstance(intent, dict):
            return intent.get("id")
        return intent

    async def _reject(self, order_id: str, target: PaymentStatus) -> str:
        """Record a transition the current order state does not allow."""
        current = await self.db.get_order(order_id)
        if current is None:
            logger.warning("webhook_order_missing", order_id=order_id, target=target.value)
            return "order_not_found"

        record_rejected_transition(current.payment_status, target, order_id)
        return "duplicate" if current.payment_status == target else "ignored"

    async def _on_session_completed(self, session: Dict[str, Any], event_id: str) -> str:
        # Delayed payment methods complete the session before money moves
        if session.get("payment_status") == "unpaid":
            logger.info(
                "checkout_awaiting_async_payment",
                session_id=session.get("id"),
                event_id=event_id
            )
            return "awaiting_payment"

        return await self._on_session_paid(session, event_id)

    async def _on_session_paid(self, session: Dict[str, Any], event_id: str) -> str:
        order_id = self._purchase_id(session)
        if not order_id:
            logger.warning("webhook_missing_purchase_id", session_id=session.get("id"))
            return "missing_metadata"

        order = await self.db.mark_paid(
            order_id,
            session_id=session.get("id"),
            payment_intent_id=self._payment_intent_id(session),
            paid_at=self.clock()
        )

        if order is None:
            return await self._reject(order_id, PaymentStatus.PAID)

        record_transition(PaymentStatus.PENDING, PaymentStatus.PAID, order.id)
        logger.info(
            "order_paid",
            order_id=order.id,
            session_id=order.stripe_checkout_session_id,
            payment_intent_id=order.stripe_payment_intent_id,
            total_paid=order.total_paid
        )
        return "paid"

    async def _on_session_failed(self, session: Dict[str, Any], event_id: str) -> str:
        order_id = self._purchase_id(session)
        if not order_id:
            logger.warning("webhook_missing_purchase_id", session_id=session.get("id"))
            return "missing_metadata"

        current = await self.db.get_order(order_id)
        if current is None:
            logger.warning("webhook_order_missing", order_id=order_id, target="failed")
            return "order_not_found"

        # A stale session of an order that has since moved on to a new one
        session_id = session.get("id")
        if (
            current.stripe_checkout_session_id
            and session_id
            and current.stripe_checkout_session_id != session_id
        ):
            logger.info(
                "webhook_superseded_session",
                order_id=order_id,
                session_id=session_id,
                current_session_id=current.stripe_checkout_session_id
            )
            return "superseded"

        order = await self.db.fail_and_release(order_id, session_id)

        if order is None:
            return await self._reject(order_id, PaymentStatus.FAILED)

        record_transition(PaymentStatus.PENDING, PaymentStatus.FAILED, order.id)
        inventory_released_total.labels(reason="checkout_failed").inc(order.quantity)
        logger.info(
            "order_failed",
            order_id=order.id,
            session_id=session_id,
            released_units=order.quantity
        )
        return "failed"

    # ========================================================================
    # CHARGE EVENTS
    # ========================================================================

    async def _on_charge_refunded(self, charge: Dict[str, Any], event_id: str) -> str:
        payment_intent_id = self._payment_intent_id(charge)
        if not payment_intent_id:
            logger.warning("refund_missing_payment_intent", charge_id=charge.get("id"))
            return "missing_payment_intent"

        refunded = await self.db.mark_refunded(payment_intent_id)

        if not refunded:
            matches = await self.db.find_orders_by_payment_intent(payment_intent_id)
            if not matches:
                logger.warning(
                    "refund_order_missing",
                    payment_intent_id=payment_intent_id,
                    event_id=event_id
                )
                return "order_not_found"
            for order in matches:
                record_rejected_transition(order.payment_status, PaymentStatus.REFUNDED, order.id)
            return "ignored"

        for order in refunded:
            record_transition(PaymentStatus.PAID, PaymentStatus.REFUNDED, order.id)
            logger.info(
                "order_refunded",
                order_id=order.id,
                payment_intent_id=payment_intent_id,
                amount_refunded=charge.get("amount_refunded")
            )
        return "refunded"
