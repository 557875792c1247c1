"""
Checkout Session Gateway
========================
Maps a pending order to exactly one open Stripe Checkout session.

- An open session already attached to the order is returned unchanged
  (reused=True); refreshes and double-submits never mint a second session
- A new session charges exactly the order's frozen total_paid
- The session id is attached with a compare-and-set; a request that loses
  the race expires its own session and returns the winner's
- The session carries the order id as metadata (purchase_id) for the
  webhook listener; this module never marks an order paid
"""

import asyncio
from typing import Dict, Any, List, Optional, Callable
from datetime import datetime, timedelta
from dataclasses import dataclass
from urllib.parse import urlparse

import stripe
import structlog
from prometheus_client import Counter

from catalog import utcnow
from config import StripeConfig
from errors import (
    AlreadyPaid,
    AlreadyRefunded,
    InvalidAmount,
    OrderNotFound,
    OrderNotPayable,
    PaymentProviderError,
)
from order import Order, PaymentStatus
from pricing import to_minor_units


logger = structlog.get_logger(__name__)


APP_NAME = "FoodieDrops"
APP_VERSION = "1.0.0"


# ============================================================================
# METRICS
# ============================================================================

checkout_sessions_total = Counter(
    'checkout_sessions_total',
    'Checkout session requests',
    ['result']
)


# ============================================================================
# PROVIDER
# ============================================================================

@dataclass(frozen=True)
class ProviderSession:
    """The parts of a provider checkout session the gateway relies on."""
    id: str
    url: Optional[str]
    status: Optional[str]  # open | complete | expired


class StripeCheckoutProvider:
    """Thin synchronous wrapper over the Stripe Checkout API."""

    def __init__(self, secret_key: str):
        self.secret_key = secret_key
        stripe.set_app_info(APP_NAME, version=APP_VERSION)

    @staticmethod
    def _wrap(session) -> ProviderSession:
        return ProviderSession(
            id=session.id,
            url=getattr(session, "url", None),
            status=getattr(session, "status", None),
        )

    def retrieve_session(self, session_id: str) -> ProviderSession:
        return self._wrap(
            stripe.checkout.Session.retrieve(session_id, api_key=self.secret_key)
        )

    def create_session(
        self,
        order: Order,
        amount_minor: int,
        currency: str,
        success_url: str,
        cancel_url: str,
        expires_at: int
    ) -> ProviderSession:
        session = stripe.checkout.Session.create(
            api_key=self.secret_key,
            mode="payment",
            customer_email=order.customer_email,
            success_url=success_url,
            cancel_url=cancel_url,
            expires_at=expires_at,
            line_items=[{
                "quantity": 1,
                "price_data": {
                    "currency": currency,
                    "unit_amount": amount_minor,
                    "product_data": {
                        "name": order.drop_name or f"{APP_NAME} order",
                        "description": f"Order #{order.id} · Qty {order.quantity}",
                    },
                },
            }],
            metadata={
                "purchase_id": order.id,
                "drop_id": order.drop_id,
            },
            payment_intent_data={
                "metadata": {"purchase_id": order.id},
            },
        )
        return self._wrap(session)

    def expire_session(self, session_id: str) -> ProviderSession:
        return self._wrap(
            stripe.checkout.Session.expire(session_id, api_key=self.secret_key)
        )


# ============================================================================
# GATEWAY
# ============================================================================

@dataclass(frozen=True)
class CheckoutSessionResult:
    url: str
    session_id: str
    reused: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "sessionId": self.session_id, "reused": self.reused}


class CheckoutSessionGateway:
    """Checkout session entrypoint: order id in, redirect URL out."""

    def __init__(
        self,
        database,
        provider,
        stripe_config: StripeConfig,
        site_url: str,
        allowed_origins: Optional[List[str]] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.db = database
        self.provider = provider
        self.currency = stripe_config.currency
        self.session_ttl = timedelta(minutes=stripe_config.session_ttl_minutes)
        self.site_url = site_url.rstrip("/")
        self.allowed_origins = [o.strip().rstrip("/") for o in (allowed_origins or []) if o.strip()]
        self.clock = clock

    @staticmethod
    def _provider_error(operation: str, error: Exception) -> PaymentProviderError:
        logger.error(
            "stripe_call_failed",
            operation=operation,
            error=str(error),
            error_type=type(error).__name__
        )
        return PaymentProviderError(
            "Payment provider request failed.",
            {"operation": operation, "error_type": type(error).__name__}
        )

    async def _call_provider(self, operation: str, call: Callable[[], ProviderSession]) -> ProviderSession:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, call)
        except stripe.StripeError as e:
            raise self._provider_error(operation, e)

    def _return_base(self, return_url: Optional[str]) -> str:
        """Origin checkout should send the customer back to."""
        if not return_url:
            return self.site_url

        parsed = urlparse(return_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            logger.warning("return_url_rejected", return_url=return_url, reason="scheme")
            return self.site_url

        origin = f"{parsed.scheme}://{parsed.netloc}"
        if "*" in self.allowed_origins or origin in self.allowed_origins or origin == self.site_url:
            return return_url.rstrip("/")

        logger.warning("return_url_rejected", return_url=return_url, reason="origin")
        return self.site_url

    async def _current_session(self, order: Order) -> Optional[ProviderSession]:
        """
        The session stored on the order, as the provider sees it now.

        Returns None when no session is stored or Stripe no longer knows it.

        Raises:
            AlreadyPaid: The stored session completed
            PaymentProviderError: Any other provider failure
        """
        session_id = order.stripe_checkout_session_id
        if not session_id:
            return None

        loop = asyncio.get_running_loop()
        try:
            existing = await loop.run_in_executor(
                None, lambda: self.provider.retrieve_session(session_id)
            )
        except stripe.InvalidRequestError as e:
            if e.code != "resource_missing":
                raise self._provider_error("retrieve", e)
            logger.warning("checkout_session_missing", order_id=order.id, session_id=session_id)
            return None
        except stripe.StripeError as e:
            raise self._provider_error("retrieve", e)

        if existing.status == "complete":
            raise AlreadyPaid(
                "Payment for this order has already been completed.",
                {"order_id": order.id, "session_id": existing.id}
            )

        return existing

    @staticmethod
    def _is_reusable(session: Optional[ProviderSession]) -> bool:
        return session is not None and session.status == "open" and bool(session.url)

    async def _expire_quietly(self, session_id: str, log):
        """Best-effort expiry of a session that must never be paid."""
        try:
            await self._call_provider("expire", lambda: self.provider.expire_session(session_id))
        except PaymentProviderError:
            log.warning("session_expire_failed", session_id=session_id)

    @staticmethod
    def _check_payable(order: Order):
        if order.payment_status == PaymentStatus.PAID:
            raise AlreadyPaid("Purchase is already paid.", {"order_id": order.id})

        if order.payment_status == PaymentStatus.REFUNDED:
            raise AlreadyRefunded(
                "Purchase has been refunded and cannot be repaid.",
                {"order_id": order.id}
            )

        if order.payment_status == PaymentStatus.FAILED:
            raise OrderNotPayable(
                "This order has expired. Please place a new order.",
                {"order_id": order.id}
            )

    async def create_session(
        self,
        order_id: str,
        return_url: Optional[str] = None
    ) -> CheckoutSessionResult:
        """
        Produce a checkout redirect for a pending order.

        Raises:
            OrderNotFound, AlreadyPaid, AlreadyRefunded, OrderNotPayable
            InvalidAmount: total_paid is not a positive whole number of cents
            PaymentProviderError, PersistenceError: transient, safe to retry
        """
        log = logger.bind(order_id=order_id)

        order = await self.db.get_order(order_id)
        if order is None:
            checkout_sessions_total.labels(result="not_found").inc()
            raise OrderNotFound("Purchase not found.", {"order_id": order_id})

        try:
            self._check_payable(order)
            existing = await self._current_session(order)
        except (AlreadyPaid, AlreadyRefunded, OrderNotPayable) as e:
            checkout_sessions_total.labels(result=e.code).inc()
            log.info("checkout_rejected", reason=e.code)
            raise

        if self._is_reusable(existing):
            checkout_sessions_total.labels(result="reused").inc()
            log.info("checkout_session_reused", session_id=existing.id)
            return CheckoutSessionResult(url=existing.url, session_id=existing.id, reused=True)

        try:
            amount_minor = to_minor_units(order.total_paid)
        except InvalidAmount:
            checkout_sessions_total.labels(result="invalid_amount").inc()
            log.error("checkout_invalid_amount", total_paid=order.total_paid)
            raise

        # An open session being replaced must not stay payable
        if existing is not None and existing.status == "open":
            await self._expire_quietly(existing.id, log)

        base = self._return_base(return_url)
        expires_at = int((self.clock() + self.session_ttl).timestamp())

        session = await self._call_provider(
            "create",
            lambda: self.provider.create_session(
                order,
                amount_minor=amount_minor,
                currency=self.currency,
                success_url=f"{base}/#/profile?checkout=success&order={order.id}",
                cancel_url=f"{base}/#/profile?checkout=cancelled&order={order.id}",
                expires_at=expires_at,
            )
        )

        if not session.url:
            checkout_sessions_total.labels(result="missing_url").inc()
            raise PaymentProviderError(
                "Stripe did not return a checkout URL.",
                {"order_id": order.id, "session_id": session.id}
            )

        attached = await self.db.set_checkout_session(
            order.id,
            session.id,
            expected_session_id=order.stripe_checkout_session_id
        )

        if attached is None:
            return await self._resolve_lost_race(order.id, session, log)

        checkout_sessions_total.labels(result="created").inc()
        log.info(
            "checkout_session_created",
            session_id=session.id,
            amount_minor=amount_minor,
            currency=self.currency,
            replaced=order.stripe_checkout_session_id
        )

        return CheckoutSessionResult(url=session.url, session_id=session.id, reused=False)

    async def _resolve_lost_race(
        self,
        order_id: str,
        orphan: ProviderSession,
        log
    ) -> CheckoutSessionResult:
        """
        Another request attached a session (or the order left pending) first.

        The orphaned session is expired so it can never be paid.
        """
        await self._expire_quietly(orphan.id, log)

        current = await self.db.get_order(order_id)
        if current is None:
            raise OrderNotFound("Purchase not found.", {"order_id": order_id})

        self._check_payable(current)

        winner = await self._current_session(current)
        if not self._is_reusable(winner):
            checkout_sessions_total.labels(result="conflict").inc()
            raise PaymentProviderError(
                "Checkout session changed concurrently, please retry.",
                {"order_id": order_id}
            )

        checkout_sessions_total.labels(result="reused").inc()
        log.info("checkout_session_race_reused", session_id=winner.id, orphan=orphan.id)
        return CheckoutSessionResult(url=winner.url, session_id=winner.id, reused=True)
