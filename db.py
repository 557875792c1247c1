"""
Database Module (Production)
=============================
Supabase persistence for drops, orders and the waitlist.

- Reads run in the default executor with a timeout, retried with backoff
- Inventory reservation and release are single stored-procedure calls
  (see sql/002_functions.sql); they are never retried blindly
- Payment status writes are conditional updates keyed on the expected
  current status, so replays are no-ops
- A circuit breaker stops hammering a failing backend
"""

import asyncio
import logging
from typing import Dict, List, Any, Optional, Callable
from datetime import datetime, timezone
from enum import Enum

from prometheus_client import Counter
from supabase import create_client, Client
from postgrest.exceptions import APIError

from catalog import ApprovalStatus, Drop
from config import Config
from errors import (
    DropNotApproved,
    DropNotFound,
    DropNotLive,
    InsufficientInventory,
    PersistenceError,
)
from order import Order, PaymentStatus


logger = logging.getLogger(__name__)


# Configuration
MAX_RETRIES = 2
RETRY_DELAY = 0.5  # seconds
CIRCUIT_BREAKER_THRESHOLD = 5
CIRCUIT_BREAKER_TIMEOUT = 30  # seconds
DEFAULT_TIMEOUT = 10.0  # seconds

DROPS_TABLE = "drops"
PURCHASES_TABLE = "purchases"
WAITLIST_TABLE = "waitlist"


# ============================================================================
# METRICS
# ============================================================================

db_operations_total = Counter(
    'db_operations_total',
    'Database operations',
    ['operation', 'result']
)


# ============================================================================
# STORED PROCEDURE ERRORS
# ============================================================================

# RAISE EXCEPTION messages from sql/002_functions.sql
RPC_ERRORS = {
    "DROP_NOT_FOUND": DropNotFound,
    "DROP_NOT_APPROVED": DropNotApproved,
    "DROP_NOT_LIVE": DropNotLive,
    "INSUFFICIENT_INVENTORY": InsufficientInventory,
}

RPC_MESSAGES = {
    "DROP_NOT_FOUND": "Drop not found.",
    "DROP_NOT_APPROVED": "This drop is not approved for booking.",
    "DROP_NOT_LIVE": "This drop is not currently accepting orders.",
    "INSUFFICIENT_INVENTORY": "Not enough stock left for this order.",
}


def map_rpc_error(error: APIError, drop_id: str) -> Exception:
    """
    Translate a PostgREST error raised inside the reservation procedure.

    Returns:
        Domain error for known business failures, PersistenceError otherwise
    """
    message = (getattr(error, "message", None) or str(error) or "").strip()

    for marker, error_class in RPC_ERRORS.items():
        if message.startswith(marker):
            details = {"drop_id": drop_id}
            detail_text = getattr(error, "details", None)
            if detail_text:
                details["detail"] = detail_text
            return error_class(RPC_MESSAGES[marker], details)

    return PersistenceError(
        "Reservation failed, please try again.",
        {"drop_id": drop_id, "cause": message}
    )


# ============================================================================
# CIRCUIT BREAKER
# ============================================================================

class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"    # Normal operation
    OPEN = "open"        # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitBreaker:
    """Circuit breaker for database operations."""

    def __init__(
        self,
        threshold: int = CIRCUIT_BREAKER_THRESHOLD,
        timeout: int = CIRCUIT_BREAKER_TIMEOUT
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[datetime] = None
        self.success_count = 0

    def record_success(self):
        """Record successful operation."""
        self.failure_count = 0

        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= 2:
                self.state = CircuitState.CLOSED
                self.success_count = 0
                logger.info("Circuit breaker closed (recovered)")

    def record_failure(self):
        """Record failed operation."""
        self.failure_count += 1
        self.last_failure_time = datetime.now(timezone.utc)

        if self.failure_count >= self.threshold:
            self.state = CircuitState.OPEN
            logger.error(
                f"Circuit breaker opened "
                f"(failures: {self.failure_count})"
            )

    def can_execute(self) -> bool:
        """Check if operation can execute."""
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if self.last_failure_time:
                elapsed = (datetime.now(timezone.utc) - self.last_failure_time).total_seconds()
                if elapsed >= self.timeout:
                    self.state = CircuitState.HALF_OPEN
                    self.success_count = 0
                    logger.info("Circuit breaker half-open (testing)")
                    return True
            return False

        # HALF_OPEN - allow test requests
        return True

    def get_state(self) -> str:
        """Get current state."""
        return self.state.value


# ============================================================================
# SUPABASE DATABASE
# ============================================================================

class SupabaseDatabase:
    """
    Supabase-backed persistence.

    The supabase-py client is synchronous; every call is pushed to the
    default executor so request handlers never block the event loop.
    """

    def __init__(
        self,
        url: str,
        key: str,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[Client] = None
    ):
        self.client: Client = client or create_client(url, key)
        self.timeout = timeout
        self.circuit_breaker = CircuitBreaker()

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0
        self.retry_count = 0

        logger.info("Supabase database initialized")

    # ========================================================================
    # EXECUTION
    # ========================================================================

    async def _execute(
        self,
        operation: str,
        call: Callable[[], Any],
        retries: int = 0
    ) -> Any:
        """
        Run a blocking Supabase call with timeout and circuit breaker.

        Args:
            operation: Name for logs/metrics
            call: Zero-arg callable performing the request
            retries: Extra attempts on transient failure (reads only)

        Raises:
            APIError: Passed through for the caller to map
            PersistenceError: Timeout, open circuit, or transport failure
        """
        if not self.circuit_breaker.can_execute():
            logger.warning(f"Circuit breaker open, skipping {operation}")
            db_operations_total.labels(operation=operation, result="circuit_open").inc()
            raise PersistenceError(
                "Database temporarily unavailable.",
                {"operation": operation, "circuit": self.circuit_breaker.get_state()}
            )

        loop = asyncio.get_running_loop()

        for attempt in range(retries + 1):
            try:
                result = await asyncio.wait_for(
                    loop.run_in_executor(None, call),
                    timeout=self.timeout
                )
                self.circuit_breaker.record_success()
                db_operations_total.labels(operation=operation, result="ok").inc()
                return result

            except APIError:
                # The request reached Postgres; not a connectivity problem
                self.circuit_breaker.record_success()
                db_operations_total.labels(operation=operation, result="api_error").inc()
                raise

            except asyncio.TimeoutError:
                logger.error(f"{operation} timeout (attempt {attempt + 1})")
                failure = "timeout"

            except Exception as e:
                logger.error(f"{operation} error (attempt {attempt + 1}): {str(e)}")
                failure = type(e).__name__

            self.error_count += 1
            self.circuit_breaker.record_failure()
            db_operations_total.labels(operation=operation, result="error").inc()

            if attempt < retries:
                self.retry_count += 1
                await asyncio.sleep(RETRY_DELAY * (attempt + 1))

        raise PersistenceError(
            "Database request failed, please try again.",
            {"operation": operation, "cause": failure}
        )

    async def _read(self, operation: str, call: Callable[[], Any]) -> Any:
        try:
            result = await self._execute(operation, call, retries=MAX_RETRIES)
        except APIError as e:
            raise PersistenceError(
                "Database query failed.",
                {"operation": operation, "cause": e.message}
            )
        self.read_count += 1
        return result

    async def _write(self, operation: str, call: Callable[[], Any]) -> Any:
        try:
            result = await self._execute(operation, call)
        except APIError as e:
            raise PersistenceError(
                "Database write failed.",
                {"operation": operation, "cause": e.message}
            )
        self.write_count += 1
        return result

    @staticmethod
    def _rows(result: Any) -> List[Dict[str, Any]]:
        data = getattr(result, "data", None)
        if data is None:
            return []
        if isinstance(data, dict):
            return [data]
        return list(data)

    # ========================================================================
    # DROPS
    # ========================================================================

    async def get_drop(self, drop_id: str) -> Optional[Drop]:
        """Fetch one drop by id."""
        result = await self._read(
            "get_drop",
            lambda: self.client
                .table(DROPS_TABLE)
                .select("*")
                .eq("id", drop_id)
                .limit(1)
                .execute()
        )
        rows = self._rows(result)
        return Drop.from_dict(rows[0]) if rows else None

    async def list_drops(
        self,
        approval_status: Optional[ApprovalStatus] = None,
        creator_id: Optional[str] = None
    ) -> List[Drop]:
        """List drops, optionally filtered by approval state or vendor."""
        def query():
            request = self.client.table(DROPS_TABLE).select("*")
            if approval_status is not None:
                request = request.eq("approval_status", approval_status.value)
            if creator_id is not None:
                request = request.eq("creator_id", creator_id)
            return request.order("start_date").execute()

        result = await self._read("list_drops", query)
        return [Drop.from_dict(row) for row in self._rows(result)]

    async def insert_drop(self, drop: Drop) -> Drop:
        """Insert a new drop."""
        row = drop.to_row()
        if not row.get("id"):
            row.pop("id", None)

        result = await self._write(
            "insert_drop",
            lambda: self.client.table(DROPS_TABLE).insert(row).execute()
        )
        rows = self._rows(result)
        if not rows:
            raise PersistenceError("Drop insert returned no row.", {"operation": "insert_drop"})
        return Drop.from_dict(rows[0])

    async def update_drop_approval(
        self,
        drop_id: str,
        expected: ApprovalStatus,
        target: ApprovalStatus
    ) -> Optional[Drop]:
        """
        Set approval status if it is still `expected`.

        Returns:
            Updated drop, or None if the drop changed underneath
        """
        result = await self._write(
            "update_drop_approval",
            lambda: self.client
                .table(DROPS_TABLE)
                .update({"approval_status": target.value})
                .eq("id", drop_id)
                .eq("approval_status", expected.value)
                .execute()
        )
        rows = self._rows(result)
        return Drop.from_dict(rows[0]) if rows else None

    # ========================================================================
    # RESERVATION (atomic, stored procedure)
    # ========================================================================

    async def reserve(
        self,
        drop_id: str,
        quantity: int,
        order_fields: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> Order:
        """
        Verify, decrement and insert in one transaction.

        `now` is ignored here: the procedure uses the database clock.

        Raises:
            DropNotFound, DropNotApproved, DropNotLive, InsufficientInventory
            PersistenceError: Transport or unexpected database failure
        """
        params = {
            "p_drop_id": drop_id,
            "p_quantity": quantity,
            "p_order": order_fields,
        }

        try:
            result = await self._execute(
                "reserve",
                lambda: self.client.rpc("purchase_drop_item", params).execute()
            )
        except APIError as e:
            raise map_rpc_error(e, drop_id)

        rows = self._rows(result)
        if not rows:
            raise PersistenceError(
                "Reservation returned no order.", {"drop_id": drop_id}
            )

        self.write_count += 1
        return Order.from_row(rows[0])

    async def fail_and_release(
        self,
        order_id: str,
        session_id: Optional[str] = None
    ) -> Optional[Order]:
        """
        Move a pending order to failed and return its stock, atomically.

        Returns:
            Updated order, or None if the order was not pending or is now
            attached to a different session
        """
        params = {"p_purchase_id": order_id, "p_session_id": session_id}
        result = await self._write(
            "fail_and_release",
            lambda: self.client.rpc("fail_purchase_and_release", params).execute()
        )
        rows = self._rows(result)
        return Order.from_row(rows[0]) if rows else None

    async def release_abandoned_orders(self, cutoff: datetime) -> List[Order]:
        """Fail and restock pending orders older than cutoff with no session."""
        params = {"p_cutoff": cutoff.isoformat()}
        result = await self._write(
            "release_abandoned_orders",
            lambda: self.client.rpc("release_abandoned_purchases", params).execute()
        )
        return [Order.from_row(row) for row in self._rows(result)]

    # ========================================================================
    # ORDERS
    # ========================================================================

    async def get_order(self, order_id: str) -> Optional[Order]:
        """Fetch one order by id."""
        result = await self._read(
            "get_order",
            lambda: self.client
                .table(PURCHASES_TABLE)
                .select("*")
                .eq("id", order_id)
                .limit(1)
                .execute()
        )
        rows = self._rows(result)
        return Order.from_row(rows[0]) if rows else None

    async def list_orders(
        self,
        user_id: Optional[str] = None,
        drop_ids: Optional[List[str]] = None
    ) -> List[Order]:
        """List orders for an account and/or a set of drops, newest first."""
        if drop_ids is not None and not drop_ids:
            return []

        def query():
            request = self.client.table(PURCHASES_TABLE).select("*")
            if user_id is not None:
                request = request.eq("user_id", user_id)
            if drop_ids is not None:
                request = request.in_("drop_id", drop_ids)
            return request.order("timestamp", desc=True).execute()

        result = await self._read("list_orders", query)
        return [Order.from_row(row) for row in self._rows(result)]

    async def set_checkout_session(
        self,
        order_id: str,
        session_id: str,
        expected_session_id: Optional[str] = None
    ) -> Optional[Order]:
        """
        Attach a checkout session to a still-pending order (compare-and-set).

        Returns:
            Updated order, or None if the order is no longer pending or its
            session is no longer `expected_session_id`
        """
        def query():
            request = (
                self.client
                .table(PURCHASES_TABLE)
                .update({"stripe_checkout_session_id": session_id})
                .eq("id", order_id)
                .eq("payment_status", PaymentStatus.PENDING.value)
            )
            if expected_session_id is None:
                request = request.is_("stripe_checkout_session_id", "null")
            else:
                request = request.eq("stripe_checkout_session_id", expected_session_id)
            return request.execute()

        result = await self._write("set_checkout_session", query)
        rows = self._rows(result)
        return Order.from_row(rows[0]) if rows else None

    async def mark_paid(
        self,
        order_id: str,
        session_id: Optional[str],
        payment_intent_id: Optional[str],
        paid_at: datetime
    ) -> Optional[Order]:
        """
        pending -> paid.

        Returns:
            Updated order, or None if the order was not pending
        """
        update = {
            "payment_status": PaymentStatus.PAID.value,
            "stripe_payment_intent_id": payment_intent_id,
            "paid_at": paid_at.isoformat(),
        }
        if session_id:
            update["stripe_checkout_session_id"] = session_id

        result = await self._write(
            "mark_paid",
            lambda: self.client
                .table(PURCHASES_TABLE)
                .update(update)
                .eq("id", order_id)
                .eq("payment_status", PaymentStatus.PENDING.value)
                .execute()
        )
        rows = self._rows(result)
        return Order.from_row(rows[0]) if rows else None

    async def mark_refunded(self, payment_intent_id: str) -> List[Order]:
        """paid -> refunded for every order charged through this intent."""
        result = await self._write(
            "mark_refunded",
            lambda: self.client
                .table(PURCHASES_TABLE)
                .update({"payment_status": PaymentStatus.REFUNDED.value})
                .eq("stripe_payment_intent_id", payment_intent_id)
                .eq("payment_status", PaymentStatus.PAID.value)
                .execute()
        )
        return [Order.from_row(row) for row in self._rows(result)]

    async def find_orders_by_payment_intent(self, payment_intent_id: str) -> List[Order]:
        result = await self._read(
            "find_orders_by_payment_intent",
            lambda: self.client
                .table(PURCHASES_TABLE)
                .select("*")
                .eq("stripe_payment_intent_id", payment_intent_id)
                .execute()
        )
        return [Order.from_row(row) for row in self._rows(result)]

    # ========================================================================
    # WAITLIST
    # ========================================================================

    async def add_waitlist_entry(
        self,
        drop_id: str,
        email: str,
        user_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Insert a waitlist entry (upsert on drop+email)."""
        row = {"drop_id": drop_id, "email": email, "user_id": user_id}
        result = await self._write(
            "add_waitlist_entry",
            lambda: self.client
                .table(WAITLIST_TABLE)
                .upsert(row, on_conflict="drop_id,email")
                .execute()
        )
        rows = self._rows(result)
        return rows[0] if rows else row

    async def list_waitlist(self, drop_ids: List[str]) -> List[Dict[str, Any]]:
        if not drop_ids:
            return []
        result = await self._read(
            "list_waitlist",
            lambda: self.client
                .table(WAITLIST_TABLE)
                .select("*")
                .in_("drop_id", drop_ids)
                .order("timestamp", desc=True)
                .execute()
        )
        return self._rows(result)

    # ========================================================================
    # STATS & MONITORING
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get database statistics."""
        return {
            "backend": "supabase",
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "retries": self.retry_count,
            "circuit_breaker": self.circuit_breaker.get_state(),
            "circuit_failures": self.circuit_breaker.failure_count
        }

    def is_healthy(self) -> bool:
        """Check if database is healthy."""
        return self.circuit_breaker.state != CircuitState.OPEN


# ============================================================================
# FACTORY
# ============================================================================

def create_database(config: Config):
    """Build the configured persistence backend."""
    if config.database_backend == "memory":
        from memory_db import InMemoryDatabase
        logger.warning("Using in-memory database; data is not persisted")
        return InMemoryDatabase()

    return SupabaseDatabase(
        url=config.supabase.url,
        key=config.supabase.key,
        timeout=float(config.supabase.connection_timeout),
    )
