"""
HTTP Server
===========
FastAPI surface for the FoodieDrops marketplace core.

Entry points:
    POST /drops/{drop_id}/orders              reserve inventory, pending order
    POST /orders/{order_id}/checkout-session  redirect URL for payment
    POST /webhooks/stripe                     payment reconciliation

NO BUSINESS LOGIC - routing, validation of request shape, error mapping.
"""

import asyncio
import logging
from typing import Dict, List, Any, Optional
from dataclasses import dataclass

from fastapi import FastAPI, Body, Depends, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field
import structlog
import uvicorn

from catalog import utcnow
from checkout import CheckoutSessionGateway, StripeCheckoutProvider
from config import Config, get_config, validate_configuration
from db import create_database
from drops import DropService
from errors import MarketplaceError, OrderNotFound
from order import ReservationRequest
from reservation import InventoryReservation
from webhooks import PaymentReconciler


logger = logging.getLogger(__name__)


# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

def configure_logging(level: str = "INFO"):
    """Route stdlib and structlog output through one handler."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.KeyValueRenderer(key_order=["event"]),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# ============================================================================
# SERVICES
# ============================================================================

@dataclass
class Services:
    """Everything the handlers need, wired once per process."""
    config: Config
    database: Any
    reservation: InventoryReservation
    checkout: CheckoutSessionGateway
    reconciler: PaymentReconciler
    drops: DropService


def build_services(config: Config, database=None, checkout_provider=None) -> Services:
    """Wire services from configuration; tests pass their own backends."""
    database = database if database is not None else create_database(config)
    provider = checkout_provider or StripeCheckoutProvider(config.stripe.secret_key)

    return Services(
        config=config,
        database=database,
        reservation=InventoryReservation(database, config.pricing, config.reservation),
        checkout=CheckoutSessionGateway(
            database,
            provider,
            config.stripe,
            site_url=config.server.site_url,
            allowed_origins=config.server.cors_origins,
        ),
        reconciler=PaymentReconciler(
            database,
            config.stripe.webhook_secret,
            tolerance=config.stripe.webhook_tolerance,
        ),
        drops=DropService(database),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


# ============================================================================
# REQUEST MODELS
# ============================================================================

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class OrderIn(CamelModel):
    customer_name: str = Field(alias="customerName")
    customer_email: str = Field(alias="customerEmail")
    quantity: int = 1
    user_id: Optional[str] = Field(default=None, alias="userId")
    delivery_requested: bool = Field(default=False, alias="deliveryRequested")
    delivery_address: Optional[str] = Field(default=None, alias="deliveryAddress")
    selections: Dict[str, Dict[str, List[str]]] = Field(default_factory=dict)
    order_notes: Optional[str] = Field(default=None, alias="orderNotes")
    is_bulk: bool = Field(default=False, alias="isBulk")


class QuoteIn(CamelModel):
    quantity: int = 1
    delivery_requested: bool = Field(default=False, alias="deliveryRequested")
    selections: Dict[str, Dict[str, List[str]]] = Field(default_factory=dict)


class CheckoutIn(CamelModel):
    return_url: Optional[str] = Field(default=None, alias="returnUrl")


class ApprovalIn(CamelModel):
    approval_status: str = Field(alias="approvalStatus")


class WaitlistIn(CamelModel):
    email: str
    user_id: Optional[str] = Field(default=None, alias="userId")


# ============================================================================
# BACKGROUND TASKS
# ============================================================================

async def release_abandoned_orders_loop(services: Services):
    """
    Periodically return stock held by pending orders that never reached
    checkout.
    """
    interval = services.config.reservation.sweep_interval_seconds

    while True:
        try:
            await asyncio.sleep(interval)
            released = await services.reservation.release_abandoned_orders()
            if released:
                logger.info(f"Abandoned order sweep released {len(released)} order(s)")

        except asyncio.CancelledError:
            raise

        except Exception as e:
            logger.error(f"Error in abandoned order sweep: {str(e)}")


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    Args:
        services: Pre-wired services (tests); built from config on startup
            when omitted
    """
    app = FastAPI(title="FoodieDrops API")
    app.state.services = services
    app.state.sweep_task = None

    cors_origins = services.config.server.cors_origins if services else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ------------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------------

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        if exc.category == "transient":
            logger.error(f"{request.method} {request.url.path}: {exc.code} {exc.details}")
        elif exc.category == "trust":
            logger.warning(f"{request.method} {request.url.path}: {exc.message}")

        return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=422,
            content={"error": {
                "code": "invalid_request",
                "message": "Request body is invalid.",
                "details": {"errors": [
                    {"loc": list(err.get("loc", [])), "msg": err.get("msg")}
                    for err in exc.errors()
                ]},
            }}
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(
            f"Unhandled error on {request.method} {request.url.path}: {str(exc)}"
        )
        return JSONResponse(
            status_code=500,
            content={"error": {
                "code": "internal_error",
                "message": "Internal server error.",
                "details": {},
            }}
        )

    # ------------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------------

    @app.on_event("startup")
    async def startup_event():
        """Wire services and start background tasks."""
        if app.state.services is None:
            config = get_config()
            configure_logging(config.server.log_level)
            validate_configuration()
            app.state.services = build_services(config)

        current = app.state.services
        if current.config.features.enable_abandoned_order_sweep:
            app.state.sweep_task = asyncio.create_task(
                release_abandoned_orders_loop(current)
            )

        logger.info("FoodieDrops API started")

    @app.on_event("shutdown")
    async def shutdown_event():
        logger.info("Shutting down server...")

        task = app.state.sweep_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            app.state.sweep_task = None

        logger.info("Server shutdown complete")

    # ------------------------------------------------------------------------
    # Health & metrics
    # ------------------------------------------------------------------------

    @app.get("/health")
    async def health_check(services: Services = Depends(get_services)):
        """Health check endpoint."""
        database = services.database
        healthy = database.is_healthy()

        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "degraded",
                "database": database.get_stats(),
                "timestamp": utcnow().isoformat(),
            }
        )

    @app.get("/metrics")
    async def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # ------------------------------------------------------------------------
    # Drops
    # ------------------------------------------------------------------------

    @app.get("/drops")
    async def list_drops(
        include_ended: bool = False,
        services: Services = Depends(get_services)
    ):
        now = utcnow()
        drops = await services.drops.list_storefront(include_ended=include_ended)
        return {"drops": [drop.to_dict(now) for drop in drops]}

    @app.get("/drops/{drop_id}")
    async def get_drop(drop_id: str, services: Services = Depends(get_services)):
        drop = await services.drops.get_drop(drop_id)
        return drop.to_dict()

    @app.post("/drops", status_code=201)
    async def submit_drop(
        payload: Dict[str, Any] = Body(...),
        services: Services = Depends(get_services)
    ):
        """Vendor submission; always stored pending."""
        payload = dict(payload)
        creator_id = payload.pop("creatorId", None) or payload.pop("creator_id", None)
        drop = await services.drops.submit_drop(payload, creator_id)
        return drop.to_dict()

    @app.post("/drops/{drop_id}/approval")
    async def set_drop_approval(
        drop_id: str,
        body: ApprovalIn,
        services: Services = Depends(get_services)
    ):
        drop = await services.drops.set_approval(drop_id, body.approval_status)
        return drop.to_dict()

    @app.get("/admin/drops")
    async def list_drops_for_review(
        approval_status: Optional[str] = None,
        services: Services = Depends(get_services)
    ):
        drops = await services.drops.list_for_review(approval_status)
        return {"drops": [drop.to_dict() for drop in drops]}

    @app.post("/drops/{drop_id}/quote")
    async def quote(
        drop_id: str,
        body: QuoteIn,
        services: Services = Depends(get_services)
    ):
        return await services.reservation.quote(
            drop_id,
            body.selections,
            body.quantity,
            delivery_requested=body.delivery_requested,
        )

    @app.post("/drops/{drop_id}/waitlist", status_code=201)
    async def join_waitlist(
        drop_id: str,
        body: WaitlistIn,
        services: Services = Depends(get_services)
    ):
        return await services.drops.join_waitlist(drop_id, body.email, body.user_id)

    # ------------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------------

    @app.post("/drops/{drop_id}/orders", status_code=201)
    async def create_order(
        drop_id: str,
        body: OrderIn,
        services: Services = Depends(get_services)
    ):
        """Reservation entrypoint."""
        order = await services.reservation.reserve(ReservationRequest(
            drop_id=drop_id,
            customer_name=body.customer_name,
            customer_email=body.customer_email,
            quantity=body.quantity,
            user_id=body.user_id,
            delivery_requested=body.delivery_requested,
            delivery_address=body.delivery_address,
            selections=body.selections,
            order_notes=body.order_notes,
            is_bulk=body.is_bulk,
        ))
        return order.to_dict()

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str, services: Services = Depends(get_services)):
        order = await services.database.get_order(order_id)
        if order is None:
            raise OrderNotFound("Purchase not found.", {"order_id": order_id})
        return order.to_dict()

    @app.get("/users/{user_id}/orders")
    async def list_user_orders(user_id: str, services: Services = Depends(get_services)):
        orders = await services.drops.list_user_orders(user_id)
        return {"orders": [order.to_dict() for order in orders]}

    @app.post("/orders/{order_id}/checkout-session")
    async def create_checkout_session(
        order_id: str,
        body: Optional[CheckoutIn] = None,
        services: Services = Depends(get_services)
    ):
        """Checkout entrypoint."""
        return_url = body.return_url if body else None
        result = await services.checkout.create_session(order_id, return_url=return_url)
        return result.to_dict()

    # ------------------------------------------------------------------------
    # Vendors
    # ------------------------------------------------------------------------

    @app.get("/vendors/{creator_id}/drops")
    async def list_vendor_drops(creator_id: str, services: Services = Depends(get_services)):
        drops = await services.drops.list_vendor_drops(creator_id)
        return {"drops": [drop.to_dict() for drop in drops]}

    @app.get("/vendors/{creator_id}/orders")
    async def list_vendor_orders(creator_id: str, services: Services = Depends(get_services)):
        orders = await services.drops.list_vendor_orders(creator_id)
        return {"orders": [order.to_dict() for order in orders]}

    @app.get("/vendors/{creator_id}/waitlist")
    async def list_vendor_waitlist(creator_id: str, services: Services = Depends(get_services)):
        return {"waitlist": await services.drops.list_vendor_waitlist(creator_id)}

    # ------------------------------------------------------------------------
    # Stripe
    # ------------------------------------------------------------------------

    @app.post("/webhooks/stripe")
    async def stripe_webhook(
        request: Request,
        stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
        services: Services = Depends(get_services)
    ):
        """Webhook entrypoint; the raw body is verified before parsing."""
        raw_body = await request.body()
        return await services.reconciler.handle(raw_body, stripe_signature)

    return app


app = create_app()


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Run the HTTP server."""
    config = get_config()
    configure_logging(config.server.log_level)

    for warning in config.validate_runtime_dependencies():
        logger.warning(warning)

    logger.info(f"Starting server on {config.server.host}:{config.server.port}")
    logger.info(f"Site URL: {config.server.site_url}")

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.server.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
