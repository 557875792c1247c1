import hashlib
import hmac
import json
import os
import sys
import time
from datetime import timedelta

# Project root on sys.path (flat module layout)
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

os.environ.setdefault("DATABASE_BACKEND", "memory")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_foodiedrops")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ENABLE_ABANDONED_ORDER_SWEEP", "false")
os.environ.setdefault("SITE_URL", "https://foodiedrops.test")
os.environ.setdefault("CORS_ORIGINS", "https://foodiedrops.test")

import pytest
import stripe
from fastapi.testclient import TestClient

from catalog import Drop, utcnow
from checkout import CheckoutSessionGateway, ProviderSession
from config import reload_config
from memory_db import InMemoryDatabase
from reservation import InventoryReservation
from webhooks import PaymentReconciler


WEBHOOK_SECRET = "whsec_test_secret"


# ============================================================================
# BUILDERS
# ============================================================================

def drop_row(**overrides):
    """A live, approved drop row; price $10, 10 units, no tax."""
    now = utcnow()
    row = {
        "id": "drop-1",
        "creator_id": "vendor-1",
        "name": "Sunday Ramen",
        "chef": "Chef Aiko",
        "start_date": (now - timedelta(hours=1)).isoformat(),
        "end_date": (now + timedelta(hours=5)).isoformat(),
        "price": 10.0,
        "total_quantity": 10,
        "quantity_remaining": 10,
        "approval_status": "approved",
        "tax_rate": 0,
        "delivery_available": True,
        "delivery_fee": 5.0,
        "menu_items": [],
        "quantity_tiers": [],
    }
    row.update(overrides)
    return row


def ramen_menu():
    """One bowl with a required broth (pick 1) and optional toppings (up to 2)."""
    return [{
        "id": "bowl",
        "name": "Ramen Bowl",
        "basePrice": 12.0,
        "modifierGroups": [
            {
                "id": "broth",
                "name": "Broth",
                "minSelect": 1,
                "maxSelect": 1,
                "options": [
                    {"id": "shoyu", "name": "Shoyu", "additionalPrice": 0},
                    {"id": "tonkotsu", "name": "Tonkotsu", "additionalPrice": 2.5},
                ],
            },
            {
                "id": "toppings",
                "name": "Toppings",
                "minSelect": 0,
                "maxSelect": 2,
                "options": [
                    {"id": "egg", "name": "Ajitama Egg", "additionalPrice": 1.5},
                    {"id": "chashu", "name": "Extra Chashu", "additionalPrice": 3.0},
                    {"id": "nori", "name": "Nori", "additionalPrice": 0.5},
                ],
            },
        ],
    }]


def make_drop(**overrides):
    return Drop.from_dict(drop_row(**overrides))


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Stripe-Signature header value for payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_type: str, data_object: dict, event_id: str = "evt_1") -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": data_object},
    }).encode("utf-8")


def run(coro):
    import asyncio
    return asyncio.run(coro)


# ============================================================================
# FAKE STRIPE
# ============================================================================

class FakeStripeProvider:
    """In-memory stand-in for StripeCheckoutProvider."""

    def __init__(self):
        self.sessions = {}
        self.created = []
        self.expired = []
        self.fail_create = False
        self.fail_retrieve = False

    def retrieve_session(self, session_id):
        if self.fail_retrieve:
            raise stripe.APIConnectionError("Network blip")
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(
                f"No such checkout.session: '{session_id}'", "id", code="resource_missing"
            )
        return self.sessions[session_id]

    def create_session(self, order, amount_minor, currency, success_url, cancel_url, expires_at):
        if self.fail_create:
            raise stripe.APIConnectionError("Network down")

        session_id = f"cs_test_{len(self.created) + 1}"
        session = ProviderSession(
            id=session_id,
            url=f"https://checkout.stripe.test/{session_id}",
            status="open",
        )
        self.sessions[session_id] = session
        self.created.append({
            "order_id": order.id,
            "drop_id": order.drop_id,
            "amount_minor": amount_minor,
            "currency": currency,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "expires_at": expires_at,
        })
        return session

    def expire_session(self, session_id):
        session = ProviderSession(id=session_id, url=None, status="expired")
        self.sessions[session_id] = session
        self.expired.append(session_id)
        return session

    def set_status(self, session_id, status):
        current = self.sessions[session_id]
        self.sessions[session_id] = ProviderSession(id=current.id, url=current.url, status=status)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def config():
    return reload_config()


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def drop(db):
    return run(db.insert_drop(make_drop()))


@pytest.fixture
def menu_drop(db):
    return run(db.insert_drop(make_drop(id="drop-menu", menu_items=ramen_menu())))


@pytest.fixture
def reservation(db, config):
    return InventoryReservation(db, config.pricing, config.reservation)


@pytest.fixture
def provider():
    return FakeStripeProvider()


@pytest.fixture
def gateway(db, provider, config):
    return CheckoutSessionGateway(
        db,
        provider,
        config.stripe,
        site_url=config.server.site_url,
        allowed_origins=config.server.cors_origins,
    )


@pytest.fixture
def reconciler(db):
    return PaymentReconciler(db, WEBHOOK_SECRET, tolerance=300)


@pytest.fixture
def client(db, provider, config):
    from server import build_services, create_app

    services = build_services(config, database=db, checkout_provider=provider)
    with TestClient(create_app(services)) as test_client:
        yield test_client
