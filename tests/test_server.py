from conftest import drop_row, make_drop, run, sign_payload, stripe_event
from order import PaymentStatus


ORDER_BODY = {
    "customerName": "Mina Park",
    "customerEmail": "mina@example.com",
    "quantity": 1,
}


def place_order(client, drop_id="drop-1", **overrides):
    body = dict(ORDER_BODY)
    body.update(overrides)
    return client.post(f"/drops/{drop_id}/orders", json=body)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_metrics(client):
    response = client.get("/metrics")

    assert response.status_code == 200
    assert "text/plain" in response.headers["content-type"]


def test_storefront_lists_live_drop(client, drop):
    response = client.get("/drops")

    assert response.status_code == 200
    assert [d["id"] for d in response.json()["drops"]] == ["drop-1"]


def test_unknown_drop_is_404(client):
    response = client.get("/drops/missing")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "drop_not_found"


def test_create_order(client, db, drop):
    response = place_order(client)

    assert response.status_code == 201
    body = response.json()
    assert body["total_paid"] == 11.0
    assert body["payment_status"] == "pending"
    assert run(db.get_drop("drop-1")).quantity_remaining == 9


def test_sold_out_maps_to_conflict(client, db):
    run(db.insert_drop(make_drop(total_quantity=1, quantity_remaining=1)))
    assert place_order(client).status_code == 201

    response = place_order(client)

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "insufficient_inventory"


def test_malformed_order_body(client, drop):
    response = client.post("/drops/drop-1/orders", json={"customerEmail": "mina@example.com"})

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "invalid_request"


def test_quote(client, drop):
    response = client.post("/drops/drop-1/quote", json={"quantity": 2})

    assert response.status_code == 200
    assert response.json()["total"] == 22.0


def test_checkout_session(client, provider, drop):
    order_id = place_order(client).json()["id"]

    response = client.post(f"/orders/{order_id}/checkout-session")

    assert response.status_code == 200
    assert response.json() == {
        "url": "https://checkout.stripe.test/cs_test_1",
        "sessionId": "cs_test_1",
        "reused": False,
    }


def test_unknown_order(client):
    assert client.get("/orders/missing").status_code == 404
    assert client.post("/orders/missing/checkout-session").status_code == 404


def test_webhook_marks_order_paid(client, db, drop):
    order_id = place_order(client).json()["id"]
    client.post(f"/orders/{order_id}/checkout-session")

    payload = stripe_event("checkout.session.completed", {
        "id": "cs_test_1",
        "payment_status": "paid",
        "payment_intent": "pi_1",
        "metadata": {"purchase_id": order_id, "drop_id": "drop-1"},
    })
    response = client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": sign_payload(payload)},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert run(db.get_order(order_id)).payment_status == PaymentStatus.PAID


def test_webhook_bad_signature(client, db, drop):
    order_id = place_order(client).json()["id"]
    payload = stripe_event("checkout.session.completed", {
        "id": "cs_test_1",
        "metadata": {"purchase_id": order_id},
    })

    response = client.post(
        "/webhooks/stripe",
        content=payload,
        headers={"Stripe-Signature": sign_payload(payload, secret="whsec_other")},
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_signature"
    assert run(db.get_order(order_id)).payment_status == PaymentStatus.PENDING


def test_submit_and_approve_drop(client):
    row = drop_row(creatorId="vendor-7")
    del row["id"]
    del row["creator_id"]

    created = client.post("/drops", json=row)
    assert created.status_code == 201
    drop_id = created.json()["id"]
    assert created.json()["approval_status"] == "pending"

    pending = client.get("/admin/drops", params={"approval_status": "pending"}).json()["drops"]
    assert [d["id"] for d in pending] == [drop_id]

    approved = client.post(f"/drops/{drop_id}/approval", json={"approvalStatus": "approved"})
    assert approved.status_code == 200
    assert approved.json()["approval_status"] == "approved"

    assert [d["id"] for d in client.get("/vendors/vendor-7/drops").json()["drops"]] == [drop_id]


def test_waitlist(client, drop):
    response = client.post("/drops/drop-1/waitlist", json={"email": "fan@example.com"})

    assert response.status_code == 201
    assert response.json()["email"] == "fan@example.com"
    assert len(client.get("/vendors/vendor-1/waitlist").json()["waitlist"]) == 1


def test_webhook_internal_error_is_structured(db, provider, config, drop, monkeypatch):
    from fastapi.testclient import TestClient
    from server import build_services, create_app

    services = build_services(config, database=db, checkout_provider=provider)
    with TestClient(create_app(services), raise_server_exceptions=False) as client:
        order_id = place_order(client).json()["id"]

        async def broken_mark_paid(*args, **kwargs):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(db, "mark_paid", broken_mark_paid)

        payload = stripe_event("checkout.session.completed", {
            "id": "cs_test_1",
            "payment_status": "paid",
            "metadata": {"purchase_id": order_id},
        })
        response = client.post(
            "/webhooks/stripe",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload)},
        )

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "internal_error"
    assert run(db.get_order(order_id)).payment_status == PaymentStatus.PENDING
