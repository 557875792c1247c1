import time

import pytest

from conftest import run, sign_payload, stripe_event
from errors import InvalidSignature
from order import PaymentStatus, ReservationRequest


@pytest.fixture
def order(reservation, drop, db):
    created = run(reservation.reserve(ReservationRequest(
        drop_id=drop.id,
        customer_name="Jo",
        customer_email="jo@example.com",
        quantity=2,
    )))
    run(db.set_checkout_session(created.id, "cs_test_1"))
    return created


def session_object(order_id, session_id="cs_test_1", **overrides):
    obj = {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": "paid",
        "payment_intent": "pi_123",
        "metadata": {"purchase_id": order_id, "drop_id": "drop-1"},
    }
    obj.update(overrides)
    return obj


def deliver(reconciler, event_type, data_object, event_id="evt_1"):
    payload = stripe_event(event_type, data_object, event_id)
    return run(reconciler.handle(payload, sign_payload(payload)))


def test_completed_marks_paid(reconciler, db, order):
    assert deliver(reconciler, "checkout.session.completed", session_object(order.id)) == {"received": True}

    paid = run(db.get_order(order.id))
    assert paid.payment_status == PaymentStatus.PAID
    assert paid.stripe_payment_intent_id == "pi_123"
    assert paid.paid_at is not None


def test_duplicate_completed_keeps_first_paid_at(reconciler, db, order):
    deliver(reconciler, "checkout.session.completed", session_object(order.id))
    first = run(db.get_order(order.id))

    deliver(reconciler, "checkout.session.completed", session_object(order.id))
    second = run(db.get_order(order.id))

    assert second.payment_status == PaymentStatus.PAID
    assert second.paid_at == first.paid_at


def test_unpaid_completion_waits_for_async_success(reconciler, db, order):
    deliver(
        reconciler,
        "checkout.session.completed",
        session_object(order.id, payment_status="unpaid", payment_intent=None)
    )
    assert run(db.get_order(order.id)).payment_status == PaymentStatus.PENDING

    deliver(reconciler, "checkout.session.async_payment_succeeded", session_object(order.id))
    assert run(db.get_order(order.id)).payment_status == PaymentStatus.PAID


def test_expired_session_releases_inventory_once(reconciler, db, drop, order):
    assert run(db.get_drop(drop.id)).quantity_remaining == 8

    deliver(reconciler, "checkout.session.expired", session_object(order.id, payment_status="unpaid"))
    deliver(reconciler, "checkout.session.expired", session_object(order.id, payment_status="unpaid"))

    assert run(db.get_order(order.id)).payment_status == PaymentStatus.FAILED
    assert run(db.get_drop(drop.id)).quantity_remaining == 10


def test_failure_after_payment_is_ignored(reconciler, db, drop, order):
    deliver(reconciler, "checkout.session.completed", session_object(order.id))
    deliver(reconciler, "checkout.session.async_payment_failed", session_object(order.id))

    assert run(db.get_order(order.id)).payment_status == PaymentStatus.PAID
    assert run(db.get_drop(drop.id)).quantity_remaining == 8


def test_paid_after_failure_is_ignored(reconciler, db, order):
    deliver(reconciler, "checkout.session.expired", session_object(order.id))
    deliver(reconciler, "checkout.session.completed", session_object(order.id))

    assert run(db.get_order(order.id)).payment_status == PaymentStatus.FAILED


def test_expiry_of_replaced_session_is_ignored(reconciler, db, drop, order):
    run(db.set_checkout_session(order.id, "cs_test_2", expected_session_id="cs_test_1"))

    deliver(reconciler, "checkout.session.expired", session_object(order.id, session_id="cs_test_1"))

    assert run(db.get_order(order.id)).payment_status == PaymentStatus.PENDING
    assert run(db.get_drop(drop.id)).quantity_remaining == 8


def test_refund_located_by_payment_intent(reconciler, db, order):
    deliver(reconciler, "checkout.session.completed", session_object(order.id))

    deliver(reconciler, "charge.refunded", {
        "id": "ch_1",
        "object": "charge",
        "payment_intent": "pi_123",
        "amount_refunded": 2200,
    })

    assert run(db.get_order(order.id)).payment_status == PaymentStatus.REFUNDED


def test_refund_of_unpaid_order_is_ignored(reconciler, db, order):
    run(db.mark_paid(order.id, "cs_test_1", "pi_999", paid_at=order.timestamp))
    db._orders[order.id] = run(db.get_order(order.id)).with_status(PaymentStatus.FAILED)

    deliver(reconciler, "charge.refunded", {"id": "ch_1", "payment_intent": "pi_999"})

    assert run(db.get_order(order.id)).payment_status == PaymentStatus.FAILED


def test_unknown_event_acknowledged(reconciler, db, order):
    result = deliver(reconciler, "customer.created", {"id": "cus_1"})

    assert result == {"received": True}
    assert run(db.get_order(order.id)).payment_status == PaymentStatus.PENDING


def test_missing_purchase_id_is_acknowledged(reconciler, db, order):
    result = deliver(reconciler, "checkout.session.completed", {"id": "cs_other", "metadata": {}})

    assert result == {"received": True}
    assert run(db.get_order(order.id)).payment_status == PaymentStatus.PENDING


def test_bad_signature_mutates_nothing(reconciler, db, order):
    payload = stripe_event("checkout.session.completed", session_object(order.id))

    with pytest.raises(InvalidSignature):
        run(reconciler.handle(payload, sign_payload(payload, secret="whsec_wrong")))

    with pytest.raises(InvalidSignature):
        run(reconciler.handle(payload, None))

    assert run(db.get_order(order.id)).payment_status == PaymentStatus.PENDING


def test_tampered_body_rejected(reconciler, db, order):
    payload = stripe_event("checkout.session.completed", session_object(order.id))
    header = sign_payload(payload)
    tampered = payload.replace(b"pi_123", b"pi_666")

    with pytest.raises(InvalidSignature):
        run(reconciler.handle(tampered, header))

    assert run(db.get_order(order.id)).payment_status == PaymentStatus.PENDING


def test_stale_timestamp_rejected(reconciler, order):
    payload = stripe_event("checkout.session.completed", session_object(order.id))
    header = sign_payload(payload, timestamp=int(time.time()) - 3600)

    with pytest.raises(InvalidSignature):
        run(reconciler.handle(payload, header))


def test_signed_non_json_rejected(reconciler):
    payload = b"not json"

    with pytest.raises(InvalidSignature):
        run(reconciler.handle(payload, sign_payload(payload)))
