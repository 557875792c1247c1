import pytest

from order import Order, PaymentStatus, VALID_TRANSITIONS, can_transition


@pytest.mark.parametrize("current,target", [
    (PaymentStatus.PENDING, PaymentStatus.PAID),
    (PaymentStatus.PENDING, PaymentStatus.FAILED),
    (PaymentStatus.PAID, PaymentStatus.REFUNDED),
])
def test_allowed_edges(current, target):
    assert can_transition(current, target)


@pytest.mark.parametrize("current,target", [
    (PaymentStatus.PAID, PaymentStatus.PENDING),
    (PaymentStatus.PAID, PaymentStatus.FAILED),
    (PaymentStatus.FAILED, PaymentStatus.PAID),
    (PaymentStatus.FAILED, PaymentStatus.PENDING),
    (PaymentStatus.REFUNDED, PaymentStatus.PAID),
    (PaymentStatus.PENDING, PaymentStatus.REFUNDED),
    (PaymentStatus.PAID, PaymentStatus.PAID),
])
def test_forbidden_edges(current, target):
    assert not can_transition(current, target)


def test_terminal_states():
    assert VALID_TRANSITIONS[PaymentStatus.FAILED] == set()
    assert VALID_TRANSITIONS[PaymentStatus.REFUNDED] == set()


def test_order_from_row_uses_created_at_fallback():
    order = Order.from_row({
        "id": "o1",
        "drop_id": "d1",
        "quantity": 2,
        "total_paid": "22.00",
        "payment_status": "paid",
        "created_at": "2025-06-01T12:00:00Z",
        "paid_at": "2025-06-01T12:05:00+00:00",
    })

    assert order.is_paid
    assert order.total_paid == 22.0
    assert order.to_dict()["timestamp"] == "2025-06-01T12:00:00+00:00"
    assert order.to_dict()["payment_status"] == "paid"
