from datetime import timedelta

import pytest

from catalog import ApprovalStatus, utcnow
from conftest import drop_row, make_drop, ramen_menu, run
from drops import DropService
from errors import (
    DropNotFound,
    InvalidApprovalTransition,
    InvalidDropSubmission,
    InvalidOrderRequest,
)
from order import ReservationRequest


@pytest.fixture
def service(db):
    return DropService(db)


def submission(**overrides):
    row = drop_row(menu_items=ramen_menu())
    del row["id"]
    row.update(overrides)
    return row


def test_submission_lands_pending_with_full_stock(service):
    drop = run(service.submit_drop(
        submission(approval_status="approved", quantity_remaining=0),
        creator_id="vendor-9"
    ))

    assert drop.id
    assert drop.creator_id == "vendor-9"
    assert drop.approval_status == ApprovalStatus.PENDING
    assert drop.quantity_remaining == drop.total_quantity


@pytest.mark.parametrize("overrides", [
    {"total_quantity": 0},
    {"name": ""},
    {"end_date": "not a date"},
    {"menu_items": [{"id": "x", "name": "X", "basePrice": -5}]},
    {"delivery_available": False, "delivery_fee": 3},
])
def test_invalid_submissions(service, overrides):
    with pytest.raises(InvalidDropSubmission):
        run(service.submit_drop(submission(**overrides), creator_id="vendor-9"))


def test_submission_requires_creator(service):
    with pytest.raises(InvalidDropSubmission):
        run(service.submit_drop(submission(), creator_id=""))


def test_approval_transitions(service):
    drop = run(service.submit_drop(submission(), creator_id="vendor-9"))

    rejected = run(service.set_approval(drop.id, "rejected"))
    assert rejected.approval_status == ApprovalStatus.REJECTED

    resubmitted = run(service.set_approval(drop.id, "pending"))
    assert resubmitted.approval_status == ApprovalStatus.PENDING

    approved = run(service.set_approval(drop.id, "approved"))
    assert approved.approval_status == ApprovalStatus.APPROVED

    with pytest.raises(InvalidApprovalTransition):
        run(service.set_approval(drop.id, "pending"))


def test_unknown_approval_status(service, drop):
    with pytest.raises(InvalidApprovalTransition):
        run(service.set_approval(drop.id, "published"))


def test_storefront_lists_approved_drops_soonest_first(service, db):
    now = utcnow()
    run(db.insert_drop(make_drop(id="b", start_date=(now - timedelta(minutes=10)).isoformat())))
    run(db.insert_drop(make_drop(id="a", start_date=(now - timedelta(hours=2)).isoformat())))
    run(db.insert_drop(make_drop(id="hidden", approval_status="pending")))
    run(db.insert_drop(make_drop(
        id="over",
        start_date=(now - timedelta(days=2)).isoformat(),
        end_date=(now - timedelta(days=1)).isoformat(),
    )))

    assert [d.id for d in run(service.list_storefront())] == ["a", "b"]
    assert [d.id for d in run(service.list_storefront(include_ended=True))] == ["over", "a", "b"]


def test_waitlist_deduplicates_by_email(service, db, drop):
    first = run(service.join_waitlist(drop.id, "Fan@Example.com"))
    second = run(service.join_waitlist(drop.id, "fan@example.com", user_id="u1"))

    assert first["id"] == second["id"]
    assert run(db.list_waitlist([drop.id])) == [first]


def test_waitlist_validation(service, drop):
    with pytest.raises(InvalidOrderRequest):
        run(service.join_waitlist(drop.id, "nope"))

    with pytest.raises(DropNotFound):
        run(service.join_waitlist("missing", "fan@example.com"))


def test_vendor_views(service, db, drop, reservation):
    run(db.insert_drop(make_drop(id="other", creator_id="vendor-2")))
    order = run(reservation.reserve(ReservationRequest(
        drop_id=drop.id,
        customer_name="Jo",
        customer_email="jo@example.com",
        quantity=1,
        user_id="user-1",
    )))
    run(service.join_waitlist(drop.id, "fan@example.com"))

    assert [d.id for d in run(service.list_vendor_drops("vendor-1"))] == [drop.id]
    assert [o.id for o in run(service.list_vendor_orders("vendor-1"))] == [order.id]
    assert run(service.list_vendor_orders("vendor-2")) == []
    assert len(run(service.list_vendor_waitlist("vendor-1"))) == 1
    assert [o.id for o in run(service.list_user_orders("user-1"))] == [order.id]
