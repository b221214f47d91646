import pytest

from kudimarket.errors import (
    AlreadyCompleted,
    AuthorizationError,
    InvalidStateTransition,
    ValidationError,
)
from kudimarket.lifecycle import TERMINAL_STATES, TRANSITIONS, apply_transition, can_transition
from kudimarket.models import EscrowStatus, LedgerKind, Order, OrderStatus, Product
from kudimarket.money import Money
from kudimarket.services import escrow
from kudimarket.services import orders as order_svc

from helpers import fresh, principal

ALLOWED = {
    (OrderStatus.PENDING, OrderStatus.ESCROW_HELD),
    (OrderStatus.PENDING, OrderStatus.CANCELLED),
    (OrderStatus.ESCROW_HELD, OrderStatus.SHIPPED),
    (OrderStatus.ESCROW_HELD, OrderStatus.CANCELLED),
    (OrderStatus.ESCROW_HELD, OrderStatus.DISPUTED),
    (OrderStatus.SHIPPED, OrderStatus.DELIVERED),
    (OrderStatus.SHIPPED, OrderStatus.DISPUTED),
    (OrderStatus.DELIVERED, OrderStatus.COMPLETED),
    (OrderStatus.DELIVERED, OrderStatus.DISPUTED),
    (OrderStatus.DISPUTED, OrderStatus.REFUNDED),
}


def test_transition_table_is_exactly_the_allowed_edges():
    for current in OrderStatus:
        for target in OrderStatus:
            assert can_transition(current, target) == ((current, target) in ALLOWED)
    assert TERMINAL_STATES == {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    assert set(TRANSITIONS) == set(OrderStatus)


def test_illegal_transition_leaves_order_unchanged(place_order):
    order = place_order()
    with pytest.raises(InvalidStateTransition) as exc:
        apply_transition(order, OrderStatus.SHIPPED, "seller", 1)
    assert exc.value.details == {"current_state": "pending", "requested_state": "shipped"}
    assert order.status is OrderStatus.PENDING
    assert order.shipped_at is None


def test_happy_path_scenario(parties, place_order):
    seller, buyer, product = parties
    order = place_order(quantity=2, address="Accra")
    assert (order.subtotal, order.delivery_fee, order.total_amount) == (Money(2000), Money(0), Money(2000))
    assert order.status is OrderStatus.PENDING

    order = order_svc.mark_paid(order, "ref-happy", Money(2000), "GHS")
    assert order.status is OrderStatus.ESCROW_HELD
    assert order.escrow_status is EscrowStatus.HELD

    order = order_svc.mark_shipped(order.order_number, principal(seller, "seller"), "TRK-1")
    assert order.status is OrderStatus.SHIPPED
    assert order.tracking_number == "TRK-1"

    order = order_svc.confirm_receipt(order.order_number, principal(buyer, "buyer"), "Ama Mensah", "data:image/png;base64,AAA")
    assert order.status is OrderStatus.COMPLETED
    assert order.escrow_status is EscrowStatus.RELEASED
    assert order.delivered_at is not None and order.buyer_confirmed_at is not None

    releases = [e for e in escrow.entries_for(order) if e.kind is LedgerKind.RELEASE]
    assert len(releases) == 1 and releases[0].amount == Money(2000)
    assert [e.to_status for e in order.events] == ["escrow_held", "shipped", "delivered", "completed"]


def test_mark_paid_twice_with_same_reference_is_a_noop(place_order):
    order = place_order()
    order_svc.mark_paid(order, "ref-dup", order.total_amount, "GHS")
    again = order_svc.mark_paid(fresh(Order, order.id), "ref-dup", order.total_amount, "GHS")

    assert again.status is OrderStatus.ESCROW_HELD
    holds = [e for e in escrow.entries_for(again) if e.kind is LedgerKind.HOLD]
    assert len(holds) == 1


def test_mark_paid_rejects_amount_mismatch(place_order):
    order = place_order()
    with pytest.raises(ValidationError):
        order_svc.mark_paid(order, "ref-short", Money(100), "GHS")
    order = fresh(Order, order.id)
    assert order.status is OrderStatus.PENDING
    assert escrow.entries_for(order) == []


def test_only_the_seller_can_ship(parties, paid_order, make_seller):
    order = paid_order()
    other = make_seller()
    with pytest.raises(AuthorizationError):
        order_svc.mark_shipped(order.order_number, principal(other, "seller"))


def test_confirm_requires_signature_and_shipment(parties, paid_order):
    _, buyer, _ = parties
    order = paid_order()
    with pytest.raises(ValidationError):
        order_svc.confirm_receipt(order.order_number, principal(buyer, "buyer"), "", "")
    with pytest.raises(InvalidStateTransition):
        order_svc.confirm_receipt(order.order_number, principal(buyer, "buyer"), "Ama", "sig")


def test_second_confirmation_is_already_completed(parties, paid_order):
    seller, buyer, _ = parties
    order = paid_order()
    order_svc.mark_shipped(order.order_number, principal(seller, "seller"))
    order_svc.confirm_receipt(order.order_number, principal(buyer, "buyer"), "Ama", "sig")

    with pytest.raises(AlreadyCompleted) as exc:
        order_svc.confirm_receipt(order.order_number, principal(buyer, "buyer"), "Ama", "sig")
    assert exc.value.status_code == 200
    assert exc.value.order.status is OrderStatus.COMPLETED
    releases = [e for e in escrow.entries_for(order) if e.kind is LedgerKind.RELEASE]
    assert len(releases) == 1


def test_confirmation_racing_a_committed_release(app, parties, paid_order, monkeypatch):
    seller, buyer, _ = parties
    order = paid_order()
    order_svc.mark_shipped(order.order_number, principal(seller, "seller"))
    number = order.order_number
    stale = order_svc.find_order(number)
    assert stale.status is OrderStatus.SHIPPED

    # the winning request runs in its own session and commits first
    with app.app_context():
        order_svc.confirm_receipt(number, principal(buyer, "buyer"), "Ama", "sig")

    real_find = order_svc.find_order
    calls = []

    def find_stale_first(ref, lock=False):
        calls.append(ref)
        return stale if len(calls) == 1 else real_find(ref, lock)

    monkeypatch.setattr(order_svc, "find_order", find_stale_first)
    with pytest.raises(AlreadyCompleted):
        order_svc.confirm_receipt(number, principal(buyer, "buyer"), "Ama", "sig")

    settled = fresh(Order, stale.id)
    assert settled.status is OrderStatus.COMPLETED
    assert [e.kind for e in escrow.entries_for(settled)].count(LedgerKind.RELEASE) == 1


def test_cancel_paid_order_refunds_and_restores_stock(parties, paid_order):
    _, buyer, product = parties
    order = paid_order(quantity=2)
    assert fresh(Product, product.id).stock == 3

    order = order_svc.cancel(order.order_number, principal(buyer, "buyer"), "changed my mind")
    assert order.status is OrderStatus.CANCELLED
    assert order.escrow_status is EscrowStatus.REFUNDED
    assert order.cancelled_at is not None
    refunds = [e for e in escrow.entries_for(order) if e.kind is LedgerKind.REFUND]
    assert len(refunds) == 1 and refunds[0].amount == order.total_amount
    assert fresh(Product, product.id).stock == 5


def test_cancel_pending_order_writes_no_ledger_entry(parties, place_order):
    _, buyer, product = parties
    order = place_order(quantity=1)
    order = order_svc.cancel(order.order_number, principal(buyer, "buyer"))
    assert order.status is OrderStatus.CANCELLED
    assert order.escrow_status is EscrowStatus.NONE
    assert escrow.entries_for(order) == []
    assert fresh(Product, product.id).stock == 5


def test_cancel_after_shipping_fails(parties, paid_order):
    seller, buyer, product = parties
    order = paid_order(quantity=1)
    order_svc.mark_shipped(order.order_number, principal(seller, "seller"))
    with pytest.raises(InvalidStateTransition):
        order_svc.cancel(order.order_number, principal(buyer, "buyer"))
    assert fresh(Order, order.id).status is OrderStatus.SHIPPED
    assert fresh(Product, product.id).stock == 4


def test_only_the_buyer_can_cancel(paid_order, make_buyer):
    order = paid_order()
    stranger = make_buyer()
    with pytest.raises(AuthorizationError):
        order_svc.cancel(order.order_number, principal(stranger, "buyer"))


def test_dispute_freezes_order_until_admin_refund(parties, paid_order, admin_user):
    seller, buyer, _ = parties
    order = paid_order()
    order_svc.mark_shipped(order.order_number, principal(seller, "seller"))

    with pytest.raises(ValidationError):
        order_svc.report_dispute(order.order_number, principal(buyer, "buyer"), " ")
    order = order_svc.report_dispute(order.order_number, principal(buyer, "buyer"), "item damaged")
    assert order.status is OrderStatus.DISPUTED

    with pytest.raises(InvalidStateTransition):
        order_svc.confirm_receipt(order.order_number, principal(buyer, "buyer"), "Ama", "sig")
    with pytest.raises(InvalidStateTransition):
        order_svc.cancel(order.order_number, principal(buyer, "buyer"))
    with pytest.raises(AuthorizationError):
        order_svc.refund(order.order_number, principal(buyer, "buyer"))

    order = order_svc.refund(order.order_number, {"id": admin_user.id, "role": "admin"})
    assert order.status is OrderStatus.REFUNDED
    assert order.escrow_status is EscrowStatus.REFUNDED
    summary = escrow.summary(order)
    assert summary.refunded == order.total_amount
    assert summary.net == Money.zero()


def test_delivery_agent_flow(parties, paid_order, make_delivery_user):
    seller, _, _ = parties
    rider = make_delivery_user()
    order = paid_order()

    with pytest.raises(ValidationError):
        order_svc.claim_delivery(order.order_number, principal(rider, "delivery"))
    order_svc.mark_shipped(order.order_number, principal(seller, "seller"))
    order_svc.claim_delivery(order.order_number, principal(rider, "delivery"))

    with pytest.raises(ValidationError):
        order_svc.mark_delivered(order.order_number, principal(rider, "delivery"), proof_ref="")
    order = order_svc.mark_delivered(order.order_number, principal(rider, "delivery"),
                                     proof_ref="https://cdn.example.com/proof.jpg")
    assert order.status is OrderStatus.DELIVERED
    assert order.delivery_proof_uploaded_by == "delivery"
    first = order.delivered_at

    again = order_svc.mark_delivered(order.order_number, principal(seller, "seller"), proof_ref="other.jpg")
    assert again.delivered_at == first
    assert again.delivery_proof_ref == "https://cdn.example.com/proof.jpg"


def test_unassigned_agent_cannot_mark_delivered(parties, paid_order, make_delivery_user):
    seller, _, _ = parties
    rider = make_delivery_user()
    order = paid_order()
    order_svc.mark_shipped(order.order_number, principal(seller, "seller"))
    with pytest.raises(AuthorizationError):
        order_svc.mark_delivered(order.order_number, principal(rider, "delivery"), proof_ref="p.jpg")
