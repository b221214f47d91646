from datetime import timedelta

from kudimarket.db import db
from kudimarket.models import EscrowStatus, LedgerKind, Order, OrderStatus, utcnow
from kudimarket.services import escrow
from kudimarket.services import orders as order_svc

from helpers import fresh, principal


def _ship(order, seller, days_ago):
    order_svc.mark_shipped(order.order_number, principal(seller, "seller"))
    order = fresh(Order, order.id)
    order.shipped_at = utcnow() - timedelta(days=days_ago)
    db.session.commit()
    return order


def test_sweep_infers_delivery_then_auto_completes(parties, paid_order):
    seller, _, _ = parties
    stale = _ship(paid_order(quantity=1), seller, days_ago=10)
    recent = _ship(paid_order(quantity=1), seller, days_ago=1)

    counts = order_svc.sweep_timeouts(inference_days=7, confirm_days=3)
    assert counts == {"delivered": 1, "completed": 0, "skipped": 0}
    assert fresh(Order, stale.id).status is OrderStatus.DELIVERED
    assert fresh(Order, recent.id).status is OrderStatus.SHIPPED

    later = utcnow() + timedelta(days=4)
    counts = order_svc.sweep_timeouts(inference_days=7, confirm_days=3, now=later)
    assert counts["completed"] == 1

    done = fresh(Order, stale.id)
    assert done.status is OrderStatus.COMPLETED
    assert done.escrow_status is EscrowStatus.RELEASED
    assert done.buyer_confirmed_at is None
    assert [e.kind for e in escrow.entries_for(done)].count(LedgerKind.RELEASE) == 1
    assert done.events[-1].actor_type == "system"


def test_sweep_leaves_disputed_orders_alone(parties, paid_order):
    seller, buyer, _ = parties
    order = _ship(paid_order(quantity=1), seller, days_ago=30)
    order_svc.report_dispute(order.order_number, principal(buyer, "buyer"), "never arrived")

    counts = order_svc.sweep_timeouts(inference_days=7, confirm_days=3)
    assert counts == {"delivered": 0, "completed": 0, "skipped": 0}
    assert fresh(Order, order.id).status is OrderStatus.DISPUTED


def test_sweep_cli_command(app, parties, paid_order):
    seller, _, _ = parties
    _ship(paid_order(quantity=1), seller, days_ago=10)
    result = app.test_cli_runner().invoke(args=["sweep-orders"])
    assert result.exit_code == 0
    assert "delivered=1" in result.output
