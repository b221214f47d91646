"""Order status transition table.

Every status change goes through :func:`apply_transition`, which refuses
edges missing from ``TRANSITIONS``, stamps the lifecycle timestamp for the
new state (first write wins) and appends an :class:`OrderEvent`.
"""
from flask import current_app

from kudimarket.db import db
from kudimarket.errors import InvalidStateTransition
from kudimarket.models import OrderEvent, OrderStatus, utcnow

TRANSITIONS = {
    OrderStatus.PENDING: frozenset({OrderStatus.ESCROW_HELD, OrderStatus.CANCELLED}),
    OrderStatus.ESCROW_HELD: frozenset({
        OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.DISPUTED,
    }),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.DISPUTED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.COMPLETED, OrderStatus.DISPUTED}),
    OrderStatus.DISPUTED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)

# timestamp column written when an order enters the state
_STAMPS = {
    OrderStatus.ESCROW_HELD: "paid_at",
    OrderStatus.SHIPPED: "shipped_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: OrderStatus, target: OrderStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransition(current, target)


def apply_transition(order, target: OrderStatus, actor_type: str,
                     actor_id: int | None = None, note: str | None = None, now=None):
    current = order.status
    ensure_transition(current, target)
    now = now or utcnow()

    order.status = target
    stamp = _STAMPS.get(target)
    if stamp and getattr(order, stamp) is None:
        setattr(order, stamp, now)

    db.session.add(OrderEvent(
        order_id=order.id,
        from_status=current.value,
        to_status=target.value,
        actor_type=actor_type,
        actor_id=actor_id,
        note=note,
        created_at=now,
    ))
    current_app.logger.info(
        "order %s: %s -> %s by %s:%s", order.order_number, current.value, target.value, actor_type, actor_id
    )
    return order
