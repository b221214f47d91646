"""Order aggregate operations.

Each public function loads the order row (``FOR UPDATE`` where the backend
supports it), checks who is asking, applies one edge of the transition
table together with its escrow and inventory side effects, and commits.
A commit that loses a race (ledger unique key or order version clash) is
rolled back and re-read: if the order already reached the requested state
the caller gets the matching ``AlreadyDone`` error, which answers 200.
"""
from datetime import timedelta

from flask import current_app
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from kudimarket.db import db
from kudimarket.errors import (
    AlreadyCompleted,
    AlreadyDone,
    AlreadyReleased,
    AuthorizationError,
    InvalidStateTransition,
    KudiError,
    NotFoundError,
    ValidationError,
)
from kudimarket.lifecycle import apply_transition, ensure_transition
from kudimarket.models import EscrowStatus, Order, OrderStatus, PaymentStatus, utcnow
from kudimarket.services import escrow, inventory
from kudimarket.utils.parsing import clean_text
from kudimarket.utils.responses import commit_or_rollback

RACE_ERRORS = (IntegrityError, StaleDataError)


# ---------- Lookup / guards ----------
def find_order(ref: str, lock: bool = False) -> Order:
    stmt = select(Order).where(or_(Order.order_number == ref, Order.id == ref))
    if lock:
        stmt = stmt.with_for_update()
    order = db.session.scalars(stmt.execution_options(populate_existing=True)).first()
    if order is None:
        raise NotFoundError("order not found", order=ref)
    return order


def find_by_payment_reference(reference: str, lock: bool = False) -> Order:
    stmt = select(Order).where(Order.payment_reference == reference)
    if lock:
        stmt = stmt.with_for_update()
    order = db.session.scalars(stmt.execution_options(populate_existing=True)).first()
    if order is None:
        raise NotFoundError("order not found for this payment reference", reference=reference)
    return order


def _role(principal) -> str | None:
    return principal.get("role") if principal else None


def require_buyer(order: Order, principal) -> None:
    if _role(principal) != "buyer" or order.buyer_id is None or order.buyer_id != principal.get("id"):
        raise AuthorizationError("only the buyer of this order can do that")


def require_seller(order: Order, principal) -> None:
    if _role(principal) != "seller" or order.seller_id != principal.get("id"):
        raise AuthorizationError("only the seller of this order can do that")


def _actor(principal) -> tuple[str, int | None]:
    if not principal:
        return "system", None
    return principal.get("role", "system"), principal.get("id")


def _lost_race(ref: str, target: OrderStatus, done_error=AlreadyDone):
    """Re-read the order after a concurrent writer got there first."""
    db.session.rollback()
    fresh = find_order(ref)
    if fresh.status is target:
        raise done_error(f"order is already {target.value}", order=fresh)
    raise InvalidStateTransition(fresh.status, target)


def _commit(order: Order, target: OrderStatus, done_error=AlreadyDone):
    """Commit a transition to ``target``; a lost race becomes ``done_error`` when the state matches."""
    ref = order.order_number
    try:
        commit_or_rollback(ref, passthrough=RACE_ERRORS)
    except RACE_ERRORS:
        current_app.logger.warning("order %s: concurrent update while moving to %s", ref, target.value)
        _lost_race(ref, target, done_error)
    return order


def _release(order: Order, actor: str) -> None:
    try:
        escrow.release(order, actor=actor)
    except AlreadyReleased:
        current_app.logger.warning("order %s: escrow settled by a concurrent request", order.order_number)
        _lost_race(order.order_number, OrderStatus.COMPLETED, AlreadyCompleted)


# ---------- Payment ----------
def mark_paid(order: Order, payment_reference: str, amount, currency: str | None = None,
              method: str = "paystack", actor: str = "gateway") -> Order:
    """``pending -> escrow_held`` plus a ledger hold.

    Redelivery of the same payment reference is a no-op returning the order.
    """
    if order.payment_reference and payment_reference != order.payment_reference:
        raise ValidationError("payment reference does not belong to this order",
                              order_number=order.order_number)

    if order.status is not OrderStatus.PENDING:
        if order.payment_status is PaymentStatus.PAID and order.escrow_status is not EscrowStatus.NONE:
            current_app.logger.info("order %s already paid (ref %s); ignoring", order.order_number, payment_reference)
            return order
        current_app.logger.error(
            "payment %s succeeded for order %s in state %s; needs manual reconciliation",
            payment_reference, order.order_number, order.status.value,
        )
        raise InvalidStateTransition(order.status, OrderStatus.ESCROW_HELD)

    if amount != order.total_amount:
        current_app.logger.error(
            "order %s: gateway amount %s does not match order total %s (ref %s)",
            order.order_number, amount, order.total_amount, payment_reference,
        )
        raise ValidationError("paid amount does not match order total",
                              expected=order.total_amount.display(), received=amount.display())
    if currency and currency.upper() != order.currency:
        raise ValidationError("paid currency does not match order currency",
                              expected=order.currency, received=currency)

    apply_transition(order, OrderStatus.ESCROW_HELD, actor)
    escrow.hold(order, order.total_amount, payment_reference, actor=actor)
    order.payment_reference = payment_reference
    order.payment_status = PaymentStatus.PAID
    order.payment_method = method

    ref = order.order_number
    try:
        commit_or_rollback(ref, passthrough=RACE_ERRORS)
    except RACE_ERRORS:
        fresh = find_order(ref)
        if fresh.payment_status is PaymentStatus.PAID:
            current_app.logger.info("order %s paid concurrently (ref %s)", ref, payment_reference)
            return fresh
        raise InvalidStateTransition(fresh.status, OrderStatus.ESCROW_HELD)
    return order


def mark_payment_failed(order: Order, payment_reference: str) -> Order:
    if order.status is OrderStatus.PENDING and order.payment_status is not PaymentStatus.PAID:
        order.payment_status = PaymentStatus.FAILED
        commit_or_rollback(order.order_number)
        current_app.logger.warning("order %s payment failed (ref %s)", order.order_number, payment_reference)
    return order


# ---------- Fulfilment ----------
def mark_shipped(ref: str, principal, tracking_number: str | None = None) -> Order:
    order = find_order(ref, lock=True)
    require_seller(order, principal)
    ensure_transition(order.status, OrderStatus.SHIPPED)

    actor_type, actor_id = _actor(principal)
    if tracking_number:
        order.tracking_number = str(tracking_number).strip()
    apply_transition(order, OrderStatus.SHIPPED, actor_type, actor_id,
                     note=f"tracking {order.tracking_number}" if order.tracking_number else None)
    return _commit(order, OrderStatus.SHIPPED)


def claim_delivery(ref: str, principal) -> Order:
    order = find_order(ref, lock=True)
    if _role(principal) != "delivery":
        raise AuthorizationError("delivery accounts only")
    if order.delivery_person_id and order.delivery_person_id != principal.get("id"):
        raise AuthorizationError("order already assigned to another delivery account")
    if order.status is not OrderStatus.SHIPPED:
        raise ValidationError("order is not ready for delivery", status=order.status.value)
    order.delivery_person_id = principal.get("id")
    commit_or_rollback(order.order_number)
    current_app.logger.info("order %s claimed by delivery user %s", order.order_number, principal.get("id"))
    return order


def mark_delivered(ref: str, principal=None, proof_ref: str | None = None,
                   proof_type: str = "photo", now=None) -> Order:
    """``shipped -> delivered``; ``principal=None`` means the system inferred it."""
    proof_ref = clean_text(proof_ref, "proof_ref")
    order = find_order(ref, lock=True)
    role = _role(principal)
    if role == "seller":
        require_seller(order, principal)
    elif role == "delivery":
        if order.delivery_person_id != principal.get("id"):
            raise AuthorizationError("order is not assigned to this delivery account")
    elif principal is not None:
        raise AuthorizationError("only the seller or the delivery agent can mark delivery")

    if principal is not None and not proof_ref:
        raise ValidationError("delivery proof is required", field="proof_ref")

    if order.status is OrderStatus.DELIVERED:
        # delivered_at is first-write-wins; a late proof only fills a missing one
        if proof_ref and not order.delivery_proof_ref:
            _attach_proof(order, role, proof_ref, proof_type)
            commit_or_rollback(order.order_number)
        return order
    ensure_transition(order.status, OrderStatus.DELIVERED)

    actor_type, actor_id = _actor(principal)
    if proof_ref:
        _attach_proof(order, role, proof_ref, proof_type)
    apply_transition(order, OrderStatus.DELIVERED, actor_type, actor_id,
                     note=None if principal else "delivery inferred after timeout", now=now)
    return _commit(order, OrderStatus.DELIVERED)


def _attach_proof(order: Order, role: str | None, proof_ref: str, proof_type: str) -> None:
    order.delivery_proof_type = proof_type or "photo"
    order.delivery_proof_ref = proof_ref
    order.delivery_proof_uploaded_by = role or "system"


def confirm_receipt(ref: str, principal, signature_name: str | None, signature_data: str | None) -> Order:
    """Buyer confirms receipt: ``delivered -> completed`` and escrow release.

    A ``shipped`` order passes through ``delivered`` first.
    """
    order = find_order(ref, lock=True)
    require_buyer(order, principal)
    if order.status is OrderStatus.COMPLETED:
        raise AlreadyCompleted("order already completed", order=order)
    signature_name = clean_text(signature_name, "signature_name")
    signature_data = clean_text(signature_data, "signature_data")
    if not signature_name or not signature_data:
        raise ValidationError("buyer signature is required to confirm delivery",
                              fields=["signature_name", "signature_data"])
    if order.status is not OrderStatus.SHIPPED:
        ensure_transition(order.status, OrderStatus.COMPLETED)

    now = utcnow()
    if order.status is OrderStatus.SHIPPED:
        # the buyer holding the goods is itself proof of delivery
        apply_transition(order, OrderStatus.DELIVERED, "buyer", principal.get("id"),
                         note="confirmed by buyer", now=now)
    _release(order, f"buyer:{principal.get('id')}")
    order.buyer_signature_name = signature_name
    order.buyer_signature_data = signature_data
    order.delivery_proof_type = "photo+signature" if order.delivery_proof_ref else "signature"
    if order.buyer_confirmed_at is None:
        order.buyer_confirmed_at = now
    apply_transition(order, OrderStatus.COMPLETED, "buyer", principal.get("id"), now=now)
    return _commit(order, OrderStatus.COMPLETED, AlreadyCompleted)


def auto_complete(ref: str, now=None) -> Order:
    """Release escrow for a delivered order the buyer never confirmed."""
    order = find_order(ref, lock=True)
    if order.status is OrderStatus.COMPLETED:
        raise AlreadyCompleted("order already completed", order=order)
    ensure_transition(order.status, OrderStatus.COMPLETED)
    _release(order, "system")
    apply_transition(order, OrderStatus.COMPLETED, "system",
                     note="auto-confirmed after timeout", now=now)
    return _commit(order, OrderStatus.COMPLETED, AlreadyCompleted)


# ---------- Cancellation / disputes ----------
def cancel(ref: str, principal, reason: str | None = None) -> Order:
    order = find_order(ref, lock=True)
    require_buyer(order, principal)
    reason = clean_text(reason, "reason")
    ensure_transition(order.status, OrderStatus.CANCELLED)

    inventory.restore(order.product_id, order.quantity)
    if order.deal_id is not None:
        inventory.release_deal(order.deal_id, order.quantity)
    if order.escrow_status is EscrowStatus.HELD:
        escrow.refund(order, actor=f"buyer:{principal.get('id')}")
    apply_transition(order, OrderStatus.CANCELLED, "buyer", principal.get("id"), note=reason)
    return _commit(order, OrderStatus.CANCELLED)


def report_dispute(ref: str, principal, reason: str | None) -> Order:
    order = find_order(ref, lock=True)
    role = _role(principal)
    if role == "buyer":
        require_buyer(order, principal)
    elif role == "seller":
        require_seller(order, principal)
    else:
        raise AuthorizationError("only the buyer or seller can dispute an order")
    reason = clean_text(reason, "reason")
    if not reason:
        raise ValidationError("describe the issue", field="reason")
    ensure_transition(order.status, OrderStatus.DISPUTED)

    order.dispute_reason = reason
    apply_transition(order, OrderStatus.DISPUTED, role, principal.get("id"), note=order.dispute_reason)
    return _commit(order, OrderStatus.DISPUTED)


def refund(ref: str, principal, note: str | None = None) -> Order:
    """Administrator closes a dispute in the buyer's favour."""
    if _role(principal) != "admin":
        raise AuthorizationError("admin only")
    order = find_order(ref, lock=True)
    ensure_transition(order.status, OrderStatus.REFUNDED)
    escrow.refund(order, actor=f"admin:{principal.get('id')}")
    apply_transition(order, OrderStatus.REFUNDED, "admin", principal.get("id"), note=note)
    return _commit(order, OrderStatus.REFUNDED)


# ---------- Timeouts ----------
def sweep_timeouts(inference_days: int, confirm_days: int, now=None) -> dict:
    """Infer deliveries and auto-complete stale orders; returns counts per action."""
    now = now or utcnow()
    counts = {"delivered": 0, "completed": 0, "skipped": 0}

    shipped = db.session.scalars(
        select(Order.order_number).where(
            Order.status == OrderStatus.SHIPPED,
            Order.shipped_at <= now - timedelta(days=inference_days),
        )
    ).all()
    for number in shipped:
        try:
            mark_delivered(number, None, now=now)
            counts["delivered"] += 1
        except KudiError as e:
            db.session.rollback()
            counts["skipped"] += 1
            current_app.logger.warning("sweep: order %s not delivered: %s", number, e.message)

    delivered = db.session.scalars(
        select(Order.order_number).where(
            Order.status == OrderStatus.DELIVERED,
            Order.delivered_at <= now - timedelta(days=confirm_days),
        )
    ).all()
    for number in delivered:
        try:
            auto_complete(number, now=now)
            counts["completed"] += 1
        except KudiError as e:
            db.session.rollback()
            counts["skipped"] += 1
            current_app.logger.warning("sweep: order %s not completed: %s", number, e.message)

    current_app.logger.info("sweep finished: %s", counts)
    return counts
