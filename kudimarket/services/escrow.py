"""Escrow ledger.

Funds movements live in ``escrow_ledger`` as append-only rows. The order's
``escrow_status`` column is a cached view of the same facts; the ledger is
the source of truth for amounts.
"""
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import func, select

from kudimarket.db import db
from kudimarket.errors import AlreadyHeld, AlreadyReleased, InvalidStateTransition
from kudimarket.models import EscrowLedgerEntry, EscrowStatus, LedgerKind, Order, utcnow
from kudimarket.money import Money


def hold_key(order) -> str:
    return f"hold:{order.id}"


def terminal_key(order) -> str:
    return f"terminal:{order.id}"


@dataclass(frozen=True)
class EscrowSummary:
    held: Money
    released: Money
    refunded: Money

    @property
    def net(self) -> Money:
        return self.held - self.released - self.refunded

    def to_dict(self, currency: str = "GHS") -> dict:
        return {
            "currency": currency,
            "held": self.held.display(),
            "released": self.released.display(),
            "refunded": self.refunded.display(),
            "net": self.net.display(),
        }


def entries_for(order) -> list[EscrowLedgerEntry]:
    return list(db.session.scalars(
        select(EscrowLedgerEntry)
        .where(EscrowLedgerEntry.order_id == order.id)
        .order_by(EscrowLedgerEntry.id)
    ))


def _find(order, kinds) -> EscrowLedgerEntry | None:
    # pending order changes are flushed at commit, where version clashes are resolved
    with db.session.no_autoflush:
        return db.session.scalars(
            select(EscrowLedgerEntry).where(
                EscrowLedgerEntry.order_id == order.id,
                EscrowLedgerEntry.kind.in_(kinds),
            )
        ).first()


def hold(order, amount: Money, payment_reference: str | None = None, actor: str = "gateway"):
    existing = _find(order, [LedgerKind.HOLD])
    if existing is not None:
        raise AlreadyHeld("funds already held for this order", order=order)
    if order.escrow_status is not EscrowStatus.NONE:
        raise InvalidStateTransition(order.escrow_status, EscrowStatus.HELD)

    entry = EscrowLedgerEntry(
        order_id=order.id,
        kind=LedgerKind.HOLD,
        amount_minor=amount.minor,
        currency=order.currency,
        idempotency_key=hold_key(order),
        payment_reference=payment_reference,
        actor=actor,
        occurred_at=utcnow(),
    )
    db.session.add(entry)
    order.escrow_status = EscrowStatus.HELD
    current_app.logger.info("escrow hold %s on %s (ref %s)", amount, order.order_number, payment_reference)
    return entry


def _terminal(order, kind: LedgerKind, target: EscrowStatus, actor: str):
    if _find(order, [LedgerKind.RELEASE, LedgerKind.REFUND]) is not None:
        raise AlreadyReleased("escrow already settled for this order", order=order)
    held = _find(order, [LedgerKind.HOLD])
    if held is None or order.escrow_status is not EscrowStatus.HELD:
        raise InvalidStateTransition(order.escrow_status, target)

    entry = EscrowLedgerEntry(
        order_id=order.id,
        kind=kind,
        amount_minor=held.amount_minor,
        currency=held.currency,
        idempotency_key=terminal_key(order),
        actor=actor,
        occurred_at=utcnow(),
    )
    db.session.add(entry)
    order.escrow_status = target
    current_app.logger.info("escrow %s %s on %s", kind.value, held.amount, order.order_number)
    return entry


def release(order, actor: str = "system"):
    """Pay the full held amount out to the seller."""
    return _terminal(order, LedgerKind.RELEASE, EscrowStatus.RELEASED, actor)


def refund(order, actor: str = "system"):
    """Return the full held amount to the buyer."""
    return _terminal(order, LedgerKind.REFUND, EscrowStatus.REFUNDED, actor)


def _totals(where) -> EscrowSummary:
    rows = db.session.execute(
        select(EscrowLedgerEntry.kind, func.coalesce(func.sum(EscrowLedgerEntry.amount_minor), 0))
        .join(Order, Order.id == EscrowLedgerEntry.order_id)
        .where(where)
        .group_by(EscrowLedgerEntry.kind)
    ).all()
    sums = {kind: int(total) for kind, total in rows}
    return EscrowSummary(
        held=Money(sums.get(LedgerKind.HOLD, 0)),
        released=Money(sums.get(LedgerKind.RELEASE, 0)),
        refunded=Money(sums.get(LedgerKind.REFUND, 0)),
    )


def summary(order) -> EscrowSummary:
    return _totals(Order.id == order.id)


def seller_summary(seller_id: int) -> EscrowSummary:
    return _totals(Order.seller_id == seller_id)
