from flask import Blueprint, g, request
from sqlalchemy import select

from kudimarket.auth_mw import current_principal, optional_auth, require_role
from kudimarket.db import db
from kudimarket.errors import AuthorizationError
from kudimarket.models import Order, OrderStatus
from kudimarket.money import money_sum
from kudimarket.services import escrow
from kudimarket.services import orders as order_svc
from kudimarket.services.checkout import checkout_svc
from kudimarket.utils.parsing import enum_value, json_body, parse_int
from kudimarket.utils.responses import ok

bp = Blueprint("orders", __name__, url_prefix="/orders")


@bp.post("")
@optional_auth
def create_order():
    checkout_ref, orders = checkout_svc(json_body(), current_principal())
    return ok(
        {
            "message": "Order created",
            "checkout_ref": checkout_ref,
            "orders": [o.to_dict() for o in orders],
            "total_amount": money_sum(o.total_amount for o in orders).display(),
            "currency": orders[0].currency,
        },
        201,
    )


@bp.get("")
@require_role("buyer")
def my_orders():
    stmt = select(Order).where(Order.buyer_id == g.principal["id"])
    if request.args.get("status"):
        stmt = stmt.where(Order.status == enum_value(OrderStatus, request.args["status"], "status"))
    limit = parse_int(request.args.get("limit"), 50, 1, 200)
    orders = db.session.scalars(stmt.order_by(Order.created_at.desc()).limit(limit)).all()
    return ok({"data": [o.to_dict() for o in orders]})


@bp.get("/<ref>")
@optional_auth
def get_order(ref):
    order = order_svc.find_order(ref)
    principal = current_principal()
    if principal is None:
        return ok(order.to_public_dict())
    if not order.is_party(principal):
        raise AuthorizationError("not a party to this order")
    body = order.to_dict()
    body["events"] = [e.to_dict() for e in order.events]
    return ok(body)


@bp.put("/<ref>/confirm-delivery")
@require_role("buyer")
def confirm_delivery(ref):
    data = json_body()
    order = order_svc.confirm_receipt(ref, g.principal, data.get("signature_name"), data.get("signature_data"))
    return ok({"message": "Delivery confirmed, payment released to seller", "order": order.to_dict()})


@bp.post("/<ref>/cancel")
@require_role("buyer")
def cancel_order(ref):
    order = order_svc.cancel(ref, g.principal, json_body().get("reason"))
    return ok({"message": "Order cancelled", "order": order.to_dict()})


@bp.post("/<ref>/dispute")
@require_role("buyer")
def dispute_order(ref):
    order = order_svc.report_dispute(ref, g.principal, json_body().get("reason"))
    return ok({"message": "Issue reported", "order": order.to_dict()})


@bp.get("/<ref>/escrow")
@require_role("buyer", "seller", "admin")
def order_escrow(ref):
    order = order_svc.find_order(ref)
    if not order.is_party(g.principal):
        raise AuthorizationError("not a party to this order")
    return ok({
        "order_number": order.order_number,
        "escrow_status": order.escrow_status.value,
        "summary": escrow.summary(order).to_dict(order.currency),
        "entries": [e.to_dict() for e in escrow.entries_for(order)],
    })
