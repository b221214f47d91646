from flask import Blueprint, g, request
from sqlalchemy import select

from kudimarket.auth_mw import require_role
from kudimarket.db import db
from kudimarket.models import Order, OrderStatus
from kudimarket.services import orders as order_svc
from kudimarket.utils.parsing import enum_value, json_body, parse_int
from kudimarket.utils.responses import ok

bp = Blueprint("admin", __name__, url_prefix="/admin")


@bp.get("/orders")
@require_role("admin")
def list_orders():
    stmt = select(Order)
    if request.args.get("status"):
        stmt = stmt.where(Order.status == enum_value(OrderStatus, request.args["status"], "status"))
    page = parse_int(request.args.get("page"), 1, 1)
    per_page = parse_int(request.args.get("per_page"), 50, 1, 200)
    orders = db.session.scalars(
        stmt.order_by(Order.created_at.desc()).offset((page - 1) * per_page).limit(per_page)
    ).all()
    return ok({"data": [o.to_dict() for o in orders], "page": page, "per_page": per_page})


@bp.post("/orders/<order_number>/refund")
@require_role("admin")
def refund(order_number):
    order = order_svc.refund(order_number, g.principal, json_body().get("note"))
    return ok({"message": "Order refunded", "order": order.to_dict()})
