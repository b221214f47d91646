from flask import Blueprint, g
from sqlalchemy import select

from kudimarket.auth_mw import require_role
from kudimarket.db import db
from kudimarket.models import Order, OrderStatus
from kudimarket.services import orders as order_svc
from kudimarket.utils.parsing import json_body
from kudimarket.utils.responses import ok

bp = Blueprint("delivery", __name__, url_prefix="/delivery")


@bp.get("/orders")
@require_role("delivery")
def assigned_orders():
    orders = db.session.scalars(
        select(Order)
        .where(Order.delivery_person_id == g.principal["id"])
        .order_by(Order.shipped_at.desc())
    ).all()
    return ok({"data": [o.to_dict() for o in orders]})


@bp.get("/available-orders")
@require_role("delivery")
def available_orders():
    orders = db.session.scalars(
        select(Order)
        .where(Order.status == OrderStatus.SHIPPED, Order.delivery_person_id.is_(None))
        .order_by(Order.shipped_at)
    ).all()
    return ok({"data": [o.to_dict() for o in orders]})


@bp.post("/orders/<order_number>/claim")
@require_role("delivery")
def claim(order_number):
    order = order_svc.claim_delivery(order_number, g.principal)
    return ok({"message": "Order assigned", "order": order.to_dict()})


@bp.post("/orders/<order_number>/delivery-proof")
@require_role("delivery")
def delivery_proof(order_number):
    data = json_body()
    order = order_svc.mark_delivered(
        order_number, g.principal, data.get("proof_ref"), data.get("proof_type") or "photo"
    )
    return ok({"message": "Delivery recorded", "order": order.to_dict()})
