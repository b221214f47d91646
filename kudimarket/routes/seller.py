from flask import Blueprint, current_app, g, request
from sqlalchemy import select

from kudimarket.auth_mw import require_role
from kudimarket.db import db
from kudimarket.errors import ValidationError
from kudimarket.models import Order, OrderStatus
from kudimarket.services import catalog, escrow
from kudimarket.services import orders as order_svc
from kudimarket.utils.parsing import enum_value, json_body, parse_int, require_fields
from kudimarket.utils.responses import ok

bp = Blueprint("seller", __name__, url_prefix="/seller")

# statuses a seller may set directly
SELLER_STATUSES = {OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value}


# ---------- Products ----------
@bp.get("/products")
@require_role("seller")
def my_products():
    return ok({"data": [p.to_dict() for p in catalog.seller_products(g.principal["id"])]})


@bp.post("/products")
@require_role("seller")
def create_product():
    product = catalog.create_product_svc(g.principal["id"], json_body())
    return ok(product.to_dict(), 201)


@bp.put("/products/<int:product_id>")
@require_role("seller")
def update_product(product_id: int):
    product = catalog.update_product_svc(g.principal["id"], product_id, json_body())
    return ok(product.to_dict())


@bp.post("/products/<int:product_id>/deals")
@require_role("seller")
def create_deal(product_id: int):
    deal = catalog.create_deal_svc(g.principal["id"], product_id, json_body())
    return ok(deal.to_dict(), 201)


# ---------- Orders ----------
@bp.get("/orders")
@require_role("seller")
def my_orders():
    stmt = select(Order).where(Order.seller_id == g.principal["id"])
    if request.args.get("status"):
        stmt = stmt.where(Order.status == enum_value(OrderStatus, request.args["status"], "status"))
    limit = parse_int(request.args.get("limit"), 50, 1, 200)
    orders = db.session.scalars(stmt.order_by(Order.created_at.desc()).limit(limit)).all()
    return ok({"data": [o.to_dict() for o in orders]})


@bp.patch("/orders/<order_number>/status")
@require_role("seller")
def update_status(order_number):
    data = json_body()
    require_fields(data, "status")
    status = data["status"]
    if status not in SELLER_STATUSES:
        raise ValidationError("sellers can only mark orders shipped or delivered",
                              allowed=sorted(SELLER_STATUSES))
    if status == OrderStatus.SHIPPED.value:
        order = order_svc.mark_shipped(order_number, g.principal, data.get("tracking_number"))
    else:
        order = order_svc.mark_delivered(
            order_number, g.principal, data.get("proof_ref"), data.get("proof_type") or "photo"
        )
    current_app.logger.info("seller %s set %s to %s", g.principal["id"], order_number, status)
    return ok({"message": f"Order marked {status}", "order": order.to_dict()})


@bp.post("/orders/<order_number>/dispute")
@require_role("seller")
def dispute(order_number):
    order = order_svc.report_dispute(order_number, g.principal, json_body().get("reason"))
    return ok({"message": "Dispute opened", "order": order.to_dict()})


@bp.get("/escrow")
@require_role("seller")
def my_escrow():
    return ok(escrow.seller_summary(g.principal["id"]).to_dict(current_app.config.get("CURRENCY", "GHS")))
