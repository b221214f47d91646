from flask import Blueprint, current_app, request

from kudimarket.delivery import delivery_fee_for, fee_tier_for, fees_from_config
from kudimarket.models import utcnow
from kudimarket.services.catalog import get_product, search_products_svc
from kudimarket.utils.parsing import parse_int
from kudimarket.utils.responses import ok

bp = Blueprint("products", __name__)


@bp.get("/products")
def list_products():
    items, total = search_products_svc(request.args)
    now = utcnow()
    return ok({
        "data": [p.to_dict(now) for p in items],
        "total": total,
        "page": parse_int(request.args.get("page"), 1, 1),
        "per_page": parse_int(request.args.get("per_page"), 20, 1, 100),
    })


@bp.get("/products/<int:product_id>")
def product_detail(product_id: int):
    return ok(get_product(product_id).to_dict())


@bp.get("/delivery-fee")
def delivery_fee():
    location = request.args.get("location")
    regional, remote = fees_from_config(current_app.config)
    fee = delivery_fee_for(location, regional, remote)
    return ok({
        "location": location,
        "tier": fee_tier_for(location).value,
        "fee": fee.display(),
        "currency": current_app.config.get("CURRENCY", "GHS"),
    })
