from flask import Blueprint, g

from kudimarket.auth_mw import require_role
from kudimarket.services import cart as cart_svc
from kudimarket.utils.parsing import json_body, positive_int, require_fields
from kudimarket.utils.responses import ok

bp = Blueprint("cart", __name__, url_prefix="/cart")


def _view():
    return ok(cart_svc.cart_view(cart_svc.get_or_create_cart(g.principal["id"])))


@bp.get("")
@require_role("buyer")
def get_cart():
    return _view()


@bp.post("")
@require_role("buyer")
def add_item():
    data = json_body()
    require_fields(data, "product_id")
    cart_svc.add_item_svc(
        g.principal["id"],
        positive_int(data["product_id"], "product_id"),
        positive_int(data.get("quantity", 1), "quantity"),
    )
    return _view()


@bp.delete("")
@require_role("buyer")
def clear_cart():
    cart_svc.clear_cart_svc(g.principal["id"])
    return _view()


@bp.put("/<int:item_id>")
@require_role("buyer")
def update_item(item_id: int):
    data = json_body()
    cart_svc.update_item_svc(g.principal["id"], item_id, positive_int(data.get("quantity"), "quantity"))
    return _view()


@bp.delete("/<int:item_id>")
@require_role("buyer")
def remove_item(item_id: int):
    cart_svc.remove_item_svc(g.principal["id"], item_id)
    return _view()


@bp.post("/<int:item_id>/save-for-later")
@require_role("buyer")
def save_for_later(item_id: int):
    cart_svc.set_saved_for_later_svc(g.principal["id"], item_id, True)
    return _view()


@bp.post("/<int:item_id>/move-to-cart")
@require_role("buyer")
def move_to_cart(item_id: int):
    cart_svc.set_saved_for_later_svc(g.principal["id"], item_id, False)
    return _view()
