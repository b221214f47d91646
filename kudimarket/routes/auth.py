from flask import Blueprint, g

from kudimarket.auth_mw import require_role, tokens
from kudimarket.services.accounts import (
    login_svc,
    profile_for,
    register_buyer_svc,
    register_delivery_svc,
    register_seller_svc,
)
from kudimarket.utils.parsing import json_body
from kudimarket.utils.responses import ok

bp = Blueprint("auth", __name__, url_prefix="/auth")

REGISTER = {
    "buyer": register_buyer_svc,
    "seller": register_seller_svc,
    "delivery": register_delivery_svc,
}


def _session(user, role: str) -> dict:
    return {"token": tokens().issue(user.id, role, user.email), "role": role, "user": user.to_dict()}


@bp.post("/<any(buyer, seller, delivery):role>/register")
def register(role):
    user = REGISTER[role](json_body())
    return ok(_session(user, role), 201)


@bp.post("/<any(buyer, seller, delivery, admin):role>/login")
def login(role):
    user = login_svc(role, json_body())
    return ok(_session(user, role))


@bp.get("/me")
@require_role()
def me():
    user = profile_for(g.principal)
    return ok({"role": g.principal["role"], "user": user.to_dict()})
