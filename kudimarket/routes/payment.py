from flask import Blueprint, request

from kudimarket.auth_mw import current_principal, optional_auth
from kudimarket.models import PaymentStatus
from kudimarket.services import orders as order_svc
from kudimarket.services.payments import handle_webhook_svc, initialize_payment_svc, verify_payment_svc
from kudimarket.utils.parsing import json_body
from kudimarket.utils.responses import ok

bp = Blueprint("payment", __name__, url_prefix="/payment")
webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/webhooks")


@bp.post("/initialize")
@optional_auth
def initialize():
    return ok(initialize_payment_svc(json_body(), current_principal()))


@bp.get("/verify/<reference>")
def verify(reference):
    order, charge = verify_payment_svc(reference)
    return ok({
        "reference": reference,
        "gateway_status": charge.status,
        "paid": order.payment_status is PaymentStatus.PAID,
        "order": order.to_public_dict(),
    })


@bp.get("/status/<order_number>")
@optional_auth
def status(order_number):
    order = order_svc.find_order(order_number)
    body = {
        "order_number": order.order_number,
        "status": order.status.value,
        "payment_status": order.payment_status.value,
        "escrow_status": order.escrow_status.value,
        "amount": order.total_amount.display(),
        "currency": order.currency,
    }
    if order.is_party(current_principal()):
        body["payment_reference"] = order.payment_reference
        body["paid_at"] = order.paid_at.isoformat() if order.paid_at else None
    return ok(body)


@webhooks_bp.post("/payment")
def payment_webhook():
    raw = request.get_data(cache=True)
    payload = request.get_json(silent=True) or {}
    signature = request.headers.get("X-Paystack-Signature")
    return ok(handle_webhook_svc(raw, signature, payload))
