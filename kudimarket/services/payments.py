from flask import current_app

from kudimarket.errors import (
    AuthenticationError,
    AuthorizationError,
    KudiError,
    PersistenceError,
    ValidationError,
)
from kudimarket.models import OrderStatus, PaymentStatus
from kudimarket.money import Money
from kudimarket.services import orders as order_svc
from kudimarket.services.paystack import generate_reference
from kudimarket.utils.parsing import normalize_email, text_field
from kudimarket.utils.responses import commit_or_rollback

EXT_KEY = "kudimarket.gateway"


def gateway():
    return current_app.extensions[EXT_KEY]


def initialize_payment_svc(data: dict, principal=None) -> dict:
    """Open a gateway charge for a pending order.

    The order keeps its old reference until the gateway answers, so a timed
    out attempt can simply be retried.
    """
    number = text_field(data, "order_number") or text_field(data, "order_id")
    if not number:
        raise ValidationError("order_number is required", field="order_number")
    order = order_svc.find_order(number)

    if order.buyer_id is not None:
        if not principal:
            raise AuthenticationError("sign in to pay for this order")
        if principal.get("role") != "buyer" or principal.get("id") != order.buyer_id:
            raise AuthorizationError("not your order")
    if order.status is not OrderStatus.PENDING:
        raise ValidationError("order is not awaiting payment", status=order.status.value)

    email = normalize_email(data.get("email")) or order.buyer_email
    if not email:
        raise ValidationError("email is required", field="email")

    reference = generate_reference(order.order_number)
    handle = gateway().initialize_charge(
        email,
        order.total_amount,
        reference,
        metadata={
            "order_number": order.order_number,
            "order_id": order.id,
            "checkout_ref": order.checkout_ref,
        },
    )

    if order.payment_reference and order.payment_reference != handle.reference:
        current_app.logger.info("order %s: replacing payment reference %s with %s",
                                order.order_number, order.payment_reference, handle.reference)
    order.payment_reference = handle.reference
    order.payment_status = PaymentStatus.INITIALIZED
    commit_or_rollback(order.order_number)
    return {
        "order_number": order.order_number,
        "reference": handle.reference,
        "authorization_url": handle.authorization_url,
        "access_code": handle.access_code,
        "amount": order.total_amount.display(),
        "currency": order.currency,
    }


def verify_payment_svc(reference: str):
    """Ask the gateway about ``reference`` and settle the order accordingly."""
    order_svc.find_by_payment_reference(reference)
    charge = gateway().verify_charge(reference)

    order = order_svc.find_by_payment_reference(reference, lock=True)
    if charge.succeeded:
        order = order_svc.mark_paid(order, reference, charge.amount, charge.currency,
                                    actor="gateway:verify")
    elif charge.status in ("failed", "abandoned", "reversed"):
        order = order_svc.mark_payment_failed(order, reference)
    return order, charge


def handle_webhook_svc(raw_body: bytes, signature: str | None, payload: dict) -> dict:
    """Apply a gateway event. Once the signature checks out the answer is always 200."""
    if not gateway().validate_webhook_signature(raw_body, signature):
        current_app.logger.warning("webhook rejected: bad signature")
        raise AuthenticationError("invalid signature")

    event = payload.get("event")
    data = payload.get("data") or {}
    reference = data.get("reference")
    current_app.logger.info("webhook %s for %s", event, reference)

    if event not in ("charge.success", "charge.failed") or not reference:
        return {"received": True, "handled": False}

    try:
        order = order_svc.find_by_payment_reference(reference, lock=True)
        if event == "charge.success":
            try:
                amount = Money(int(data.get("amount")))
            except (TypeError, ValueError) as e:
                raise ValidationError("webhook carried an invalid amount") from e
            order_svc.mark_paid(order, reference, amount, data.get("currency"), actor="gateway:webhook")
        else:
            order_svc.mark_payment_failed(order, reference)
    except PersistenceError:
        raise
    except KudiError as e:
        if e.status_code == 200:
            return {"received": True, "handled": True}
        current_app.logger.error("webhook %s for %s not applied: %s", event, reference, e.message)
        return {"received": True, "handled": False, "reason": e.message}
    return {"received": True, "handled": True}
