"""Checkout: turns line items into pending orders.

One order is created per line item. Orders from a single call share a
``checkout_ref``; each seller's delivery fee is charged once, on the first
order of that seller's group. Totals are always computed here, whatever the
client sends.
"""
import uuid

from flask import current_app
from sqlalchemy import select

from kudimarket.db import db
from kudimarket.delivery import delivery_fee_for, fees_from_config
from kudimarket.errors import KudiError, NotFoundError, ValidationError
from kudimarket.models import Buyer, Order, Product, utcnow
from kudimarket.money import Money, money_sum
from kudimarket.services import cart as cart_svc
from kudimarket.services import inventory
from kudimarket.utils.parsing import normalize_email, positive_int, text_field
from kudimarket.utils.responses import commit_or_rollback


def new_order_number(prefix: str = "KM") -> str:
    while True:
        number = f"{prefix}-{uuid.uuid4().hex[:8].upper()}"
        if db.session.scalar(select(Order.id).where(Order.order_number == number)) is None:
            return number


def _lines_from_payload(items) -> list[dict]:
    if not isinstance(items, list):
        raise ValidationError("items must be a list", field="items")
    merged = {}
    for raw in items:
        if not isinstance(raw, dict):
            raise ValidationError("each item needs product_id and quantity", field="items")
        pid = positive_int(raw.get("product_id"), "product_id")
        qty = positive_int(raw.get("quantity", 1), "quantity")
        merged[pid] = merged.get(pid, 0) + qty
    return [{"product_id": pid, "quantity": qty, "cart_item": None} for pid, qty in merged.items()]


def _lines_from_cart(buyer_id: int) -> list[dict]:
    return [
        {"product_id": i.product_id, "quantity": i.quantity, "cart_item": i}
        for i in cart_svc.active_lines(buyer_id)
    ]


def _contact(data: dict, principal) -> tuple[int | None, str, str, str | None]:
    if principal and principal.get("role") == "buyer":
        buyer = db.session.get(Buyer, principal["id"])
        if buyer is None:
            raise NotFoundError("buyer not found")
        return (
            buyer.id,
            text_field(data, "buyer_name") or buyer.name,
            buyer.email,
            text_field(data, "buyer_phone") or buyer.phone,
        )
    if principal:
        raise ValidationError("only buyers or guests can place orders")

    name = text_field(data, "buyer_name")
    email = normalize_email(data.get("buyer_email"), "buyer_email")
    missing = [k for k, v in (("buyer_name", name), ("buyer_email", email)) if not v]
    if missing:
        raise ValidationError("missing fields: " + ", ".join(missing), fields=missing)
    if "@" not in email:
        raise ValidationError("invalid email", field="buyer_email")
    return None, name, email, text_field(data, "buyer_phone")


def _unit_price(product: Product, quantity: int, now) -> tuple[Money, int | None]:
    """Price per unit and the flash deal it was taken from, if any."""
    deal = product.active_deal(now)
    if deal is not None and inventory.consume_deal(deal.id, quantity):
        return deal.deal_price, deal.id
    return product.price, None


def checkout_svc(data: dict, principal=None) -> tuple[str, list[Order]]:
    """Create pending orders for every line; all or nothing."""
    cfg = current_app.config
    buyer_id, name, email, phone = _contact(data, principal)

    address = text_field(data, "delivery_address", required=True)
    city = text_field(data, "delivery_city")
    regional, remote = fees_from_config(cfg)
    # a full street address is only matched on whole words
    group_fee = delivery_fee_for(city or address, regional, remote, whole_words=city is None)

    if data.get("items"):
        lines = _lines_from_payload(data["items"])
    elif buyer_id is not None:
        lines = _lines_from_cart(buyer_id)
    else:
        lines = []
    if not lines:
        raise ValidationError("no items to check out", field="items")

    now = utcnow()
    checkout_ref = str(uuid.uuid4())
    fee_charged = set()
    orders = []
    try:
        for line in lines:
            product = db.session.get(Product, line["product_id"])
            if product is None:
                raise NotFoundError("product not found", product_id=line["product_id"])
            qty = line["quantity"]
            inventory.reserve(product.id, qty)
            unit, deal_id = _unit_price(product, qty, now)
            subtotal = unit.multiply(qty)
            fee = Money.zero() if product.seller_id in fee_charged else group_fee
            fee_charged.add(product.seller_id)

            order = Order(
                order_number=new_order_number(cfg.get("ORDER_NUMBER_PREFIX", "KM")),
                checkout_ref=checkout_ref,
                buyer_id=buyer_id,
                buyer_name=name,
                buyer_email=email,
                buyer_phone=phone,
                seller_id=product.seller_id,
                product_id=product.id,
                quantity=qty,
                deal_id=deal_id,
                currency=cfg.get("CURRENCY", "GHS"),
                unit_price_minor=unit.minor,
                subtotal_minor=subtotal.minor,
                delivery_fee_minor=fee.minor,
                total_minor=(subtotal + fee).minor,
                delivery_address=address,
                delivery_city=city,
                created_at=now,
            )
            db.session.add(order)
            orders.append(order)
            if line["cart_item"] is not None:
                db.session.delete(line["cart_item"])
    except KudiError:
        db.session.rollback()
        raise

    commit_or_rollback(f"checkout:{checkout_ref}")
    current_app.logger.info(
        "checkout %s: %s orders for %s, total %s",
        checkout_ref, len(orders), email, money_sum(o.total_amount for o in orders),
    )
    return checkout_ref, orders
