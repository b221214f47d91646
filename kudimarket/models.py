import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import Enum, Index, UniqueConstraint

from kudimarket.db import db
from kudimarket.money import Money


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(dt):
    return dt.isoformat() if dt else None


class OrderStatus(PyEnum):
    PENDING = "pending"
    ESCROW_HELD = "escrow_held"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class EscrowStatus(PyEnum):
    NONE = "none"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class PaymentStatus(PyEnum):
    UNPAID = "unpaid"
    INITIALIZED = "initialized"
    PAID = "paid"
    FAILED = "failed"


class LedgerKind(PyEnum):
    HOLD = "hold"
    RELEASE = "release"
    REFUND = "refund"


# ---------- Accounts ----------
class Buyer(db.Model):
    __tablename__ = "buyers"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(30))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "created_at": _iso(self.created_at),
        }


class Seller(db.Model):
    __tablename__ = "sellers"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(140), unique=True, nullable=False, index=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(30))
    location = db.Column(db.String(120))
    is_verified = db.Column(db.Boolean, default=False, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    last_login = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    products = db.relationship("Product", back_populates="seller", lazy=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "email": self.email,
            "phone": self.phone,
            "location": self.location,
            "is_verified": bool(self.is_verified),
            "created_at": _iso(self.created_at),
        }


class DeliveryUser(db.Model):
    __tablename__ = "delivery_users"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password = db.Column(db.String(255), nullable=False)
    phone = db.Column(db.String(30))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {"id": self.id, "name": self.name, "email": self.email, "phone": self.phone}


class Admin(db.Model):
    __tablename__ = "admins"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def to_dict(self):
        return {"id": self.id, "username": self.username, "email": self.email}


# ---------- Catalog ----------
class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    seller_id = db.Column(db.Integer, db.ForeignKey("sellers.id"), nullable=False, index=True)
    name = db.Column(db.String(180), nullable=False, index=True)
    slug = db.Column(db.String(200), index=True)
    description = db.Column(db.Text)
    category = db.Column(db.String(80), index=True)
    price_minor = db.Column(db.Integer, nullable=False)
    stock = db.Column(db.Integer, nullable=False, default=0)
    sales = db.Column(db.Integer, nullable=False, default=0)
    is_available = db.Column(db.Boolean, nullable=False, default=True)
    image_url = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    seller = db.relationship("Seller", back_populates="products")
    deals = db.relationship("FlashDeal", back_populates="product", lazy=True)

    __table_args__ = (
        db.CheckConstraint("stock >= 0", name="ck_product_stock_non_negative"),
    )

    @property
    def price(self) -> Money:
        return Money(self.price_minor)

    def active_deal(self, now=None):
        now = now or utcnow()
        for deal in self.deals:
            if deal.is_live(now):
                return deal
        return None

    def effective_price(self, now=None) -> Money:
        deal = self.active_deal(now)
        return deal.deal_price if deal else self.price

    def to_dict(self, now=None):
        deal = self.active_deal(now)
        return {
            "id": self.id,
            "seller_id": self.seller_id,
            "seller_name": self.seller.name if self.seller else None,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "category": self.category,
            "price": self.price.display(),
            "effective_price": (deal.deal_price if deal else self.price).display(),
            "deal": deal.to_dict() if deal else None,
            "stock": self.stock,
            "sales": self.sales,
            "is_available": bool(self.is_available),
            "image_url": self.image_url,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class FlashDeal(db.Model):
    __tablename__ = "flash_deals"

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    deal_price_minor = db.Column(db.Integer, nullable=False)
    quantity_available = db.Column(db.Integer, nullable=False)
    quantity_sold = db.Column(db.Integer, nullable=False, default=0)
    starts_at = db.Column(db.DateTime, nullable=False)
    ends_at = db.Column(db.DateTime, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    product = db.relationship("Product", back_populates="deals")

    @property
    def deal_price(self) -> Money:
        return Money(self.deal_price_minor)

    def is_live(self, now) -> bool:
        return (
            bool(self.is_active)
            and self.starts_at <= now < self.ends_at
            and (self.quantity_sold or 0) < self.quantity_available
        )

    def to_dict(self):
        return {
            "id": self.id,
            "product_id": self.product_id,
            "deal_price": self.deal_price.display(),
            "quantity_available": self.quantity_available,
            "quantity_sold": self.quantity_sold,
            "starts_at": _iso(self.starts_at),
            "ends_at": _iso(self.ends_at),
            "is_active": bool(self.is_active),
        }


# ---------- Cart ----------
class Cart(db.Model):
    __tablename__ = "carts"

    id = db.Column(db.Integer, primary_key=True)
    buyer_id = db.Column(db.Integer, db.ForeignKey("buyers.id"), unique=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    items = db.relationship(
        "CartItem",
        back_populates="cart",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="CartItem.id",
    )


class CartItem(db.Model):
    __tablename__ = "cart_items"

    id = db.Column(db.Integer, primary_key=True)
    cart_id = db.Column(db.Integer, db.ForeignKey("carts.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    price_minor = db.Column(db.Integer, nullable=False)
    saved_for_later = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    cart = db.relationship("Cart", back_populates="items")
    product = db.relationship("Product")

    __table_args__ = (UniqueConstraint("cart_id", "product_id", name="uq_cart_product"),)


# ---------- Orders ----------
class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_number = db.Column(db.String(20), unique=True, nullable=False, index=True)
    checkout_ref = db.Column(db.String(36), index=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("buyers.id"), nullable=True, index=True)
    buyer_name = db.Column(db.String(120), nullable=False)
    buyer_email = db.Column(db.String(120), nullable=False, index=True)
    buyer_phone = db.Column(db.String(30))
    seller_id = db.Column(db.Integer, db.ForeignKey("sellers.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    deal_id = db.Column(db.Integer, db.ForeignKey("flash_deals.id"), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="GHS")
    unit_price_minor = db.Column(db.Integer, nullable=False)
    subtotal_minor = db.Column(db.Integer, nullable=False)
    delivery_fee_minor = db.Column(db.Integer, nullable=False)
    total_minor = db.Column(db.Integer, nullable=False)

    status = db.Column(
        Enum(OrderStatus, name="order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
    )
    escrow_status = db.Column(
        Enum(EscrowStatus, name="escrow_status"),
        nullable=False,
        default=EscrowStatus.NONE,
    )
    payment_status = db.Column(
        Enum(PaymentStatus, name="payment_status"),
        nullable=False,
        default=PaymentStatus.UNPAID,
    )
    payment_reference = db.Column(db.String(100), unique=True, nullable=True)
    payment_method = db.Column(db.String(30))

    delivery_address = db.Column(db.String(255), nullable=False)
    delivery_city = db.Column(db.String(120))
    tracking_number = db.Column(db.String(100))
    delivery_person_id = db.Column(db.Integer, db.ForeignKey("delivery_users.id"), index=True)
    delivery_proof_type = db.Column(db.String(30))
    delivery_proof_ref = db.Column(db.String(500))
    delivery_proof_uploaded_by = db.Column(db.String(20))
    buyer_signature_name = db.Column(db.String(120))
    buyer_signature_data = db.Column(db.Text)
    dispute_reason = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    paid_at = db.Column(db.DateTime)
    shipped_at = db.Column(db.DateTime)
    delivered_at = db.Column(db.DateTime)
    buyer_confirmed_at = db.Column(db.DateTime)
    cancelled_at = db.Column(db.DateTime)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    version = db.Column(db.Integer, nullable=False)

    product = db.relationship("Product")
    seller = db.relationship("Seller")
    events = db.relationship("OrderEvent", back_populates="order", lazy=True, order_by="OrderEvent.id")
    ledger_entries = db.relationship(
        "EscrowLedgerEntry", back_populates="order", lazy=True, order_by="EscrowLedgerEntry.id"
    )

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        Index("ix_order_status_created", "status", "created_at"),
        db.CheckConstraint("quantity > 0", name="ck_order_quantity_positive"),
        db.CheckConstraint("total_minor = subtotal_minor + delivery_fee_minor", name="ck_order_total"),
    )

    @property
    def unit_price(self) -> Money:
        return Money(self.unit_price_minor)

    @property
    def subtotal(self) -> Money:
        return Money(self.subtotal_minor)

    @property
    def delivery_fee(self) -> Money:
        return Money(self.delivery_fee_minor)

    @property
    def total_amount(self) -> Money:
        return Money(self.total_minor)

    def is_party(self, principal: dict | None) -> bool:
        if not principal:
            return False
        role, uid = principal.get("role"), principal.get("id")
        if role == "admin":
            return True
        if role == "buyer":
            return self.buyer_id is not None and self.buyer_id == uid
        if role == "seller":
            return self.seller_id == uid
        if role == "delivery":
            return self.delivery_person_id is not None and self.delivery_person_id == uid
        return False

    def to_public_dict(self):
        """Fields safe to show without authentication (order tracking page)."""
        return {
            "order_number": self.order_number,
            "status": self.status.value,
            "escrow_status": self.escrow_status.value,
            "payment_status": self.payment_status.value,
            "quantity": self.quantity,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "seller_name": self.seller.name if self.seller else None,
            "total_amount": self.total_amount.display(),
            "currency": self.currency,
            "created_at": _iso(self.created_at),
            "shipped_at": _iso(self.shipped_at),
            "delivered_at": _iso(self.delivered_at),
            "redacted": True,
        }

    def to_dict(self):
        return {
            "id": self.id,
            "order_number": self.order_number,
            "checkout_ref": self.checkout_ref,
            "buyer_id": self.buyer_id,
            "buyer_name": self.buyer_name,
            "buyer_email": self.buyer_email,
            "buyer_phone": self.buyer_phone,
            "seller_id": self.seller_id,
            "seller_name": self.seller.name if self.seller else None,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "deal_id": self.deal_id,
            "quantity": self.quantity,
            "currency": self.currency,
            "unit_price": self.unit_price.display(),
            "subtotal": self.subtotal.display(),
            "delivery_fee": self.delivery_fee.display(),
            "total_amount": self.total_amount.display(),
            "status": self.status.value,
            "escrow_status": self.escrow_status.value,
            "payment_status": self.payment_status.value,
            "payment_reference": self.payment_reference,
            "payment_method": self.payment_method,
            "delivery_address": self.delivery_address,
            "delivery_city": self.delivery_city,
            "tracking_number": self.tracking_number,
            "delivery_person_id": self.delivery_person_id,
            "delivery_proof": {
                "type": self.delivery_proof_type,
                "ref": self.delivery_proof_ref,
                "uploaded_by": self.delivery_proof_uploaded_by,
            } if self.delivery_proof_type else None,
            "buyer_signature_name": self.buyer_signature_name,
            "dispute_reason": self.dispute_reason,
            "created_at": _iso(self.created_at),
            "paid_at": _iso(self.paid_at),
            "shipped_at": _iso(self.shipped_at),
            "delivered_at": _iso(self.delivered_at),
            "buyer_confirmed_at": _iso(self.buyer_confirmed_at),
            "cancelled_at": _iso(self.cancelled_at),
            "updated_at": _iso(self.updated_at),
        }


class OrderEvent(db.Model):
    """Timeline of applied transitions; rows are only ever inserted."""

    __tablename__ = "order_events"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    from_status = db.Column(db.String(20))
    to_status = db.Column(db.String(20), nullable=False)
    actor_type = db.Column(db.String(20), nullable=False)  # buyer, seller, delivery, admin, system
    actor_id = db.Column(db.Integer)
    note = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    order = db.relationship("Order", back_populates="events")

    def to_dict(self):
        return {
            "from": self.from_status,
            "to": self.to_status,
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "note": self.note,
            "created_at": _iso(self.created_at),
        }


class EscrowLedgerEntry(db.Model):
    __tablename__ = "escrow_ledger"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(36), db.ForeignKey("orders.id"), nullable=False, index=True)
    kind = db.Column(Enum(LedgerKind, name="ledger_kind"), nullable=False)
    amount_minor = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    # hold:<order id> or terminal:<order id>; uniqueness is the double-release guard
    idempotency_key = db.Column(db.String(80), unique=True, nullable=False)
    payment_reference = db.Column(db.String(100), unique=True, nullable=True)
    actor = db.Column(db.String(40))
    occurred_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    order = db.relationship("Order", back_populates="ledger_entries")

    __table_args__ = (
        db.CheckConstraint("amount_minor >= 0", name="ck_ledger_amount_non_negative"),
    )

    @property
    def amount(self) -> Money:
        return Money(self.amount_minor)

    def to_dict(self):
        return {
            "kind": self.kind.value,
            "amount": self.amount.display(),
            "currency": self.currency,
            "payment_reference": self.payment_reference,
            "actor": self.actor,
            "occurred_at": _iso(self.occurred_at),
        }


__all__ = [
    "db",
    "utcnow",
    "Buyer",
    "Seller",
    "DeliveryUser",
    "Admin",
    "Product",
    "FlashDeal",
    "Cart",
    "CartItem",
    "Order",
    "OrderEvent",
    "EscrowLedgerEntry",
    "OrderStatus",
    "EscrowStatus",
    "PaymentStatus",
    "LedgerKind",
]
