import pytest
from werkzeug.security import generate_password_hash

from kudimarket.app import create_app
from kudimarket.auth_mw import tokens
from kudimarket.config import TestingConfig
from kudimarket.db import db
from kudimarket.errors import GatewayError
from kudimarket.models import Admin, Buyer, DeliveryUser, Product, Seller
from kudimarket.money import Money
from kudimarket.services import orders as order_svc
from kudimarket.services.checkout import checkout_svc
from kudimarket.services.paystack import ChargeHandle, ChargeStatus, PaystackGateway

from helpers import WEBHOOK_SECRET, principal


class FakeGateway(PaystackGateway):
    """In-memory gateway; webhook signatures are checked with the real HMAC code."""

    def __init__(self):
        super().__init__(secret_key=WEBHOOK_SECRET, backoff=0)
        self.initialized = []
        self.charges = {}
        self.fail_initialize = False

    def initialize_charge(self, email, amount, reference, metadata=None):
        if self.fail_initialize:
            raise GatewayError("payment provider unavailable", detail="timeout")
        self.initialized.append({"email": email, "amount": amount, "reference": reference, "metadata": metadata})
        return ChargeHandle(reference=reference, authorization_url=f"https://pay.test/{reference}",
                            access_code="ac_test")

    def settle(self, reference, amount: Money, status="success", currency="GHS"):
        self.charges[reference] = ChargeStatus(reference=reference, status=status,
                                               amount=amount, currency=currency)

    def verify_charge(self, reference):
        if reference not in self.charges:
            raise GatewayError("transaction not found")
        return self.charges[reference]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(gateway):
    app = create_app(TestingConfig, gateway=gateway)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


# ---------- Factories ----------
@pytest.fixture
def make_seller(app):
    counter = {"n": 0}

    def _make(name=None, location="Accra", is_active=True):
        counter["n"] += 1
        n = counter["n"]
        seller = Seller(
            name=name or f"Seller {n}",
            slug=f"seller-{n}",
            email=f"seller{n}@example.com",
            password=generate_password_hash("secret123"),
            location=location,
            is_active=is_active,
        )
        db.session.add(seller)
        db.session.commit()
        return seller

    return _make


@pytest.fixture
def make_buyer(app):
    counter = {"n": 0}

    def _make(email=None, name="Ama Mensah"):
        counter["n"] += 1
        buyer = Buyer(
            name=name,
            email=email or f"buyer{counter['n']}@example.com",
            password=generate_password_hash("secret123"),
            phone="0240000000",
        )
        db.session.add(buyer)
        db.session.commit()
        return buyer

    return _make


@pytest.fixture
def make_product(app):
    def _make(seller, price="10.00", stock=5, name="Kente cloth", is_available=True):
        product = Product(
            seller_id=seller.id,
            name=name,
            slug=name.lower().replace(" ", "-"),
            category="fashion",
            price_minor=Money.parse(price).minor,
            stock=stock,
            is_available=is_available,
        )
        db.session.add(product)
        db.session.commit()
        return product

    return _make


@pytest.fixture
def make_delivery_user(app):
    def _make(email="rider@example.com"):
        user = DeliveryUser(name="Kojo Rider", email=email, password=generate_password_hash("secret123"))
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def admin_user(app):
    admin = Admin(username="admin", email="admin@example.com", password=generate_password_hash("secret123"))
    db.session.add(admin)
    db.session.commit()
    return admin


@pytest.fixture
def auth_header(app):
    def _header(user, role):
        return {"Authorization": f"Bearer {tokens().issue(user.id, role, user.email)}"}

    return _header


# ---------- Order scenarios ----------
@pytest.fixture
def parties(make_seller, make_buyer, make_product):
    seller = make_seller()
    buyer = make_buyer()
    product = make_product(seller, price="10.00", stock=5)
    return seller, buyer, product


@pytest.fixture
def place_order(parties):
    seller, buyer, product = parties

    def _place(quantity=2, address="Accra"):
        _, orders = checkout_svc(
            {"items": [{"product_id": product.id, "quantity": quantity}], "delivery_address": address},
            principal(buyer, "buyer"),
        )
        return orders[0]

    return _place


@pytest.fixture
def paid_order(place_order):
    def _paid(**kwargs):
        order = place_order(**kwargs)
        return order_svc.mark_paid(order, f"ref-{order.order_number}", order.total_amount, "GHS")

    return _paid
