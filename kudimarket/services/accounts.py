from flask import current_app
from sqlalchemy import select, update
from werkzeug.security import check_password_hash, generate_password_hash

from kudimarket.db import db
from kudimarket.errors import AuthenticationError, AuthorizationError, ValidationError
from kudimarket.models import Admin, Buyer, DeliveryUser, Order, Seller, utcnow
from kudimarket.utils.parsing import normalize_email, require_fields, slugify, text_field
from kudimarket.utils.responses import commit_or_rollback

MODELS = {"buyer": Buyer, "seller": Seller, "delivery": DeliveryUser, "admin": Admin}
MIN_PASSWORD = 6


def _password(data: dict) -> str:
    password = data.get("password")
    if not isinstance(password, str):
        raise ValidationError("password must be a string", field="password")
    return password


def _check_new_account(model, data: dict) -> str:
    require_fields(data, "name", "email", "password")
    text_field(data, "name", required=True)
    email = normalize_email(data.get("email"))
    if not email or "@" not in email:
        raise ValidationError("invalid email", field="email")
    if len(_password(data)) < MIN_PASSWORD:
        raise ValidationError(f"password must be at least {MIN_PASSWORD} characters", field="password")
    if db.session.scalar(select(model.id).where(model.email == email)) is not None:
        raise ValidationError("email already registered", field="email")
    return email


def link_guest_orders(buyer: Buyer) -> int:
    """Attach guest orders placed with the buyer's email; returns how many."""
    result = db.session.execute(
        update(Order)
        .where(Order.buyer_id.is_(None), Order.buyer_email == buyer.email)
        .values(buyer_id=buyer.id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        current_app.logger.info("linked %s guest orders to buyer %s", result.rowcount, buyer.id)
    return result.rowcount


def register_buyer_svc(data: dict) -> Buyer:
    email = _check_new_account(Buyer, data)
    buyer = Buyer(
        name=text_field(data, "name", required=True),
        email=email,
        password=generate_password_hash(_password(data)),
        phone=text_field(data, "phone"),
    )
    db.session.add(buyer)
    db.session.flush()
    link_guest_orders(buyer)
    commit_or_rollback(f"buyer:{email}")
    return buyer


def _unique_seller_slug(name: str) -> str:
    base = slugify(name) or "seller"
    slug, n = base, 1
    while db.session.scalar(select(Seller.id).where(Seller.slug == slug)) is not None:
        n += 1
        slug = f"{base}-{n}"
    return slug


def register_seller_svc(data: dict) -> Seller:
    email = _check_new_account(Seller, data)
    seller = Seller(
        name=text_field(data, "name", required=True),
        slug=_unique_seller_slug(text_field(data, "name")),
        email=email,
        password=generate_password_hash(_password(data)),
        phone=text_field(data, "phone"),
        location=text_field(data, "location"),
    )
    db.session.add(seller)
    commit_or_rollback(f"seller:{email}")
    return seller


def register_delivery_svc(data: dict) -> DeliveryUser:
    email = _check_new_account(DeliveryUser, data)
    user = DeliveryUser(
        name=text_field(data, "name", required=True),
        email=email,
        password=generate_password_hash(_password(data)),
        phone=text_field(data, "phone"),
    )
    db.session.add(user)
    commit_or_rollback(f"delivery:{email}")
    return user


def login_svc(role: str, data: dict):
    model = MODELS[role]
    require_fields(data, "email", "password")
    email = normalize_email(data.get("email"))
    password = _password(data)
    user = db.session.scalars(select(model).where(model.email == email)).first()
    if user is None or not check_password_hash(user.password, password):
        current_app.logger.info("failed %s login for %s", role, email)
        raise AuthenticationError("invalid email or password")
    if getattr(user, "is_active", True) is False:
        raise AuthorizationError("account is disabled")

    if role == "seller":
        user.last_login = utcnow()
    if role == "buyer":
        link_guest_orders(user)
    commit_or_rollback(f"{role}:{email}")
    return user


def create_admin_svc(username: str, email: str, password: str) -> Admin:
    email = normalize_email(email)
    if not username or not email or not password:
        raise ValidationError("username, email and password are required")
    exists = db.session.scalar(
        select(Admin.id).where((Admin.username == username) | (Admin.email == email))
    )
    if exists is not None:
        raise ValidationError("admin already exists", username=username)
    admin = Admin(username=username, email=email, password=generate_password_hash(password))
    db.session.add(admin)
    commit_or_rollback(f"admin:{username}")
    return admin


def profile_for(principal: dict):
    model = MODELS[principal["role"]]
    user = db.session.get(model, principal["id"])
    if user is None:
        raise AuthenticationError("account no longer exists")
    return user
