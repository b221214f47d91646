from datetime import datetime, timezone

from sqlalchemy import func, or_, select

from kudimarket.db import db
from kudimarket.errors import AuthorizationError, NotFoundError, ValidationError
from kudimarket.models import FlashDeal, Product, Seller, utcnow
from kudimarket.money import Money
from kudimarket.utils.parsing import parse_int, require_fields, slugify, text_field
from kudimarket.utils.responses import commit_or_rollback


def search_products_svc(args) -> tuple[list[Product], int]:
    """Filtered, paginated product listing; returns (page items, total count)."""
    page = parse_int(args.get("page"), 1, 1)
    per_page = parse_int(args.get("per_page"), 20, 1, 100)

    stmt = select(Product).join(Seller).where(Product.is_available.is_(True), Seller.is_active.is_(True))
    q = (args.get("q") or "").strip()
    if q:
        like = f"%{q}%"
        stmt = stmt.where(or_(Product.name.ilike(like), Product.description.ilike(like)))
    if args.get("category"):
        stmt = stmt.where(Product.category == args["category"])
    if args.get("seller"):
        seller = args["seller"]
        stmt = stmt.where(Seller.id == int(seller) if str(seller).isdigit() else Seller.slug == seller)
    if args.get("min_price"):
        stmt = stmt.where(Product.price_minor >= Money.parse(args["min_price"]).minor)
    if args.get("max_price"):
        stmt = stmt.where(Product.price_minor <= Money.parse(args["max_price"]).minor)
    if str(args.get("in_stock", "")).lower() in ("1", "true", "yes"):
        stmt = stmt.where(Product.stock > 0)

    total = db.session.scalar(select(func.count()).select_from(stmt.subquery()))
    items = db.session.scalars(
        stmt.order_by(Product.created_at.desc(), Product.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    ).all()
    return items, total


def get_product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("product not found", product_id=product_id)
    return product


def _owned(seller_id: int, product_id: int) -> Product:
    product = get_product(product_id)
    if product.seller_id != seller_id:
        raise AuthorizationError("not your product")
    return product


def _stock(value) -> int:
    n = parse_int(value, minv=0)
    if n is None:
        raise ValidationError("stock must be a non-negative integer", field="stock")
    return n


def create_product_svc(seller_id: int, data: dict) -> Product:
    require_fields(data, "name", "price")
    name = text_field(data, "name", required=True)
    product = Product(
        seller_id=seller_id,
        name=name,
        slug=slugify(name),
        description=text_field(data, "description"),
        category=text_field(data, "category"),
        price_minor=Money.parse(data["price"]).minor,
        stock=_stock(data.get("stock", 0)),
        is_available=bool(data.get("is_available", True)),
        image_url=text_field(data, "image_url"),
    )
    db.session.add(product)
    commit_or_rollback(f"product:{product.slug}")
    return product


def update_product_svc(seller_id: int, product_id: int, data: dict) -> Product:
    product = _owned(seller_id, product_id)
    if "name" in data:
        product.name = text_field(data, "name", required=True)
        product.slug = slugify(product.name)
    for key in ("description", "category", "image_url"):
        if key in data:
            setattr(product, key, text_field(data, key))
    if "price" in data:
        product.price_minor = Money.parse(data["price"]).minor
    if "stock" in data:
        product.stock = _stock(data["stock"])
    if "is_available" in data:
        product.is_available = bool(data["is_available"])
    commit_or_rollback(f"product:{product.id}")
    return product


def _parse_dt(value, field: str) -> datetime:
    try:
        dt = datetime.fromisoformat(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an ISO-8601 datetime", field=field)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def create_deal_svc(seller_id: int, product_id: int, data: dict) -> FlashDeal:
    product = _owned(seller_id, product_id)
    require_fields(data, "deal_price", "quantity_available", "ends_at")
    deal_price = Money.parse(data["deal_price"])
    if deal_price >= product.price:
        raise ValidationError("deal price must be below the regular price", field="deal_price")
    qty = parse_int(data["quantity_available"], minv=1)
    if qty is None:
        raise ValidationError("quantity_available must be a positive integer", field="quantity_available")

    starts_at = _parse_dt(data["starts_at"], "starts_at") if data.get("starts_at") else utcnow()
    ends_at = _parse_dt(data["ends_at"], "ends_at")
    if ends_at <= starts_at:
        raise ValidationError("ends_at must be after starts_at", field="ends_at")

    deal = FlashDeal(
        product_id=product.id,
        deal_price_minor=deal_price.minor,
        quantity_available=qty,
        quantity_sold=0,
        starts_at=starts_at,
        ends_at=ends_at,
        is_active=True,
    )
    db.session.add(deal)
    commit_or_rollback(f"deal:{product.id}")
    return deal


def seller_products(seller_id: int) -> list[Product]:
    return db.session.scalars(
        select(Product).where(Product.seller_id == seller_id).order_by(Product.id.desc())
    ).all()
