from sqlalchemy import select

from kudimarket.db import db
from kudimarket.errors import InsufficientStock, NotFoundError, ValidationError
from kudimarket.models import Cart, CartItem, Product, utcnow
from kudimarket.money import Money, money_sum
from kudimarket.utils.responses import commit_or_rollback


def get_or_create_cart(buyer_id: int) -> Cart:
    cart = db.session.scalars(select(Cart).where(Cart.buyer_id == buyer_id)).first()
    if cart is None:
        cart = Cart(buyer_id=buyer_id)
        db.session.add(cart)
        db.session.flush()
    return cart


def _item(buyer_id: int, item_id: int) -> CartItem:
    item = db.session.scalars(
        select(CartItem).join(Cart).where(CartItem.id == item_id, Cart.buyer_id == buyer_id)
    ).first()
    if item is None:
        raise NotFoundError("cart item not found", item_id=item_id)
    return item


def _check_stock(product: Product, quantity: int):
    if not product.is_available:
        raise ValidationError("product is not available", product_id=product.id)
    if product.stock < quantity:
        raise InsufficientStock("insufficient stock", product_id=product.id,
                                requested=quantity, available=product.stock)


def item_dict(item: CartItem, now=None) -> dict:
    product = item.product
    current = product.effective_price(now)
    return {
        "id": item.id,
        "product_id": item.product_id,
        "product_name": product.name,
        "seller_id": product.seller_id,
        "seller_name": product.seller.name if product.seller else None,
        "quantity": item.quantity,
        "price": Money(item.price_minor).display(),
        "current_price": current.display(),
        "price_changed": current.minor != item.price_minor,
        "line_total": current.multiply(item.quantity).display(),
        "in_stock": bool(product.is_available) and product.stock >= item.quantity,
        "saved_for_later": bool(item.saved_for_later),
    }


def cart_view(cart: Cart, now=None) -> dict:
    """Active lines grouped by seller, plus the saved-for-later list."""
    now = now or utcnow()
    active = [i for i in cart.items if not i.saved_for_later]
    saved = [i for i in cart.items if i.saved_for_later]

    groups = {}
    for item in active:
        group = groups.setdefault(item.product.seller_id, {
            "seller_id": item.product.seller_id,
            "seller_name": item.product.seller.name if item.product.seller else None,
            "items": [],
            "_amounts": [],
        })
        group["items"].append(item_dict(item, now))
        group["_amounts"].append(item.product.effective_price(now).multiply(item.quantity))

    out_groups = []
    for group in groups.values():
        amounts = group.pop("_amounts")
        group["subtotal"] = money_sum(amounts).display()
        out_groups.append(group)

    subtotal = money_sum(
        i.product.effective_price(now).multiply(i.quantity) for i in active
    )
    return {
        "cart_id": cart.id,
        "groups": out_groups,
        "saved_for_later": [item_dict(i, now) for i in saved],
        "item_count": sum(i.quantity for i in active),
        "subtotal": subtotal.display(),
    }


def add_item_svc(buyer_id: int, product_id: int, quantity: int) -> CartItem:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("product not found", product_id=product_id)
    cart = get_or_create_cart(buyer_id)

    item = next((i for i in cart.items if i.product_id == product_id), None)
    new_qty = quantity + (item.quantity if item and not item.saved_for_later else 0)
    _check_stock(product, new_qty)

    price = product.effective_price()
    if item is None:
        item = CartItem(cart=cart, product=product, quantity=new_qty, price_minor=price.minor)
        db.session.add(item)
    else:
        item.quantity = new_qty
        item.price_minor = price.minor
        item.saved_for_later = False
    commit_or_rollback(f"cart:{buyer_id}")
    return item


def update_item_svc(buyer_id: int, item_id: int, quantity: int) -> CartItem:
    item = _item(buyer_id, item_id)
    _check_stock(item.product, quantity)
    item.quantity = quantity
    commit_or_rollback(f"cart:{buyer_id}")
    return item


def remove_item_svc(buyer_id: int, item_id: int) -> None:
    item = _item(buyer_id, item_id)
    db.session.delete(item)
    commit_or_rollback(f"cart:{buyer_id}")


def clear_cart_svc(buyer_id: int) -> None:
    cart = get_or_create_cart(buyer_id)
    cart.items.clear()
    commit_or_rollback(f"cart:{buyer_id}")


def set_saved_for_later_svc(buyer_id: int, item_id: int, saved: bool) -> CartItem:
    item = _item(buyer_id, item_id)
    if not saved:
        _check_stock(item.product, item.quantity)
        item.price_minor = item.product.effective_price().minor
    item.saved_for_later = saved
    commit_or_rollback(f"cart:{buyer_id}")
    return item


def active_lines(buyer_id: int) -> list[CartItem]:
    cart = db.session.scalars(select(Cart).where(Cart.buyer_id == buyer_id)).first()
    if cart is None:
        return []
    return [i for i in cart.items if not i.saved_for_later]
