from flask import current_app
from sqlalchemy import update

from kudimarket.db import db
from kudimarket.errors import InsufficientStock, NotFoundError, ValidationError
from kudimarket.models import FlashDeal, Product


def reserve(product_id: int, quantity: int) -> None:
    """Take ``quantity`` units of stock inside the caller's transaction.

    The stock check and the decrement are one conditional UPDATE, so two
    checkouts racing for the last unit cannot both succeed.
    """
    if quantity < 1:
        raise ValidationError("quantity must be at least 1", field="quantity")
    result = db.session.execute(
        update(Product)
        .where(
            Product.id == product_id,
            Product.is_available.is_(True),
            Product.stock >= quantity,
        )
        .values(stock=Product.stock - quantity, sales=Product.sales + quantity)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        current_app.logger.info("reserved %s x product %s", quantity, product_id)
        return

    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("product not found", product_id=product_id)
    if not product.is_available:
        raise ValidationError("product is not available", product_id=product_id)
    db.session.refresh(product)
    raise InsufficientStock(
        "insufficient stock", product_id=product_id, requested=quantity, available=product.stock
    )


def restore(product_id: int, quantity: int) -> None:
    db.session.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(stock=Product.stock + quantity, sales=Product.sales - quantity)
        .execution_options(synchronize_session=False)
    )
    current_app.logger.info("restored %s x product %s", quantity, product_id)


def consume_deal(deal_id: int, quantity: int) -> bool:
    """Count ``quantity`` against a flash deal; False when the deal ran out meanwhile."""
    result = db.session.execute(
        update(FlashDeal)
        .where(
            FlashDeal.id == deal_id,
            FlashDeal.quantity_sold + quantity <= FlashDeal.quantity_available,
        )
        .values(quantity_sold=FlashDeal.quantity_sold + quantity)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def release_deal(deal_id: int, quantity: int) -> None:
    db.session.execute(
        update(FlashDeal)
        .where(FlashDeal.id == deal_id, FlashDeal.quantity_sold >= quantity)
        .values(quantity_sold=FlashDeal.quantity_sold - quantity)
        .execution_options(synchronize_session=False)
    )
    current_app.logger.info("released %s x flash deal %s", quantity, deal_id)
