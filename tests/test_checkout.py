from datetime import timedelta

import pytest

from kudimarket.db import db
from kudimarket.errors import InsufficientStock, NotFoundError, ValidationError
from kudimarket.models import CartItem, FlashDeal, Order, Product, utcnow
from kudimarket.money import Money
from kudimarket.services import cart as cart_svc
from kudimarket.services import orders as order_svc
from kudimarket.services.checkout import checkout_svc

from helpers import fresh, principal


def _items(*pairs):
    return [{"product_id": pid, "quantity": qty} for pid, qty in pairs]


def test_totals_are_computed_server_side(parties):
    _, buyer, product = parties
    _, orders = checkout_svc(
        {"items": _items((product.id, 3)), "delivery_address": "Sunyani", "total_amount": "1.00"},
        principal(buyer, "buyer"),
    )
    order = orders[0]
    assert order.unit_price == Money(1000)
    assert order.subtotal == Money(3000)
    assert order.delivery_fee == Money(1000)
    assert order.total_amount == Money(4000)
    assert order.order_number.startswith("KM-") and len(order.order_number) == 11
    assert fresh(Product, product.id).stock == 2


def test_delivery_fee_charged_once_per_seller(make_seller, make_buyer, make_product):
    s1, s2 = make_seller(), make_seller()
    buyer = make_buyer()
    a = make_product(s1, price="5.00", name="Shea butter")
    b = make_product(s1, price="7.50", name="Black soap")
    c = make_product(s2, price="20.00", name="Smock")

    ref, orders = checkout_svc(
        {"items": _items((a.id, 1), (b.id, 2), (c.id, 1)), "delivery_address": "Nandom"},
        principal(buyer, "buyer"),
    )
    assert len(orders) == 3
    assert {o.checkout_ref for o in orders} == {ref}
    fees = {(o.seller_id, o.product_id): o.delivery_fee for o in orders}
    assert fees[(s1.id, a.id)] == Money(2000)
    assert fees[(s1.id, b.id)] == Money.zero()
    assert fees[(s2.id, c.id)] == Money(2000)
    for o in orders:
        assert o.total_amount == o.subtotal + o.delivery_fee


def test_last_unit_can_only_be_bought_once(make_seller, make_buyer, make_product):
    seller = make_seller()
    product = make_product(seller, stock=1)
    first, second = make_buyer(), make_buyer()

    checkout_svc({"items": _items((product.id, 1)), "delivery_address": "Accra"}, principal(first, "buyer"))
    with pytest.raises(InsufficientStock) as exc:
        checkout_svc({"items": _items((product.id, 1)), "delivery_address": "Accra"}, principal(second, "buyer"))
    assert exc.value.details["available"] == 0
    assert fresh(Product, product.id).stock == 0
    assert db.session.query(Order).count() == 1


def test_failed_line_rolls_back_whole_checkout(make_seller, make_buyer, make_product):
    seller = make_seller()
    plenty = make_product(seller, stock=10, name="Beads")
    scarce = make_product(seller, stock=1, name="Drum")
    buyer = make_buyer()

    with pytest.raises(InsufficientStock):
        checkout_svc({"items": _items((plenty.id, 2), (scarce.id, 5)), "delivery_address": "Accra"},
                     principal(buyer, "buyer"))
    assert fresh(Product, plenty.id).stock == 10
    assert db.session.query(Order).count() == 0


def test_missing_address_and_empty_cart(parties):
    _, buyer, product = parties
    with pytest.raises(ValidationError):
        checkout_svc({"items": _items((product.id, 1))}, principal(buyer, "buyer"))
    with pytest.raises(ValidationError):
        checkout_svc({"delivery_address": "Accra"}, principal(buyer, "buyer"))


def test_bad_quantities_and_unknown_products(parties):
    _, buyer, product = parties
    with pytest.raises(ValidationError):
        checkout_svc({"items": _items((product.id, 0)), "delivery_address": "Accra"}, principal(buyer, "buyer"))
    with pytest.raises(ValidationError):
        checkout_svc({"items": _items((product.id, "2.5")), "delivery_address": "Accra"}, principal(buyer, "buyer"))
    with pytest.raises(NotFoundError):
        checkout_svc({"items": _items((9999, 1)), "delivery_address": "Accra"}, principal(buyer, "buyer"))


def test_guest_checkout_requires_contact_details(parties):
    _, _, product = parties
    with pytest.raises(ValidationError):
        checkout_svc({"items": _items((product.id, 1)), "delivery_address": "Accra"})
    _, orders = checkout_svc({
        "items": _items((product.id, 1)),
        "delivery_address": "Accra",
        "buyer_name": "Guest Buyer",
        "buyer_email": "Guest@Example.com",
    })
    assert orders[0].buyer_id is None
    assert orders[0].buyer_email == "guest@example.com"


def test_active_flash_deal_price_is_honored(parties):
    _, buyer, product = parties
    now = utcnow()
    deal = FlashDeal(product_id=product.id, deal_price_minor=600, quantity_available=2,
                     starts_at=now - timedelta(hours=1), ends_at=now + timedelta(hours=1))
    db.session.add(deal)
    db.session.commit()

    _, orders = checkout_svc({"items": _items((product.id, 2)), "delivery_address": "Accra"},
                             principal(buyer, "buyer"))
    assert orders[0].unit_price == Money(600)
    assert fresh(FlashDeal, deal.id).quantity_sold == 2

    # the deal is used up, so the regular price applies again
    _, orders = checkout_svc({"items": _items((product.id, 1)), "delivery_address": "Accra"},
                             principal(buyer, "buyer"))
    assert orders[0].unit_price == Money(1000)


def test_checkout_from_cart_clears_purchased_lines(parties, make_product):
    seller, buyer, product = parties
    other = make_product(seller, name="Basket")
    cart_svc.add_item_svc(buyer.id, product.id, 2)
    saved = cart_svc.add_item_svc(buyer.id, other.id, 1)
    cart_svc.set_saved_for_later_svc(buyer.id, saved.id, True)

    _, orders = checkout_svc({"delivery_address": "Kumasi"}, principal(buyer, "buyer"))
    assert [o.product_id for o in orders] == [product.id]
    db.session.expire_all()
    remaining = db.session.query(CartItem).all()
    assert [i.product_id for i in remaining] == [other.id]


def test_street_address_is_matched_on_whole_words(parties):
    _, buyer, product = parties
    _, orders = checkout_svc({"items": _items((product.id, 1)),
                              "delivery_address": "Shop 4, Market Street, Nandom"},
                             principal(buyer, "buyer"))
    assert orders[0].delivery_fee == Money(2000)

    _, orders = checkout_svc({"items": _items((product.id, 1)),
                              "delivery_address": "House 12, Hospital Road, Ho"},
                             principal(buyer, "buyer"))
    assert orders[0].delivery_fee == Money(1000)


def test_delivery_city_takes_precedence_over_address(parties):
    _, buyer, product = parties
    _, orders = checkout_svc({"items": _items((product.id, 1)),
                              "delivery_address": "Shop 4, Market Street",
                              "delivery_city": "Sunyani"},
                             principal(buyer, "buyer"))
    assert orders[0].delivery_fee == Money(1000)
    assert orders[0].delivery_city == "Sunyani"


def test_cancelling_a_deal_order_returns_the_deal_units(parties):
    _, buyer, product = parties
    now = utcnow()
    deal = FlashDeal(product_id=product.id, deal_price_minor=600, quantity_available=2,
                     starts_at=now - timedelta(hours=1), ends_at=now + timedelta(hours=1))
    db.session.add(deal)
    db.session.commit()

    _, orders = checkout_svc({"items": _items((product.id, 2)), "delivery_address": "Accra"},
                             principal(buyer, "buyer"))
    assert orders[0].deal_id == deal.id
    assert fresh(FlashDeal, deal.id).quantity_sold == 2

    order_svc.cancel(orders[0].order_number, principal(buyer, "buyer"))
    assert fresh(FlashDeal, deal.id).quantity_sold == 0
    assert fresh(Product, product.id).stock == 5

    # the deal price is available again
    _, orders = checkout_svc({"items": _items((product.id, 1)), "delivery_address": "Accra"},
                             principal(buyer, "buyer"))
    assert orders[0].unit_price == Money(600)


def test_regular_price_order_has_no_deal(parties):
    _, buyer, product = parties
    _, orders = checkout_svc({"items": _items((product.id, 1)), "delivery_address": "Accra"},
                             principal(buyer, "buyer"))
    assert orders[0].deal_id is None
    order_svc.cancel(orders[0].order_number, principal(buyer, "buyer"))
    assert fresh(Product, product.id).stock == 5


@pytest.mark.parametrize("field, value", [
    ("delivery_address", 123),
    ("delivery_city", ["Accra"]),
    ("buyer_name", 7),
])
def test_non_string_contact_fields_are_rejected(parties, field, value):
    _, _, product = parties
    data = {"items": _items((product.id, 1)), "delivery_address": "Accra",
            "buyer_name": "Guest", "buyer_email": "guest@example.com", field: value}
    with pytest.raises(ValidationError) as exc:
        checkout_svc(data)
    assert exc.value.details["field"] == field
    assert fresh(Product, product.id).stock == 5
