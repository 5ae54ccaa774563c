from decimal import Decimal

from inventory import validate_cart
from orders import assemble_order, build_order, estimate_display_totals


def test_build_order_totals(storage, buyer, filled_cart):
    order = build_order(buyer["id"], validate_cart(storage, filled_cart), "1 Main St")

    assert order.status == "processing"
    assert order.total_amount == Decimal("69.98")
    assert [(i.price, i.quantity) for i in order.items] == [(Decimal("29.99"), 2), (Decimal("10.00"), 1)]
    assert sum(i.price * i.quantity for i in order.items) == order.total_amount


def test_assemble_order_persists_items_with_the_order(storage, buyer, filled_cart):
    order = assemble_order(storage, buyer["id"], validate_cart(storage, filled_cart), "1 Main St")

    stored = storage.get_order(order["id"])
    assert stored["total_amount"] == Decimal("69.98")
    assert len(stored["items"]) == 2
    assert stored["shipping_address"] == "1 Main St"


def test_item_price_is_frozen_at_order_time(storage, buyer, filled_cart, product_a):
    order = assemble_order(storage, buyer["id"], validate_cart(storage, filled_cart), "1 Main St")

    storage.update_product(product_a["id"], {"price": Decimal("99.00")})

    stored = storage.get_order(order["id"])
    assert stored["items"][0]["price"] == Decimal("29.99")
    assert stored["total_amount"] == Decimal("69.98")
    assert storage.get_product(product_a["id"])["price"] == Decimal("99.00")


def test_display_estimate_is_separate_from_order_total():
    summary = estimate_display_totals(Decimal("69.98"))

    assert summary["shipping"] == Decimal("5.99")
    assert summary["tax"] == Decimal("5.60")
    assert summary["estimated_total"] == Decimal("81.57")


def test_display_estimate_for_empty_cart():
    assert estimate_display_totals(0)["estimated_total"] == Decimal("0.00")
