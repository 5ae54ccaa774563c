"""
Inventory checks for checkout.

``validate_cart`` is read-only and runs over the whole cart before anything is
written. ``reserve`` then takes the stock with one conditional decrement per
line, undoing earlier lines if a later one loses a race.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List

from errors import OutOfStock, ProductUnavailable

logger = logging.getLogger(__name__)


@dataclass
class CartLine:
    product: dict
    quantity: int

    @property
    def product_id(self) -> str:
        return self.product["id"]


def validate_cart(storage, cart_items: Iterable[dict]) -> List[CartLine]:
    """Resolve each cart item to its active product and check stock."""
    lines = []
    for item in cart_items:
        product = storage.get_product(item["product_id"])
        if product is None:
            raise ProductUnavailable(item["product_id"])
        if product["stock"] < item["quantity"]:
            raise OutOfStock(product["id"], product["name"], item["quantity"], product["stock"])
        lines.append(CartLine(product=product, quantity=item["quantity"]))
    return lines


def reserve(storage, lines: List[CartLine]):
    reserved = []
    for line in lines:
        if not storage.reserve_stock(line.product_id, line.quantity):
            release(storage, reserved)
            current = storage.get_product(line.product_id)
            if current is None:
                raise ProductUnavailable(line.product_id, line.product["name"])
            logger.info(
                "Stock for product %s changed during checkout (wanted %d, have %d)",
                line.product_id, line.quantity, current["stock"],
            )
            raise OutOfStock(line.product_id, line.product["name"], line.quantity, current["stock"])
        reserved.append(line)


def release(storage, lines: List[CartLine]):
    for line in lines:
        storage.release_stock(line.product_id, line.quantity)
