"""
Order assembly: turns validated cart lines into a persisted order with
frozen per-item prices.
"""

from decimal import Decimal
from typing import List, Optional

from database import now, quantize_money
from inventory import CartLine
from schemas import Order, OrderItem

# Storefront display estimate only; never part of the stored order total.
DISPLAY_SHIPPING_FEE = Decimal("5.99")
DISPLAY_TAX_RATE = Decimal("0.08")


def line_total(line: CartLine) -> Decimal:
    return quantize_money(line.product["price"] * line.quantity)


def build_order(user_id: str, lines: List[CartLine], shipping_address: str,
                payment_method: str = "card", idempotency_key: Optional[str] = None) -> Order:
    items = [
        OrderItem(
            product_id=line.product_id,
            name=line.product["name"],
            quantity=line.quantity,
            price=quantize_money(line.product["price"]),
        )
        for line in lines
    ]
    total = sum((line_total(line) for line in lines), Decimal("0.00"))
    return Order(
        user_id=user_id,
        order_date=now(),
        status="processing",
        total_amount=quantize_money(total),
        shipping_address=shipping_address,
        payment_method=payment_method,
        idempotency_key=idempotency_key,
        items=items,
    )


def assemble_order(storage, user_id: str, lines: List[CartLine], shipping_address: str,
                   payment_method: str = "card", idempotency_key: Optional[str] = None) -> dict:
    """Price the lines and persist the order; returns the stored order with its id."""
    order = build_order(user_id, lines, shipping_address, payment_method, idempotency_key)
    return storage.insert_order(order)


def estimate_display_totals(subtotal) -> dict:
    subtotal = quantize_money(subtotal)
    shipping = DISPLAY_SHIPPING_FEE if subtotal > 0 else Decimal("0.00")
    tax = quantize_money(subtotal * DISPLAY_TAX_RATE)
    return {
        "subtotal": subtotal,
        "shipping": shipping,
        "tax": tax,
        "estimated_total": quantize_money(subtotal + shipping + tax),
    }
