"""
Checkout orchestration: cart -> order -> payment -> cleared cart.

The order is durable as soon as it is written; payment problems after that
point never remove it. The cart is only emptied once payment is confirmed,
or straight away for cash on delivery, so a failed card payment can be
retried against the same cart. Checking the cart out again cancels the
earlier unpaid card order once its payment is no longer in flight.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from database import now, quantize_money
from errors import (
    BadRequest,
    CheckoutError,
    Forbidden,
    InvalidCheckoutRequest,
    NotFound,
    PaymentConfirmationMismatch,
    PaymentDeclined,
    PaymentProviderError,
    PersistenceFailure,
)
from inventory import release, reserve, validate_cart
from orders import assemble_order
from payments import PaymentGateway, PaymentIntent, normalize_intent_id

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("card", "cod")
UNPAID_STATUSES = ("pending", "processing")


class CheckoutState(str, Enum):
    CART_VALIDATED = "cart_validated"
    ORDER_CREATED = "order_created"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    CART_CLEARED = "cart_cleared"
    ABORTED = "aborted"


@dataclass
class CheckoutResult:
    order: dict
    state: CheckoutState
    client_secret: Optional[str] = None
    payment_error: Optional[str] = None
    replayed: bool = False


@dataclass
class ConfirmationResult:
    order: dict
    state: CheckoutState
    message: str


def state_for(order: dict) -> CheckoutState:
    if order["status"] == "paid":
        return CheckoutState.CART_CLEARED
    if order.get("payment_intent"):
        return CheckoutState.PAYMENT_PENDING
    return CheckoutState.ORDER_CREATED


class CheckoutService:
    def __init__(self, storage, payments: PaymentGateway):
        self.storage = storage
        self.payments = payments

    def checkout(self, user_id: str, shipping_address: Optional[str], payment_method: str = "card",
                 idempotency_key: Optional[str] = None) -> CheckoutResult:
        shipping_address = (shipping_address or "").strip()
        if not shipping_address:
            raise InvalidCheckoutRequest("Shipping address is required")
        if payment_method not in PAYMENT_METHODS:
            raise InvalidCheckoutRequest(f"Unsupported payment method: {payment_method}")

        if idempotency_key:
            existing = self.storage.find_order_by_idempotency_key(user_id, idempotency_key)
            if existing is not None:
                logger.info("Checkout replay for user %s returns order %s", user_id, existing["id"])
                return CheckoutResult(order=existing, state=state_for(existing), replayed=True)

        cart = self.storage.get_cart_items(user_id)
        if not cart:
            raise InvalidCheckoutRequest("Cart is empty")
        self._release_abandoned_orders(user_id)

        # nothing is written until every line has passed
        try:
            lines = validate_cart(self.storage, cart)
            logger.debug("User %s: %s (%d lines)", user_id, CheckoutState.CART_VALIDATED.value, len(lines))
            reserve(self.storage, lines)
        except CheckoutError as exc:
            logger.info("User %s: checkout %s: %s", user_id, CheckoutState.ABORTED.value, exc.message)
            raise
        try:
            order = assemble_order(self.storage, user_id, lines, shipping_address,
                                   payment_method, idempotency_key)
        except PersistenceFailure:
            logger.error("Order write failed for user %s; releasing reserved stock", user_id)
            release(self.storage, lines)
            raise
        logger.info("Order %s created for user %s, total %s", order["id"], user_id, order["total_amount"])

        if payment_method == "cod":
            order = self._settle(order)
            return CheckoutResult(order=order, state=CheckoutState.CART_CLEARED)

        # the order is already stored; from here on failures are reported, not raised
        try:
            intent = self._start_payment(order)
            order = self.storage.get_order(order["id"]) or order
        except (PaymentProviderError, PaymentDeclined, PersistenceFailure) as exc:
            logger.warning("Could not start payment for order %s: %s", order["id"], exc.message)
            return CheckoutResult(order=order, state=CheckoutState.ORDER_CREATED,
                                  payment_error=exc.message)
        return CheckoutResult(order=order, state=CheckoutState.PAYMENT_PENDING,
                              client_secret=intent.client_secret)

    def create_payment_intent(self, user_id: str, order_id: str, amount=None) -> PaymentIntent:
        order = self._owned_order(user_id, order_id)
        if order["status"] not in UNPAID_STATUSES:
            raise InvalidCheckoutRequest("Order is not awaiting payment")
        if order["payment_method"] != "card":
            raise InvalidCheckoutRequest("Order is paid on delivery")
        if amount is not None:
            try:
                amount = quantize_money(amount)
            except ArithmeticError:
                raise InvalidCheckoutRequest("Invalid amount")
            if amount <= 0:
                raise InvalidCheckoutRequest("Invalid amount")
            if amount != order["total_amount"]:
                raise InvalidCheckoutRequest("Amount does not match order total")
        return self._start_payment(order)

    def confirm_payment(self, user_id: str, order_id: str,
                        payment_intent_id: Optional[str] = None) -> ConfirmationResult:
        order = self._owned_order(user_id, order_id)
        if order["status"] == "paid":
            return ConfirmationResult(order=order, state=CheckoutState.CART_CLEARED,
                                      message="Payment already confirmed")
        if order["status"] not in UNPAID_STATUSES:
            raise InvalidCheckoutRequest("Order cannot be paid in its current status")

        if not payment_intent_id:
            if order["payment_method"] != "cod":
                raise InvalidCheckoutRequest("paymentIntentId is required for card payments")
            order = self._settle(order)
            return ConfirmationResult(order=order, state=CheckoutState.CART_CLEARED,
                                      message="Order confirmed, pay on delivery")

        intent_id = normalize_intent_id(payment_intent_id)
        if not order.get("payment_intent"):
            raise InvalidCheckoutRequest("No payment has been started for this order")
        if intent_id != order["payment_intent"]:
            raise InvalidCheckoutRequest("Payment does not belong to this order")

        confirmation = self.payments.confirm_intent(intent_id)
        if confirmation.declined:
            logger.info("Order %s: %s, intent %s has status %s",
                        order["id"], CheckoutState.PAYMENT_FAILED.value, intent_id, confirmation.status)
            raise PaymentDeclined()
        if not confirmation.succeeded:
            logger.info("Order %s: intent %s still %s", order["id"], intent_id, confirmation.status)
            return ConfirmationResult(order=order, state=CheckoutState.PAYMENT_PENDING,
                                      message="Payment is still being processed, please check back shortly")

        try:
            settled = self._settle(order)
        except PersistenceFailure:
            mismatch = PaymentConfirmationMismatch()
            logger.error("Payment %s succeeded but order %s could not be updated; needs reconciliation",
                         intent_id, order["id"])
            return ConfirmationResult(order=order, state=CheckoutState.PAYMENT_CONFIRMED,
                                      message=mismatch.message)
        if settled["status"] != "paid":
            logger.error("Payment %s succeeded but order %s is %s; needs reconciliation",
                         intent_id, order["id"], settled["status"])
            raise InvalidCheckoutRequest("Order cannot be paid in its current status")
        return ConfirmationResult(order=settled, state=CheckoutState.CART_CLEARED,
                                  message="Payment confirmed")

    def cancel_order(self, user_id: str, order_id: str) -> dict:
        order = self._owned_order(user_id, order_id)
        if order["status"] not in UNPAID_STATUSES:
            raise BadRequest("Cannot cancel order in this state")
        updated = self.storage.update_order(order["id"], {"status": "cancelled"},
                                            expected_statuses=UNPAID_STATUSES)
        if updated is None:
            raise BadRequest("Cannot cancel order in this state")
        for item in order["items"]:
            self.storage.release_stock(item["product_id"], item["quantity"])
        logger.info("Order %s cancelled by user %s", order["id"], user_id)
        return updated

    def _owned_order(self, user_id: str, order_id: str) -> dict:
        order = self.storage.get_order(order_id)
        if order is None:
            raise NotFound("Order not found")
        if order["user_id"] != user_id:
            raise Forbidden()
        return order

    def _start_payment(self, order: dict) -> PaymentIntent:
        intent = self.payments.create_intent(order["total_amount"], order["id"], order["user_id"])
        self.storage.update_order(order["id"], {"payment_intent": intent.intent_id})
        return intent

    def _settle(self, order: dict) -> dict:
        """Mark the order paid, then empty the owner's cart.

        The cart is left alone when the order moved to another status first.
        """
        updated = self.storage.update_order(
            order["id"], {"status": "paid", "paid_at": now()}, expected_statuses=UNPAID_STATUSES
        )
        if updated is None:
            updated = self.storage.get_order(order["id"]) or order
        if updated["status"] == "paid":
            self.storage.clear_cart(order["user_id"])
        else:
            logger.warning("Order %s is %s, not settling it", order["id"], updated["status"])
        return updated

    def _release_abandoned_orders(self, user_id: str):
        """Cancel the user's unpaid card orders whose payment is not in flight.

        Their stock goes back so the same cart can be checked out again.
        """
        for order in self.storage.get_orders_by_user(user_id):
            if order["payment_method"] != "card" or order["status"] not in UNPAID_STATUSES:
                continue
            if order.get("payment_intent"):
                try:
                    confirmation = self.payments.confirm_intent(order["payment_intent"])
                except PaymentProviderError:
                    logger.warning("Cannot check payment of order %s; keeping its stock", order["id"])
                    continue
                if not confirmation.declined:
                    continue
            updated = self.storage.update_order(order["id"], {"status": "cancelled"},
                                                expected_statuses=UNPAID_STATUSES)
            if updated is None:
                continue
            for item in order["items"]:
                self.storage.release_stock(item["product_id"], item["quantity"])
            logger.info("Order %s superseded by a new checkout; stock released", order["id"])
