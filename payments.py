"""
Payment gateway adapter: wraps the Stripe PaymentIntents HTTP API.

Two calls only: create an intent for an order, and check whether an intent
has succeeded. Nothing here retries; the client decides when to try again.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx

from config import PAYMENT_CURRENCY, PAYMENT_TIMEOUT_SECONDS, STRIPE_API_BASE, STRIPE_SECRET_KEY
from database import quantize_money
from errors import PaymentDeclined, PaymentProviderError

logger = logging.getLogger(__name__)


@dataclass
class PaymentIntent:
    intent_id: str
    client_secret: str


# final failures; anything else that is not "succeeded" is still in flight
DECLINED_STATUSES = ("requires_payment_method", "canceled")


@dataclass
class IntentConfirmation:
    intent_id: str
    succeeded: bool
    status: str

    @property
    def declined(self) -> bool:
        return not self.succeeded and self.status in DECLINED_STATUSES


def to_minor_units(amount) -> int:
    """Dollars to cents."""
    return int(quantize_money(amount) * 100)


def normalize_intent_id(value: str) -> str:
    """Accept either an intent id or its client secret (``pi_x_secret_y``)."""
    if value and "_secret_" in value:
        return value.split("_secret_", 1)[0]
    return value


class PaymentGateway:
    def create_intent(self, amount: Decimal, order_id: str, user_id: str) -> PaymentIntent:
        raise NotImplementedError

    def confirm_intent(self, intent_id: str) -> IntentConfirmation:
        raise NotImplementedError


class StripePaymentGateway(PaymentGateway):
    def __init__(self, secret_key: Optional[str] = STRIPE_SECRET_KEY,
                 api_base: str = STRIPE_API_BASE, currency: str = PAYMENT_CURRENCY,
                 client: Optional[httpx.Client] = None):
        self.secret_key = secret_key
        self.currency = currency
        self.client = client or httpx.Client(base_url=api_base, timeout=PAYMENT_TIMEOUT_SECONDS)

    def _headers(self, idempotency_key: Optional[str] = None) -> dict:
        if not self.secret_key:
            logger.error("STRIPE_SECRET_KEY is not set; card payments are unavailable")
            raise PaymentProviderError()
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _send(self, method: str, url: str, **kwargs) -> dict:
        try:
            resp = self.client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Stripe request %s %s failed: %s", method, url, exc)
            raise PaymentProviderError()
        if resp.status_code == 402:
            error = resp.json().get("error", {})
            logger.info("Stripe declined payment: %s", error.get("decline_code") or error.get("code"))
            raise PaymentDeclined(error.get("message") or PaymentDeclined.default_message)
        if resp.status_code >= 400:
            logger.error("Stripe returned %s for %s %s: %s", resp.status_code, method, url, resp.text[:200])
            raise PaymentProviderError()
        return resp.json()

    def create_intent(self, amount: Decimal, order_id: str, user_id: str) -> PaymentIntent:
        cents = to_minor_units(amount)
        data = {
            "amount": str(cents),
            "currency": self.currency,
            "metadata[order_id]": str(order_id),
            "metadata[user_id]": str(user_id),
            "automatic_payment_methods[enabled]": "true",
        }
        # same order and amount -> same intent if the request is replayed
        body = self._send(
            "POST", "/v1/payment_intents", data=data,
            headers=self._headers(idempotency_key=f"order-{order_id}-{cents}"),
        )
        return PaymentIntent(intent_id=body["id"], client_secret=body["client_secret"])

    def confirm_intent(self, intent_id: str) -> IntentConfirmation:
        intent_id = normalize_intent_id(intent_id)
        body = self._send("GET", f"/v1/payment_intents/{intent_id}", headers=self._headers())
        status = body.get("status", "unknown")
        return IntentConfirmation(intent_id=body.get("id", intent_id),
                                  succeeded=status == "succeeded", status=status)
