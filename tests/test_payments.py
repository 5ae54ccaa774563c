from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from errors import PaymentDeclined, PaymentProviderError
from payments import StripePaymentGateway, normalize_intent_id, to_minor_units


def gateway(handler, secret_key="sk_test_123"):
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="https://stripe.test")
    return StripePaymentGateway(secret_key=secret_key, client=client)


def test_create_intent_sends_cents_and_order_metadata():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["idempotency"] = request.headers["Idempotency-Key"]
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(200, json={"id": "pi_1", "client_secret": "pi_1_secret_a", "status": "requires_payment_method"})

    intent = gateway(handler).create_intent(Decimal("69.98"), "order-1", "user-1")

    assert intent.intent_id == "pi_1"
    assert intent.client_secret == "pi_1_secret_a"
    assert seen["path"] == "/v1/payment_intents"
    assert seen["auth"] == "Bearer sk_test_123"
    assert seen["idempotency"] == "order-order-1-6998"
    assert seen["form"]["amount"] == ["6998"]
    assert seen["form"]["currency"] == ["usd"]
    assert seen["form"]["metadata[order_id]"] == ["order-1"]


def test_confirm_intent_reports_success():
    def handler(request):
        assert request.url.path == "/v1/payment_intents/pi_1"
        return httpx.Response(200, json={"id": "pi_1", "status": "succeeded"})

    result = gateway(handler).confirm_intent("pi_1_secret_a")

    assert result.succeeded is True
    assert result.intent_id == "pi_1"


def test_confirm_intent_reports_unpaid_status():
    def handler(request):
        return httpx.Response(200, json={"id": "pi_1", "status": "requires_payment_method"})

    result = gateway(handler).confirm_intent("pi_1")

    assert result.succeeded is False
    assert result.status == "requires_payment_method"


def test_card_error_is_a_decline():
    def handler(request):
        return httpx.Response(402, json={"error": {"type": "card_error", "code": "card_declined",
                                                   "message": "Your card was declined."}})

    with pytest.raises(PaymentDeclined) as exc:
        gateway(handler).create_intent(Decimal("10.00"), "o", "u")
    assert exc.value.message == "Your card was declined."


def test_server_error_is_a_provider_error():
    def handler(request):
        return httpx.Response(500, text="oops")

    with pytest.raises(PaymentProviderError):
        gateway(handler).confirm_intent("pi_1")


def test_network_error_is_a_provider_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(PaymentProviderError):
        gateway(handler).create_intent(Decimal("10.00"), "o", "u")


def test_missing_secret_key_is_a_provider_error():
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(PaymentProviderError):
        gateway(handler, secret_key=None).create_intent(Decimal("10.00"), "o", "u")


def test_helpers():
    assert to_minor_units(Decimal("29.99")) == 2999
    assert to_minor_units("0.015") == 2
    assert normalize_intent_id("pi_abc_secret_def") == "pi_abc"
    assert normalize_intent_id("pi_abc") == "pi_abc"


@pytest.mark.parametrize("status, declined", [
    ("requires_payment_method", True),
    ("canceled", True),
    ("processing", False),
    ("requires_action", False),
    ("succeeded", False),
])
def test_only_final_failures_count_as_declined(status, declined):
    def handler(request):
        return httpx.Response(200, json={"id": "pi_1", "status": status})

    assert gateway(handler).confirm_intent("pi_1").declined is declined
