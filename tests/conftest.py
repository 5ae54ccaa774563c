from decimal import Decimal
import secrets

import mongomock
import pytest
from fastapi.testclient import TestClient

from checkout import CheckoutService
from errors import PaymentProviderError
from main import app, get_payment_gateway, get_storage, hash_password
from payments import IntentConfirmation, PaymentGateway, PaymentIntent
from schemas import Product, User
from storage import MongoStorage


class FakePaymentGateway(PaymentGateway):
    """Records intents; ``outcome`` decides what confirm_intent reports."""

    def __init__(self):
        self.intents = {}
        self.outcome = "succeeded"
        self.fail_create = False

    def create_intent(self, amount, order_id, user_id):
        if self.fail_create:
            raise PaymentProviderError()
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.intents[intent_id] = {"amount": amount, "order_id": order_id, "user_id": user_id}
        return PaymentIntent(intent_id=intent_id, client_secret=f"{intent_id}_secret_xyz")

    def confirm_intent(self, intent_id):
        return IntentConfirmation(intent_id=intent_id, succeeded=self.outcome == "succeeded",
                                  status=self.outcome)


@pytest.fixture
def mongo():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def storage(mongo):
    s = MongoStorage(mongo)
    s.ensure_indexes()
    return s


@pytest.fixture
def payments():
    return FakePaymentGateway()


@pytest.fixture
def service(storage, payments):
    return CheckoutService(storage, payments)


@pytest.fixture
def client(storage, payments):
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_payment_gateway] = lambda: payments
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def make_user(storage, username, role="buyer", password="secret1"):
    token = secrets.token_hex(16)
    user_id = storage.create_user(User(
        username=username,
        email=f"{username}@example.com",
        password_hash=hash_password(password),
        token=token,
        role=role,
    ))
    user = storage.get_user(user_id)
    user["headers"] = {"Authorization": f"Bearer {token}"}
    return user


def make_product(storage, name, price, stock, seller_id="seller-1"):
    return storage.create_product(Product(
        seller_id=seller_id, name=name, price=Decimal(price), stock=stock, category="Accessories",
    ))


@pytest.fixture
def buyer(storage):
    return make_user(storage, "alice")


@pytest.fixture
def seller(storage):
    return make_user(storage, "sam", role="seller")


@pytest.fixture
def product_a(storage, seller):
    return make_product(storage, "Wireless Mouse", "29.99", 10, seller_id=seller["id"])


@pytest.fixture
def product_b(storage, seller):
    return make_product(storage, "USB Cable", "10.00", 5, seller_id=seller["id"])


@pytest.fixture
def filled_cart(storage, buyer, product_a, product_b):
    storage.add_to_cart(buyer["id"], product_a["id"], 2)
    storage.add_to_cart(buyer["id"], product_b["id"], 1)
    return storage.get_cart_items(buyer["id"])
