import logging
import os
import secrets
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from hashlib import sha256
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel
from starlette.exceptions import HTTPException as StarletteHTTPException

from checkout import CheckoutService
from config import AUTH_SALT, LOG_LEVEL, PORT
from database import db, quantize_money
from errors import CheckoutError, Forbidden, Unauthorized
from orders import estimate_display_totals
from payments import PaymentGateway, StripePaymentGateway
from schemas import OrderStatus, PaymentMethod, Product as ProductSchema, Role, User as UserSchema
from storage import MongoStorage

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail},
                        headers=getattr(exc, "headers", None))


# Dependencies

@lru_cache
def get_storage() -> MongoStorage:
    storage = MongoStorage(db)
    storage.ensure_indexes()
    return storage


@lru_cache
def get_payment_gateway() -> PaymentGateway:
    return StripePaymentGateway()


def get_checkout_service(storage: MongoStorage = Depends(get_storage),
                         payments: PaymentGateway = Depends(get_payment_gateway)) -> CheckoutService:
    return CheckoutService(storage, payments)


def get_current_user(authorization: Optional[str] = Header(None),
                     storage: MongoStorage = Depends(get_storage)) -> dict:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthorized()
    user = storage.get_user_by_token(authorization[7:].strip())
    if user is None:
        raise Unauthorized()
    return user


def require_seller(user: dict = Depends(get_current_user)) -> dict:
    if user["role"] != "seller":
        raise Forbidden("Forbidden - Seller access required")
    return user


# Request / response models (camelCase on the wire)

class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SignUpRequest(ApiModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Role = "buyer"


class SignInRequest(ApiModel):
    username: str
    password: str


class AuthResponse(ApiModel):
    user_id: str
    username: str
    email: EmailStr
    role: Role
    token: Optional[str] = None


class ProductIn(ApiModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: Decimal = Field(..., gt=0)
    category: Optional[str] = None
    stock: int = Field(0, ge=0)
    image_url: Optional[str] = None


class ProductUpdate(ApiModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, gt=0)
    category: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    image_url: Optional[str] = None


class ProductOut(ApiModel):
    id: str
    seller_id: str
    name: str
    description: Optional[str] = None
    price: Decimal
    category: Optional[str] = None
    stock: int
    image_url: Optional[str] = None
    is_active: bool


class AddToCartRequest(ApiModel):
    product_id: str
    quantity: int = 1


class UpdateCartRequest(ApiModel):
    quantity: int


class CartLineOut(ApiModel):
    id: str
    product_id: str
    quantity: int
    product: Optional[ProductOut] = None


class CartSummary(ApiModel):
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    estimated_total: Decimal


class CartOut(ApiModel):
    items: List[CartLineOut]
    summary: CartSummary


class CheckoutRequest(ApiModel):
    shipping_address: Optional[str] = None
    payment_method: str = "card"
    idempotency_key: Optional[str] = None


class CheckoutResponse(ApiModel):
    order_id: str
    total_amount: Decimal
    status: OrderStatus
    payment_method: PaymentMethod
    state: str
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    payment_error: Optional[str] = None


class CreatePaymentIntentRequest(ApiModel):
    order_id: str
    amount: Optional[Decimal] = None


class PaymentIntentResponse(ApiModel):
    client_secret: str
    payment_intent_id: str


class ConfirmPaymentRequest(ApiModel):
    order_id: str
    payment_intent_id: Optional[str] = None


class ConfirmPaymentResponse(ApiModel):
    order_id: str
    status: OrderStatus
    message: str


class OrderItemOut(ApiModel):
    product_id: str
    name: str
    quantity: int
    price: Decimal


class OrderOut(ApiModel):
    id: str
    user_id: str
    order_date: datetime
    status: OrderStatus
    total_amount: Decimal
    shipping_address: str
    payment_method: PaymentMethod
    payment_intent: Optional[str] = None
    items: List[OrderItemOut]


# Routes

@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "collections": []
    }
    if db is not None:
        try:
            resp["collections"] = db.list_collection_names()[:10]
            resp["database"] = "✅ Connected & Working"
        except Exception as e:
            resp["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return resp


# Auth endpoints

def hash_password(pw: str) -> str:
    return sha256((pw + AUTH_SALT).encode()).hexdigest()


def auth_response(user: dict, token: Optional[str] = None) -> AuthResponse:
    return AuthResponse(user_id=user["id"], username=user["username"], email=user["email"],
                        role=user["role"], token=token)


@app.post("/auth/signup", response_model=AuthResponse, status_code=201)
def signup(payload: SignUpRequest, storage: MongoStorage = Depends(get_storage)):
    if storage.get_user_by_username(payload.username):
        raise HTTPException(status_code=400, detail="Username already exists")
    if storage.get_user_by_email(payload.email):
        raise HTTPException(status_code=400, detail="Email already exists")
    token = secrets.token_hex(32)
    user = UserSchema(
        username=payload.username,
        email=payload.email,
        password_hash=hash_password(payload.password),
        token=token,
        role=payload.role,
        is_active=True,
    )
    user_id = storage.create_user(user)
    logger.info("Registered %s %s", payload.role, user_id)
    return auth_response(storage.get_user(user_id), token)


@app.post("/auth/signin", response_model=AuthResponse)
def signin(payload: SignInRequest, storage: MongoStorage = Depends(get_storage)):
    user = storage.get_user_by_username(payload.username)
    if not user or not user.get("is_active") or user.get("password_hash") != hash_password(payload.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return auth_response(user, user["token"])


@app.get("/auth/me", response_model=AuthResponse)
def me(user: dict = Depends(get_current_user)):
    return auth_response(user)


# Products

@app.get("/products", response_model=List[ProductOut])
def list_products(category: Optional[str] = None, storage: MongoStorage = Depends(get_storage)):
    return storage.list_products(category=category)


@app.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: str, storage: MongoStorage = Depends(get_storage)):
    product = storage.get_product(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


# Seller dashboard

def owned_product(storage: MongoStorage, product_id: str, seller: dict) -> dict:
    product = storage.get_product(product_id, include_inactive=True)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    if product["seller_id"] != seller["id"]:
        raise Forbidden()
    return product


@app.get("/seller/products", response_model=List[ProductOut])
def seller_products(seller: dict = Depends(require_seller), storage: MongoStorage = Depends(get_storage)):
    return storage.list_products_by_seller(seller["id"])


@app.post("/seller/products", response_model=ProductOut, status_code=201)
def create_product(payload: ProductIn, seller: dict = Depends(require_seller),
                   storage: MongoStorage = Depends(get_storage)):
    data = payload.model_dump()
    data["price"] = quantize_money(payload.price)
    return storage.create_product(ProductSchema(seller_id=seller["id"], **data))


@app.put("/seller/products/{product_id}", response_model=ProductOut)
def update_product(product_id: str, payload: ProductUpdate, seller: dict = Depends(require_seller),
                   storage: MongoStorage = Depends(get_storage)):
    owned_product(storage, product_id, seller)
    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        raise HTTPException(status_code=400, detail="No update fields provided")
    # orders keep their own price snapshot, so editing price here is safe
    return storage.update_product(product_id, updates)


@app.delete("/seller/products/{product_id}", status_code=204)
def delete_product(product_id: str, seller: dict = Depends(require_seller),
                   storage: MongoStorage = Depends(get_storage)):
    owned_product(storage, product_id, seller)
    storage.deactivate_product(product_id)
    return Response(status_code=204)


# Cart

@app.get("/cart", response_model=CartOut)
def get_cart(user: dict = Depends(get_current_user), storage: MongoStorage = Depends(get_storage)):
    items = []
    subtotal = Decimal("0.00")
    for item in storage.get_cart_items(user["id"]):
        product = storage.get_product(item["product_id"])
        if product:
            subtotal += product["price"] * item["quantity"]
        items.append({**item, "product": product})
    return {"items": items, "summary": estimate_display_totals(subtotal)}


@app.post("/cart", response_model=CartLineOut, status_code=201)
def add_to_cart(payload: AddToCartRequest, user: dict = Depends(get_current_user),
                storage: MongoStorage = Depends(get_storage)):
    if payload.quantity < 1:
        raise HTTPException(status_code=400, detail="Missing or invalid productId/quantity")
    product = storage.get_product(payload.product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    in_cart = sum(i["quantity"] for i in storage.get_cart_items(user["id"])
                  if i["product_id"] == product["id"])
    if product["stock"] < in_cart + payload.quantity:
        raise HTTPException(status_code=400, detail="Not enough stock available")
    item = storage.add_to_cart(user["id"], product["id"], payload.quantity)
    return {**item, "product": product}


def owned_cart_item(storage: MongoStorage, item_id: str, user: dict) -> dict:
    item = storage.get_cart_item(item_id)
    if not item or item["user_id"] != user["id"]:
        raise HTTPException(status_code=404, detail="Cart item not found")
    return item


@app.put("/cart/{item_id}", response_model=CartLineOut)
def update_cart_item(item_id: str, payload: UpdateCartRequest, user: dict = Depends(get_current_user),
                     storage: MongoStorage = Depends(get_storage)):
    if payload.quantity < 1:
        raise HTTPException(status_code=400, detail="Quantity must be at least 1")
    owned_cart_item(storage, item_id, user)
    item = storage.update_cart_item(item_id, payload.quantity)
    if not item:
        raise HTTPException(status_code=404, detail="Failed to update cart item")
    return {**item, "product": storage.get_product(item["product_id"])}


@app.delete("/cart/{item_id}", status_code=204)
def remove_cart_item(item_id: str, user: dict = Depends(get_current_user),
                     storage: MongoStorage = Depends(get_storage)):
    owned_cart_item(storage, item_id, user)
    storage.remove_cart_item(item_id)
    return Response(status_code=204)


@app.delete("/cart", status_code=204)
def clear_cart(user: dict = Depends(get_current_user), storage: MongoStorage = Depends(get_storage)):
    storage.clear_cart(user["id"])
    return Response(status_code=204)


# Checkout and payment

@app.post("/checkout", response_model=CheckoutResponse, status_code=201)
def checkout(payload: CheckoutRequest, user: dict = Depends(get_current_user),
             service: CheckoutService = Depends(get_checkout_service),
             idempotency_key: Optional[str] = Header(None)):
    result = service.checkout(
        user["id"],
        payload.shipping_address,
        payment_method=payload.payment_method,
        idempotency_key=payload.idempotency_key or idempotency_key,
    )
    order = result.order
    return CheckoutResponse(
        order_id=order["id"],
        total_amount=order["total_amount"],
        status=order["status"],
        payment_method=order["payment_method"],
        state=result.state.value,
        payment_intent_id=order.get("payment_intent"),
        client_secret=result.client_secret,
        payment_error=result.payment_error,
    )


@app.post("/create-payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(payload: CreatePaymentIntentRequest, user: dict = Depends(get_current_user),
                          service: CheckoutService = Depends(get_checkout_service)):
    intent = service.create_payment_intent(user["id"], payload.order_id, payload.amount)
    return PaymentIntentResponse(client_secret=intent.client_secret, payment_intent_id=intent.intent_id)


@app.post("/confirm-payment", response_model=ConfirmPaymentResponse)
def confirm_payment(payload: ConfirmPaymentRequest, user: dict = Depends(get_current_user),
                    service: CheckoutService = Depends(get_checkout_service)):
    result = service.confirm_payment(user["id"], payload.order_id, payload.payment_intent_id)
    return ConfirmPaymentResponse(order_id=result.order["id"], status=result.order["status"],
                                  message=result.message)


# Orders

@app.get("/orders", response_model=List[OrderOut])
def list_orders(user: dict = Depends(get_current_user), storage: MongoStorage = Depends(get_storage)):
    return storage.get_orders_by_user(user["id"])


@app.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: str, user: dict = Depends(get_current_user),
              storage: MongoStorage = Depends(get_storage)):
    order = storage.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order["user_id"] != user["id"]:
        raise Forbidden()
    return order


@app.post("/orders/{order_id}/cancel", response_model=OrderOut)
def cancel_order(order_id: str, user: dict = Depends(get_current_user),
                 service: CheckoutService = Depends(get_checkout_service)):
    return service.cancel_order(user["id"], order_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
