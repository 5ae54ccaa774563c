"""
Persistence gateway: CRUD over users, products, cart items and orders.

Everything returned to callers is a plain dict with ``id`` as a string and
money fields as ``Decimal``. pymongo errors are logged and re-raised as
``PersistenceFailure``.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from database import create_document, from_db_money, get_documents, now, to_db_money
from errors import PersistenceFailure
from schemas import Order, Product, User

logger = logging.getLogger(__name__)


def oid(id_str) -> Optional[ObjectId]:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        return None


def serialize(doc):
    if not doc:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


def serialize_product(doc):
    doc = serialize(doc)
    if doc is not None:
        doc["price"] = from_db_money(doc.get("price"))
    return doc


def serialize_order(doc):
    doc = serialize(doc)
    if doc is None:
        return None
    doc["total_amount"] = from_db_money(doc.get("total_amount"))
    items = []
    for item in doc.get("items", []):
        item = dict(item)
        item["price"] = from_db_money(item.get("price"))
        items.append(item)
    doc["items"] = items
    return doc


@contextmanager
def guarded(action: str):
    try:
        yield
    except PyMongoError:
        logger.exception("Database error while trying to %s", action)
        raise PersistenceFailure()


class MongoStorage:
    def __init__(self, db):
        if db is None:
            raise PersistenceFailure("Database not configured")
        self.db = db

    def ensure_indexes(self):
        with guarded("create indexes"):
            self.db["user"].create_index("username", unique=True)
            self.db["user"].create_index("email", unique=True)
            self.db["user"].create_index("token")
            self.db["cartitem"].create_index(
                [("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True
            )
            self.db["order"].create_index([("user_id", ASCENDING), ("order_date", DESCENDING)])

    # Users

    def create_user(self, user: User) -> str:
        with guarded("create user"):
            return create_document(self.db, "user", user)

    def get_user(self, user_id: str):
        key = oid(user_id)
        if key is None:
            return None
        with guarded("load user"):
            return serialize(self.db["user"].find_one({"_id": key}))

    def get_user_by_username(self, username: str):
        with guarded("load user"):
            return serialize(self.db["user"].find_one({"username": username}))

    def get_user_by_email(self, email: str):
        with guarded("load user"):
            return serialize(self.db["user"].find_one({"email": email}))

    def get_user_by_token(self, token: str):
        if not token:
            return None
        with guarded("load user"):
            return serialize(self.db["user"].find_one({"token": token, "is_active": True}))

    # Products

    def create_product(self, product: Product):
        data = product.model_dump()
        data["price"] = to_db_money(product.price)
        with guarded("create product"):
            product_id = create_document(self.db, "product", data)
        return self.get_product(product_id, include_inactive=True)

    def get_product(self, product_id: str, include_inactive: bool = False):
        key = oid(product_id)
        if key is None:
            return None
        query: Dict[str, Any] = {"_id": key}
        if not include_inactive:
            query["is_active"] = True
        with guarded("load product"):
            return serialize_product(self.db["product"].find_one(query))

    def list_products(self, category: Optional[str] = None, limit: int = 100):
        query: Dict[str, Any] = {"is_active": True}
        if category:
            query["category"] = category
        with guarded("list products"):
            cursor = self.db["product"].find(query).sort("created_at", DESCENDING).limit(limit)
            return [serialize_product(p) for p in cursor]

    def list_products_by_seller(self, seller_id: str):
        # sellers see their soft-deleted products too
        with guarded("list seller products"):
            cursor = self.db["product"].find({"seller_id": seller_id}).sort("created_at", DESCENDING)
            return [serialize_product(p) for p in cursor]

    def update_product(self, product_id: str, updates: Dict[str, Any]):
        key = oid(product_id)
        if key is None:
            return None
        updates = dict(updates)
        if "price" in updates:
            updates["price"] = to_db_money(updates["price"])
        updates["updated_at"] = now()
        with guarded("update product"):
            doc = self.db["product"].find_one_and_update(
                {"_id": key}, {"$set": updates}, return_document=ReturnDocument.AFTER
            )
        return serialize_product(doc)

    def deactivate_product(self, product_id: str) -> bool:
        key = oid(product_id)
        if key is None:
            return False
        with guarded("deactivate product"):
            res = self.db["product"].update_one(
                {"_id": key}, {"$set": {"is_active": False, "updated_at": now()}}
            )
        return res.matched_count > 0

    def reserve_stock(self, product_id: str, quantity: int) -> bool:
        """Decrement stock only if the product is active and has enough units."""
        with guarded("reserve stock"):
            res = self.db["product"].update_one(
                {"_id": oid(product_id), "is_active": True, "stock": {"$gte": quantity}},
                {"$inc": {"stock": -quantity}, "$set": {"updated_at": now()}},
            )
        return res.modified_count == 1

    def release_stock(self, product_id: str, quantity: int):
        with guarded("release stock"):
            self.db["product"].update_one(
                {"_id": oid(product_id)},
                {"$inc": {"stock": quantity}, "$set": {"updated_at": now()}},
            )

    # Cart

    def get_cart_items(self, user_id: str) -> List[dict]:
        with guarded("load cart"):
            cursor = self.db["cartitem"].find({"user_id": user_id}).sort("_id", ASCENDING)
            return [serialize(c) for c in cursor]

    def get_cart_item(self, item_id: str):
        key = oid(item_id)
        if key is None:
            return None
        with guarded("load cart item"):
            return serialize(self.db["cartitem"].find_one({"_id": key}))

    def add_to_cart(self, user_id: str, product_id: str, quantity: int):
        """Add a line, or bump the quantity of the existing (user, product) line."""
        with guarded("add to cart"):
            doc = self.db["cartitem"].find_one_and_update(
                {"user_id": user_id, "product_id": product_id},
                {
                    "$inc": {"quantity": quantity},
                    "$set": {"updated_at": now()},
                    "$setOnInsert": {"created_at": now()},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        return serialize(doc)

    def update_cart_item(self, item_id: str, quantity: int):
        if quantity < 1:
            self.remove_cart_item(item_id)
            return None
        with guarded("update cart item"):
            doc = self.db["cartitem"].find_one_and_update(
                {"_id": oid(item_id)},
                {"$set": {"quantity": quantity, "updated_at": now()}},
                return_document=ReturnDocument.AFTER,
            )
        return serialize(doc)

    def remove_cart_item(self, item_id: str) -> bool:
        with guarded("remove cart item"):
            res = self.db["cartitem"].delete_one({"_id": oid(item_id)})
        return res.deleted_count > 0

    def clear_cart(self, user_id: str) -> int:
        with guarded("clear cart"):
            res = self.db["cartitem"].delete_many({"user_id": user_id})
        return res.deleted_count

    # Orders

    def insert_order(self, order: Order):
        """Write an order together with its items as a single document."""
        data = order.model_dump()
        data["total_amount"] = to_db_money(order.total_amount)
        for item in data["items"]:
            item["price"] = to_db_money(item["price"])
        with guarded("create order"):
            order_id = create_document(self.db, "order", data)
        return self.get_order(order_id)

    def get_order(self, order_id: str):
        key = oid(order_id)
        if key is None:
            return None
        with guarded("load order"):
            return serialize_order(self.db["order"].find_one({"_id": key}))

    def get_orders_by_user(self, user_id: str):
        with guarded("list orders"):
            docs = get_documents(self.db, "order", {"user_id": user_id},
                                 sort=[("order_date", DESCENDING), ("_id", DESCENDING)])
        return [serialize_order(o) for o in docs]

    def find_order_by_idempotency_key(self, user_id: str, key: str):
        with guarded("look up order"):
            doc = self.db["order"].find_one({"user_id": user_id, "idempotency_key": key})
        return serialize_order(doc)

    def update_order(self, order_id: str, updates: Dict[str, Any],
                     expected_statuses: Optional[List[str]] = None):
        """Apply ``updates``; when ``expected_statuses`` is given, only from those statuses.

        Returns the updated order, or None when nothing matched.
        """
        query: Dict[str, Any] = {"_id": oid(order_id)}
        if expected_statuses:
            query["status"] = {"$in": list(expected_statuses)}
        updates = dict(updates)
        updates["updated_at"] = now()
        with guarded("update order"):
            doc = self.db["order"].find_one_and_update(
                query, {"$set": updates}, return_document=ReturnDocument.AFTER
            )
        return serialize_order(doc)
