"""
MongoDB access helpers.

The database handle is built from DATABASE_URL / DATABASE_NAME. When either is
missing ``db`` stays ``None`` and callers report the database as not configured.
"""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from bson.decimal128 import Decimal128
from pydantic import BaseModel
from pymongo import MongoClient

from config import DATABASE_URL, DATABASE_NAME

CENTS = Decimal("0.01")

db = None
if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def now():
    return datetime.now(timezone.utc)


def quantize_money(value) -> Decimal:
    """Round any numeric value to cents, half up."""
    if isinstance(value, Decimal128):
        value = value.to_decimal()
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def to_db_money(value) -> Decimal128:
    return Decimal128(quantize_money(value))


def from_db_money(value) -> Decimal:
    if value is None:
        return quantize_money(0)
    return quantize_money(value)


def create_document(database, collection_name: str, data) -> str:
    """Insert a document (pydantic model or dict) with timestamps; return its id."""
    if database is None:
        raise RuntimeError("Database not configured")
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    data_dict["created_at"] = now()
    data_dict["updated_at"] = now()
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort=None):
    if database is None:
        raise RuntimeError("Database not configured")
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
