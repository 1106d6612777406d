"""
MongoDB access for the Storefront API.

The client is created once at import time from DATABASE_URL / DATABASE_NAME.
Routes receive the database through the ``get_db`` dependency so tests can
swap in another database.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.collection import Collection
from pymongo.database import Database

import config

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db: Optional[Database] = None

if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]
else:
    logger.warning("DATABASE_URL or DATABASE_NAME not configured - database unavailable")


def get_db() -> Database:
    if db is None:
        raise RuntimeError("Database is not configured. Set DATABASE_URL and DATABASE_NAME.")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands datetimes back naive; treat those as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Parse an id string, returning None instead of raising for bad input."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def create_document(collection: Collection, data: Union[BaseModel, dict]) -> dict:
    """Insert a document with timestamps and return it including its _id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = collection.insert_one(doc)
    doc["_id"] = result.inserted_id
    return doc


def get_documents(collection: Collection, filter_dict: Optional[dict] = None, sort=None, limit: Optional[int] = None) -> List[dict]:
    cursor = collection.find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize(value: Any, hidden: tuple = ("password_hash",)) -> Any:
    """Make a Mongo document JSON friendly: _id -> id, ObjectIds -> str."""
    if isinstance(value, list):
        return [serialize(v, hidden) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for key, item in value.items():
            if key in hidden:
                continue
            if key == "_id":
                out["id"] = serialize(item, hidden)
            else:
                out[key] = serialize(item, hidden)
        return out
    return value


def ensure_indexes(database: Database) -> None:
    database["customers"].create_index("email", unique=True)
    database["customers"].create_index("referral_code", unique=True, sparse=True)
    database["categories"].create_index("name", unique=True)
    database["products"].create_index("category_ids")
    database["orders"].create_index("order_id", unique=True)
    database["orders"].create_index([("customer_id", ASCENDING), ("created_at", ASCENDING)])
    database["coupons"].create_index("code", unique=True)
    database["coupons"].create_index("customer_id")
    database["email_verifications"].create_index("email")
    database["email_verifications"].create_index("expires_at", expireAfterSeconds=0)
