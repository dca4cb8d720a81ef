"""
MongoDB access helpers.

Every stored document keeps its ObjectId `_id` plus a string copy in `id`;
references between collections are stored as those string ids. Collection
names are the lowercase model names from schemas.py.
"""

import logging
from datetime import datetime, timezone
from math import ceil
from typing import Any, Dict, List, Optional, Tuple, Union

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument

logger = logging.getLogger(__name__)

COLLECTIONS = [
    "user", "farmer", "category", "product", "order", "payment", "review",
    "promocode", "cart", "wishlist", "notification", "delivery", "pickuppoint",
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise a stored datetime (naive UTC or aware) to an aware UTC datetime."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def connect(settings) -> Tuple[MongoClient, Any]:
    client = MongoClient(settings.database_url, tz_aware=True)
    db = client[settings.database_name]
    logger.info("Connected to MongoDB database %s", settings.database_name)
    return client, db


def close(client: Optional[MongoClient]) -> None:
    if client is not None:
        client.close()
        logger.info("MongoDB connection closed")


def ensure_indexes(db) -> None:
    for name in COLLECTIONS:
        db[name].create_index("id", unique=True)

    db["user"].create_index("email", unique=True)
    db["user"].create_index("role")
    db["farmer"].create_index("userId", unique=True)
    db["farmer"].create_index([("isVerified", ASCENDING), ("isActive", ASCENDING)])
    db["category"].create_index("slug", unique=True)
    db["category"].create_index([("parent", ASCENDING), ("sortOrder", ASCENDING)])
    db["product"].create_index([("farmerId", ASCENDING), ("isActive", ASCENDING)])
    db["product"].create_index("categoryId")
    db["product"].create_index([("rating.average", DESCENDING)])
    db["order"].create_index("orderNumber", unique=True)
    db["order"].create_index([("customerId", ASCENDING), ("createdAt", DESCENDING)])
    db["order"].create_index("items.farmerId")
    db["order"].create_index("status")
    db["payment"].create_index("orderId", unique=True)
    db["payment"].create_index("paymentId", unique=True)
    db["payment"].create_index("transactionId")
    db["review"].create_index(
        [("customerId", ASCENDING), ("productId", ASCENDING), ("orderId", ASCENDING)],
        unique=True,
    )
    db["review"].create_index([("productId", ASCENDING), ("isVisible", ASCENDING)])
    db["review"].create_index([("farmerId", ASCENDING), ("isVisible", ASCENDING)])
    db["promocode"].create_index("code", unique=True)
    db["cart"].create_index("userId", unique=True)
    db["wishlist"].create_index("userId", unique=True)
    db["notification"].create_index([("recipient", ASCENDING), ("isRead", ASCENDING)])
    db["delivery"].create_index("orderId", unique=True)


# ------------------------- Documents -------------------------

def new_document(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    oid = ObjectId()
    now = utcnow()
    doc["_id"] = oid
    doc["id"] = str(oid)
    doc.setdefault("createdAt", now)
    doc["updatedAt"] = now
    return doc


def create_document(db, collection: str, data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    doc = new_document(data)
    db[collection].insert_one(doc)
    return doc


def get_by_id(db, collection: str, id_str: Optional[str]):
    if not id_str:
        return None
    return db[collection].find_one({"id": str(id_str)})


def list_many(db, collection: str, query: dict = None, sort: Optional[list] = None,
              limit: Optional[int] = None) -> List[Dict[str, Any]]:
    cursor = db[collection].find(query or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def paginate(db, collection: str, query: dict = None, page: int = 1, limit: int = 10,
             sort: Optional[list] = None) -> Tuple[List[Dict[str, Any]], Dict[str, int]]:
    page = max(int(page or 1), 1)
    limit = max(int(limit or 10), 1)
    query = query or {}
    cursor = db[collection].find(query)
    if sort:
        cursor = cursor.sort(sort)
    items = list(cursor.skip((page - 1) * limit).limit(limit))
    total = db[collection].count_documents(query)
    return items, {
        "currentPage": page,
        "totalPages": ceil(total / limit) if total else 0,
        "totalItems": total,
        "itemsPerPage": limit,
    }


def next_sequence(db, name: str) -> int:
    counter = db["counter"].find_one_and_update(
        {"_id": name},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return int(counter["seq"])


def serialize(value: Any) -> Any:
    """JSON-safe copy of a document: ObjectIds become strings and `_id` is dropped."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if k == "_id":
                if "id" not in value:
                    out["id"] = str(v)
                continue
            out[k] = serialize(v)
        return out
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    if isinstance(value, ObjectId):
        return str(value)
    return value
