"""
MongoDB connection and small helpers shared by every collection.
Collection name = schema class name lowercased (user, product, cart, order, ...).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

import config
from errors import DatabaseUnavailable, ValidationFailed

logger = logging.getLogger(__name__)

client = MongoClient(config.DATABASE_URL) if config.DATABASE_URL else None
db = client[config.DATABASE_NAME] if client is not None and config.DATABASE_NAME else None


def get_db() -> Database:
    if db is None:
        raise DatabaseUnavailable()
    return db


def utcnow() -> datetime:
    # pymongo hands datetimes back naive (UTC); keep comparisons naive too
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_object_id(id_str: str, what: str = "id") -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationFailed(f"Invalid {what}")


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict]) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def paginate(database: Database, collection_name: str, filter_dict: dict, page: int, limit: int,
             sort=None) -> Dict[str, Any]:
    cursor = database[collection_name].find(filter_dict)
    cursor = cursor.sort(sort or [("created_at", DESCENDING)])
    docs = list(cursor.skip((page - 1) * limit).limit(limit))
    total = database[collection_name].count_documents(filter_dict)
    return {
        "items": docs,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


# bookkeeping fields kept out of API responses
HIDDEN_FIELDS = ("stock_orders", "reconcile_lock")


def serialize_doc(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    doc = {k: v for k, v in doc.items() if k not in HIDDEN_FIELDS}
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    for k, v in list(doc.items()):
        if isinstance(v, datetime):
            doc[k] = v.isoformat()
        elif isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["user"].create_index("google_id", unique=True, sparse=True)
    database["user"].create_index("role")
    database["sellerprofile"].create_index("user_id", unique=True)
    database["sellerprofile"].create_index("seller_status")
    database["cart"].create_index("user_id", unique=True)
    database["product"].create_index("seller_id")
    database["product"].create_index("category")
    database["product"].create_index("price")
    database["order"].create_index("user_id")
    database["order"].create_index("order_status")
    database["order"].create_index("items.seller_id")
    database["order"].create_index([("created_at", DESCENDING)])
    database["review"].create_index([("product_id", ASCENDING), ("user_id", ASCENDING)], unique=True)
    database["otp"].create_index("email")
    # expired codes are removed by the server
    database["otp"].create_index("expires_at", expireAfterSeconds=0)
    logger.info("Indexes ensured on %s", database.name)
