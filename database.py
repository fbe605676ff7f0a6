"""
Database helpers

MongoDB access shared by the services. `db` is None when DATABASE_URL /
DATABASE_NAME are not configured; request handlers obtain the handle through
`get_db` so tests can swap in another database.
"""

from datetime import datetime, timezone
from typing import Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

import config
from errors import ValidationError

db = None
if config.DATABASE_URL and config.DATABASE_NAME:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]


def get_db():
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def utcnow():
    return datetime.now(timezone.utc)


def to_object_id(value, label="id"):
    """Parse a client supplied id, raising ValidationError when malformed."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label}: {value}")


def to_serializable(value):
    """Convert a Mongo document into JSON friendly data (ObjectId -> str, _id -> id)."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, list):
        return [to_serializable(v) for v in value]
    if isinstance(value, dict):
        d = {}
        for k, v in value.items():
            if k == "_id":
                d["id"] = to_serializable(v)
            else:
                d[k] = to_serializable(v)
        return d
    return value


def create_document(database, collection_name: str, data: Union[BaseModel, dict]):
    """Insert a document stamped with created_at/updated_at and return its ObjectId."""
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return result.inserted_id


def get_documents(database, collection_name: str, filter_dict: dict = None, limit: int = None):
    cursor = database[collection_name].find(filter_dict or {}).sort("created_at", DESCENDING)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database):
    database["cart"].create_index(
        [("buyer_id", ASCENDING), ("seller_id", ASCENDING)], unique=True
    )
    database["order"].create_index("order_number", unique=True)
    database["order"].create_index([("seller_id", ASCENDING), ("created_at", DESCENDING)])
    database["order"].create_index([("buyer_id", ASCENDING), ("created_at", DESCENDING)])
