"""
MongoDB connection and small document helpers.

`db` is None when DATABASE_URL is not configured; callers go through
main.get_db, which turns that into a 503.
"""

import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")

client: Optional[MongoClient] = None
db = None

if DATABASE_URL:
    client = MongoClient(DATABASE_URL)
    db = client[DATABASE_NAME]


def _as_dict(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database=None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id as a string."""
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not configured")
    now = datetime.utcnow()
    doc = {**_as_dict(data), "created_at": now, "updated_at": now}
    result = target[collection_name].insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes(database=None) -> None:
    target = database if database is not None else db
    if target is None:
        return
    target["user"].create_index([("email", ASCENDING)], unique=True)
    target["cart"].create_index([("user_id", ASCENDING)], unique=True)
    target["order"].create_index([("order_number", ASCENDING)], unique=True)
    # one order per payment intent; orders without an intent are not indexed
    target["order"].create_index([("payment_intent_id", ASCENDING)], unique=True, sparse=True)
    target["order"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    target["product"].create_index([("category", ASCENDING)])
    target["user"].create_index([("reset_token_hash", ASCENDING)], sparse=True)
    logger.info("MongoDB indexes ensured on %s", target.name)
