"""
MongoDB access for the Sufficius API

`db` is None when DATABASE_URL / DATABASE_NAME are not configured; every helper
raises DatabaseUnavailableError in that case.
"""
import logging
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient

from errors import DatabaseUnavailableError

logger = logging.getLogger(__name__)

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

# Multi-document transactions need a replica set; standalone servers must turn this off.
USE_TRANSACTIONS = os.getenv("DATABASE_TRANSACTIONS", "true").lower() not in ("0", "false", "no")

_client = None
db = None

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


def collection(name: str):
    if db is None:
        raise DatabaseUnavailableError()
    return db[name]


def create_document(collection_name: str, data: Union[BaseModel, dict], session=None) -> str:
    """Insert a document stamped with created_at/updated_at and return its id."""
    if isinstance(data, BaseModel):
        doc = data.model_dump()
    else:
        doc = data.copy()
    now = datetime.now(timezone.utc)
    doc["created_at"] = now
    doc["updated_at"] = now
    result = collection(collection_name).insert_one(doc, session=session)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None):
    cursor = collection(collection_name).find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize(doc: Optional[dict]) -> Optional[dict]:
    """Swap Mongo's `_id` for a string `id` so the document can go out as JSON."""
    if doc is None:
        return None
    out = dict(doc)
    out["id"] = str(out.pop("_id"))
    return out


@contextmanager
def transaction():
    """Yield a session with an open transaction, or None when transactions are disabled.

    Leaving the block normally commits; an exception aborts and propagates.
    """
    if db is None:
        raise DatabaseUnavailableError()
    if not USE_TRANSACTIONS:
        yield None
        return
    with db.client.start_session() as session:
        with session.start_transaction():
            yield session


def ensure_indexes():
    collection("user").create_index("username", unique=True)
    collection("user").create_index("email", unique=True)
    collection("coupon").create_index("code", unique=True)
    collection("cartitem").create_index([("user_id", ASCENDING), ("product_id", ASCENDING)])
    collection("order").create_index([("user_id", ASCENDING), ("created_at", ASCENDING)])
    collection("payment").create_index("order_id")
    collection("review").create_index([("user_id", ASCENDING), ("product_id", ASCENDING)], unique=True)
    collection("ratelimit").create_index("expires_at", expireAfterSeconds=0)
    logger.info("Indexes ensured on database %s", db.name)
