"""
Database helpers for Atypik Driver

The Mongo handle is built from DATABASE_URL / DATABASE_NAME. When either is missing
`db` stays None and every route depending on `get_db` reports the store as unavailable.
"""
import os
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from errors import NotFound, UpstreamFailure

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

_client = None
db = None

if DATABASE_URL and DATABASE_NAME:
    _client = MongoClient(DATABASE_URL)
    db = _client[DATABASE_NAME]


def now_utc() -> datetime:
    # Mongo hands datetimes back naive, so everything stored is naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    if db is None:
        raise UpstreamFailure("Database not configured")
    return db


def create_document(collection_name: str, data, database=None) -> str:
    """Insert a document, stamping created_at/updated_at, and return its id as a string."""
    target = database if database is not None else get_db()
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    stamp = now_utc()
    data_dict.setdefault("created_at", stamp)
    data_dict["updated_at"] = stamp
    result = target[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, database=None):
    target = database if database is not None else get_db()
    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def serialize(doc: Optional[dict]) -> Optional[dict]:
    """Copy a raw document with its ObjectId turned into an `id` string."""
    if doc is None:
        return None
    out = dict(doc)
    out["id"] = str(out.pop("_id"))
    return out


@contextmanager
def store_errors(action: str):
    """Wrap driver errors raised while talking to Mongo into UpstreamFailure."""
    try:
        yield
    except PyMongoError as e:
        logger.error("%s failed: %s", action, e)
        raise UpstreamFailure(f"{action} failed, try again") from e


def object_id(value: str, what: str) -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFound(f"{what} not found")
