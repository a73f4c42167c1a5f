"""
MongoDB access helpers.

One pooled ``MongoClient`` per process, handed to route handlers through the
``get_db`` dependency. Collections: users, services, bookings, payments.
"""
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional, Type

from bson import ObjectId
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import get_settings
from errors import DomainError, InvalidInputError

logger = logging.getLogger(__name__)

USERS = "users"
SERVICES = "services"
BOOKINGS = "bookings"
PAYMENTS = "payments"


@lru_cache
def get_client() -> MongoClient:
    settings = get_settings()
    logger.info("Creating MongoDB client for database %s", settings.database_name)
    return MongoClient(settings.database_url, tz_aware=True)


def get_db() -> Database:
    return get_client()[get_settings().database_name]


def ensure_indexes(db: Database) -> None:
    # Payment recording relies on this index for insert-if-absent
    db[PAYMENTS].create_index([("transactionalId", ASCENDING)], unique=True)
    db[USERS].create_index([("email", ASCENDING)], unique=True)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(id_str: Any, error: Type[DomainError] = InvalidInputError,
                 message: str = "Invalid ID format") -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    if not isinstance(id_str, str) or not ObjectId.is_valid(id_str):
        raise error(message)
    return ObjectId(id_str)


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    for k, v in list(d.items()):
        if isinstance(v, ObjectId):
            d[k] = str(v)
        elif isinstance(v, datetime):
            if v.tzinfo is None:
                v = v.replace(tzinfo=timezone.utc)
            d[k] = v.astimezone(timezone.utc).isoformat()
    return d


def create_document(db: Database, collection_name: str, data: Dict[str, Any]) -> str:
    doc = dict(data)
    doc.setdefault("createdAt", utcnow())
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(db: Database, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  sort: Optional[str] = None, direction: int = -1, limit: int = 0) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort, direction)
    if limit:
        cursor = cursor.limit(limit)
    return [serialize(x) for x in cursor]


# Write results in the shape the frontend already consumes

def insert_result(inserted_id: Any) -> Dict[str, Any]:
    return {"acknowledged": True, "insertedId": str(inserted_id)}


def update_result(result: Any) -> Dict[str, Any]:
    upserted = getattr(result, "upserted_id", None)
    return {
        "acknowledged": True,
        "matchedCount": result.matched_count,
        "modifiedCount": result.modified_count,
        "upsertedId": str(upserted) if upserted is not None else None,
    }


def delete_result(result: Any) -> Dict[str, Any]:
    return {"acknowledged": True, "deletedCount": result.deleted_count}
