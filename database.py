"""
MongoDB access

`db` is the shared database handle (None when DATABASE_URL/DATABASE_NAME are
not set). Route handlers receive it through `get_db` so tests can swap in a
different database.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import get_settings
from errors import ValidationError

logger = logging.getLogger(__name__)

_settings = get_settings()

db: Optional[Database] = None

if _settings.database_url and _settings.database_name:
    _client = MongoClient(_settings.database_url)
    db = _client[_settings.database_name]


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


# ---------------------- Helpers ----------------------

def oid_to_str(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = {**doc}
    if d.get("_id") is not None:
        d["id"] = str(d.pop("_id"))
    # convert datetime to iso
    for k, v in list(d.items()):
        if isinstance(v, datetime):
            d[k] = v.isoformat()
    return d


def to_object_id(id_str: Any, label: str = "id") -> ObjectId:
    try:
        return ObjectId(id_str)
    except (InvalidId, TypeError):
        raise ValidationError(f"Invalid {label}: {id_str}")


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    """Insert a document, stamping created_at/updated_at. Returns the new id as a string."""
    target = database if database is not None else get_db()
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = target[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(
    collection_name: str,
    filter_dict: Optional[Dict[str, Any]] = None,
    sort: Optional[List[Any]] = None,
    limit: Optional[int] = None,
    database: Optional[Database] = None,
) -> List[Dict[str, Any]]:
    target = database if database is not None else get_db()
    cursor = target[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database: Database, idempotency_ttl: int = 86400) -> None:
    """Indexes the order pipeline relies on for uniqueness.

    Idempotency claims expire after `idempotency_ttl` seconds, which also frees
    a key whose request died before storing its confirmation.
    """
    database["product"].create_index([("slug", ASCENDING)], unique=True)
    database["category"].create_index([("slug", ASCENDING)], unique=True)
    database["product_variant"].create_index([("product_id", ASCENDING)])
    database["order"].create_index([("order_number", ASCENDING)], unique=True)
    database["order"].create_index([("customer_email", ASCENDING), ("created_at", DESCENDING)])
    database["idempotency_key"].create_index([("key", ASCENDING)], unique=True)
    database["idempotency_key"].create_index([("created_at", ASCENDING)], expireAfterSeconds=idempotency_ttl)
    database["payment_notification"].create_index(
        [("transaction_id", ASCENDING), ("transaction_status", ASCENDING)], unique=True
    )
    logger.info("Indexes ensured on %s", database.name)
