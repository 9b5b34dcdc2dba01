"""
MongoDB access for the store API.

`db` is None when DATABASE_URL / DATABASE_NAME are not configured; callers
treat that as "Database not configured".
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pymongo import MongoClient
from pymongo.database import Database

from config import get_settings

_client: Optional[MongoClient] = None
db: Optional[Database] = None

_settings = get_settings()
if _settings.database_url and _settings.database_name:
    _client = MongoClient(_settings.database_url)
    db = _client[_settings.database_name]


def get_db() -> Optional[Database]:
    return db


def create_document(collection_name: str, data: Dict[str, Any], database: Optional[Database] = None) -> str:
    """Insert a document with created_at/updated_at stamps and return its id."""
    target = database if database is not None else db
    if target is None:
        raise RuntimeError("Database not configured")

    doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = target[collection_name].insert_one(doc)
    return str(result.inserted_id)


def to_dict(doc):
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def ensure_indexes(database: Database) -> None:
    """One order per transaction id; concurrent creates collide on insert."""
    database["order"].create_index("transaction_id", unique=True)
