"""
Database helpers for Chat App

MongoDB connection configured from DATABASE_URL / DATABASE_NAME.
Collection names are the lowercase schema class names: user, room, message.
"""
import os
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from dotenv import load_dotenv
from pymongo import ASCENDING, MongoClient

load_dotenv()

_client = None
db = None

database_url = os.getenv("DATABASE_URL")
database_name = os.getenv("DATABASE_NAME")

if database_url and database_name:
    _client = MongoClient(database_url)
    db = _client[database_name]


class DatabaseUnavailable(RuntimeError):
    pass


def require(database):
    if database is None:
        raise DatabaseUnavailable(
            "Database not available. Check DATABASE_URL and DATABASE_NAME environment variables."
        )
    return database


def is_identity_ref(value) -> bool:
    """True for a 24-hex-character ObjectId string.

    Used by both the HTTP routes and the real-time events so the two entry
    points agree on what a well-formed id is.
    """
    return isinstance(value, str) and len(value) == 24 and ObjectId.is_valid(value)


def normalize_identity_ref(value: str) -> str:
    """Canonical lowercase form, so stored references and channel names compare equal."""
    return str(ObjectId(value))


def create_document(collection_name: str, data, database=None) -> str:
    """Insert a document and return its id as a string."""
    database = require(database if database is not None else db)
    if hasattr(data, "model_dump"):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)

    now = datetime.now(timezone.utc)
    data_dict["created_at"] = now
    data_dict["updated_at"] = now

    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, database=None):
    database = require(database if database is not None else db)
    cursor = database[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def ensure_indexes(database) -> None:
    database.user.create_index([("email", ASCENDING)], unique=True)
    database.room.create_index([("members", ASCENDING)])
    database.message.create_index([("sender", ASCENDING), ("receiver", ASCENDING)])
