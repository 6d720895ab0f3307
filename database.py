"""
Database access for BookBazaar

A single MongoDB connection configured from the environment plus a few helpers
shared by the routes and services. Collection names are the lowercase schema
class name (Listing -> "listing").
"""
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from errors import ValidationFailed

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "bookbazaar")

db: Optional[Database] = None
if DATABASE_URL:
    # MongoClient connects lazily, so importing never blocks on the server
    db = MongoClient(DATABASE_URL)[DATABASE_NAME]
else:
    logger.warning("DATABASE_URL not set; database routes will fail")


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def now() -> datetime:
    return datetime.now(timezone.utc)


def object_id(value: str, what: str = "id") -> ObjectId:
    if not ObjectId.is_valid(value):
        raise ValidationFailed(f"Invalid {what}")
    return ObjectId(value)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    if isinstance(data, BaseModel):
        doc = data.model_dump(exclude={"id", "created_at", "updated_at"})
    else:
        doc = dict(data)
    stamp = now()
    doc["created_at"] = stamp
    doc["updated_at"] = stamp
    inserted = database[collection_name].insert_one(doc)
    return str(inserted.inserted_id)


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["user"].create_index("username", unique=True)
    database["cart"].create_index("user_id", unique=True)
    database["listing"].create_index([("created_at", DESCENDING)])
    database["purchasenotification"].create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    database["purchasenotification"].create_index("listing_id")
