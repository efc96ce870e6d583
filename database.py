"""
MongoDB connection helpers.

Configured through DATABASE_URL and DATABASE_NAME. When either is missing
`db` stays None and callers fall back to the in-memory store.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional

from pymongo import MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "society")

client = None
db = None

if DATABASE_URL:
    # tz_aware so datetimes come back as UTC-aware, matching what we write
    client = MongoClient(DATABASE_URL, tz_aware=True)
    db = client[DATABASE_NAME]
    logger.info("MongoDB configured (database=%s)", DATABASE_NAME)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _target(using):
    target = db if using is None else using
    if target is None:
        raise RuntimeError("Database not configured")
    return target


def create_document(collection_name: str, data: dict, using=None) -> str:
    """Insert a document, stamping createdAt/updatedAt, and return its id."""
    now = utcnow()
    doc = dict(data)
    doc.setdefault("createdAt", now)
    doc.setdefault("updatedAt", now)
    result = _target(using)[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None, using=None):
    cursor = _target(using)[collection_name].find(filter_dict or {}).sort("_id", 1)
    if limit:
        cursor = cursor.limit(limit)
    return cursor


def ensure_indexes(using=None) -> None:
    target = db if using is None else using
    if target is None:
        return
    target["user"].create_index("email", unique=True)
    target["report"].create_index("submittedBy")
    target["petition"].create_index("createdBy")
    target["petition"].create_index("adminReview.status")
    target["idea"].create_index("createdBy")
