import logging
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import settings

logger = logging.getLogger(__name__)

BOOKS_COLLECTION = "books"
CATEGORIES_COLLECTION = "category"
BORROWED_COLLECTION = "borrowed"

# Categories inserted by `main.py seed-categories` on an empty collection
DEFAULT_CATEGORIES: List[Dict[str, Any]] = [
    {"category": "Novel", "description": "Long-form fiction"},
    {"category": "Thriller", "description": "Suspense and crime"},
    {"category": "History", "description": "Past events and people"},
    {"category": "Drama", "description": "Plays and dramatic works"},
    {"category": "Sci-Fi", "description": "Science fiction and speculative stories"},
]


def create_client(uri: Optional[str] = None) -> MongoClient:
    """Open the long-lived MongoDB client used by the whole process."""
    client = MongoClient(
        uri or settings.database_url,
        serverSelectionTimeoutMS=settings.database_timeout_ms,
        tz_aware=True,
    )
    logger.info("MongoDB client created for database '%s'", settings.database_name)
    return client


def get_database(client: MongoClient, name: Optional[str] = None) -> Database:
    return client[name or settings.database_name]


def close_client(client: MongoClient) -> None:
    client.close()
    logger.info("MongoDB client closed")


def ping(db: Database) -> bool:
    """Lightweight health probe; False when the server cannot be reached."""
    try:
        db.command("ping")
        return True
    except Exception as e:
        logger.warning(f"MongoDB ping failed: {e}")
        return False


def create_indexes(db: Database) -> None:
    """Create the indexes the lending flow relies on."""
    borrowed = db[BORROWED_COLLECTION]
    # At most one active loan per (book, borrower)
    borrowed.create_index(
        [("bookId", ASCENDING), ("userEmail", ASCENDING)],
        unique=True,
        name="uniq_book_borrower",
    )
    borrowed.create_index([("userEmail", ASCENDING)], name="idx_borrower_email")
    db[BOOKS_COLLECTION].create_index([("category", ASCENDING)], name="idx_books_category")


def _coerce_quantity(value: Any) -> int:
    try:
        return max(0, int(float(str(value).strip())))
    except (TypeError, ValueError):
        return 0


def migrate_quantity_types(db: Database) -> int:
    """Rewrite legacy string-typed `quantity` values as integers.

    Older records were inserted straight from form posts and store the
    quantity as text, which breaks the numeric `$gt` filter used when
    borrowing. Unparseable values become 0. Returns the number of rewritten
    books.
    """
    books = db[BOOKS_COLLECTION]
    migrated = 0
    for doc in books.find({}, {"quantity": 1}):
        value = doc.get("quantity")
        if not isinstance(value, str):
            continue
        quantity = _coerce_quantity(value)
        books.update_one({"_id": doc["_id"]}, {"$set": {"quantity": quantity}})
        logger.warning("Book %s quantity %r rewritten as %d", doc["_id"], value, quantity)
        migrated += 1
    return migrated


def seed_categories(db: Database, categories: Optional[List[Dict[str, Any]]] = None) -> int:
    """Insert default categories when the collection is empty. Returns inserted count."""
    collection = db[CATEGORIES_COLLECTION]
    if collection.count_documents({}) > 0:
        return 0
    docs = [dict(c) for c in (categories or DEFAULT_CATEGORIES)]
    if not docs:
        return 0
    result = collection.insert_many(docs)
    return len(result.inserted_ids)


def initialize_database(db: Database) -> None:
    """Create indexes and fix legacy data; safe to run on every start."""
    create_indexes(db)
    migrated = migrate_quantity_types(db)
    if migrated:
        logger.info("Migrated %d legacy quantity values", migrated)
