from __future__ import annotations

from datetime import datetime
from typing import Any

from bson import ObjectId


def _stringify(value: Any) -> Any:
    """Make a Mongo value JSON friendly (ObjectId -> str, datetime -> ISO-8601)."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _stringify(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_stringify(v) for v in value]
    return value


def _to_quantity(value: Any) -> int:
    # Legacy records may still carry the quantity as text
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return max(0, int(value))
    try:
        return max(0, int(float(str(value).strip())))
    except (TypeError, ValueError):
        return 0


class Book:
    """A single book in the catalog."""

    # Fields a catalog edit may replace
    DESCRIPTIVE_FIELDS = ("name", "authorName", "category", "rating", "image")

    def __init__(self, name: str, author_name: str, category: str | None = None, rating: float | None = None,
                 image: str | None = None, quantity: int = 0, description: str | None = None,
                 id: str | None = None, extra: dict | None = None) -> None:
        self.id = id
        self.name = (name or "").strip()
        self.author_name = (author_name or "").strip()
        self.category = category
        self.rating = rating
        self.image = image
        self.quantity = _to_quantity(quantity)
        self.description = description
        # Unknown document fields are passed through untouched
        self.extra = extra or {}

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.name} by {self.author_name} ({self.quantity} available)"

    def to_document(self) -> dict:
        """Fields as stored in MongoDB (no `_id`)."""
        doc = dict(self.extra)
        doc.update({
            "name": self.name,
            "authorName": self.author_name,
            "category": self.category,
            "rating": self.rating,
            "image": self.image,
            "quantity": self.quantity,
        })
        if self.description is not None:
            doc["description"] = self.description
        return doc

    def to_dict(self) -> dict:
        data = _stringify(self.to_document())
        return {"_id": self.id, **data}

    def snapshot(self) -> dict:
        """Descriptive fields copied onto a loan record at borrow time."""
        return {
            "name": self.name,
            "authorName": self.author_name,
            "category": self.category,
            "image": self.image,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        known = {"_id", "name", "authorName", "category", "rating", "image", "quantity", "description"}
        raw_id = data.get("_id")
        return Book(
            id=str(raw_id) if raw_id is not None else None,
            name=data.get("name") or "",
            author_name=data.get("authorName") or "",
            category=data.get("category"),
            rating=data.get("rating"),
            image=data.get("image"),
            quantity=data.get("quantity", 0),
            description=data.get("description"),
            extra={k: v for k, v in data.items() if k not in known},
        )


class Loan:
    """One borrower's active possession of one book copy."""

    def __init__(self, book_id: ObjectId, user_name: str, user_email: str, return_date: datetime,
                 borrow_date: datetime, book_details: dict | None = None, id: str | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.user_name = user_name
        self.user_email = user_email
        self.return_date = return_date
        self.borrow_date = borrow_date
        self.book_details = book_details or {}

    def to_document(self) -> dict:
        return {
            "bookId": self.book_id,
            "userName": self.user_name,
            "userEmail": self.user_email,
            "returnDate": self.return_date,
            "borrowDate": self.borrow_date,
            "bookDetails": self.book_details,
        }

    def to_dict(self) -> dict:
        return {"_id": self.id, **_stringify(self.to_document())}

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        raw_id = data.get("_id")
        return Loan(
            id=str(raw_id) if raw_id is not None else None,
            book_id=data.get("bookId"),
            user_name=data.get("userName", ""),
            user_email=data.get("userEmail", ""),
            return_date=data.get("returnDate"),
            borrow_date=data.get("borrowDate"),
            book_details=data.get("bookDetails"),
        )


def serialize_document(doc: dict) -> dict:
    """JSON-friendly copy of an arbitrary document (used for categories)."""
    return _stringify(dict(doc))
