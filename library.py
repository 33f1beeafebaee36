import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from book import Book, Loan, serialize_document
from database import BOOKS_COLLECTION, BORROWED_COLLECTION, CATEGORIES_COLLECTION

logger = logging.getLogger(__name__)

LATEST_BOOKS_LIMIT = 4


class Library:
    """Catalog access and the borrow/return flow on top of one MongoDB database."""

    def __init__(self, db: Database) -> None:
        self.db = db
        self.books = db[BOOKS_COLLECTION]
        self.categories = db[CATEGORIES_COLLECTION]
        self.borrowed = db[BORROWED_COLLECTION]

    # ------------------------- Catalog ------------------------- #
    def add_book(self, book: Book) -> str:
        """Insert a book and return its generated id."""
        with _store_errors("Failed to add book"):
            result = self.books.insert_one(book.to_document())
        book.id = str(result.inserted_id)
        return book.id

    def list_books(self) -> List[Book]:
        with _store_errors("Failed to fetch books"):
            return [Book.from_dict(doc) for doc in self.books.find({})]

    def find_book(self, book_id: str) -> Book:
        """Fetch one book by id. Raises InvalidRequest or NotFound."""
        oid = parse_object_id(book_id, "Invalid book ID")
        with _store_errors("Failed to fetch book details"):
            doc = self.books.find_one({"_id": oid})
        if not doc:
            raise NotFound("Book not found")
        return Book.from_dict(doc)

    def update_book(self, book_id: str, fields: Dict[str, Any]) -> None:
        """Replace descriptive fields of a book.

        Only keys from ``Book.DESCRIPTIVE_FIELDS`` are written. A missing book
        and an update that changes nothing are both reported as NotFound.
        """
        oid = parse_object_id(book_id, "Invalid book ID")
        update_fields = {k: v for k, v in fields.items() if k in Book.DESCRIPTIVE_FIELDS}
        if not update_fields:
            raise NotFound("Book not found or no changes made")
        with _store_errors("Failed to update book"):
            result = self.books.update_one({"_id": oid}, {"$set": update_fields})
        if result.modified_count == 0:
            raise NotFound("Book not found or no changes made")

    def list_categories(self) -> List[dict]:
        with _store_errors("Failed to fetch categories"):
            return [serialize_document(doc) for doc in self.categories.find({})]

    def books_by_category(self, category: str) -> List[Book]:
        with _store_errors("Failed to fetch books by category"):
            return [Book.from_dict(doc) for doc in self.books.find({"category": category})]

    def latest_books(self, limit: int = LATEST_BOOKS_LIMIT) -> List[Book]:
        """Most recently created books; ObjectIds grow with insertion time."""
        with _store_errors("Failed to fetch latest books"):
            cursor = self.books.find({}).sort("_id", DESCENDING).limit(limit)
            return [Book.from_dict(doc) for doc in cursor]

    # ------------------------- Lending ------------------------- #
    def borrow_book(self, book_id: Optional[str], user_name: Optional[str], user_email: Optional[str],
                    return_date: Any) -> Book:
        """Lend one copy of a book and return the book with its new quantity.

        The decrement only matches while ``quantity > 0`` and the ledger has a
        unique (bookId, userEmail) index, so two concurrent borrows can neither
        overdraw the stock nor create duplicate loans.
        """
        if not book_id or not user_name or not user_email or not return_date:
            raise InvalidRequest("Missing required fields")
        oid = parse_object_id(book_id, "Invalid book ID")
        due = parse_date(return_date)

        with _store_errors("Failed to borrow book"):
            doc = self.books.find_one({"_id": oid})
            if not doc:
                raise NotFound("Book not found")
            book = Book.from_dict(doc)

            if self.borrowed.find_one({"bookId": oid, "userEmail": user_email}):
                raise AlreadyBorrowed("You have already borrowed this book")

            if book.quantity <= 0:
                raise OutOfStock("No available copies to borrow")

            updated = self.books.find_one_and_update(
                {"_id": oid, "quantity": {"$gt": 0}},
                {"$inc": {"quantity": -1}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                raise ConflictOnUpdate("Failed to update book quantity")

            loan = Loan(
                book_id=oid,
                user_name=user_name,
                user_email=user_email,
                return_date=due,
                borrow_date=datetime.now(timezone.utc),
                book_details=book.snapshot(),
            )
            try:
                self.borrowed.insert_one(loan.to_document())
            except DuplicateKeyError:
                # Lost the race against a concurrent borrow of the same pair
                self.books.update_one({"_id": oid}, {"$inc": {"quantity": 1}})
                raise AlreadyBorrowed("You have already borrowed this book")

        logger.info("Book %s borrowed by %s", book_id, user_email)
        return Book.from_dict(updated)

    def list_borrowed(self, user_email: str) -> List[Loan]:
        with _store_errors("Failed to fetch borrowed books"):
            return [Loan.from_dict(doc) for doc in self.borrowed.find({"userEmail": user_email})]

    def return_book(self, loan_id: str, user_email: Optional[str]) -> None:
        """Close a loan and put the copy back on the shelf.

        The loan is removed with a single find-and-delete scoped to the
        borrower, so a wrong owner, an unknown id and a second return all
        surface as NotFound.
        """
        if not loan_id or not user_email:
            raise InvalidRequest("Missing required fields")
        oid = parse_object_id(loan_id, "Invalid borrow ID")

        with _store_errors("Failed to return book"):
            loan = self.borrowed.find_one_and_delete({"_id": oid, "userEmail": user_email})
            if loan is None:
                raise NotFound("Book not found in borrowed list for this user")

            book_id = loan.get("bookId")
            if book_id is None:
                logger.error("Loan %s removed but it carries no bookId", loan_id)
                raise ConflictOnUpdate("Failed to update book quantity")
            result = self.books.update_one({"_id": book_id}, {"$inc": {"quantity": 1}})
            if result.modified_count == 0:
                logger.error("Loan %s removed but book %s quantity was not restored", loan_id, book_id)
                raise ConflictOnUpdate("Failed to update book quantity")

        logger.info("Loan %s returned by %s", loan_id, user_email)

    def get_statistics(self) -> Dict[str, Any]:
        with _store_errors("Failed to compute statistics"):
            return {
                "total_books": self.books.count_documents({}),
                "total_categories": self.categories.count_documents({}),
                "active_loans": self.borrowed.count_documents({}),
            }


def parse_object_id(raw: Any, message: str) -> ObjectId:
    if isinstance(raw, ObjectId):
        return raw
    if not isinstance(raw, str) or not ObjectId.is_valid(raw):
        raise InvalidRequest(message)
    try:
        return ObjectId(raw)
    except (InvalidId, TypeError) as e:
        raise InvalidRequest(message) from e


def parse_date(raw: Any) -> datetime:
    """Accept a datetime or an ISO-8601 string (date-only or with time)."""
    if isinstance(raw, datetime):
        value = raw
    else:
        text = str(raw).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError as e:
            raise InvalidRequest("Invalid return date") from e
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@contextmanager
def _store_errors(message: str) -> Iterator[None]:
    """Turn driver failures into StoreFailure; domain errors pass through."""
    try:
        yield
    except PyMongoError as e:
        logger.exception(f"{message}: {e}")
        raise StoreFailure(message) from e


class LibraryError(Exception):
    """Base class for failures reported to API callers as ``{"error": ...}``."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthenticated(LibraryError):
    status_code = 401


class Forbidden(LibraryError):
    status_code = 403


class InvalidRequest(LibraryError):
    status_code = 400


class NotFound(LibraryError):
    status_code = 404


class AlreadyBorrowed(LibraryError):
    status_code = 400


class OutOfStock(LibraryError):
    status_code = 400


class ConflictOnUpdate(LibraryError):
    status_code = 500


class StoreFailure(LibraryError):
    status_code = 500
