import pytest
from bson import ObjectId
from pymongo.errors import ServerSelectionTimeoutError

from book import Book
from database import migrate_quantity_types
from library import (
    AlreadyBorrowed,
    ConflictOnUpdate,
    InvalidRequest,
    Library,
    NotFound,
    OutOfStock,
    StoreFailure,
)

DUE = "2030-01-15"


def _quantity(lib, book_id):
    return lib.books.find_one({"_id": ObjectId(book_id)})["quantity"]


def test_add_list_and_find(lib):
    assert lib.list_books() == []

    book_id = lib.add_book(Book("Ulysses", "James Joyce", category="Novel", quantity=3, rating=4.5))

    found = lib.find_book(book_id)
    assert found.name == "Ulysses"
    assert found.author_name == "James Joyce"
    assert found.quantity == 3
    assert len(lib.list_books()) == 1


def test_find_book_invalid_id(lib):
    with pytest.raises(InvalidRequest, match="Invalid book ID"):
        lib.find_book("not-an-object-id")


def test_find_book_not_found(lib):
    with pytest.raises(NotFound):
        lib.find_book(str(ObjectId()))


def test_update_book_descriptive_fields_only(lib, make_book):
    book_id = make_book(name="Old Name", quantity=5)

    lib.update_book(book_id, {"name": "New Name", "quantity": 99})

    book = lib.find_book(book_id)
    assert book.name == "New Name"
    assert book.quantity == 5  # quantity is not a descriptive field


def test_update_book_no_changes(lib, make_book):
    book_id = make_book(name="Same")
    with pytest.raises(NotFound, match="no changes made"):
        lib.update_book(book_id, {"name": "Same"})


def test_update_book_missing(lib):
    with pytest.raises(NotFound):
        lib.update_book(str(ObjectId()), {"name": "Anything"})


def test_books_by_category_exact_match(lib, make_book):
    make_book(name="Dune", category="Sci-Fi")
    make_book(name="Gone Girl", category="Thriller")
    make_book(name="Foundation", category="sci-fi")

    names = [b.name for b in lib.books_by_category("Sci-Fi")]
    assert names == ["Dune"]


def test_latest_books_returns_four_newest(lib, make_book):
    for i in range(6):
        make_book(name=f"Book {i}")

    names = [b.name for b in lib.latest_books()]
    assert names == ["Book 5", "Book 4", "Book 3", "Book 2"]


def test_list_categories_serializes_ids(lib, db):
    db["category"].insert_one({"category": "Drama", "image": "drama.png"})

    categories = lib.list_categories()
    assert categories[0]["category"] == "Drama"
    assert isinstance(categories[0]["_id"], str)


def test_borrow_decrements_and_records_loan(lib, make_book):
    book_id = make_book(quantity=2)

    updated = lib.borrow_book(book_id, "Ada", "a@x.com", DUE)

    assert updated.quantity == 1
    assert _quantity(lib, book_id) == 1
    loans = lib.list_borrowed("a@x.com")
    assert len(loans) == 1
    assert loans[0].book_details["name"] == "Dune"
    assert loans[0].return_date.year == 2030


def test_borrow_twice_is_rejected(lib, make_book):
    book_id = make_book(quantity=2)
    lib.borrow_book(book_id, "Ada", "a@x.com", DUE)

    with pytest.raises(AlreadyBorrowed):
        lib.borrow_book(book_id, "Ada", "a@x.com", DUE)

    assert _quantity(lib, book_id) == 1
    assert len(lib.list_borrowed("a@x.com")) == 1


def test_borrow_out_of_stock(lib, make_book):
    book_id = make_book(quantity=0)

    with pytest.raises(OutOfStock):
        lib.borrow_book(book_id, "Ada", "a@x.com", DUE)

    assert _quantity(lib, book_id) == 0
    assert lib.list_borrowed("a@x.com") == []


@pytest.mark.parametrize("missing", ["book_id", "user_name", "user_email", "return_date"])
def test_borrow_requires_all_fields(lib, make_book, missing):
    args = {"book_id": make_book(), "user_name": "Ada", "user_email": "a@x.com", "return_date": DUE}
    args[missing] = None
    with pytest.raises(InvalidRequest, match="Missing required fields"):
        lib.borrow_book(**args)


def test_borrow_unknown_book(lib):
    with pytest.raises(NotFound):
        lib.borrow_book(str(ObjectId()), "Ada", "a@x.com", DUE)


def test_borrow_invalid_return_date(lib, make_book):
    with pytest.raises(InvalidRequest, match="Invalid return date"):
        lib.borrow_book(make_book(), "Ada", "a@x.com", "next tuesday")


def test_borrow_conditional_decrement_miss(lib, make_book, monkeypatch):
    book_id = make_book(quantity=1)
    # Another request took the last copy between the check and the write
    monkeypatch.setattr(lib.books, "find_one_and_update", lambda *args, **kwargs: None)

    with pytest.raises(ConflictOnUpdate):
        lib.borrow_book(book_id, "Ada", "a@x.com", DUE)

    assert lib.list_borrowed("a@x.com") == []


def test_borrow_duplicate_race_restores_quantity(lib, make_book, monkeypatch):
    book_id = make_book(quantity=3)
    lib.borrow_book(book_id, "Ada", "a@x.com", DUE)
    # Simulate a concurrent request that passed the existing-loan check
    monkeypatch.setattr(lib.borrowed, "find_one", lambda *args, **kwargs: None)

    with pytest.raises(AlreadyBorrowed):
        lib.borrow_book(book_id, "Ada", "a@x.com", DUE)

    assert _quantity(lib, book_id) == 2


def test_return_restores_quantity(lib, make_book):
    book_id = make_book(quantity=2)
    lib.borrow_book(book_id, "Ada", "a@x.com", DUE)
    loan_id = lib.list_borrowed("a@x.com")[0].id

    lib.return_book(loan_id, "a@x.com")

    assert _quantity(lib, book_id) == 2
    assert lib.list_borrowed("a@x.com") == []


def test_return_twice_is_not_found(lib, make_book):
    book_id = make_book(quantity=1)
    lib.borrow_book(book_id, "Ada", "a@x.com", DUE)
    loan_id = lib.list_borrowed("a@x.com")[0].id
    lib.return_book(loan_id, "a@x.com")

    with pytest.raises(NotFound):
        lib.return_book(loan_id, "a@x.com")
    assert _quantity(lib, book_id) == 1


def test_return_by_other_borrower_is_not_found(lib, make_book):
    book_id = make_book(quantity=1)
    lib.borrow_book(book_id, "Ada", "a@x.com", DUE)
    loan_id = lib.list_borrowed("a@x.com")[0].id

    with pytest.raises(NotFound):
        lib.return_book(loan_id, "b@x.com")

    assert len(lib.list_borrowed("a@x.com")) == 1
    assert _quantity(lib, book_id) == 0


def test_return_requires_email(lib):
    with pytest.raises(InvalidRequest):
        lib.return_book(str(ObjectId()), None)


def test_return_with_deleted_book_surfaces_conflict(lib, make_book):
    book_id = make_book(quantity=1)
    lib.borrow_book(book_id, "Ada", "a@x.com", DUE)
    loan_id = lib.list_borrowed("a@x.com")[0].id
    lib.books.delete_one({"_id": ObjectId(book_id)})

    with pytest.raises(ConflictOnUpdate):
        lib.return_book(loan_id, "a@x.com")


def test_return_of_loan_without_book_id_surfaces_conflict(lib):
    loan_id = lib.borrowed.insert_one({"userName": "Ada", "userEmail": "a@x.com"}).inserted_id

    with pytest.raises(ConflictOnUpdate):
        lib.return_book(str(loan_id), "a@x.com")
    assert lib.borrowed.count_documents({}) == 0


def test_borrow_return_scenario(lib, make_book):
    book_id = make_book(quantity=2)

    assert lib.borrow_book(book_id, "Ada", "a@x.com", DUE).quantity == 1
    with pytest.raises(AlreadyBorrowed):
        lib.borrow_book(book_id, "Ada", "a@x.com", DUE)

    loan_id = lib.list_borrowed("a@x.com")[0].id
    lib.return_book(loan_id, "a@x.com")
    assert _quantity(lib, book_id) == 2
    assert lib.borrowed.count_documents({"bookId": ObjectId(book_id), "userEmail": "a@x.com"}) == 0


def test_store_failure_is_wrapped(lib, monkeypatch):
    def boom(*args, **kwargs):
        raise ServerSelectionTimeoutError("no servers")

    monkeypatch.setattr(lib.books, "find", boom)
    with pytest.raises(StoreFailure, match="Failed to fetch books"):
        lib.list_books()


def test_legacy_string_quantity_is_borrowable(db):
    result = db["books"].insert_one({"name": "Old", "authorName": "Someone", "quantity": "2"})
    assert migrate_quantity_types(db) == 1

    lib = Library(db)
    updated = lib.borrow_book(str(result.inserted_id), "Ada", "a@x.com", DUE)
    assert updated.quantity == 1
