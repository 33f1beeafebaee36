import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from api import app, get_database
from book import Book
from library import Library


@pytest.fixture
def mongo_client():
    # In-memory MongoDB shared by the API and the assertions of one test
    client = mongomock.MongoClient()
    yield client
    client.close()


@pytest.fixture
def db(mongo_client):
    db = mongo_client["booksPortal_test"]
    database.initialize_database(db)
    return db


@pytest.fixture
def lib(db):
    return Library(db)


@pytest.fixture
def make_book(lib):
    def _make(name="Dune", author="Frank Herbert", category="Sci-Fi", quantity=2, **extra):
        book = Book(name=name, author_name=author, category=category, quantity=quantity, **extra)
        return lib.add_book(book)
    return _make


@pytest.fixture
def client(db):
    app.dependency_overrides[get_database] = lambda: db
    test_client = TestClient(app)
    try:
        yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def login(client):
    """Sign the test client in; the session cookie stays in its jar."""
    def _login(email="reader@example.com"):
        response = client.post("/jwt", json={"email": email})
        assert response.status_code == 200
        return response
    return _login
