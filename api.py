import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from contextlib import asynccontextmanager

from fastapi import FastAPI, Body, Depends, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field
from pymongo.database import Database

import database
from auth import clear_session_cookie, create_token, get_current_user, set_session_cookie
from book import Book
from config import configure_logging, settings
from library import Forbidden, Library, LibraryError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    # One client for the whole process, closed on shutdown
    client = database.create_client()
    app.state.mongo_client = client
    app.state.db = database.get_database(client)
    try:
        database.initialize_database(app.state.db)
    except Exception:
        # Keep serving; /health reports the database as down
        logger.exception("Database initialization failed")
    logger.info(f"{settings.app_name} running on port {settings.api_port}")
    try:
        yield
    finally:
        database.close_client(client)

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

# --- CORS ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Errors ---
@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request body"
    if errors:
        location = ".".join(str(part) for part in errors[0].get("loc", ()) if part != "body")
        message = f"{location}: {errors[0].get('msg')}" if location else str(errors[0].get("msg"))
    return JSONResponse(status_code=400, content={"error": message})

# --- Dependencies ---
def get_database(request: Request) -> Database:
    """Database opened by the lifespan handler; overridden in tests."""
    return request.app.state.db

def get_library(db: Database = Depends(get_database)) -> Library:
    return Library(db)

# --- Models ---
class BookCreateModel(BaseModel):
    # Fields the front end adds (shortDescription, bookContent, ...) are stored as sent
    model_config = ConfigDict(extra="allow")

    name: str = Field(min_length=1)
    authorName: str = Field(min_length=1)
    category: str | None = None
    rating: float | None = Field(default=None, ge=0)
    image: str | None = None
    quantity: int = Field(default=0, ge=0, description="Copies available; numeric strings are coerced")
    description: str | None = None

class BookUpdateModel(BaseModel):
    name: str | None = None
    authorName: str | None = None
    category: str | None = None
    rating: float | None = Field(default=None, ge=0)
    image: str | None = None

class BorrowRequest(BaseModel):
    bookId: str | None = None
    userName: str | None = None
    userEmail: str | None = None
    returnDate: str | None = None

class ReturnRequest(BaseModel):
    userEmail: str | None = None

# --- Session ---
@app.post("/jwt")
def issue_session(response: Response, payload: Dict[str, Any] = Body(...)):
    """Exchange an identity payload for a session cookie."""
    token = create_token(payload)
    set_session_cookie(response, token)
    return {"success": True}

@app.get("/logout")
def logout(response: Response):
    clear_session_cookie(response)
    return {"success": True}

# --- Books ---
@app.post("/books", status_code=201)
def add_book(payload: BookCreateModel, user: dict = Depends(get_current_user), library: Library = Depends(get_library)):
    book = Book(
        name=payload.name,
        author_name=payload.authorName,
        category=payload.category,
        rating=payload.rating,
        image=payload.image,
        quantity=payload.quantity,
        description=payload.description,
        extra={k: v for k, v in (payload.model_extra or {}).items() if k != "_id"},
    )
    inserted_id = library.add_book(book)
    logger.info(f"Book {inserted_id} added by {user.get('email')}")
    return {"success": True, "message": "Book added successfully", "insertedId": inserted_id}

@app.get("/books")
def list_books(user: dict = Depends(get_current_user), library: Library = Depends(get_library)):
    return [b.to_dict() for b in library.list_books()]

@app.get("/books/category/{category}")
def books_by_category(category: str, library: Library = Depends(get_library)):
    return [b.to_dict() for b in library.books_by_category(category)]

# /book-details/{id} is kept for existing front-end callers
@app.get("/books/{book_id}")
@app.get("/book-details/{book_id}")
def get_book(book_id: str, user: dict = Depends(get_current_user), library: Library = Depends(get_library)):
    """Fetch a single book by id."""
    return library.find_book(book_id).to_dict()

@app.put("/books/{book_id}")
def update_book(book_id: str, update: BookUpdateModel, user: dict = Depends(get_current_user),
                library: Library = Depends(get_library)):
    """Replace the descriptive fields sent in the body; nulls are ignored."""
    library.update_book(book_id, update.model_dump(exclude_unset=True, exclude_none=True))
    return {"success": True, "message": "Book updated successfully"}

@app.get("/latest-books")
def latest_books(library: Library = Depends(get_library)):
    return [b.to_dict() for b in library.latest_books()]

# --- Categories ---
@app.get("/category")
def list_categories(library: Library = Depends(get_library)):
    return library.list_categories()

# --- Lending ---
@app.post("/borrow-book")
def borrow_book(payload: BorrowRequest, user: dict = Depends(get_current_user),
                library: Library = Depends(get_library)):
    updated = library.borrow_book(payload.bookId, payload.userName, payload.userEmail, payload.returnDate)
    return {"success": True, "message": "Book borrowed successfully", "updatedBook": updated.to_dict()}

@app.get("/borrowed-books/{email}")
def borrowed_books(email: str, user: dict = Depends(get_current_user), library: Library = Depends(get_library)):
    """Loans of the signed-in borrower only."""
    if email != user.get("email"):
        raise Forbidden("Forbidden: Email mismatch")
    return [loan.to_dict() for loan in library.list_borrowed(email)]

@app.put("/borrowed-books/return/{loan_id}")
def return_book(loan_id: str, payload: Optional[ReturnRequest] = None, user: dict = Depends(get_current_user),
                library: Library = Depends(get_library)):
    library.return_book(loan_id, payload.userEmail if payload else None)
    return {"success": True, "message": "Book returned successfully"}

# --- Health ---
@app.get("/health")
def health(db: Database = Depends(get_database)):
    """Liveness plus a MongoDB ping."""
    db_ok = database.ping(db)
    return {
        "status": "healthy" if db_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_ok,
    }

@app.get("/", response_class=PlainTextResponse)
def read_root():
    return "Book server running"
