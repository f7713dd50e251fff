import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Path, Query, Request, Security
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field, StrictInt

from lending import database
from lending.accounts import Accounts
from lending.config import settings
from lending.catalog import MAX_PAGE_SIZE
from lending.errors import InvalidApiKey, LendingError, NotFoundError, Unauthenticated
from lending.library import Library
from lending.models import MAX_BOOK_ID, UserPatch

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


# --- Models ---
class BookRequest(BaseModel):
    """Body of borrow and return requests; accepts ``bookId`` or ``book_id``."""
    model_config = ConfigDict(populate_by_name=True)

    book_id: StrictInt = Field(alias="bookId", gt=0, le=MAX_BOOK_ID)


class AuthorModel(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)


class BookCreateModel(BaseModel):
    title: str = Field(min_length=1)
    authors: List[AuthorModel] = Field(default_factory=list)
    genres: List[str] = Field(default_factory=list)


class UserUpdateModel(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    surname: Optional[str] = None
    avatar_url: Optional[str] = None


# --- Security ---
user_id_header = APIKeyHeader(name="X-User-Id", auto_error=False)
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_current_user_id(user_id: Optional[str] = Security(user_id_header)) -> str:
    """Caller identity placed on the request by the upstream auth layer."""
    if not user_id or not user_id.strip():
        raise Unauthenticated()
    return user_id.strip()


def get_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Dependency to validate the admin API key."""
    if api_key == settings.api_key:
        return api_key
    raise InvalidApiKey()


def get_library(request: Request) -> Library:
    return request.app.state.library


def get_accounts(request: Request) -> Accounts:
    return request.app.state.accounts


# --- Application ---
def create_app(db_file: Optional[str] = None) -> FastAPI:
    """Build the API; the connection pool lives as long as the app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        library = Library(db_file=db_file or database.DATABASE_FILE)
        app.state.library = library
        app.state.accounts = Accounts(library)
        try:
            yield
        finally:
            library.close()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": "validation_error", "message": "Invalid request body.", "retryable": False,
                     "details": [{"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()]},
        )

    # --- Health ---
    @app.get("/health")
    def health() -> Dict[str, Any]:
        db_ok = True
        try:
            with database.connection() as conn:
                conn.execute("SELECT 1")
        except LendingError:
            db_ok = False
        return {
            "status": "healthy" if db_ok else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "db": db_ok,
        }

    # --- Lending ---
    @app.post("/rent")
    def borrow_book(body: BookRequest, user_id: str = Depends(get_current_user_id),
                    library: Library = Depends(get_library)):
        loan = library.borrow(user_id, body.book_id)
        return {
            "message": "Book borrowed successfully.",
            "data": {
                "bookId": loan.book_id,
                "borrowedAt": loan.borrowed_at.isoformat(),
                "dueDate": loan.due_date.isoformat(),
            },
        }

    @app.post("/rent/return")
    def return_book(body: BookRequest, user_id: str = Depends(get_current_user_id),
                    library: Library = Depends(get_library)):
        library.return_book(user_id, body.book_id)
        return {"message": "Book returned successfully."}

    @app.get("/rent/borrowed")
    def active_loans(user_id: str = Depends(get_current_user_id), library: Library = Depends(get_library)):
        loans = library.list_active(user_id)
        if not loans:
            return {"message": "You have not borrowed any books yet."}
        return [loan.to_dict() for loan in loans]

    @app.get("/rent/history")
    def loan_history(user_id: str = Depends(get_current_user_id), library: Library = Depends(get_library)):
        return [loan.to_dict() for loan in library.list_history(user_id)]

    # --- Catalog ---
    @app.get("/books")
    def list_books(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE),
                   library: Library = Depends(get_library)):
        books = library.catalog.list_books(page, limit)
        if not books:
            return {"success": True, "message": "No books found"}
        return {"success": True, "page": page, "limit": limit, "data": [book.to_dict() for book in books]}

    @app.get("/books/{book_id}")
    def get_book(book_id: int = Path(gt=0, le=MAX_BOOK_ID), library: Library = Depends(get_library)):
        book = library.get_book(book_id)
        if book is None:
            raise NotFoundError("book", book_id)
        return book.to_dict()

    @app.post("/books", status_code=201, dependencies=[Depends(get_api_key)])
    def add_book(body: BookCreateModel, library: Library = Depends(get_library)):
        book = library.catalog.add_book(body.title, [(a.first_name, a.last_name) for a in body.authors],
                                        body.genres)
        return book.to_dict()

    @app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
    def delete_book(book_id: int = Path(gt=0, le=MAX_BOOK_ID), library: Library = Depends(get_library)):
        library.catalog.delete_book(book_id)
        return {"message": "Book deleted successfully."}

    # --- Users ---
    @app.put("/users/{user_id}")
    def update_user(user_id: str, body: UserUpdateModel, requester_id: str = Depends(get_current_user_id),
                    accounts: Accounts = Depends(get_accounts)):
        patch = UserPatch(**body.model_dump(exclude_unset=True))
        return accounts.update_profile(requester_id, user_id, patch).to_dict()

    @app.delete("/users/{user_id}")
    def delete_user(user_id: str, requester_id: str = Depends(get_current_user_id),
                    accounts: Accounts = Depends(get_accounts)):
        accounts.delete_account(requester_id, user_id)
        return {"message": "User deleted successfully"}

    return app


app = create_app()
