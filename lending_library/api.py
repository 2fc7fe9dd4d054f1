import logging
import math
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, ConfigDict, Field

from lending_library.account import ADMIN, MEMBER
from lending_library.accounts import AccountStore
from lending_library.config import settings
from lending_library.database import Database
from lending_library.errors import LibraryError, StorageFailure, TooManyRequests
from lending_library.lending import LendingService
from lending_library.library import Library
from lending_library.ratelimit import RateLimiter
from lending_library.security import (
    Principal,
    get_accounts,
    get_current_user,
    get_optional_user,
    make_token,
    require_admin,
)
from lending_library.seed import seed_database

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


# --- Dependencies ---
def get_library(request: Request) -> Library:
    return request.app.state.library


def get_lending(request: Request) -> LendingService:
    return request.app.state.lending


def get_db(request: Request) -> Database:
    return request.app.state.db


# --- Request models ---
class RegisterModel(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class LoginModel(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class ProfileUpdateModel(BaseModel):
    name: Optional[str] = None


class ChangePasswordModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(alias="currentPassword")
    new_password: str = Field(alias="newPassword")


class BookCreateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: Optional[str] = None
    author: Optional[str] = None
    isbn: Optional[str] = None
    genre: Optional[str] = None
    description: Optional[str] = None
    published_year: Optional[int] = Field(default=None, alias="publishedYear")
    total_copies: Optional[int] = Field(default=None, alias="totalCopies")


class BookUpdateModel(BookCreateModel):
    pass


def _session(account) -> dict:
    return {"user": account.to_dict(), "token": make_token(account.id), "type": "Bearer"}


# --- Routes ---
router = APIRouter(prefix="/api")


@router.get("/health")
def health(db: Database = Depends(get_db)):
    """Liveness probe with a quick database round trip."""
    connected = db.ping()
    body = {
        "status": "OK" if connected else "Service Unavailable",
        "message": f"{settings.app_name} Health Check",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": {"connected": connected},
        "environment": settings.environment,
        "version": settings.app_version,
    }
    return JSONResponse(status_code=200 if connected else 503, content=body)


# Auth
@router.post("/auth/register", status_code=201)
def register(payload: RegisterModel, accounts: AccountStore = Depends(get_accounts)):
    # The public endpoint only ever creates members
    account = accounts.register(payload.name, payload.email, payload.password, role=MEMBER)
    return {"success": True, "message": "User registered successfully", "data": _session(account)}


@router.post("/auth/admin/register", status_code=201)
def register_admin(payload: RegisterModel, accounts: AccountStore = Depends(get_accounts),
                   current: Principal = Depends(require_admin)):
    account = accounts.register(payload.name, payload.email, payload.password, role=ADMIN)
    logger.info("Admin %s created admin account %s", current.id, account.id)
    return {"success": True, "message": "Admin registered successfully", "data": {"user": account.to_dict()}}


@router.post("/auth/login")
def login(payload: LoginModel, accounts: AccountStore = Depends(get_accounts)):
    account = accounts.authenticate(payload.email, payload.password)
    return {"success": True, "message": "Login successful", "data": _session(account)}


@router.post("/auth/token")
def token(form_data: OAuth2PasswordRequestForm = Depends(), accounts: AccountStore = Depends(get_accounts)):
    """OAuth2 password flow for the interactive docs."""
    account = accounts.authenticate(form_data.username, form_data.password)
    return {"access_token": make_token(account.id), "token_type": "bearer"}


@router.get("/auth/profile")
def get_profile(current: Principal = Depends(get_current_user), accounts: AccountStore = Depends(get_accounts)):
    return {"success": True, "data": {"user": accounts.get_account(current.id).to_dict()}}


@router.put("/auth/profile")
def update_profile(payload: ProfileUpdateModel, current: Principal = Depends(get_current_user),
                   accounts: AccountStore = Depends(get_accounts)):
    account = accounts.update_profile(current.id, payload.name)
    return {"success": True, "message": "Profile updated successfully", "data": {"user": account.to_dict()}}


@router.put("/auth/change-password")
def change_password(payload: ChangePasswordModel, current: Principal = Depends(get_current_user),
                    accounts: AccountStore = Depends(get_accounts)):
    accounts.change_password(current.id, payload.current_password, payload.new_password)
    return {"success": True, "message": "Password changed successfully"}


@router.post("/auth/logout")
def logout(current: Principal = Depends(get_current_user)):
    # Tokens are stateless; the client drops it
    logger.info("User %s logged out", current.id)
    return {"success": True, "message": "Logged out successfully"}


# Books
@router.get("/books")
def list_books(
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    search: Optional[str] = Query(None, max_length=100),
    genre: Optional[str] = Query(None, max_length=50),
    availability: Optional[str] = Query(None, pattern="^(available|unavailable)$"),
    library: Library = Depends(get_library),
):
    """Paginated catalog listing, newest first."""
    result = library.list_books(page=page, limit=limit, search=search, genre=genre, availability=availability)
    return {
        "success": True,
        "data": {
            "books": [book.to_dict(include_ledger=False) for book in result["books"]],
            "pagination": result["pagination"],
        },
    }


@router.get("/books/available")
def list_available_books(
    page: int = Query(1, ge=1, le=1000),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    search: Optional[str] = Query(None, max_length=100),
    library: Library = Depends(get_library),
):
    result = library.list_available(page=page, limit=limit, search=search)
    return {
        "success": True,
        "data": {
            "books": [book.to_dict(include_ledger=False) for book in result["books"]],
            "pagination": result["pagination"],
        },
    }


@router.get("/books/search")
def search_books(q: Optional[str] = Query(None), library: Library = Depends(get_library)):
    books = library.search_books(q)
    return {"success": True, "data": {"books": [b.to_dict(include_ledger=False) for b in books], "count": len(books)}}


@router.get("/books/{book_id}")
def get_book(book_id: str, library: Library = Depends(get_library),
             accounts: AccountStore = Depends(get_accounts),
             current: Optional[Principal] = Depends(get_optional_user)):
    book = library.get_book(book_id)
    data = book.to_dict()
    adder = accounts.find_account(book.added_by) if book.added_by else None
    if adder is not None:
        data["addedBy"] = {"id": adder.id, "name": adder.name, "email": adder.email}
    # Loan history is for staff eyes only
    if current is None or not current.is_admin:
        data.pop("borrowHistory", None)
    return {"success": True, "data": {"book": data}}


@router.post("/books", status_code=201)
def add_book(payload: BookCreateModel, library: Library = Depends(get_library),
             current: Principal = Depends(require_admin)):
    book = library.add_book(payload.model_dump(), added_by=current.id)
    return {"success": True, "message": "Book added successfully", "data": {"book": book.to_dict()}}


@router.put("/books/{book_id}")
def update_book(book_id: str, payload: BookUpdateModel, library: Library = Depends(get_library),
                current: Principal = Depends(require_admin)):
    book = library.update_book(book_id, payload.model_dump(exclude_unset=True))
    return {"success": True, "message": "Book updated successfully", "data": {"book": book.to_dict()}}


@router.delete("/books/{book_id}")
def delete_book(book_id: str, library: Library = Depends(get_library),
                current: Principal = Depends(require_admin)):
    library.remove_book(book_id)
    return {"success": True, "message": "Book deleted successfully"}


@router.put("/books/{book_id}/borrow")
def borrow_book(book_id: str, lending: LendingService = Depends(get_lending),
                current: Principal = Depends(get_current_user)):
    result = lending.borrow(book_id, current.id)
    return {"success": True, "message": "Book borrowed successfully", "data": {"book": result}}


@router.put("/books/{book_id}/return")
def return_book(book_id: str, lending: LendingService = Depends(get_lending),
                current: Principal = Depends(get_current_user)):
    result = lending.return_book(book_id, current.id)
    return {"success": True, "message": "Book returned successfully", "data": {"book": result}}


@router.get("/stats")
def get_library_stats(library: Library = Depends(get_library)):
    return {"success": True, "data": library.get_statistics()}


# --- Error mapping ---
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Validation failed", "kind": "ValidationFailed", "errors": messages},
    )


async def storage_error_handler(request: Request, exc: sqlite3.Error):
    logger.error("Unhandled storage error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content=StorageFailure().to_dict())


def create_app(database: Optional[Database] = None) -> FastAPI:
    """Build the application; ``database`` overrides the configured SQLite file."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database()
        db.initialize()
        app.state.db = db
        app.state.library = Library(db)
        app.state.accounts = AccountStore(db)
        app.state.lending = LendingService(db, app.state.library, app.state.accounts)
        if settings.seed_database:
            seed_database(app.state.library, app.state.accounts)
        yield

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

    # Registered first so CORS and security headers also wrap 429 responses
    if settings.rate_limit_enabled:
        limiter = RateLimiter(settings.rate_limit_max_requests, settings.rate_limit_window_seconds)
        app.state.rate_limiter = limiter

        @app.middleware("http")
        async def limit_api_requests(request: Request, call_next):
            if not request.url.path.startswith("/api/"):
                return await call_next(request)
            client = request.client.host if request.client else "unknown"
            allowed, remaining, reset_in = limiter.hit(client)
            if not allowed:
                logger.warning("Rate limit exceeded for %s on %s", client, request.url.path)
                response = JSONResponse(status_code=TooManyRequests.status_code, content=TooManyRequests().to_dict())
                response.headers["Retry-After"] = str(math.ceil(reset_in))
            else:
                response = await call_next(request)
            response.headers["RateLimit-Limit"] = str(limiter.max_requests)
            response.headers["RateLimit-Remaining"] = str(remaining)
            return response

    # Compress responses above 1KB
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Cache-Control"] = "no-store"
        return response

    app.add_exception_handler(LibraryError, library_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(sqlite3.Error, storage_error_handler)
    app.include_router(router)

    @app.get("/")
    def read_root():
        return {"name": settings.app_name, "status": "ok", "docs": "/docs"}

    return app


app = create_app()
