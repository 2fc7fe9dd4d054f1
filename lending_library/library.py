import logging
import math
import sqlite3
import uuid
from typing import Any, Dict, List, Optional, Tuple

from lending_library.book import Book, utcnow
from lending_library.config import settings
from lending_library.database import Database, StaleRecord, is_contention
from lending_library.errors import (
    Conflict,
    DuplicateCode,
    EntryNotFound,
    HasActiveLoans,
    StorageFailure,
    ValidationFailed,
)
from lending_library.validators import BookValidator

logger = logging.getLogger(__name__)

BOOK_COLUMNS = (
    "id", "title", "author", "isbn", "genre", "description", "published_year",
    "total_copies", "available_copies", "is_available", "current_borrowers",
    "borrow_history", "added_by", "created_at", "updated_at", "version",
)
_SELECT_BOOKS = f"SELECT {', '.join(BOOK_COLUMNS)} FROM books"

UPDATABLE_FIELDS = ("title", "author", "isbn", "genre", "description", "published_year", "total_copies")


class Library:
    """Manages the book catalog: admin mutations and read-side queries."""

    def __init__(self, db: Database) -> None:
        self.db = db

    # ------------------------- Row access ------------------------- #
    def fetch_book(self, conn: sqlite3.Connection, book_id: str) -> Optional[Book]:
        row = conn.execute(f"{_SELECT_BOOKS} WHERE id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def save_book(self, conn: sqlite3.Connection, book: Book) -> bool:
        """Compare-and-swap write of ``book``; False if the stored version moved on."""
        book.updated_at = utcnow().isoformat()
        record = book.to_record()
        cursor = conn.execute(
            """
            UPDATE books
            SET title = ?, author = ?, isbn = ?, genre = ?, description = ?, published_year = ?,
                total_copies = ?, available_copies = ?, is_available = ?, current_borrowers = ?,
                borrow_history = ?, updated_at = ?, version = version + 1
            WHERE id = ? AND version = ?
            """,
            (
                record["title"], record["author"], record["isbn"], record["genre"],
                record["description"], record["published_year"], record["total_copies"],
                record["available_copies"], record["is_available"], record["current_borrowers"],
                record["borrow_history"], record["updated_at"], book.id, book.version,
            ),
        )
        if cursor.rowcount != 1:
            return False
        book.version += 1
        return True

    # ------------------------- Core operations ------------------------- #
    def add_book(self, data: Dict[str, Any], added_by: Optional[str] = None) -> Book:
        """Validate and insert a new catalog entry. The ISBN must be unique."""
        data = {key: value for key, value in data.items() if key in UPDATABLE_FIELDS}
        BookValidator.validate(data)
        clean = BookValidator.sanitize(data)

        now = utcnow().isoformat()
        book = Book(
            id=uuid.uuid4().hex,
            title=clean["title"],
            author=clean["author"],
            isbn=clean["isbn"],
            genre=clean.get("genre"),
            description=clean.get("description"),
            published_year=clean.get("published_year"),
            total_copies=clean.get("total_copies") or 1,
            added_by=added_by,
            created_at=now,
            updated_at=now,
        )
        record = book.to_record()
        try:
            with self.db.transaction() as conn:
                if conn.execute("SELECT 1 FROM books WHERE isbn = ?", (book.isbn,)).fetchone():
                    raise DuplicateCode()
                conn.execute(
                    f"INSERT INTO books ({', '.join(BOOK_COLUMNS)}) VALUES ({', '.join('?' for _ in BOOK_COLUMNS)})",
                    tuple(record[column] for column in BOOK_COLUMNS),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateCode() from exc
        except sqlite3.Error as exc:
            logger.exception("Could not insert book %s", book.isbn)
            raise StorageFailure() from exc

        logger.info("Book added: %s (%s) by %s", book.title, book.isbn, added_by)
        return book

    def find_book(self, book_id: str) -> Optional[Book]:
        with self.db.connection() as conn:
            return self.fetch_book(conn, book_id)

    def get_book(self, book_id: str) -> Book:
        book = self.find_book(book_id)
        if book is None:
            raise EntryNotFound()
        return book

    def find_by_isbn(self, isbn: str) -> Optional[Book]:
        with self.db.connection() as conn:
            row = conn.execute(f"{_SELECT_BOOKS} WHERE isbn = ?", (isbn.strip(),)).fetchone()
            return Book.from_dict(dict(row)) if row else None

    def update_book(self, book_id: str, updates: Dict[str, Any]) -> Book:
        """Apply admin edits. Loan ledgers and ``added_by`` are not editable."""
        updates = {key: value for key, value in updates.items() if key in UPDATABLE_FIELDS and value is not None}
        if not updates:
            raise ValidationFailed("Nothing to update")
        BookValidator.validate(updates, partial=True)
        clean = BookValidator.sanitize(updates)

        for _ in range(settings.lending_max_retries):
            try:
                with self.db.connection() as conn:
                    book = self.fetch_book(conn, book_id)
                    if book is None:
                        raise EntryNotFound()
                    for key in ("title", "author", "isbn", "genre", "description", "published_year"):
                        if key in clean:
                            setattr(book, key, clean[key])
                    if "total_copies" in clean:
                        book.change_total_copies(clean["total_copies"])
                    with self.db.transaction(conn):
                        if not self.save_book(conn, book):
                            raise StaleRecord(book_id)
                    logger.info("Book updated: %s", book_id)
                    return book
            except StaleRecord:
                logger.warning("Concurrent edit on book %s, retrying", book_id)
            except sqlite3.IntegrityError as exc:
                raise DuplicateCode() from exc
            except sqlite3.Error as exc:
                if not is_contention(exc):
                    logger.exception("Could not update book %s", book_id)
                    raise StorageFailure() from exc
                logger.warning("Database busy while updating book %s, retrying", book_id)
        raise Conflict()

    def remove_book(self, book_id: str) -> None:
        """Delete a catalog entry that has no copies on loan."""
        try:
            with self.db.transaction() as conn:
                book = self.fetch_book(conn, book_id)
                if book is None:
                    raise EntryNotFound()
                if book.current_borrowers:
                    raise HasActiveLoans()
                conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        except sqlite3.Error as exc:
            logger.exception("Could not delete book %s", book_id)
            raise StorageFailure() from exc
        logger.info("Book deleted: %s", book_id)

    # ------------------------- Queries ------------------------- #
    @staticmethod
    def _page_bounds(page: int, limit: Optional[int]) -> Tuple[int, int]:
        page = max(1, int(page or 1))
        limit = int(limit or settings.default_page_size)
        limit = max(1, min(limit, settings.max_page_size))
        return page, limit

    def _paginate(self, where: str, params: List[Any], page: int, limit: Optional[int]) -> Dict[str, Any]:
        page, limit = self._page_bounds(page, limit)
        offset = (page - 1) * limit
        with self.db.connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM books{where}", params).fetchone()[0]
            rows = conn.execute(
                f"{_SELECT_BOOKS}{where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
        books = [Book.from_dict(dict(row)) for row in rows]
        return {
            "books": books,
            "pagination": {
                "current": page,
                "pages": math.ceil(total / limit) if total else 0,
                "total": total,
                "hasNext": offset + len(books) < total,
                "hasPrev": page > 1,
            },
        }

    def list_books(self, page: int = 1, limit: Optional[int] = None, search: Optional[str] = None,
                   genre: Optional[str] = None, availability: Optional[str] = None) -> Dict[str, Any]:
        """Newest-first listing with optional search, genre and availability filters."""
        clauses, params = [], []
        if search:
            like = f"%{search.strip()}%"
            clauses.append("(title LIKE ? OR author LIKE ? OR isbn LIKE ?)")
            params.extend([like, like, like])
        if genre:
            clauses.append("genre LIKE ?")
            params.append(f"%{genre.strip()}%")
        if availability == "available":
            clauses.append("is_available = 1")
        elif availability == "unavailable":
            clauses.append("is_available = 0")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._paginate(where, params, page, limit)

    def list_available(self, page: int = 1, limit: Optional[int] = None,
                       search: Optional[str] = None) -> Dict[str, Any]:
        clauses, params = ["is_available = 1"], []
        if search:
            like = f"%{search.strip()}%"
            clauses.append("(title LIKE ? OR author LIKE ?)")
            params.extend([like, like])
        return self._paginate(f" WHERE {' AND '.join(clauses)}", params, page, limit)

    def search_books(self, query: Optional[str], limit: int = 20) -> List[Book]:
        """Search title, author, genre or ISBN."""
        if not query or not query.strip():
            raise ValidationFailed("Search query is required")
        query = query.strip()
        if len(query) > 100:
            raise ValidationFailed("Search query must be between 1 and 100 characters")
        like = f"%{query}%"
        with self.db.connection() as conn:
            rows = conn.execute(
                f"""
                {_SELECT_BOOKS}
                WHERE title LIKE ? OR author LIKE ? OR genre LIKE ? OR isbn LIKE ?
                ORDER BY created_at DESC, rowid DESC LIMIT ?
                """,
                (like, like, like, like, int(limit)),
            ).fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def count_books(self) -> int:
        with self.db.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]

    def get_statistics(self) -> Dict[str, Any]:
        with self.db.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total_books,
                       COUNT(DISTINCT author) AS unique_authors,
                       COALESCE(SUM(total_copies), 0) AS total_copies,
                       COALESCE(SUM(available_copies), 0) AS available_copies
                FROM books
                """
            ).fetchone()
        return {
            "total_books": row["total_books"],
            "unique_authors": row["unique_authors"],
            "total_copies": row["total_copies"],
            "available_copies": row["available_copies"],
            "active_loans": row["total_copies"] - row["available_copies"],
        }
