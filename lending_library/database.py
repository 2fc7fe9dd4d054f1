import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from lending_library.config import settings

logger = logging.getLogger(__name__)


class StaleRecord(Exception):
    """A compare-and-swap inside a unit of work found a newer version of a row."""


# SQLITE_BUSY / SQLITE_LOCKED primary result codes
_CONTENTION_CODES = (5, 6)


def is_contention(exc: sqlite3.Error) -> bool:
    """True when ``exc`` means another writer held the lock past the busy timeout."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    code = getattr(exc, "sqlite_errorcode", None)
    if code is not None:
        return code & 0xFF in _CONTENTION_CODES
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class Database:
    """Handle to the SQLite store.

    Services receive one of these instead of reaching for a module-level
    connection. Every operation opens its own connection and closes it when it
    is done; writes go through :meth:`transaction`.
    """

    def __init__(self, db_file: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self.db_file = db_file or settings.database_file
        self.timeout = settings.database_timeout if timeout is None else timeout

    def connect(self) -> sqlite3.Connection:
        # Autocommit mode: transactions are opened explicitly by transaction()
        conn = sqlite3.connect(self.db_file, timeout=self.timeout, isolation_level=None,
                               check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, conn: Optional[sqlite3.Connection] = None) -> Iterator[sqlite3.Connection]:
        """Run the block as one write transaction; roll back on any exception."""
        owned = conn is None
        if owned:
            conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        finally:
            if owned:
                conn.close()

    def ping(self) -> bool:
        try:
            with self.connection() as conn:
                conn.execute("SELECT 1")
            return True
        except sqlite3.Error:
            logger.warning("Database ping failed for %s", self.db_file, exc_info=True)
            return False

    def create_tables(self) -> None:
        """Create tables and indexes if they are missing."""
        with self.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS books (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    author TEXT NOT NULL,
                    isbn TEXT NOT NULL UNIQUE,
                    genre TEXT NOT NULL DEFAULT 'General',
                    description TEXT DEFAULT '',
                    published_year INTEGER,
                    total_copies INTEGER NOT NULL DEFAULT 1 CHECK(total_copies >= 1),
                    available_copies INTEGER NOT NULL
                        CHECK(available_copies >= 0 AND available_copies <= total_copies),
                    is_available INTEGER NOT NULL DEFAULT 1,
                    current_borrowers TEXT NOT NULL DEFAULT '[]',
                    borrow_history TEXT NOT NULL DEFAULT '[]',
                    added_by TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    role TEXT NOT NULL DEFAULT 'Member' CHECK(role IN ('Admin', 'Member')),
                    borrowed_books TEXT NOT NULL DEFAULT '[]',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_books_genre ON books(genre)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_books_is_available ON books(is_available)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_books_created_at ON books(created_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_users_role ON users(role)")

    def initialize(self) -> None:
        self.create_tables()
        logger.info("Database ready at %s", self.db_file)
