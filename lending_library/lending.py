"""Borrow/return transitions across a catalog entry and a borrower account.

Both records are read, validated and mutated in memory, then written together
in one SQLite transaction. Each write is a compare-and-swap on the row's
``version``; if another request got there first the transaction is rolled back
and the whole operation is replayed against fresh state, a bounded number of
times, before giving up with :class:`Conflict`.
"""
import logging
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from lending_library.accounts import AccountStore
from lending_library.book import utcnow
from lending_library.config import settings
from lending_library.database import Database, StaleRecord, is_contention
from lending_library.errors import (
    AccountInactive,
    AccountNotFound,
    AlreadyBorrowed,
    BorrowLimitExceeded,
    Conflict,
    EntryNotFound,
    NotAvailable,
    NotBorrowed,
    StorageFailure,
)
from lending_library.library import Library

logger = logging.getLogger(__name__)


class LendingService:

    def __init__(self, db: Database, library: Optional[Library] = None, accounts: Optional[AccountStore] = None,
                 clock: Optional[Callable[[], datetime]] = None, max_retries: Optional[int] = None,
                 loan_days: Optional[int] = None) -> None:
        self.db = db
        self.library = library or Library(db)
        self.accounts = accounts or AccountStore(db)
        self.clock = clock or utcnow
        self.max_retries = max(1, max_retries if max_retries is not None else settings.lending_max_retries)
        self.loan_days = settings.loan_period_days if loan_days is None else loan_days

    def borrow(self, book_id: str, user_id: str) -> Dict[str, Any]:
        """Lend one copy of ``book_id`` to ``user_id``; returns the due date."""
        result = self._run("borrow", self._try_borrow, book_id, user_id)
        logger.info("User %s borrowed book %s, due %s", user_id, book_id, result["dueDate"].isoformat())
        return result

    def return_book(self, book_id: str, user_id: str) -> Dict[str, Any]:
        """Take back the copy of ``book_id`` held by ``user_id``."""
        result = self._run("return", self._try_return, book_id, user_id)
        logger.info("User %s returned book %s, %d copies available", user_id, book_id, result["availableCopies"])
        return result

    def _run(self, action: str, attempt: Callable[[str, str], Dict[str, Any]], book_id: str,
             user_id: str) -> Dict[str, Any]:
        for number in range(1, self.max_retries + 1):
            try:
                return attempt(book_id, user_id)
            except StaleRecord:
                logger.warning("Concurrent update during %s of book %s by user %s (attempt %d/%d)",
                               action, book_id, user_id, number, self.max_retries)
            except sqlite3.Error as exc:
                if not is_contention(exc):
                    logger.exception("Storage failure during %s of book %s by user %s", action, book_id, user_id)
                    raise StorageFailure() from exc
                logger.warning("Database busy during %s of book %s by user %s (attempt %d/%d)",
                               action, book_id, user_id, number, self.max_retries)
        raise Conflict()

    def _commit(self, conn: sqlite3.Connection, book, account) -> None:
        with self.db.transaction(conn):
            if not self.library.save_book(conn, book):
                raise StaleRecord(book.id)
            if not self.accounts.save_account(conn, account):
                raise StaleRecord(account.id)

    def _try_borrow(self, book_id: str, user_id: str) -> Dict[str, Any]:
        with self.db.connection() as conn:
            book = self.library.fetch_book(conn, book_id)
            if book is None:
                raise EntryNotFound()
            if not book.is_available or book.available_copies <= 0:
                raise NotAvailable()

            account = self.accounts.fetch_account(conn, user_id)
            if account is None:
                raise AccountNotFound()
            if not account.is_active:
                raise AccountInactive()
            if not account.can_borrow_more():
                who = "Admins" if account.is_admin else "Members"
                raise BorrowLimitExceeded(
                    f"Maximum borrowing limit reached. {who} can borrow up to {account.borrow_limit} books."
                )
            if account.has_borrowed(book_id):
                raise AlreadyBorrowed()

            now = self.clock()
            due_date = book.reserve_copy(user_id, account.name, now=now, loan_days=self.loan_days)
            account.record_borrow(book_id, due_date, now=now)
            self._commit(conn, book, account)

        return {"bookId": book.id, "title": book.title, "author": book.author, "dueDate": due_date}

    def _try_return(self, book_id: str, user_id: str) -> Dict[str, Any]:
        with self.db.connection() as conn:
            book = self.library.fetch_book(conn, book_id)
            if book is None:
                raise EntryNotFound()

            account = self.accounts.fetch_account(conn, user_id)
            if account is None:
                raise AccountNotFound()
            if not account.is_active:
                raise AccountInactive()
            if not account.has_borrowed(book_id):
                raise NotBorrowed()

            book.release_copy(user_id, now=self.clock())
            account.record_return(book_id)
            self._commit(conn, book, account)

        return {
            "bookId": book.id,
            "title": book.title,
            "author": book.author,
            "availableCopies": book.available_copies,
        }
