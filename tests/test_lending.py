import sqlite3
import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from conftest import FIXED_NOW
from lending_library.database import Database
from lending_library.errors import (
    AccountInactive,
    AccountNotFound,
    AlreadyBorrowed,
    BorrowLimitExceeded,
    Conflict,
    EntryNotFound,
    LibraryError,
    NotAvailable,
    NotBorrowed,
    NotBorrowedByUser,
    StorageFailure,
)
from lending_library.lending import LendingService


def test_borrow_updates_both_sides(lending, library, accounts, member, make_book):
    book = make_book(total_copies=2)

    result = lending.borrow(book.id, member.id)

    assert result["bookId"] == book.id
    assert result["title"] == book.title
    assert result["dueDate"] == FIXED_NOW + timedelta(days=14)

    stored = library.get_book(book.id)
    assert stored.available_copies == 1
    assert stored.is_available is True
    assert [loan.user_id for loan in stored.current_borrowers] == [member.id]
    assert stored.borrow_history[-1].status == "borrowed"
    assert stored.invariant_violations() == []

    account = accounts.get_account(member.id)
    assert account.has_borrowed(book.id)
    assert account.borrowed_item(book.id).due_date == FIXED_NOW + timedelta(days=14)


def test_last_copy_goes_once(lending, library, accounts, make_book):
    book = make_book(total_copies=2)
    ann = accounts.register("Ann Reader", "ann@example.com", "secret1")
    ben = accounts.register("Ben Reader", "ben@example.com", "secret1")
    cat = accounts.register("Cat Reader", "cat@example.com", "secret1")

    lending.borrow(book.id, ann.id)
    lending.borrow(book.id, ben.id)
    assert library.get_book(book.id).is_available is False

    with pytest.raises(NotAvailable):
        lending.borrow(book.id, cat.id)

    result = lending.return_book(book.id, ann.id)
    assert result["availableCopies"] == 1

    lending.borrow(book.id, cat.id)
    stored = library.get_book(book.id)
    assert {loan.user_id for loan in stored.current_borrowers} == {ben.id, cat.id}
    assert stored.available_copies == 0


def test_single_copy_scenario(lending, library, accounts, make_book):
    book = make_book(total_copies=1)
    ann = accounts.register("Ann Reader", "ann@example.com", "secret1")
    ben = accounts.register("Ben Reader", "ben@example.com", "secret1")

    due = lending.borrow(book.id, ann.id)["dueDate"]
    assert due - FIXED_NOW == timedelta(days=14)
    stored = library.get_book(book.id)
    assert (stored.available_copies, stored.is_available) == (0, False)

    with pytest.raises(NotAvailable):
        lending.borrow(book.id, ben.id)

    lending.return_book(book.id, ann.id)
    stored = library.get_book(book.id)
    assert (stored.available_copies, stored.is_available) == (1, True)

    lending.borrow(book.id, ben.id)
    assert library.get_book(book.id).current_borrowers[0].user_id == ben.id


def test_borrow_same_book_twice(lending, library, member, make_book):
    book = make_book(total_copies=3)
    lending.borrow(book.id, member.id)

    with pytest.raises(AlreadyBorrowed):
        lending.borrow(book.id, member.id)
    assert library.get_book(book.id).available_copies == 2


def test_member_borrow_limit(lending, accounts, member, make_book):
    books = [make_book() for _ in range(6)]
    for book in books[:5]:
        lending.borrow(book.id, member.id)

    with pytest.raises(BorrowLimitExceeded, match="Members can borrow up to 5 books"):
        lending.borrow(books[5].id, member.id)
    assert len(accounts.get_account(member.id).borrowed_books) == 5


def test_admin_borrow_limit(lending, accounts, admin, make_book):
    books = [make_book() for _ in range(11)]
    for book in books[:10]:
        lending.borrow(book.id, admin.id)

    with pytest.raises(BorrowLimitExceeded, match="Admins can borrow up to 10 books"):
        lending.borrow(books[10].id, admin.id)
    assert len(accounts.get_account(admin.id).borrowed_books) == 10


def test_borrow_unknown_book_or_user(lending, member, make_book):
    with pytest.raises(EntryNotFound):
        lending.borrow("missing", member.id)
    with pytest.raises(AccountNotFound):
        lending.borrow(make_book().id, "ghost")


def test_return_round_trip_restores_counts(lending, library, accounts, member, make_book):
    book = make_book(total_copies=1)
    lending.borrow(book.id, member.id)
    result = lending.return_book(book.id, member.id)

    assert result == {"bookId": book.id, "title": book.title, "author": book.author, "availableCopies": 1}
    stored = library.get_book(book.id)
    assert stored.is_available is True
    assert stored.current_borrowers == []
    assert [r.status for r in stored.borrow_history] == ["returned"]
    assert stored.borrow_history[0].returned_at == FIXED_NOW
    assert accounts.get_account(member.id).borrowed_books == []


def test_return_without_borrow(lending, member, make_book):
    book = make_book()
    with pytest.raises(NotBorrowed):
        lending.return_book(book.id, member.id)
    with pytest.raises(EntryNotFound):
        lending.return_book("missing", member.id)


def test_return_when_ledger_disagrees(lending, db, accounts, member, make_book):
    book = make_book(total_copies=2)
    lending.borrow(book.id, member.id)
    # Simulate a book ledger that lost the active loan
    with db.transaction() as conn:
        conn.execute("UPDATE books SET current_borrowers = '[]', available_copies = 2 WHERE id = ?", (book.id,))

    with pytest.raises(NotBorrowedByUser):
        lending.return_book(book.id, member.id)
    assert accounts.get_account(member.id).has_borrowed(book.id)


def test_failed_account_write_rolls_back_book(lending, library, accounts, member, make_book, monkeypatch):
    book = make_book(total_copies=1)
    before = library.get_book(book.id)

    def broken(conn, account):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(accounts, "save_account", broken)
    with pytest.raises(StorageFailure):
        lending.borrow(book.id, member.id)

    after = library.get_book(book.id)
    assert after.available_copies == 1
    assert after.current_borrowers == []
    assert after.version == before.version


def test_persistent_contention_gives_conflict(db, library, accounts, member, make_book, monkeypatch):
    book = make_book(total_copies=1)
    service = LendingService(db, library, accounts, max_retries=2)
    save_mock = MagicMock(return_value=False)
    monkeypatch.setattr(accounts, "save_account", save_mock)

    with pytest.raises(Conflict):
        service.borrow(book.id, member.id)
    assert save_mock.call_count == 2

    stored = library.get_book(book.id)
    assert stored.available_copies == 1
    assert stored.borrow_history == []


def test_stale_read_is_retried(db, library, accounts, member, make_book, monkeypatch):
    book = make_book(total_copies=2)
    service = LendingService(db, library, accounts)
    original = library.save_book
    calls = {"n": 0}

    def flaky(conn, entry):
        calls["n"] += 1
        if calls["n"] == 1:
            return False
        return original(conn, entry)

    monkeypatch.setattr(library, "save_book", flaky)
    service.borrow(book.id, member.id)

    assert calls["n"] == 2
    assert library.get_book(book.id).available_copies == 1


def test_locked_database_gives_conflict(db, db_file, library, accounts, member, make_book):
    book = make_book(total_copies=1)
    other = make_book(total_copies=1)
    service = LendingService(Database(db_file, timeout=0.2), library, accounts, max_retries=2)

    # Another writer holds the lock on a different book past the busy timeout
    blocker = db.connect()
    try:
        blocker.execute("BEGIN IMMEDIATE")
        blocker.execute("UPDATE books SET title = 'Held' WHERE id = ?", (other.id,))
        with pytest.raises(Conflict):
            service.borrow(book.id, member.id)
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()

    stored = library.get_book(book.id)
    assert stored.available_copies == 1
    assert stored.borrow_history == []

    service.borrow(book.id, member.id)
    assert library.get_book(book.id).available_copies == 0


def test_inactive_account_cannot_borrow_or_return(lending, library, accounts, member, make_book):
    book = make_book(total_copies=2)
    lending.borrow(book.id, member.id)
    other = make_book(total_copies=1)
    accounts.set_active(member.id, False)

    with pytest.raises(AccountInactive):
        lending.borrow(other.id, member.id)
    with pytest.raises(AccountInactive):
        lending.return_book(book.id, member.id)

    assert library.get_book(other.id).available_copies == 1
    assert library.get_book(book.id).available_copies == 1
    assert accounts.get_account(member.id).has_borrowed(book.id)


@pytest.mark.integration
def test_concurrent_borrowers_never_oversubscribe(db, library, accounts, make_book):
    book = make_book(total_copies=3)
    users = [accounts.register(f"Reader {i}", f"reader{i}@example.com", "secret1") for i in range(8)]
    service = LendingService(db, library, accounts, max_retries=10)

    outcomes = []
    lock = threading.Lock()
    barrier = threading.Barrier(len(users))

    def worker(user_id):
        barrier.wait()
        try:
            service.borrow(book.id, user_id)
            outcome = "ok"
        except LibraryError as exc:
            outcome = exc.kind
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=worker, args=(u.id,)) for u in users]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 3
    assert set(outcomes) - {"ok"} == {"NotAvailable"}

    stored = library.get_book(book.id)
    assert stored.available_copies == 0
    assert stored.invariant_violations() == []
    holders = {loan.user_id for loan in stored.current_borrowers}
    assert len(holders) == 3
    for user in users:
        assert accounts.get_account(user.id).has_borrowed(book.id) == (user.id in holders)


@pytest.mark.integration
def test_concurrent_duplicate_borrow_by_one_user(db, library, accounts, member, make_book):
    book = make_book(total_copies=2)
    service = LendingService(db, library, accounts, max_retries=10)
    outcomes = []
    barrier = threading.Barrier(2)

    def worker():
        barrier.wait()
        try:
            service.borrow(book.id, member.id)
            outcomes.append("ok")
        except LibraryError as exc:
            outcomes.append(exc.kind)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["AlreadyBorrowed", "ok"]
    assert library.get_book(book.id).available_copies == 1
    assert len(accounts.get_account(member.id).borrowed_books) == 1
