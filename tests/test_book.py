from datetime import datetime, timedelta, timezone

import pytest

from lending_library.book import Book, LoanHistoryRecord
from lending_library.errors import AlreadyBorrowed, NoCopiesAvailable, NotBorrowedByUser, ValidationFailed

NOW = datetime(2024, 1, 10, 12, 0, tzinfo=timezone.utc)


def make(total=2):
    return Book("Dune", "Frank Herbert", "9780441013593", total_copies=total, id="b1")


def test_new_book_defaults():
    book = make()
    assert book.available_copies == 2
    assert book.is_available is True
    assert book.genre == "General"
    assert book.current_borrowers == []
    assert book.invariant_violations() == []


def test_reserve_copy_sets_due_date_and_ledgers():
    book = make()
    due = book.reserve_copy("u1", "Ann", now=NOW)

    assert due == NOW + timedelta(days=14)
    assert book.available_copies == 1
    assert [loan.user_id for loan in book.current_borrowers] == ["u1"]
    assert book.borrow_history[-1].status == "borrowed"
    assert book.invariant_violations() == []


def test_reserve_last_copy_marks_unavailable():
    book = make(total=1)
    book.reserve_copy("u1", "Ann", now=NOW)
    assert book.is_available is False

    with pytest.raises(NoCopiesAvailable):
        book.reserve_copy("u2", "Ben", now=NOW)


def test_reserve_copy_twice_for_same_user():
    book = make()
    book.reserve_copy("u1", "Ann", now=NOW)
    with pytest.raises(AlreadyBorrowed):
        book.reserve_copy("u1", "Ann", now=NOW)
    assert book.available_copies == 1


def test_release_copy_completes_latest_history_record():
    book = make()
    book.reserve_copy("u1", "Ann", now=NOW)
    book.release_copy("u1", now=NOW + timedelta(days=3))
    book.reserve_copy("u1", "Ann", now=NOW + timedelta(days=4))
    book.release_copy("u1", now=NOW + timedelta(days=5))

    assert [r.status for r in book.borrow_history] == ["returned", "returned"]
    assert book.borrow_history[0].returned_at == NOW + timedelta(days=3)
    assert book.borrow_history[1].returned_at == NOW + timedelta(days=5)
    assert book.available_copies == 2
    assert book.is_available is True


def test_release_copy_without_loan():
    book = make()
    with pytest.raises(NotBorrowedByUser):
        book.release_copy("nobody")


def test_change_total_copies_keeps_loans():
    book = make(total=3)
    book.reserve_copy("u1", "Ann", now=NOW)
    book.reserve_copy("u2", "Ben", now=NOW)

    book.change_total_copies(5)
    assert (book.total_copies, book.available_copies) == (5, 3)

    book.change_total_copies(2)
    assert (book.total_copies, book.available_copies, book.is_available) == (2, 0, False)

    with pytest.raises(ValidationFailed):
        book.change_total_copies(1)
    with pytest.raises(ValidationFailed):
        book.change_total_copies(0)


def test_record_round_trip_keeps_ledger():
    book = make()
    book.reserve_copy("u1", "Ann", now=NOW)
    restored = Book.from_dict(book.to_record())

    assert restored.current_borrowers == book.current_borrowers
    assert restored.borrow_history == book.borrow_history
    assert restored.available_copies == 1


def test_to_dict_uses_camel_case():
    data = make().to_dict()
    assert data["availableCopies"] == 2
    assert data["totalCopies"] == 2
    assert data["isAvailable"] is True
    assert "currentBorrowers" in data
    assert "currentBorrowers" not in make().to_dict(include_ledger=False)


def test_history_record_rejects_unknown_status():
    data = {"userId": "u1", "userName": "Ann", "borrowedAt": NOW.isoformat(),
            "dueDate": (NOW + timedelta(days=14)).isoformat(), "status": "lost"}
    with pytest.raises(ValueError):
        LoanHistoryRecord.from_dict(data)

    data["status"] = "overdue"
    assert LoanHistoryRecord.from_dict(data).status == "overdue"
