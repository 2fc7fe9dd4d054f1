from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from lending_library.config import settings
from lending_library.errors import AlreadyBorrowed, NoCopiesAvailable, NotBorrowedByUser, ValidationFailed

LOAN_STATUSES = ("borrowed", "returned", "overdue")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def from_iso(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class ActiveLoan:
    """One borrower currently holding one copy."""
    user_id: str
    user_name: str
    borrowed_at: datetime
    due_date: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "userName": self.user_name,
            "borrowedAt": to_iso(self.borrowed_at),
            "dueDate": to_iso(self.due_date),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ActiveLoan":
        return ActiveLoan(
            user_id=data["userId"],
            user_name=data.get("userName", ""),
            borrowed_at=from_iso(data.get("borrowedAt")),
            due_date=from_iso(data.get("dueDate")),
        )


@dataclass
class LoanHistoryRecord:
    """Audit entry for a borrow; completed in place when the copy comes back."""
    user_id: str
    user_name: str
    borrowed_at: datetime
    due_date: datetime
    status: str = "borrowed"
    returned_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.status not in LOAN_STATUSES:
            raise ValueError(f"Unknown loan status: {self.status!r}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "userName": self.user_name,
            "borrowedAt": to_iso(self.borrowed_at),
            "returnedAt": to_iso(self.returned_at),
            "dueDate": to_iso(self.due_date),
            "status": self.status,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "LoanHistoryRecord":
        return LoanHistoryRecord(
            user_id=data["userId"],
            user_name=data.get("userName", ""),
            borrowed_at=from_iso(data.get("borrowedAt")),
            due_date=from_iso(data.get("dueDate")),
            status=data.get("status", "borrowed"),
            returned_at=from_iso(data.get("returnedAt")),
        )


class Book:
    """A catalog entry: one title with copy-count accounting and its loan ledger."""

    def __init__(self, title: str, author: str, isbn: str, genre: str | None = None,
                 description: str | None = None, published_year: int | None = None,
                 total_copies: int = 1, available_copies: int | None = None,
                 current_borrowers: List[ActiveLoan] | None = None,
                 borrow_history: List[LoanHistoryRecord] | None = None,
                 added_by: str | None = None, id: str | None = None,
                 created_at: str | None = None, updated_at: str | None = None,
                 version: int = 1) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip()
        self.genre = (genre or "").strip() or "General"
        self.description = (description or "").strip()
        self.published_year = published_year
        self.total_copies = int(total_copies)
        self.available_copies = self.total_copies if available_copies is None else int(available_copies)
        self.current_borrowers: List[ActiveLoan] = list(current_borrowers or [])
        self.borrow_history: List[LoanHistoryRecord] = list(borrow_history or [])
        self.added_by = added_by
        self.created_at = created_at
        self.updated_at = updated_at
        self.version = version
        self.is_available = self.available_copies > 0

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    # ------------------------- Copy accounting ------------------------- #
    def refresh_availability(self) -> None:
        self.is_available = self.available_copies > 0

    def active_loan_for(self, user_id: str) -> Optional[ActiveLoan]:
        for loan in self.current_borrowers:
            if loan.user_id == user_id:
                return loan
        return None

    def reserve_copy(self, user_id: str, user_name: str, now: Optional[datetime] = None,
                     loan_days: Optional[int] = None) -> datetime:
        """Hand one copy to ``user_id`` and return its due date."""
        if self.available_copies <= 0:
            raise NoCopiesAvailable()
        if self.active_loan_for(user_id) is not None:
            raise AlreadyBorrowed()

        borrowed_at = now or utcnow()
        due_date = borrowed_at + timedelta(days=settings.loan_period_days if loan_days is None else loan_days)

        self.current_borrowers.append(ActiveLoan(user_id, user_name, borrowed_at, due_date))
        self.borrow_history.append(LoanHistoryRecord(user_id, user_name, borrowed_at, due_date, status="borrowed"))
        self.available_copies -= 1
        self.refresh_availability()
        return due_date

    def release_copy(self, user_id: str, now: Optional[datetime] = None) -> None:
        """Take back the copy held by ``user_id`` and close its history record."""
        index = next((i for i, loan in enumerate(self.current_borrowers) if loan.user_id == user_id), None)
        if index is None:
            raise NotBorrowedByUser()

        returned_at = now or utcnow()
        self.current_borrowers.pop(index)

        # most recent open record wins
        for record in reversed(self.borrow_history):
            if record.user_id == user_id and record.status == "borrowed":
                record.status = "returned"
                record.returned_at = returned_at
                break

        self.available_copies += 1
        self.refresh_availability()

    def change_total_copies(self, new_total: int) -> None:
        """Resize the stock, shifting available copies by the same delta."""
        new_total = int(new_total)
        on_loan = len(self.current_borrowers)
        if new_total < 1:
            raise ValidationFailed("Validation failed", errors=["At least 1 copy is required"])
        if new_total < on_loan:
            raise ValidationFailed(
                "Validation failed",
                errors=[f"Total copies cannot be less than the {on_loan} copies currently borrowed"],
            )
        self.total_copies = new_total
        self.available_copies = new_total - on_loan
        self.refresh_availability()

    def invariant_violations(self) -> List[str]:
        problems = []
        if not 0 <= self.available_copies <= self.total_copies:
            problems.append("available copies out of range")
        if self.is_available != (self.available_copies > 0):
            problems.append("availability flag out of sync")
        if len(self.current_borrowers) != self.total_copies - self.available_copies:
            problems.append("active loans do not match copies on loan")
        borrowers = [loan.user_id for loan in self.current_borrowers]
        if len(borrowers) != len(set(borrowers)):
            problems.append("duplicate active loan for a borrower")
        return problems

    # ------------------------- Serialization ------------------------- #
    def to_dict(self, include_ledger: bool = True) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "genre": self.genre,
            "description": self.description,
            "publishedYear": self.published_year,
            "totalCopies": self.total_copies,
            "availableCopies": self.available_copies,
            "isAvailable": self.is_available,
            "addedBy": self.added_by,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if include_ledger:
            data["currentBorrowers"] = [loan.to_dict() for loan in self.current_borrowers]
            data["borrowHistory"] = [record.to_dict() for record in self.borrow_history]
        return data

    def summary(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "isAvailable": self.is_available,
            "availableCopies": self.available_copies,
            "totalCopies": self.total_copies,
        }

    def to_record(self) -> dict:
        """Column values for the ``books`` table."""
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "genre": self.genre,
            "description": self.description,
            "published_year": self.published_year,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "is_available": int(self.is_available),
            "current_borrowers": json.dumps([loan.to_dict() for loan in self.current_borrowers]),
            "borrow_history": json.dumps([record.to_dict() for record in self.borrow_history]),
            "added_by": self.added_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # Ledger columns come back from SQLite as JSON strings
        borrowers = data.get("current_borrowers") or []
        if isinstance(borrowers, str):
            borrowers = json.loads(borrowers)
        history = data.get("borrow_history") or []
        if isinstance(history, str):
            history = json.loads(history)

        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data["isbn"],
            genre=data.get("genre"),
            description=data.get("description"),
            published_year=data.get("published_year"),
            total_copies=data.get("total_copies", 1),
            available_copies=data.get("available_copies"),
            current_borrowers=[ActiveLoan.from_dict(item) for item in borrowers],
            borrow_history=[LoanHistoryRecord.from_dict(item) for item in history],
            added_by=data.get("added_by"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            version=data.get("version", 1),
        )
