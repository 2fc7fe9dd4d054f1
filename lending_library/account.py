from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from lending_library.book import from_iso, to_iso, utcnow
from lending_library.config import settings
from lending_library.errors import NotBorrowed

ADMIN = "Admin"
MEMBER = "Member"


def borrow_limit(role: str) -> int:
    """Maximum concurrent loans for a role."""
    return settings.admin_borrow_limit if role == ADMIN else settings.member_borrow_limit


@dataclass
class BorrowedItem:
    book_id: str
    borrowed_at: datetime
    due_date: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bookId": self.book_id,
            "borrowedAt": to_iso(self.borrowed_at),
            "dueDate": to_iso(self.due_date),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "BorrowedItem":
        return BorrowedItem(
            book_id=data["bookId"],
            borrowed_at=from_iso(data.get("borrowedAt")),
            due_date=from_iso(data.get("dueDate")),
        )


class BorrowerAccount:
    """A registered user and the loans they currently hold."""

    def __init__(self, name: str, email: str, password_hash: str, role: str = MEMBER,
                 borrowed_books: List[BorrowedItem] | None = None, is_active: bool = True,
                 id: str | None = None, created_at: str | None = None,
                 updated_at: str | None = None, version: int = 1) -> None:
        self.id = id
        self.name = name.strip()
        self.email = email.strip().lower()
        self.password_hash = password_hash
        self.role = role
        self.borrowed_books: List[BorrowedItem] = list(borrowed_books or [])
        self.is_active = bool(is_active)
        self.created_at = created_at
        self.updated_at = updated_at
        self.version = version

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN

    @property
    def borrow_limit(self) -> int:
        return borrow_limit(self.role)

    def can_borrow_more(self) -> bool:
        return len(self.borrowed_books) < self.borrow_limit

    def has_borrowed(self, book_id: str) -> bool:
        return self.borrowed_item(book_id) is not None

    def borrowed_item(self, book_id: str) -> Optional[BorrowedItem]:
        for item in self.borrowed_books:
            if item.book_id == book_id:
                return item
        return None

    def record_borrow(self, book_id: str, due_date: datetime, now: Optional[datetime] = None) -> None:
        # Limit and duplicate checks belong to the caller
        self.borrowed_books.append(BorrowedItem(book_id, now or utcnow(), due_date))

    def record_return(self, book_id: str) -> None:
        for index, item in enumerate(self.borrowed_books):
            if item.book_id == book_id:
                del self.borrowed_books[index]
                return
        raise NotBorrowed()

    # ------------------------- Serialization ------------------------- #
    def to_dict(self) -> dict:
        """Public view; never includes the credential hash."""
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "isActive": self.is_active,
            "borrowedBooks": [item.to_dict() for item in self.borrowed_books],
            "booksCount": len(self.borrowed_books),
            "borrowLimit": self.borrow_limit,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "password_hash": self.password_hash,
            "role": self.role,
            "borrowed_books": json.dumps([item.to_dict() for item in self.borrowed_books]),
            "is_active": int(self.is_active),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "version": self.version,
        }

    @staticmethod
    def from_dict(data: dict) -> "BorrowerAccount":
        items = data.get("borrowed_books") or []
        if isinstance(items, str):
            items = json.loads(items)
        return BorrowerAccount(
            id=data.get("id"),
            name=data["name"],
            email=data["email"],
            password_hash=data.get("password_hash", ""),
            role=data.get("role", MEMBER),
            borrowed_books=[BorrowedItem.from_dict(item) for item in items],
            is_active=bool(data.get("is_active", True)),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            version=data.get("version", 1),
        )
