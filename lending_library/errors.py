"""Error taxonomy shared by the catalog, account and lending layers.

Every error carries a stable machine-readable ``kind`` and the HTTP status the
API layer answers with. Messages are safe to show to users.
"""
from typing import List, Optional


class LibraryError(Exception):
    """Base class for all recoverable library errors."""

    kind = "LibraryError"
    status_code = 500
    default_message = "Library operation failed"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[str]] = None):
        self.message = message or self.default_message
        self.errors = errors or []
        super().__init__(self.message)

    def to_dict(self) -> dict:
        payload = {"success": False, "message": self.message, "kind": self.kind}
        if self.errors:
            payload["errors"] = list(self.errors)
        return payload


# --- NotFound ---
class NotFound(LibraryError):
    kind = "NotFound"
    status_code = 404
    default_message = "Not found"


class EntryNotFound(NotFound):
    kind = "EntryNotFound"
    default_message = "Book not found"


class AccountNotFound(NotFound):
    kind = "AccountNotFound"
    default_message = "User not found"


# --- ValidationFailed ---
class ValidationFailed(LibraryError):
    kind = "ValidationFailed"
    status_code = 400
    default_message = "Validation failed"


class DuplicateCode(ValidationFailed):
    kind = "DuplicateCode"
    default_message = "Book with this ISBN already exists"


class DuplicateEmail(ValidationFailed):
    kind = "DuplicateEmail"
    default_message = "User with this email already exists"


# --- PreconditionFailed ---
class PreconditionFailed(LibraryError):
    kind = "PreconditionFailed"
    status_code = 400
    default_message = "Operation not allowed in the current state"


class NotAvailable(PreconditionFailed):
    kind = "NotAvailable"
    default_message = "Book is not available for borrowing"


class NoCopiesAvailable(PreconditionFailed):
    kind = "NoCopiesAvailable"
    default_message = "No copies available for borrowing"


class AlreadyBorrowed(PreconditionFailed):
    kind = "AlreadyBorrowed"
    default_message = "You have already borrowed this book"


class NotBorrowed(PreconditionFailed):
    kind = "NotBorrowed"
    default_message = "You have not borrowed this book"


class NotBorrowedByUser(PreconditionFailed):
    kind = "NotBorrowedByUser"
    default_message = "Book is not borrowed by this user"


class BorrowLimitExceeded(PreconditionFailed):
    kind = "BorrowLimitExceeded"
    default_message = "Maximum borrowing limit reached"


class HasActiveLoans(PreconditionFailed):
    kind = "HasActiveLoans"
    default_message = "Cannot delete book that is currently borrowed"


# --- Conflict ---
class Conflict(LibraryError):
    kind = "Conflict"
    status_code = 409
    default_message = "The record was modified concurrently, please try again"


# --- Access control ---
class AuthenticationFailed(LibraryError):
    kind = "AuthenticationFailed"
    status_code = 401
    default_message = "Invalid or expired token"


class PermissionDenied(LibraryError):
    kind = "PermissionDenied"
    status_code = 403
    default_message = "Admins only"


class AccountInactive(PermissionDenied):
    kind = "AccountInactive"
    default_message = "Account is deactivated"


class TooManyRequests(LibraryError):
    kind = "TooManyRequests"
    status_code = 429
    default_message = "Too many requests from this IP, please try again later."


# --- Infrastructure ---
class StorageFailure(LibraryError):
    """Raised when the backing store fails; the underlying error is chained, never shown."""

    kind = "StorageFailure"
    status_code = 500
    default_message = "Internal storage error"
