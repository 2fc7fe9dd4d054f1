import logging
import sqlite3
import uuid
from typing import Optional

from lending_library.account import ADMIN, MEMBER, BorrowerAccount
from lending_library.book import utcnow
from lending_library.database import Database
from lending_library.errors import (
    AccountNotFound,
    AuthenticationFailed,
    DuplicateEmail,
    StorageFailure,
    ValidationFailed,
)
from lending_library.security import hash_password, verify_password
from lending_library.validators import TextValidator, UserValidator

logger = logging.getLogger(__name__)

USER_COLUMNS = (
    "id", "name", "email", "password_hash", "role", "borrowed_books",
    "is_active", "created_at", "updated_at", "version",
)
_SELECT_USERS = f"SELECT {', '.join(USER_COLUMNS)} FROM users"


class AccountStore:
    """Borrower accounts: registration, login and profile changes."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def fetch_account(self, conn: sqlite3.Connection, user_id: str) -> Optional[BorrowerAccount]:
        row = conn.execute(f"{_SELECT_USERS} WHERE id = ?", (user_id,)).fetchone()
        return BorrowerAccount.from_dict(dict(row)) if row else None

    def save_account(self, conn: sqlite3.Connection, account: BorrowerAccount) -> bool:
        """Compare-and-swap write of ``account``; False if the stored version moved on."""
        account.updated_at = utcnow().isoformat()
        record = account.to_record()
        cursor = conn.execute(
            """
            UPDATE users
            SET name = ?, password_hash = ?, role = ?, borrowed_books = ?, is_active = ?,
                updated_at = ?, version = version + 1
            WHERE id = ? AND version = ?
            """,
            (
                record["name"], record["password_hash"], record["role"], record["borrowed_books"],
                record["is_active"], record["updated_at"], account.id, account.version,
            ),
        )
        if cursor.rowcount != 1:
            return False
        account.version += 1
        return True

    def register(self, name: str, email: str, password: str, role: str = MEMBER) -> BorrowerAccount:
        UserValidator.validate_registration(name, email, password, role)
        now = utcnow().isoformat()
        account = BorrowerAccount(
            id=uuid.uuid4().hex,
            name=TextValidator.sanitize_text(name),
            email=UserValidator.normalize_email(email),
            password_hash=hash_password(password),
            role=role or MEMBER,
            created_at=now,
            updated_at=now,
        )
        record = account.to_record()
        try:
            with self.db.transaction() as conn:
                if conn.execute("SELECT 1 FROM users WHERE email = ?", (account.email,)).fetchone():
                    raise DuplicateEmail()
                conn.execute(
                    f"INSERT INTO users ({', '.join(USER_COLUMNS)}) VALUES ({', '.join('?' for _ in USER_COLUMNS)})",
                    tuple(record[column] for column in USER_COLUMNS),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateEmail() from exc
        except sqlite3.Error as exc:
            logger.exception("Could not register %s", account.email)
            raise StorageFailure() from exc
        logger.info("Registered %s account %s", account.role, account.id)
        return account

    def find_account(self, user_id: str) -> Optional[BorrowerAccount]:
        with self.db.connection() as conn:
            return self.fetch_account(conn, user_id)

    def get_account(self, user_id: str) -> BorrowerAccount:
        account = self.find_account(user_id)
        if account is None:
            raise AccountNotFound()
        return account

    def find_by_email(self, email: str) -> Optional[BorrowerAccount]:
        with self.db.connection() as conn:
            row = conn.execute(f"{_SELECT_USERS} WHERE email = ?", (UserValidator.normalize_email(email),)).fetchone()
            return BorrowerAccount.from_dict(dict(row)) if row else None

    def authenticate(self, email: str, password: str) -> BorrowerAccount:
        if not UserValidator.is_valid_email(email) or not password:
            raise ValidationFailed("Validation failed", errors=["Please provide a valid email address and password"])
        account = self.find_by_email(email)
        if account is None or not verify_password(password, account.password_hash):
            raise AuthenticationFailed("Invalid email or password")
        if not account.is_active:
            raise AuthenticationFailed("Account is deactivated")
        return account

    def _update(self, user_id: str, mutate) -> BorrowerAccount:
        try:
            with self.db.transaction() as conn:
                account = self.fetch_account(conn, user_id)
                if account is None:
                    raise AccountNotFound()
                mutate(account)
                # The write lock is held, so the version cannot have moved
                self.save_account(conn, account)
        except sqlite3.Error as exc:
            logger.exception("Could not update account %s", user_id)
            raise StorageFailure() from exc
        return account

    def update_profile(self, user_id: str, name: str) -> BorrowerAccount:
        if not TextValidator.validate_name(name):
            raise ValidationFailed("Validation failed", errors=["Name must be between 2 and 50 characters"])

        def rename(account: BorrowerAccount) -> None:
            account.name = TextValidator.sanitize_text(name)

        return self._update(user_id, rename)

    def change_password(self, user_id: str, current_password: str, new_password: str) -> None:
        if not UserValidator.is_valid_password(new_password):
            raise ValidationFailed("Validation failed", errors=["Password must be at least 6 characters long"])

        def rotate(account: BorrowerAccount) -> None:
            if not verify_password(current_password, account.password_hash):
                raise AuthenticationFailed("Current password is incorrect")
            account.password_hash = hash_password(new_password)

        self._update(user_id, rotate)
        logger.info("Password changed for account %s", user_id)

    def set_active(self, user_id: str, active: bool) -> BorrowerAccount:
        def toggle(account: BorrowerAccount) -> None:
            account.is_active = active

        return self._update(user_id, toggle)

    def ensure_admin(self, name: str, email: str, password: str) -> BorrowerAccount:
        """Return the admin with ``email``, creating it if needed."""
        existing = self.find_by_email(email)
        if existing is not None:
            return existing
        return self.register(name, email, password, role=ADMIN)
