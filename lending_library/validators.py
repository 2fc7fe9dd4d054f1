import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from lending_library.errors import ValidationFailed

ROLES = ("Admin", "Member")

_EMAIL_RE = re.compile(r"^\w+([.-]?\w+)*@\w+([.-]?\w+)*(\.\w{2,3})+$")
_ISBN_RE = re.compile(
    r"^(?:ISBN(?:-1[03])?:? )?(?=[0-9X]{10}$|(?=(?:[0-9]+[- ]){3})[- 0-9X]{13}$|97[89][0-9]{10}$"
    r"|(?=(?:[0-9]+[- ]){4})[- 0-9]{17}$)(?:97[89][- ]?)?[0-9]{1,5}[- ]?[0-9]+[- ]?[0-9]+[- ]?[0-9X]$"
)


class ISBNValidator:
    """Shape check for catalog codes: ISBN-10 or ISBN-13, hyphens or spaces allowed."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return raw.strip()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        if not isbn or not isinstance(isbn, str):
            return False
        return bool(_ISBN_RE.match(isbn.strip()))


class TextValidator:
    """Length checks and whitespace sanitization for free-text fields."""

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        if not text or not isinstance(text, str):
            return ""
        return re.sub(r"\s+", " ", text.strip())

    @staticmethod
    def _within(text: Optional[str], low: int, high: int) -> bool:
        if not text or not isinstance(text, str):
            return False
        return low <= len(text.strip()) <= high

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        return TextValidator._within(title, 1, 200)

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        return TextValidator._within(author, 2, 100)

    @staticmethod
    def validate_genre(genre: Optional[str]) -> bool:
        # optional
        if not genre:
            return True
        return isinstance(genre, str) and len(genre.strip()) <= 50

    @staticmethod
    def validate_description(description: Optional[str]) -> bool:
        if not description:
            return True
        return isinstance(description, str) and len(description.strip()) <= 1000

    @staticmethod
    def validate_name(name: Optional[str]) -> bool:
        return TextValidator._within(name, 2, 50)


class BookValidator:
    """Validates catalog entry input before it reaches the store."""

    @staticmethod
    def is_valid_published_year(year: Any) -> bool:
        if year is None or year == "":
            return True
        try:
            numeric = int(year)
        except (TypeError, ValueError):
            return False
        return 1000 <= numeric <= datetime.now().year

    @staticmethod
    def is_valid_copies(copies: Any) -> bool:
        try:
            numeric = int(copies)
        except (TypeError, ValueError):
            return False
        return 1 <= numeric <= 1000

    @staticmethod
    def collect_errors(data: Dict[str, Any], partial: bool = False) -> List[str]:
        """Return every validation message for ``data``.

        With ``partial`` only the keys present in ``data`` are checked, which is
        what an update needs.
        """
        errors: List[str] = []

        def check(key: str) -> bool:
            return not partial or key in data

        if check("title") and not TextValidator.validate_title(data.get("title")):
            errors.append("Title is required and must be between 1 and 200 characters")
        if check("author") and not TextValidator.validate_author(data.get("author")):
            errors.append("Author name is required and must be between 2 and 100 characters")
        if check("isbn") and not ISBNValidator.is_valid_isbn(data.get("isbn")):
            errors.append("Please provide a valid ISBN")
        if check("genre") and not TextValidator.validate_genre(data.get("genre")):
            errors.append("Genre must be 50 characters or less")
        if check("description") and not TextValidator.validate_description(data.get("description")):
            errors.append("Description must be 1000 characters or less")
        if check("published_year") and not BookValidator.is_valid_published_year(data.get("published_year")):
            errors.append("Published year must be valid and not in the future")
        if check("total_copies"):
            copies = data.get("total_copies")
            if copies is None and not partial:
                copies = 1
            if not BookValidator.is_valid_copies(copies):
                errors.append("Total copies must be between 1 and 1000")
        return errors

    @staticmethod
    def validate(data: Dict[str, Any], partial: bool = False) -> None:
        errors = BookValidator.collect_errors(data, partial=partial)
        if errors:
            raise ValidationFailed("Validation failed", errors=errors)

    @staticmethod
    def sanitize(data: Dict[str, Any]) -> Dict[str, Any]:
        out = dict(data)
        for key in ("title", "author", "genre", "description"):
            if key in out and out[key] is not None:
                out[key] = TextValidator.sanitize_text(out[key])
        if "isbn" in out:
            out["isbn"] = ISBNValidator.normalize_isbn(out["isbn"])
        if "published_year" in out:
            year = out["published_year"]
            out["published_year"] = int(year) if year not in ("", None) else None
        if out.get("total_copies") is not None:
            out["total_copies"] = int(out["total_copies"])
        return out


class UserValidator:
    """Registration and login input checks."""

    @staticmethod
    def normalize_email(email: Optional[str]) -> str:
        if not email or not isinstance(email, str):
            return ""
        return email.strip().lower()

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        if not email or not isinstance(email, str):
            return False
        return bool(_EMAIL_RE.match(email.strip().lower()))

    @staticmethod
    def is_valid_password(password: Optional[str]) -> bool:
        return isinstance(password, str) and len(password) >= 6

    @staticmethod
    def is_valid_role(role: Optional[str]) -> bool:
        return role in ROLES

    @staticmethod
    def validate_registration(name: Optional[str], email: Optional[str], password: Optional[str],
                              role: Optional[str] = None) -> None:
        errors = []
        if not TextValidator.validate_name(name):
            errors.append("Name must be between 2 and 50 characters")
        if not UserValidator.is_valid_email(email):
            errors.append("Please provide a valid email address")
        if not UserValidator.is_valid_password(password):
            errors.append("Password must be at least 6 characters long")
        if role and not UserValidator.is_valid_role(role):
            errors.append("Invalid user role specified")
        if errors:
            raise ValidationFailed("Validation failed", errors=errors)
