import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer

from lending_library.config import settings
from lending_library.errors import AuthenticationFailed, LibraryError, PermissionDenied

_PBKDF2_ROUNDS = 120_000

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/token", auto_error=False)


@dataclass
class Principal:
    """The authenticated caller attached to a request."""
    id: str
    name: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "Admin"


# --- Credentials ---

def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), _PBKDF2_ROUNDS).hex()
    return f"{salt}${digest}"


def verify_password(password: str, hashed: str) -> bool:
    try:
        salt, _ = hashed.split("$", 1)
    except (AttributeError, ValueError):
        return False
    return hmac.compare_digest(hash_password(password, salt), hashed)


# --- Tokens: user_id|expiry|signature ---

def _sign(payload: str) -> str:
    return hmac.new(settings.secret_key.encode(), payload.encode(), hashlib.sha256).hexdigest()


def make_token(user_id: str, expires_in: Optional[timedelta] = None) -> str:
    expires_in = expires_in or timedelta(minutes=settings.token_expiration_minutes)
    expiry = int((datetime.now(timezone.utc) + expires_in).timestamp())
    payload = f"{user_id}|{expiry}"
    return f"{payload}|{_sign(payload)}"


def parse_token(token: Optional[str]) -> Optional[str]:
    """Return the user id for a valid, unexpired token, else None."""
    if not token:
        return None
    parts = token.split("|")
    if len(parts) != 3:
        return None
    user_id, expiry, signature = parts
    if not hmac.compare_digest(_sign(f"{user_id}|{expiry}"), signature):
        return None
    try:
        if int(expiry) < int(datetime.now(timezone.utc).timestamp()):
            return None
    except ValueError:
        return None
    return user_id


# --- FastAPI dependencies ---

def get_accounts(request: Request):
    return request.app.state.accounts


def get_current_user(token: Optional[str] = Depends(oauth2_scheme), accounts=Depends(get_accounts)) -> Principal:
    if not token:
        raise AuthenticationFailed("Access denied. No token provided.")
    user_id = parse_token(token)
    if not user_id:
        raise AuthenticationFailed()
    account = accounts.find_account(user_id)
    if account is None or not account.is_active:
        raise AuthenticationFailed("User not found or inactive")
    return Principal(id=account.id, name=account.name, role=account.role)


def get_optional_user(token: Optional[str] = Depends(oauth2_scheme), accounts=Depends(get_accounts)) -> Optional[Principal]:
    if not token:
        return None
    try:
        return get_current_user(token, accounts)
    except LibraryError:
        return None


def require_admin(current: Principal = Depends(get_current_user)) -> Principal:
    if not current.is_admin:
        raise PermissionDenied()
    return current
