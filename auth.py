from __future__ import annotations

from dataclasses import dataclass
import hashlib
import secrets
from typing import Any, Dict, Optional

from itsdangerous import BadData, URLSafeTimedSerializer
from passlib.context import CryptContext


SESSION_COOKIE_NAME = "pixboard_session"
BCRYPT_ROUNDS = 10

pwd_context = CryptContext(
    schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS
)


@dataclass
class SessionToken:
    token: str
    token_hash: str


class CookieSigner:
    """Signs raw session tokens before they are handed to the browser."""

    def __init__(self, secret_key: str, *, max_age: int) -> None:
        self.serializer = URLSafeTimedSerializer(secret_key, salt="pixboard.session")
        self.max_age = max_age

    def sign(self, token: str) -> str:
        return self.serializer.dumps(token)

    def unsign(self, value: Optional[str]) -> Optional[str]:
        """Return the raw token, or None when the cookie was tampered with or is stale."""
        if not value:
            return None
        try:
            token = self.serializer.loads(value, max_age=self.max_age)
        except BadData:
            return None
        return token if isinstance(token, str) else None


def generate_session_token() -> SessionToken:
    """Create a random token; only its hash is ever written to the database."""
    token = secrets.token_urlsafe(32)
    return SessionToken(token=token, token_hash=hash_session_token(token))


def hash_session_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def hash_password(plain: str) -> str:
    """Wrap passlib's bcrypt hash generator."""
    return pwd_context.hash(plain)


def verify_password(plain: str, hashed: str) -> bool:
    """Compare a plaintext password against the stored hash."""
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        return False


def cookie_settings(*, secure: bool = False, max_age: int) -> Dict[str, Any]:
    """Standard cookie arguments that make session cookies httponly and samesite=lax."""
    return {
        "http_only": True,
        "same_site": "Lax",
        "secure": secure,
        "max_age": max_age,
        "path": "/",
    }


def cookie_clear_settings() -> Dict[str, Any]:
    """Special cookie instructions required to immediately forget a session."""
    return {
        "max_age": 0,
        "expires": "Thu, 01 Jan 1970 00:00:00 GMT",
        "path": "/",
        "secure": False,
        "http_only": True,
        "same_site": "Lax",
    }
