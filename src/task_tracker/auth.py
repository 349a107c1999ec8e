"""
Password auth provider.

Implements sign-up with email confirmation, password sign-in, bearer-token
sessions and sign-out on top of the record store's ``auth_users`` and
``auth_sessions`` tables.
"""

import hashlib
import hmac
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .store import RecordStore

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6
PBKDF2_ITERATIONS = 200_000


class AuthError(Exception):
    """User-facing authentication failure; the message is safe to display."""


@dataclass(frozen=True)
class User:
    id: str
    email: str


@dataclass(frozen=True)
class Session:
    access_token: str
    user: User


@dataclass(frozen=True)
class PendingUser:
    """A registered account that still has to confirm its email."""

    user: User
    confirmation_token: str
    redirect_to: str


def _hash_password(password: str, salt: str) -> str:
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), PBKDF2_ITERATIONS)
    return digest.hex()


def _normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthProvider:
    """Session provider exposing current-user identity and sign-in/out."""

    def __init__(self, store: RecordStore):
        self._store = store

    def sign_up(self, email: str, password: str, redirect_to: str) -> PendingUser:
        """
        Register a new account pending email confirmation.

        Raises:
            AuthError: weak password or email already registered
        """
        email = _normalize_email(email)
        if "@" not in email:
            raise AuthError("Unable to validate email address: invalid format")
        if len(password) < MIN_PASSWORD_LENGTH:
            raise AuthError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
        if self._store.table("auth_users").eq("email", email).single() is not None:
            raise AuthError("User already registered")

        salt = secrets.token_hex(16)
        token = secrets.token_urlsafe(24)
        user_id = str(uuid.uuid4())
        self._store.table("auth_users").insert([{
            "id": user_id,
            "email": email,
            "password_hash": _hash_password(password, salt),
            "password_salt": salt,
            "confirmation_token": token,
            "redirect_to": redirect_to,
        }])
        logger.info(f"Registered user {user_id} pending email confirmation")
        return PendingUser(user=User(id=user_id, email=email), confirmation_token=token, redirect_to=redirect_to)

    def confirm_email(self, token: str) -> User:
        """Mark the account owning ``token`` as confirmed."""
        row = self._store.table("auth_users").eq("confirmation_token", token).single()
        if row is None:
            raise AuthError("Email link is invalid or has expired")
        self._store.table("auth_users").eq("id", row["id"]).update({
            "email_confirmed_at": datetime.now(timezone.utc),
            "confirmation_token": None,
        })
        logger.info(f"Confirmed email for user {row['id']}")
        return User(id=row["id"], email=row["email"])

    def sign_in_with_password(self, email: str, password: str) -> Session:
        """
        Exchange credentials for a session.

        Raises:
            AuthError: bad credentials or unconfirmed email
        """
        row = self._store.table("auth_users").eq("email", _normalize_email(email)).single()
        if row is None:
            raise AuthError("Invalid login credentials")
        expected = row["password_hash"]
        if not hmac.compare_digest(_hash_password(password, row["password_salt"]), expected):
            raise AuthError("Invalid login credentials")
        if not row["email_confirmed_at"]:
            raise AuthError("Email not confirmed")

        token = secrets.token_urlsafe(32)
        self._store.table("auth_sessions").insert([{"token": token, "user_id": row["id"]}])
        logger.info(f"User {row['id']} signed in")
        return Session(access_token=token, user=User(id=row["id"], email=row["email"]))

    def current_user(self, token: Optional[str]) -> Optional[User]:
        """Identity behind a session token, or None when signed out."""
        if not token:
            return None
        session = self._store.table("auth_sessions").eq("token", token).single()
        if session is None:
            return None
        row = self._store.table("auth_users").eq("id", session["user_id"]).single()
        if row is None:
            return None
        return User(id=row["id"], email=row["email"])

    def sign_out(self, token: str) -> None:
        removed = self._store.table("auth_sessions").eq("token", token).delete()
        if removed:
            logger.info("Session signed out")

    def active_session_count(self) -> int:
        return len(self._store.table("auth_sessions").select())
