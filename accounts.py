"""User accounts: registration, password checks and session tokens.

Nicknames are the login key and the identity used as album owner. Passwords
are stored as bcrypt hashes; a successful login yields a signed JWT whose
subject is the nickname.
"""
import logging
import re
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import bcrypt
import jwt

from database import get_db_connection, initialize_database

logger = logging.getLogger(__name__)

ALLOWED_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9\-._@+]+$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+$")
MIN_PASSWORD_LENGTH = 1
# bcrypt ignores (newer releases reject) anything past 72 bytes
MAX_PASSWORD_BYTES = 72
TOKEN_ISSUER = "album-catalog"


class AccountError(Exception):
    pass


class UnknownUserError(AccountError):
    pass


class InvalidPasswordError(AccountError):
    pass


class InvalidTokenError(AccountError):
    pass


def hash_password(password: str, rounds: int = 12) -> str:
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError as e:
        logger.error(f"Password verification failed: {e}")
        return False


def _error(code: str, description: str) -> Dict[str, str]:
    return {"code": code, "description": description}


class AccountStore:
    """Registered users kept in the `users` table."""

    def __init__(self, db_file: Optional[str] = None, rounds: int = 12) -> None:
        self.db_file = db_file
        self.rounds = rounds
        initialize_database(self.db_file)

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    def validate(self, nickname: str, password: str, email: str) -> List[Dict[str, str]]:
        errors: List[Dict[str, str]] = []
        if not nickname or not ALLOWED_USERNAME_PATTERN.match(nickname):
            errors.append(_error("InvalidUserName",
                                 f"Username '{nickname}' is invalid, can only contain letters or digits."))
        if not EMAIL_PATTERN.match(email or ""):
            errors.append(_error("InvalidEmail", f"Email '{email}' is invalid."))
        if password is None or len(password) < MIN_PASSWORD_LENGTH:
            errors.append(_error("PasswordTooShort",
                                 f"Passwords must be at least {MIN_PASSWORD_LENGTH} characters."))
        elif len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
            errors.append(_error("PasswordTooLong",
                                 f"Passwords must be at most {MAX_PASSWORD_BYTES} bytes."))

        conn = self._connect()
        try:
            if nickname and conn.execute("SELECT 1 FROM users WHERE normalized_username = ?",
                                         (nickname.casefold(),)).fetchone():
                errors.append(_error("DuplicateUserName", f"Username '{nickname}' is already taken."))
            if email and conn.execute("SELECT 1 FROM users WHERE normalized_email = ?",
                                      (email.casefold(),)).fetchone():
                errors.append(_error("DuplicateEmail", f"Email '{email}' is already taken."))
        finally:
            conn.close()
        return errors

    def register(self, nickname: str, password: str, email: Optional[str] = None) -> List[Dict[str, str]]:
        """Create a user. Returns a list of validation errors, empty on success."""
        if not email:
            email = f"{nickname}@local.test"
        errors = self.validate(nickname, password, email)
        if errors:
            return errors

        password_hash = hash_password(password, self.rounds)
        conn = self._connect()
        try:
            conn.execute(
                "INSERT INTO users (username, normalized_username, email, normalized_email, password_hash) "
                "VALUES (?, ?, ?, ?, ?)",
                (nickname, nickname.casefold(), email, email.casefold(), password_hash),
            )
        except sqlite3.IntegrityError:
            # Lost a race with a concurrent registration for the same name or email
            return [_error("DuplicateUserName", f"Username '{nickname}' is already taken.")]
        finally:
            conn.close()
        logger.info(f"Registered user {nickname}")
        return []

    def authenticate(self, nickname: str, password: str) -> str:
        """Return the stored username when the password matches."""
        conn = self._connect()
        try:
            row = conn.execute("SELECT username, password_hash FROM users WHERE normalized_username = ?",
                               ((nickname or "").casefold(),)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise UnknownUserError("Login failed: nickname not found.")
        if not verify_password(password or "", row["password_hash"]):
            logger.warning(f"Failed login for {row['username']}")
            raise InvalidPasswordError("Login failed: wrong password.")
        return row["username"]

    def list_usernames(self) -> List[str]:
        conn = self._connect()
        try:
            return [row["username"] for row in conn.execute("SELECT username FROM users ORDER BY id")]
        finally:
            conn.close()


class TokenService:
    """Signs and verifies access tokens carrying the user's nickname."""

    def __init__(self, secret_key: str, algorithm: str = "HS256", expiration_minutes: int = 10080) -> None:
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expiration_minutes = expiration_minutes

    def issue(self, username: str) -> str:
        now = datetime.now(tz=timezone.utc)
        payload = {
            "sub": username,
            "iat": now,
            "exp": now + timedelta(minutes=self.expiration_minutes),
            "iss": TOKEN_ISSUER,
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def decode(self, token: str) -> str:
        """Return the token's subject, raising InvalidTokenError if it can't be trusted."""
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm], issuer=TOKEN_ISSUER,
                                 options={"require": ["sub", "exp"]})
        except jwt.PyJWTError as e:
            raise InvalidTokenError(f"Invalid token: {e}") from e
        return payload["sub"]
