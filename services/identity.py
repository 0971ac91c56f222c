"""User identity: password hashing, bearer tokens, registration and login."""
from __future__ import annotations

import hmac
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

import bcrypt
import jwt

from services.errors import AuthenticationError, ConflictError, StorageError, ValidationError

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
DEFAULT_TOKEN_TTL = timedelta(hours=8)
PASSWORD_HASH_ROUNDS = 10
BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
# bcrypt only reads the first 72 bytes; newer releases refuse anything longer.
MAX_PASSWORD_BYTES = 72

INVALID_CREDENTIALS = "Invalid credentials."


@dataclass(frozen=True)
class Principal:
    """The authenticated user a request acts on behalf of."""

    id: str
    name: Optional[str] = None
    role: Optional[str] = None
    area: Optional[str] = None

    def to_claims(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "role": self.role, "area": self.area}

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "Principal":
        if not claims.get("id"):
            raise AuthenticationError("invalid token")
        return cls(
            id=str(claims["id"]),
            name=claims.get("name"),
            role=claims.get("role"),
            area=claims.get("area"),
        )


# ----------------------------------------------------------------------
# Passwords
# ----------------------------------------------------------------------

def is_password_hash(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(BCRYPT_PREFIXES)


def validate_password(password: Any) -> str:
    """Return ``password`` if it can be hashed, else raise ``ValidationError``."""
    if not isinstance(password, str):
        raise ValidationError("Password must be a string.")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValidationError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes long.")
    return password


def hash_password(password: str, rounds: Optional[int] = None) -> str:
    salt = bcrypt.gensalt(rounds=rounds or PASSWORD_HASH_ROUNDS)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def check_password(password: str, stored_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash could not be verified")
        return False


def resolve_password(submitted: Optional[str], stored: Optional[str]) -> Optional[str]:
    """Pick the password value to persist for a user being saved.

    A plain submitted password is hashed; a submitted hash or a missing
    password keeps whatever is stored, so nothing is ever double-hashed or
    cleared.
    """
    if submitted and not is_password_hash(submitted):
        return hash_password(submitted)
    return stored


# ----------------------------------------------------------------------
# Tokens
# ----------------------------------------------------------------------

def issue_token(principal: Principal, secret: str, ttl: timedelta = DEFAULT_TOKEN_TTL) -> str:
    now = datetime.now(timezone.utc)
    payload = dict(principal.to_claims())
    payload["iat"] = now
    payload["exp"] = now + ttl
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def decode_token(token: str, secret: str) -> Principal:
    try:
        claims = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError as exc:
        logger.info("Rejected bearer token: %s", exc)
        raise AuthenticationError("invalid token") from exc
    return Principal.from_claims(claims)


def principal_from_header(header: Optional[str], secret: str) -> Principal:
    """Resolve an ``Authorization: Bearer <token>`` header to a principal."""
    if not header:
        raise AuthenticationError("no token")
    parts = header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        raise AuthenticationError("malformed token")
    return decode_token(parts[1], secret)


# ----------------------------------------------------------------------
# Registration & login
# ----------------------------------------------------------------------

def _public_user(row: Mapping[str, Any]) -> Dict[str, Any]:
    user = {key: row[key] for key in row.keys() if key != "password"}
    raw_ids = user.get("readThreadIds")
    try:
        decoded = json.loads(raw_ids) if raw_ids else []
    except (TypeError, json.JSONDecodeError):
        decoded = []
    user["readThreadIds"] = decoded if isinstance(decoded, list) else []
    return user


def register_user(conn: sqlite3.Connection, payload: Mapping[str, Any]) -> Dict[str, Any]:
    required = ("id", "name", "role", "area", "password")
    if not isinstance(payload, Mapping) or any(not payload.get(key) for key in required):
        raise ValidationError("All fields are required for registration.")
    validate_password(payload["password"])

    try:
        existing = conn.execute(
            "SELECT 1 FROM users WHERE id = ? OR name = ?",
            (payload["id"], payload["name"]),
        ).fetchone()
        if existing:
            raise ConflictError("The user id or name already exists.")

        read_thread_ids = payload.get("readThreadIds") or []
        conn.execute(
            "INSERT INTO users (id, name, role, area, password, readThreadIds) VALUES (?, ?, ?, ?, ?, ?)",
            (
                str(payload["id"]),
                payload["name"],
                payload["role"],
                payload["area"],
                hash_password(payload["password"]),
                json.dumps(read_thread_ids),
            ),
        )
        conn.commit()
    except sqlite3.Error as exc:
        if conn.in_transaction:
            conn.rollback()
        logger.exception("Registration failed for user %s", payload.get("id"))
        raise StorageError("Server error while registering the user.") from exc

    logger.info("Registered user %s", payload["id"])
    return {"message": "User registered successfully."}


def login_user(
    conn: sqlite3.Connection,
    payload: Mapping[str, Any],
    secret: str,
    ttl: timedelta = DEFAULT_TOKEN_TTL,
) -> Dict[str, Any]:
    """Verify credentials and return ``{token, user}``.

    A stored plain-text password that matches is rehashed before returning.
    """
    if not isinstance(payload, Mapping):
        raise ValidationError("Username and password are required.")
    name = payload.get("name") or payload.get("username")
    password = payload.get("password")
    if not name or not password:
        raise ValidationError("Username and password are required.")
    if not isinstance(name, str):
        raise ValidationError("Username must be a string.")
    validate_password(password)

    try:
        row = conn.execute("SELECT * FROM users WHERE name = ?", (name,)).fetchone()
        if row is None:
            raise AuthenticationError(INVALID_CREDENTIALS)

        stored = row["password"]
        if is_password_hash(stored):
            matched = check_password(password, stored)
        else:
            matched = bool(stored) and hmac.compare_digest(
                str(password).encode("utf-8"), str(stored).encode("utf-8")
            )
            if matched:
                logger.info("Upgrading password hash for user: %s", row["name"])
                conn.execute(
                    "UPDATE users SET password = ? WHERE id = ?",
                    (hash_password(password), row["id"]),
                )
                conn.commit()
    except sqlite3.Error as exc:
        if conn.in_transaction:
            conn.rollback()
        logger.exception("Login failed for user %s", name)
        raise StorageError("Server error during login.") from exc

    if not matched:
        raise AuthenticationError(INVALID_CREDENTIALS)

    principal = Principal(id=row["id"], name=row["name"], role=row["role"], area=row["area"])
    return {"token": issue_token(principal, secret, ttl), "user": _public_user(row)}


__all__ = [
    "Principal",
    "check_password",
    "decode_token",
    "hash_password",
    "is_password_hash",
    "issue_token",
    "login_user",
    "principal_from_header",
    "register_user",
    "resolve_password",
    "validate_password",
]
