"""
Authentication utilities shared by every role (student, proctor, admin).

Access tokens are short-lived JWTs carrying the (subject_id, role) pair the
exam core trusts. Refresh tokens are opaque; only their SHA-256 digest is
stored on the user row, so a leaked database cannot mint sessions.
"""

import hashlib
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import bcrypt as _bcrypt
from jose import JWTError, jwt

# ─── Config ───────────────────────────────────────────────────────────────────

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "exam-integrity-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

TOKEN_TYPE_ACCESS = "access"


# ─── Password helpers ─────────────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return _bcrypt.hashpw(password.encode("utf-8"), _bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return _bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the row; treat as a failed login
        return False


# ─── Token helpers ─────────────────────────────────────────────────────────────

def create_access_token(subject_id: int, role: str, expires_delta: Optional[timedelta] = None, **claims) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = dict(claims)
    to_encode.update({"sub": str(subject_id), "role": role, "type": TOKEN_TYPE_ACCESS, "exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def create_refresh_token() -> Tuple[str, str]:
    """Return (token for the client, digest to store)."""
    token = secrets.token_urlsafe(48)
    return token, hash_refresh_token(token)


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def decode_token(token: str) -> Optional[dict]:
    """Decode an access token. Returns payload dict or None if invalid/expired."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except (JWTError, ValueError, TypeError):
        return None
    if payload.get("type") != TOKEN_TYPE_ACCESS or not payload.get("sub"):
        return None
    return payload
