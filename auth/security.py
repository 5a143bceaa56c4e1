"""
Teacher credentials and tokens.

Passwords are bcrypt hashes. Access tokens are short-lived HS256 JWTs carrying
the teacher id; refresh tokens are opaque random strings stored on the teacher
row and rotated on every refresh, so logout can revoke them server-side.
"""

import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt as _bcrypt
from jose import JWTError, jwt

# ─── Config ───────────────────────────────────────────────────────────────────

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "exam-desk-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))
TEACHER_ROLE = "teacher"

# bcrypt only looks at the first 72 bytes and newer releases refuse longer input
MAX_PASSWORD_BYTES = 72


# ─── Passwords ────────────────────────────────────────────────────────────────

def hash_password(password: str) -> str:
    raw = password.encode("utf-8")
    if len(raw) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return _bcrypt.hashpw(raw, _bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    if not plain or not hashed:
        return False
    raw = plain.encode("utf-8")
    if len(raw) > MAX_PASSWORD_BYTES:
        return False
    return _bcrypt.checkpw(raw, hashed.encode("utf-8"))


# ─── Tokens ───────────────────────────────────────────────────────────────────

def create_teacher_token(teacher_id: int, email: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    claims = {"sub": str(teacher_id), "role": TEACHER_ROLE, "email": email, "exp": expire}
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def create_refresh_token() -> str:
    return secrets.token_urlsafe(48)


def decode_token(token: str) -> Optional[dict]:
    """Payload of a valid, unexpired token, else None."""
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except (JWTError, ValueError, TypeError):
        return None


def teacher_id_from_token(token: str) -> Optional[int]:
    payload = decode_token(token)
    if not payload or payload.get("role") != TEACHER_ROLE:
        return None
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        return None
