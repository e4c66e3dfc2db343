"""Security utilities: JWT tokens, password hashing, token and API key generation."""

import hashlib
import secrets
import string
from datetime import datetime, timedelta, timezone

import bcrypt
import jwt

from watermeter.config import settings


# --- Password Hashing ---

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    return bcrypt.checkpw(password.encode(), hashed.encode())


# --- JWT Tokens ---

def create_access_token(user_id: str, role: str) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)
    payload = {
        "sub": user_id,
        "role": role,
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT token. Raises jwt.PyJWTError on failure."""
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])


# --- Prepaid token strings ---

def generate_token_string(length: int | None = None) -> str:
    """Generate a numeric redemption secret that can be typed on a keypad."""
    length = length or settings.token_length
    # No leading zero so the string survives firmware that parses it as a number
    first = secrets.choice(string.digits[1:])
    return first + "".join(secrets.choice(string.digits) for _ in range(length - 1))


# --- API keys ---

def generate_api_key() -> str:
    return f"{settings.api_key_prefix}{secrets.token_hex(24)}"


# --- Token Hash ---

def hash_token(token: str) -> str:
    """Hash a token for storage (not for password - just fingerprint)."""
    return hashlib.sha256(token.encode()).hexdigest()[:32]
