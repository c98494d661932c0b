"""
Secret hashing for the OAuth module.

Client secrets are long-lived and low-volume: bcrypt via passlib.
Bearer tokens and authorization codes are looked up on every request:
they are random with >=128 bits of entropy, so a SHA-256 digest is enough
and can be indexed.
"""

import hashlib
import secrets

from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

TOKEN_PREFIX = "rsl_"
REFRESH_PREFIX = "rsl_refresh_"


def hash_secret(secret: str) -> str:
    """Hash a client secret for storage."""
    return pwd_context.hash(secret)


def verify_secret(plain: str, hashed: str) -> bool:
    """Verify a client secret against its hash."""
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        # malformed stored hash
        return False


def digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def new_token(prefix: str = TOKEN_PREFIX) -> str:
    """Opaque bearer value: prefix + 192 random bits as hex."""
    return f"{prefix}{secrets.token_hex(24)}"


def new_client_id() -> str:
    return f"{TOKEN_PREFIX}{secrets.token_hex(16)}"


def new_client_secret() -> str:
    return secrets.token_urlsafe(32)
