"""
modules/tokens/models.py — ORM models for the OAuth domain.

Owns tables: oauth_clients, access_tokens, authorization_codes, signing_keys

Secrets are never stored in plaintext: client secrets are bcrypt hashes,
access/refresh tokens and authorization codes are SHA-256 digests, and
private signing keys are Fernet-encrypted PEM.
"""

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text, event

from core.base import Base, ensure_utc, utcnow
from core.models import AppendOnlyViolation


class OAuthClient(Base):
    """A registered API client."""
    __tablename__ = "oauth_clients"

    id = Column(Integer, primary_key=True)
    client_id = Column(String(64), unique=True, nullable=False, index=True)
    secret_hash = Column(String(255), nullable=False)
    name = Column(String(200), nullable=False)
    redirect_uris = Column(JSON, nullable=False, default=list)
    grant_types = Column(JSON, nullable=False, default=list)
    scope = Column(String(500), nullable=False, default="")
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<OAuthClient {self.client_id} ({self.name})>"


class AccessToken(Base):
    """
    An issued bearer token.

    Rows are written once. Whether a token is active is derived from
    expires_at at read time; nothing is ever written back.
    """
    __tablename__ = "access_tokens"

    id = Column(Integer, primary_key=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    refresh_token_hash = Column(String(64), unique=True, nullable=True, index=True)
    client_id = Column(String(64), nullable=False, index=True)
    subject_id = Column(String(100), nullable=True, index=True)
    scope = Column(String(500), nullable=False, default="")
    license_id = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    def is_active(self, now) -> bool:
        return now <= ensure_utc(self.expires_at)

    def __repr__(self):
        return f"<AccessToken {self.id} client={self.client_id} sub={self.subject_id}>"


@event.listens_for(AccessToken, "before_update")
def _reject_token_update(mapper, connection, target):
    raise AppendOnlyViolation(f"access token {target.id} is immutable")


class AuthorizationCode(Base):
    """A one-time code approved by a subject for a client and redirect URI."""
    __tablename__ = "authorization_codes"

    id = Column(Integer, primary_key=True)
    code_hash = Column(String(64), unique=True, nullable=False, index=True)
    client_id = Column(String(64), nullable=False, index=True)
    redirect_uri = Column(String(2000), nullable=False)
    scope = Column(String(500), nullable=False, default="")
    subject_id = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)


class SigningKey(Base):
    """An RSA key pair published as a JWK at /oauth/key."""
    __tablename__ = "signing_keys"

    id = Column(Integer, primary_key=True)
    kid = Column(String(64), unique=True, nullable=False, index=True)
    kty = Column(String(10), nullable=False, default="RSA")
    use = Column(String(10), nullable=False, default="sig")
    alg = Column(String(10), nullable=False, default="RS256")
    public_jwk = Column(JSON, nullable=False)
    private_pem = Column(Text, nullable=False)  # Fernet-encrypted
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<SigningKey {self.kid} active={self.is_active}>"
