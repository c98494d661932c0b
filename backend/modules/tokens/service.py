"""
modules/tokens/service.py — OAuth 2.0 token issuance and introspection.

TokenService owns clients, access tokens, authorization codes and the RSA
signing keys published at /oauth/key.

Tokens are opaque: the bearer value is random and only its SHA-256 digest is
stored. A token row is written once and never touched again; whether it is
active is decided at introspection time from expires_at, so expiry needs no
background job and cannot be undone by a concurrent write.
"""

import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm
from sqlalchemy.exc import IntegrityError

from core.base import GrantType, PermissionType, ensure_utc, utcnow
from core.config import Settings
from core.crypto import SecretBox
from core.errors import Err, ErrorCode, Ok, Result, fail
from core.store import Store
from modules.policy.evaluator import AccessContext, evaluate
from modules.tokens import hashing
from modules.tokens.models import AccessToken, AuthorizationCode, OAuthClient, SigningKey
from modules.tokens.schemas import AuthorizationCodeGrant, ClientCredentialsGrant, RslGrant

log = logging.getLogger("rsl.tokens")

TOKEN_LIFETIME = timedelta(hours=1)
AUTHORIZATION_CODE_LIFETIME = timedelta(minutes=10)
RSA_KEY_SIZE = 2048
LICENSE_SCOPE = "license"


@dataclass(frozen=True)
class IssuedToken:
    access_token: str
    client_id: str
    subject_id: Optional[str]
    scope: str
    issued_at: datetime
    expires_at: datetime
    license_id: Optional[str] = None
    refresh_token: Optional[str] = None

    def to_response(self) -> dict:
        body = {
            "access_token": self.access_token,
            "token_type": "Bearer",
            "expires_in": int((self.expires_at - self.issued_at).total_seconds()),
            "scope": self.scope,
        }
        if self.refresh_token:
            body["refresh_token"] = self.refresh_token
        if self.license_id:
            body["rsl_license_id"] = self.license_id
        return body


def _split_scope(scope: Optional[str]) -> list[str]:
    out = []
    for part in (scope or "").split():
        if part not in out:
            out.append(part)
    return out


def _epoch(value: datetime) -> int:
    return int(ensure_utc(value).timestamp())


class TokenService:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        secret_box: SecretBox,
        licenses,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.secret_box = secret_box
        self.licenses = licenses
        self.clock = clock

    # ============== Tokens ==============

    def issue(
        self,
        scope: str,
        subject_id: Optional[str],
        client_id: str,
        license_id: Optional[str] = None,
        refresh: bool = False,
    ) -> IssuedToken:
        """Insert a new token row. Never reuses or extends an existing token."""
        now = self.clock()
        value = hashing.new_token()
        refresh_value = hashing.new_token(hashing.REFRESH_PREFIX) if refresh else None
        record = AccessToken(
            token_hash=hashing.digest(value),
            refresh_token_hash=hashing.digest(refresh_value) if refresh_value else None,
            client_id=client_id,
            subject_id=subject_id,
            scope=scope,
            license_id=license_id,
            created_at=now,
            expires_at=now + TOKEN_LIFETIME,
        )
        with self.store.session() as db:
            db.add(record)
        log.info(f"Token issued: client={client_id} sub={subject_id} license={license_id} scope={scope!r}")
        return IssuedToken(
            access_token=value,
            client_id=client_id,
            subject_id=subject_id,
            scope=scope,
            issued_at=now,
            expires_at=now + TOKEN_LIFETIME,
            license_id=license_id,
            refresh_token=refresh_value,
        )

    def introspect(self, token: str) -> dict:
        """RFC 7662 introspection. Unknown and expired tokens look the same."""
        if not token:
            return {"active": False}
        with self.store.session() as db:
            record = (
                db.query(AccessToken)
                .filter(AccessToken.token_hash == hashing.digest(token))
                .first()
            )
            if record is None or not record.is_active(self.clock()):
                return {"active": False}
            info = {
                "active": True,
                "scope": record.scope,
                "client_id": record.client_id,
                "token_type": "Bearer",
                "exp": _epoch(record.expires_at),
                "iat": _epoch(record.created_at),
                "aud": record.client_id,
                "iss": self.settings.token_issuer,
            }
            if record.subject_id:
                info["sub"] = record.subject_id
                info["username"] = record.subject_id
            if record.license_id:
                info["rsl_license_id"] = record.license_id
            return info

    # ============== Clients ==============

    def register_client(
        self,
        name: str,
        redirect_uris: Iterable[str] = (),
        grant_types: Iterable = (GrantType.CLIENT_CREDENTIALS,),
        scope: str = LICENSE_SCOPE,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> "Result[dict]":
        """Create a client. The plaintext secret is returned here and never again."""
        grants = []
        for g in grant_types:
            g = GrantType(g).value
            if g not in grants:
                grants.append(g)
        uris = list(redirect_uris)
        for uri in uris:
            if not uri.startswith(("https://", "http://")):
                return fail(ErrorCode.INVALID_REQUEST, f"Invalid redirect URI: {uri}")
        if GrantType.AUTHORIZATION_CODE.value in grants and not uris:
            return fail(ErrorCode.INVALID_REQUEST,
                        "authorization_code clients need at least one redirect URI")

        now = self.clock()
        client_id = client_id or hashing.new_client_id()
        client_secret = client_secret or hashing.new_client_secret()
        try:
            with self.store.session() as db:
                db.add(OAuthClient(
                    client_id=client_id,
                    secret_hash=hashing.hash_secret(client_secret),
                    name=name,
                    redirect_uris=uris,
                    grant_types=grants,
                    scope=scope,
                    is_active=True,
                    created_at=now,
                ))
        except IntegrityError:
            return fail(ErrorCode.CONFLICT, f"Client {client_id} already exists")

        log.info(f"OAuth client registered: {client_id} ({name}) grants={grants}")
        return Ok({
            "client_id": client_id,
            "client_secret": client_secret,
            "client_name": name,
            "redirect_uris": uris,
            "grant_types": grants,
            "scope": scope,
            "client_id_issued_at": _epoch(now),
            "client_secret_expires_at": 0,
        })

    def authenticate_client(self, client_id: Optional[str], client_secret: Optional[str]) -> "Result[OAuthClient]":
        if not client_id or not client_secret:
            return fail(ErrorCode.INVALID_CLIENT, "Client authentication required")
        with self.store.session() as db:
            client = db.query(OAuthClient).filter(OAuthClient.client_id == client_id).first()
        if client is None or not client.is_active or not hashing.verify_secret(client_secret, client.secret_hash):
            log.warning(f"Client authentication failed for {client_id}")
            return fail(ErrorCode.INVALID_CLIENT, "Invalid client credentials")
        return Ok(client)

    def ensure_default_client(self) -> Optional[str]:
        """Create the bootstrap client from settings on first start."""
        client_id = self.settings.default_client_id
        secret = self.settings.default_client_secret
        if not client_id or not secret:
            return None
        with self.store.session() as db:
            exists = db.query(OAuthClient.id).filter(OAuthClient.client_id == client_id).first()
        if exists:
            return client_id
        result = self.register_client(
            "Default client",
            grant_types=[GrantType.CLIENT_CREDENTIALS, GrantType.RSL],
            client_id=client_id,
            client_secret=secret,
        )
        return client_id if result.ok else None

    # ============== Authorization codes ==============

    def create_authorization_code(
        self,
        client_id: str,
        redirect_uri: str,
        subject_id: str,
        scope: Optional[str] = None,
        state: Optional[str] = None,
    ) -> "Result[dict]":
        """A subject approves a client; returns a one-time code for the redirect."""
        with self.store.session() as db:
            client = db.query(OAuthClient).filter(OAuthClient.client_id == client_id).first()
            if client is None or not client.is_active:
                return fail(ErrorCode.INVALID_CLIENT, "Unknown client")
            if GrantType.AUTHORIZATION_CODE.value not in (client.grant_types or []):
                return fail(ErrorCode.UNSUPPORTED_GRANT_TYPE,
                            "Client is not allowed to use the authorization_code grant")
            if redirect_uri not in (client.redirect_uris or []):
                return fail(ErrorCode.INVALID_REQUEST, "redirect_uri is not registered for this client")

            code = secrets.token_urlsafe(32)
            now = self.clock()
            db.add(AuthorizationCode(
                code_hash=hashing.digest(code),
                client_id=client_id,
                redirect_uri=redirect_uri,
                scope=scope if scope is not None else client.scope,
                subject_id=subject_id,
                created_at=now,
                expires_at=now + AUTHORIZATION_CODE_LIFETIME,
            ))

        body = {
            "code": code,
            "redirect_uri": redirect_uri,
            "expires_in": int(AUTHORIZATION_CODE_LIFETIME.total_seconds()),
        }
        if state is not None:
            body["state"] = state
        return Ok(body)

    def exchange_authorization_code(self, client: OAuthClient, code: str, redirect_uri: str) -> "Result[IssuedToken]":
        now = self.clock()
        code_hash = hashing.digest(code)
        with self.store.session() as db:
            row = db.query(AuthorizationCode).filter(AuthorizationCode.code_hash == code_hash).first()
            if row is None or row.client_id != client.client_id:
                return fail(ErrorCode.INVALID_GRANT, "Invalid authorization code")
            if row.redirect_uri != redirect_uri:
                return fail(ErrorCode.INVALID_GRANT, "redirect_uri does not match the authorization request")
            if now > ensure_utc(row.expires_at):
                return fail(ErrorCode.INVALID_GRANT, "Authorization code expired")
            # Consume atomically; a concurrent exchange of the same code loses here
            consumed = (
                db.query(AuthorizationCode)
                .filter(AuthorizationCode.id == row.id, AuthorizationCode.consumed_at.is_(None))
                .update({AuthorizationCode.consumed_at: now}, synchronize_session=False)
            )
            if consumed != 1:
                log.warning(f"Authorization code replay for client {client.client_id}")
                return fail(ErrorCode.INVALID_GRANT, "Authorization code already used")
            scope, subject_id = row.scope, row.subject_id

        return Ok(self.issue(scope, subject_id, client.client_id, refresh=True))

    # ============== Grant dispatch ==============

    def grant(self, request, client_id: Optional[str] = None, client_secret: Optional[str] = None) -> "Result[dict]":
        """Handle one token endpoint request; returns the token response body."""
        auth = self.authenticate_client(request.client_id or client_id, request.client_secret or client_secret)
        if not auth.ok:
            return auth
        client = auth.value
        if request.grant_type not in (client.grant_types or []):
            return fail(ErrorCode.UNSUPPORTED_GRANT_TYPE,
                        f"Client is not allowed to use the {request.grant_type} grant")

        if isinstance(request, ClientCredentialsGrant):
            scope = request.scope if request.scope is not None else client.scope
            return Ok(self.issue(scope, None, client.client_id).to_response())
        if isinstance(request, AuthorizationCodeGrant):
            result = self.exchange_authorization_code(client, request.code, request.redirect_uri)
            return Ok(result.value.to_response()) if result.ok else result
        if isinstance(request, RslGrant):
            return self._rsl_grant(client, request)
        return fail(ErrorCode.UNSUPPORTED_GRANT_TYPE, f"Unsupported grant type: {request.grant_type}")

    def _rsl_grant(self, client: OAuthClient, request: RslGrant) -> "Result[dict]":
        loaded = self.licenses.load_active(license_id=request.license_id, content_id=request.content_id)
        if not loaded.ok:
            return loaded
        snapshot = loaded.value

        requested = []
        for part in _split_scope(request.scope):
            if part == LICENSE_SCOPE:
                continue
            try:
                requested.append(PermissionType(part))
            except ValueError:
                return fail(ErrorCode.INVALID_REQUEST, f"Unknown permission in scope: {part}")

        if request.user_type is not None:
            context = AccessContext.build(request.user_type, request.country_code or "", requested)
            decision = evaluate(snapshot.document, context,
                                geo_default_allow=self.settings.geo_default_allow)
            if not decision.granted:
                log.info(f"RSL grant refused for {snapshot.license_id}: {decision.reason.value}")
                return Err(decision.to_error())
            granted = list(decision.permissions)
        else:
            denied = []
            for p in requested:
                rule = snapshot.document.permission(p)
                if rule is None or not rule.allowed:
                    denied.append(p.value)
            if denied:
                return fail(ErrorCode.PERMISSION_DENIED,
                            f"Permission(s) not granted by this license: {', '.join(denied)}",
                            deniedPermissions=denied)
            granted = [p.value for p in requested]

        scope = " ".join([LICENSE_SCOPE] + granted)
        token = self.issue(scope, None, client.client_id, license_id=snapshot.license_id)
        return Ok(token.to_response())

    # ============== Signing keys ==============

    def rotate_signing_key(self) -> dict:
        """Generate a new RSA-2048 key. Older keys stay published until they expire."""
        now = self.clock()
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
        pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()
        kid = f"rsl-{now:%Y%m%d}-{secrets.token_hex(4)}"
        jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
        public_jwk = {
            "kty": "RSA",
            "use": "sig",
            "key_ops": ["verify"],
            "alg": "RS256",
            "kid": kid,
            "n": jwk["n"],
            "e": jwk["e"],
        }
        with self.store.session() as db:
            db.add(SigningKey(
                kid=kid,
                public_jwk=public_jwk,
                private_pem=self.secret_box.encrypt(pem),
                is_active=True,
                created_at=now,
                expires_at=now + timedelta(days=self.settings.signing_key_lifetime_days),
            ))
        log.info(f"Signing key rotated: {kid}")
        return public_jwk

    def ensure_signing_key(self) -> None:
        if not self._usable_keys():
            self.rotate_signing_key()

    def list_signing_keys(self) -> dict:
        """JWK set of active, unexpired keys, newest first."""
        return {"keys": [dict(k.public_jwk) for k in self._usable_keys()]}

    def sign(self, claims: dict, lifetime: Optional[timedelta] = None) -> str:
        """RS256 JWT over claims with the newest signing key."""
        keys = self._usable_keys()
        if not keys:
            self.rotate_signing_key()
            keys = self._usable_keys()
        key = keys[0]
        now = self.clock()
        payload = dict(claims)
        payload.setdefault("iss", self.settings.token_issuer)
        payload["iat"] = now
        if lifetime is not None:
            payload["exp"] = now + lifetime
        pem = self.secret_box.decrypt(key.private_pem)
        return jwt.encode(payload, pem, algorithm="RS256", headers={"kid": key.kid})

    def _usable_keys(self) -> list[SigningKey]:
        now = self.clock()
        with self.store.session() as db:
            rows = (
                db.query(SigningKey)
                .filter(SigningKey.is_active.is_(True))
                .order_by(SigningKey.created_at.desc(), SigningKey.id.desc())
                .all()
            )
        return [k for k in rows if k.expires_at is None or ensure_utc(k.expires_at) > now]
