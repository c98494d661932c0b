"""
RSL Platform — TokenService tests.

Issuance, introspection and expiry, client authentication, the
authorization_code and rsl grants, and the published signing keys.
Runs against a temporary SQLite store with a controllable clock.
"""

import jwt
import pytest

from core.audit import Actor
from core.base import GrantType
from core.errors import ErrorCode
from modules.tokens.models import AccessToken
from modules.tokens.schemas import AuthorizationCodeGrant, ClientCredentialsGrant, RslGrant
from modules.tokens.service import TOKEN_LIFETIME

from helpers import make_document

REDIRECT = "https://crawler.example.com/callback"


@pytest.fixture
def client_creds(tokens):
    result = tokens.register_client(
        "crawler", redirect_uris=[REDIRECT],
        grant_types=[GrantType.CLIENT_CREDENTIALS, GrantType.AUTHORIZATION_CODE, GrantType.RSL],
    )
    assert result.ok
    return result.value


@pytest.fixture
def license_id(licenses):
    result = licenses.create(make_document(), "owner-1", Actor(user_id="owner-1"))
    assert result.ok
    return result.value["licenseId"]


# ---------------------------------------------------------------------------
# Issue / introspect
# ---------------------------------------------------------------------------

class TestIssue:
    def test_tokens_are_distinct(self, tokens):
        values = {tokens.issue("license", "user-1", "client-1").access_token for _ in range(20)}
        assert len(values) == 20

    def test_every_issued_token_is_active(self, tokens):
        issued = [tokens.issue("license search", "user-1", "client-1") for _ in range(3)]
        for token in issued:
            assert tokens.introspect(token.access_token)["active"] is True

    def test_only_digest_is_stored(self, tokens, store):
        token = tokens.issue("license", "user-1", "client-1")
        with store.session() as db:
            stored = [row.token_hash for row in db.query(AccessToken).all()]
        assert token.access_token not in stored
        assert len(stored[0]) == 64

    def test_introspection_fields(self, tokens, settings, clock):
        token = tokens.issue("license search", "user-1", "client-1", license_id="rsl_" + "a" * 32)
        info = tokens.introspect(token.access_token)
        assert info["scope"] == "license search"
        assert info["client_id"] == "client-1"
        assert info["sub"] == "user-1"
        assert info["iss"] == settings.token_issuer
        assert info["rsl_license_id"] == "rsl_" + "a" * 32
        assert info["exp"] - info["iat"] == int(TOKEN_LIFETIME.total_seconds())
        assert info["iat"] == int(clock().timestamp())

    def test_response_body(self, tokens):
        body = tokens.issue("license", None, "client-1").to_response()
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 3600
        assert "refresh_token" not in body


class TestExpiry:
    def test_active_until_expiry_then_inactive_forever(self, tokens, clock):
        token = tokens.issue("license", "user-1", "client-1")

        clock.advance(seconds=TOKEN_LIFETIME.total_seconds())
        assert tokens.introspect(token.access_token)["active"] is True

        clock.advance(seconds=1)
        assert tokens.introspect(token.access_token) == {"active": False}

        clock.advance(days=30)
        assert tokens.introspect(token.access_token) == {"active": False}

    def test_unknown_and_expired_look_the_same(self, tokens, clock):
        token = tokens.issue("license", "user-1", "client-1")
        clock.advance(hours=2)
        assert tokens.introspect(token.access_token) == tokens.introspect("rsl_" + "0" * 48)

    def test_empty_token(self, tokens):
        assert tokens.introspect("") == {"active": False}


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

class TestClients:
    def test_secret_returned_once_and_verifies(self, tokens, client_creds):
        assert client_creds["client_secret_expires_at"] == 0
        auth = tokens.authenticate_client(client_creds["client_id"], client_creds["client_secret"])
        assert auth.ok

    def test_wrong_secret(self, tokens, client_creds):
        auth = tokens.authenticate_client(client_creds["client_id"], "not-the-secret")
        assert auth.error.code == ErrorCode.INVALID_CLIENT

    def test_missing_credentials(self, tokens):
        assert tokens.authenticate_client(None, None).error.code == ErrorCode.INVALID_CLIENT

    def test_authorization_code_needs_redirect(self, tokens):
        result = tokens.register_client("web", grant_types=[GrantType.AUTHORIZATION_CODE])
        assert result.error.code == ErrorCode.INVALID_REQUEST

    def test_redirect_must_be_http(self, tokens):
        result = tokens.register_client("web", redirect_uris=["javascript:alert(1)"])
        assert result.error.code == ErrorCode.INVALID_REQUEST

    def test_duplicate_client_id(self, tokens):
        assert tokens.register_client("a", client_id="fixed-id", client_secret="s1").ok
        assert tokens.register_client("b", client_id="fixed-id", client_secret="s2").error.code == ErrorCode.CONFLICT

    def test_default_client_from_settings(self, tokens, settings):
        settings.default_client_id = "bootstrap"
        settings.default_client_secret = "bootstrap-secret"
        assert tokens.ensure_default_client() == "bootstrap"
        # idempotent
        assert tokens.ensure_default_client() == "bootstrap"
        assert tokens.authenticate_client("bootstrap", "bootstrap-secret").ok


# ---------------------------------------------------------------------------
# Grants
# ---------------------------------------------------------------------------

class TestClientCredentialsGrant:
    def test_grant(self, tokens, client_creds):
        result = tokens.grant(ClientCredentialsGrant(
            grant_type="client_credentials",
            client_id=client_creds["client_id"], client_secret=client_creds["client_secret"],
        ))
        assert result.ok
        info = tokens.introspect(result.value["access_token"])
        assert info["client_id"] == client_creds["client_id"]
        assert "sub" not in info

    def test_basic_credentials_used_when_body_has_none(self, tokens, client_creds):
        result = tokens.grant(
            ClientCredentialsGrant(grant_type="client_credentials"),
            client_id=client_creds["client_id"], client_secret=client_creds["client_secret"],
        )
        assert result.ok

    def test_grant_type_not_registered(self, tokens):
        creds = tokens.register_client("cc-only").value
        result = tokens.grant(RslGrant(
            grant_type="rsl", license_id="rsl_" + "0" * 32,
            client_id=creds["client_id"], client_secret=creds["client_secret"],
        ))
        assert result.error.code == ErrorCode.UNSUPPORTED_GRANT_TYPE


class TestAuthorizationCode:
    def _code(self, tokens, client_creds, **kw):
        result = tokens.create_authorization_code(
            client_creds["client_id"], REDIRECT, "reader-7", scope="license search", **kw,
        )
        assert result.ok
        return result.value

    def _exchange(self, tokens, client_creds, code, redirect=REDIRECT):
        return tokens.grant(AuthorizationCodeGrant(
            grant_type="authorization_code", code=code, redirect_uri=redirect,
            client_id=client_creds["client_id"], client_secret=client_creds["client_secret"],
        ))

    def test_exchange(self, tokens, client_creds):
        body = self._code(tokens, client_creds, state="xyz")
        assert body["state"] == "xyz"
        result = self._exchange(tokens, client_creds, body["code"])
        assert result.ok
        assert result.value["refresh_token"].startswith("rsl_refresh_")
        assert tokens.introspect(result.value["access_token"])["sub"] == "reader-7"

    def test_code_is_single_use(self, tokens, client_creds):
        code = self._code(tokens, client_creds)["code"]
        assert self._exchange(tokens, client_creds, code).ok
        replay = self._exchange(tokens, client_creds, code)
        assert replay.error.code == ErrorCode.INVALID_GRANT

    def test_redirect_must_match(self, tokens, client_creds):
        code = self._code(tokens, client_creds)["code"]
        result = self._exchange(tokens, client_creds, code, redirect="https://evil.example.com/cb")
        assert result.error.code == ErrorCode.INVALID_GRANT

    def test_expired_code(self, tokens, client_creds, clock):
        code = self._code(tokens, client_creds)["code"]
        clock.advance(minutes=11)
        assert self._exchange(tokens, client_creds, code).error.code == ErrorCode.INVALID_GRANT

    def test_unregistered_redirect(self, tokens, client_creds):
        result = tokens.create_authorization_code(client_creds["client_id"], "https://other.example.com", "u")
        assert result.error.code == ErrorCode.INVALID_REQUEST


class TestRslGrant:
    def _grant(self, tokens, client_creds, **fields):
        return tokens.grant(RslGrant(
            grant_type="rsl",
            client_id=client_creds["client_id"], client_secret=client_creds["client_secret"],
            **fields,
        ))

    def test_bound_to_license(self, tokens, client_creds, license_id):
        result = self._grant(tokens, client_creds, license_id=license_id, scope="search ai-summarize")
        assert result.ok
        assert result.value["rsl_license_id"] == license_id
        assert result.value["scope"] == "license search ai-summarize"
        info = tokens.introspect(result.value["access_token"])
        assert info["rsl_license_id"] == license_id

    def test_by_content_id(self, tokens, client_creds, license_id):
        content_id = make_document().content.hash
        result = self._grant(tokens, client_creds, content_id=content_id, scope="search")
        assert result.value["rsl_license_id"] == license_id

    def test_denied_permission(self, tokens, client_creds, license_id):
        result = self._grant(tokens, client_creds, license_id=license_id, scope="archive")
        assert result.error.code == ErrorCode.PERMISSION_DENIED

    def test_unknown_permission(self, tokens, client_creds, license_id):
        result = self._grant(tokens, client_creds, license_id=license_id, scope="scrape")
        assert result.error.code == ErrorCode.INVALID_REQUEST

    def test_policy_evaluated_with_user_type(self, tokens, client_creds, license_id):
        result = self._grant(tokens, client_creds, license_id=license_id, scope="search",
                             user_type="government", country_code="us")
        assert result.error.code == ErrorCode.USER_TYPE_NOT_ALLOWED

    def test_payment_gated_scope_refused(self, tokens, client_creds, license_id):
        result = self._grant(tokens, client_creds, license_id=license_id, scope="train-ai",
                             user_type="individual", country_code="US")
        assert result.error.code == ErrorCode.PAYMENT_REQUIRED
        assert result.error.details["requiredPermissions"] == ["train-ai"]

    def test_inactive_license(self, tokens, licenses, client_creds, license_id):
        licenses.deactivate(license_id, "owner-1", Actor(user_id="owner-1"))
        result = self._grant(tokens, client_creds, license_id=license_id, scope="search")
        assert result.error.code == ErrorCode.LICENSE_NOT_FOUND


# ---------------------------------------------------------------------------
# Signing keys
# ---------------------------------------------------------------------------

class TestSigningKeys:
    def test_jwk_set(self, tokens):
        tokens.ensure_signing_key()
        keys = tokens.list_signing_keys()["keys"]
        assert len(keys) == 1
        key = keys[0]
        assert key["kty"] == "RSA"
        assert key["alg"] == "RS256"
        assert key["use"] == "sig"
        assert "d" not in key

    def test_ensure_is_idempotent(self, tokens):
        tokens.ensure_signing_key()
        tokens.ensure_signing_key()
        assert len(tokens.list_signing_keys()["keys"]) == 1

    def test_rotation_keeps_old_key_published(self, tokens, clock):
        first = tokens.rotate_signing_key()
        clock.advance(seconds=1)
        second = tokens.rotate_signing_key()
        kids = [k["kid"] for k in tokens.list_signing_keys()["keys"]]
        assert kids == [second["kid"], first["kid"]]

    def test_expired_keys_not_published(self, tokens, clock, settings):
        tokens.rotate_signing_key()
        clock.advance(days=settings.signing_key_lifetime_days + 1)
        assert tokens.list_signing_keys() == {"keys": []}

    def test_signature_verifies_with_published_key(self, tokens):
        tokens.ensure_signing_key()
        signed = tokens.sign({"sub": "payer-1", "txn": "txn_1"})
        header = jwt.get_unverified_header(signed)
        jwk = next(k for k in tokens.list_signing_keys()["keys"] if k["kid"] == header["kid"])
        claims = jwt.decode(
            signed, jwt.PyJWK(jwk).key, algorithms=["RS256"],
            options={"verify_iat": False},
        )
        assert claims["sub"] == "payer-1"
        assert claims["iss"] == "rsl-platform"
