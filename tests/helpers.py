"""
Shared test helpers for the RSL Platform test suite.

Consolidates the license document factory and the OAuth client/token
helpers used across test files.
"""

import copy

from modules.licenses.document import LicenseDocument

API = "/api/v1"

CONTENT_HASH = "9f2c" + "0" * 60

BASE_DOCUMENT = {
    "content": {
        "title": "Field Notes on Alpine Lichens",
        "description": "Long-form article with photographs",
        "fileType": "text/html",
        "fileSize": 48213,
        "hash": CONTENT_HASH,
        "url": "https://example.org/articles/lichens",
        "contentType": "text/html",
    },
    "permissions": [
        {"type": "search", "allowed": True, "conditions": ["attribution"],
         "restrictions": ["no-redistribution"]},
        {"type": "ai-summarize", "allowed": True, "conditions": ["attribution"]},
        {"type": "train-ai", "allowed": True, "conditions": ["payment"]},
        {"type": "archive", "allowed": False},
    ],
    "userTypes": [
        {"type": "individual", "allowed": True},
        {"type": "education", "allowed": True, "conditions": ["attribution"]},
        {"type": "commercial", "allowed": True, "conditions": ["payment"],
         "pricing": {"perCrawl": 0.05, "currency": "USD"}},
        {"type": "government", "allowed": False},
    ],
    "geographicRestrictions": [
        {"countryCode": "DE", "allowed": True},
        {"countryCode": "KP", "allowed": False},
    ],
    "paymentModel": {"type": "per-crawl", "amount": 0.05, "currency": "USD"},
    "metadata": {
        "creator": "Alpine Review",
        "provenance": "Original reporting, 2024 field season",
    },
}


def document_json(**overrides) -> dict:
    """A valid license document body (camelCase); top-level keys may be overridden."""
    doc = copy.deepcopy(BASE_DOCUMENT)
    doc.update(overrides)
    return doc


def make_document(**overrides) -> LicenseDocument:
    return LicenseDocument.model_validate(document_json(**overrides))


def auth_headers(token):
    """Return auth headers dict with Bearer token."""
    return {"Authorization": f"Bearer {token}"}


def register_client(client, name="Test crawler", grant_types=("client_credentials", "rsl"), **extra):
    """Register an OAuth client through the API; returns the registration body."""
    resp = client.post(f"{API}/oauth/register", json={
        "client_name": name,
        "grant_types": list(grant_types),
        **extra,
    })
    assert resp.status_code == 201, resp.text
    return resp.json()


def client_token(client, creds, **form):
    """client_credentials token for a registered client, or None on failure."""
    resp = client.post(f"{API}/oauth/token", data={
        "grant_type": "client_credentials",
        "client_id": creds["client_id"],
        "client_secret": creds["client_secret"],
        **form,
    })
    if resp.status_code == 200:
        return resp.json()["access_token"]
    return None
