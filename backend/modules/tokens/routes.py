"""RSL Platform — OAuth 2.0 endpoints: token, introspection, JWKs, clients, authorization."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import ValidationError

from core.dependencies import Principal, get_principal, get_service
from core.errors import ApiError, ErrorCode, ServiceError, unwrap
from modules.tokens.schemas import (
    SUPPORTED_GRANT_TYPES,
    AuthorizeRequest,
    ClientRegistrationRequest,
    IntrospectRequest,
    token_request_adapter,
)

log = logging.getLogger("rsl.api")

router = APIRouter(prefix="/oauth", tags=["OAuth"])

tokens_dep = get_service("TokenService")
basic_scheme = HTTPBasic(auto_error=False)

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _invalid_request(message: str) -> ApiError:
    return ApiError(ServiceError(ErrorCode.INVALID_REQUEST, message))


async def _read_body(request: Request) -> dict:
    """OAuth clients post forms; JSON is accepted as well."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise _invalid_request("Request body is not valid JSON")
        if not isinstance(body, dict):
            raise _invalid_request("Request body must be an object")
        return body
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    location = ".".join(str(p) for p in err.get("loc", ()) if p not in SUPPORTED_GRANT_TYPES)
    return f"{location}: {err['msg']}" if location else err["msg"]


@router.post("/token")
async def token(
    request: Request,
    basic: Optional[HTTPBasicCredentials] = Depends(basic_scheme),
    tokens=Depends(tokens_dep),
):
    """Token endpoint for the client_credentials, authorization_code and rsl grants."""
    body = await _read_body(request)
    grant_type = body.get("grant_type")
    if not grant_type:
        raise _invalid_request("grant_type is required")
    if grant_type not in SUPPORTED_GRANT_TYPES:
        raise ApiError(ServiceError(
            ErrorCode.UNSUPPORTED_GRANT_TYPE, f"Grant type '{grant_type}' is not supported",
        ))
    try:
        grant = token_request_adapter.validate_python(body)
    except ValidationError as e:
        raise _invalid_request(_first_error(e))

    result = tokens.grant(
        grant,
        client_id=basic.username if basic else None,
        client_secret=basic.password if basic else None,
    )
    return JSONResponse(content=unwrap(result), headers=NO_STORE)


@router.post("/introspect")
async def introspect(request: Request, tokens=Depends(tokens_dep)):
    body = await _read_body(request)
    try:
        req = IntrospectRequest.model_validate(body)
    except ValidationError as e:
        raise _invalid_request(_first_error(e))
    return tokens.introspect(req.token)


@router.get("/key")
async def jwk_set(tokens=Depends(tokens_dep)):
    """Public keys for verifying platform-signed receipts."""
    return tokens.list_signing_keys()


@router.post("/register", status_code=201)
async def register_client(body: ClientRegistrationRequest, tokens=Depends(tokens_dep)):
    """Dynamic client registration. The secret is only shown in this response."""
    return JSONResponse(
        status_code=201,
        content=unwrap(tokens.register_client(
            body.client_name, body.redirect_uris, body.grant_types, body.scope,
        )),
        headers=NO_STORE,
    )


@router.post("/authorize")
async def authorize(
    body: AuthorizeRequest,
    principal: Principal = Depends(get_principal),
    tokens=Depends(tokens_dep),
):
    """The authenticated subject approves a client; returns a one-time code."""
    return unwrap(tokens.create_authorization_code(
        body.client_id, body.redirect_uri, principal.id, scope=body.scope, state=body.state,
    ))
