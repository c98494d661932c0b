"""
RSL Platform — Core request dependencies.

Provides the FastAPI dependencies shared by every module router:
get_service() resolves a provider from the per-app ModuleRegistry,
get_principal() resolves the caller from a Bearer access token, and
get_actor() captures who made the request for the audit log.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer

from core.audit import Actor
from core.errors import ApiError, ErrorCode, ServiceError
from core.registry import ModuleRegistry

log = logging.getLogger("rsl.api")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/oauth/token", auto_error=False)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller behind a Bearer token."""
    client_id: str
    subject_id: Optional[str]
    scope: str
    license_id: Optional[str] = None

    @property
    def id(self) -> str:
        # Client-credentials tokens have no subject; the client acts for itself.
        return self.subject_id or self.client_id

    @property
    def scopes(self) -> set[str]:
        return set(self.scope.split()) if self.scope else set()


def get_registry(request: Request) -> ModuleRegistry:
    return request.app.state.registry


def get_service(interface_name: str) -> Callable:
    """Dependency factory: ``svc = Depends(get_service("TokenService"))``."""

    def _resolve(request: Request):
        return get_registry(request).require(interface_name)

    _resolve.__name__ = f"get_{interface_name}"
    return _resolve


def get_actor(request: Request) -> Actor:
    return Actor(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


async def get_optional_principal(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
) -> Optional[Principal]:
    """Resolve the caller, or None when no usable token was presented."""
    if not token:
        return None
    tokens = get_registry(request).require("TokenService")
    info = tokens.introspect(token)
    if not info.get("active"):
        return None
    return Principal(
        client_id=info["client_id"],
        subject_id=info.get("sub"),
        scope=info.get("scope", ""),
        license_id=info.get("rsl_license_id"),
    )


async def get_principal(
    principal: Optional[Principal] = Depends(get_optional_principal),
) -> Principal:
    """Resolve the caller or reject with 401."""
    if principal is None:
        raise ApiError(ServiceError(ErrorCode.UNAUTHORIZED, "Valid bearer token required"))
    return principal


async def get_request_actor(
    request: Request,
    principal: Optional[Principal] = Depends(get_optional_principal),
) -> Actor:
    """The audit actor, carrying the principal's id when authenticated."""
    actor = get_actor(request)
    if principal is None:
        return actor
    return Actor(user_id=principal.id, ip_address=actor.ip_address, user_agent=actor.user_agent)
