"""Request bodies for the OAuth endpoints.

The token endpoint body is a discriminated union on ``grant_type``; field
names follow RFC 6749 (snake_case), unlike the camelCase license API.
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from core.base import GrantType, UserType


class _ClientAuth(BaseModel):
    # Either in the body or via HTTP Basic on the request
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


class ClientCredentialsGrant(_ClientAuth):
    grant_type: Literal["client_credentials"]
    scope: Optional[str] = None


class AuthorizationCodeGrant(_ClientAuth):
    grant_type: Literal["authorization_code"]
    code: str = Field(..., min_length=1)
    redirect_uri: str = Field(..., min_length=1)


class RslGrant(_ClientAuth):
    """Token bound to one license, optionally gated by a policy evaluation."""
    grant_type: Literal["rsl"]
    license_id: Optional[str] = None
    content_id: Optional[str] = None
    # Space separated permission types, e.g. "search ai-summarize"
    scope: Optional[str] = None
    user_type: Optional[UserType] = None
    country_code: Optional[str] = Field(None, pattern=r"^[A-Za-z]{2}$")

    @field_validator("country_code")
    @classmethod
    def _upper(cls, v):
        return v.upper() if v else v


TokenRequest = Annotated[
    Union[ClientCredentialsGrant, AuthorizationCodeGrant, RslGrant],
    Field(discriminator="grant_type"),
]

token_request_adapter = TypeAdapter(TokenRequest)

SUPPORTED_GRANT_TYPES = tuple(g.value for g in GrantType)


class IntrospectRequest(BaseModel):
    token: str
    token_type_hint: Optional[str] = None


class ClientRegistrationRequest(BaseModel):
    client_name: str = Field(..., min_length=1, max_length=200)
    redirect_uris: List[str] = Field(default_factory=list)
    grant_types: List[GrantType] = Field(default_factory=lambda: [GrantType.CLIENT_CREDENTIALS])
    scope: str = "license"


class AuthorizeRequest(BaseModel):
    client_id: str
    redirect_uri: str
    scope: Optional[str] = None
    state: Optional[str] = None
