from typing import List, Optional

from pydantic import Field, field_validator, model_validator

from core.base import PaymentMethod, PermissionType, UserType
from modules.licenses.document import CamelModel


class PaymentInfo(CamelModel):
    method: PaymentMethod
    # Provider-specific payload (card token, wallet address, ...), passed through
    details: dict = Field(default_factory=dict)


class AccessRequest(CamelModel):
    """Body of /access/evaluate and /payments/process."""
    license_id: Optional[str] = None
    content_id: Optional[str] = None
    user_type: UserType
    country_code: str = Field(..., pattern=r"^[A-Za-z]{2}$")
    permissions: List[PermissionType] = Field(..., min_length=1)
    payment_info: Optional[PaymentInfo] = None
    idempotency_key: Optional[str] = Field(None, min_length=8, max_length=200)

    @field_validator("country_code")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def _needs_target(self):
        if not self.license_id and not self.content_id:
            raise ValueError("licenseId or contentId is required")
        return self
