"""
modules/licenses/document.py — The RSL license document.

Pydantic models for the JSON form of an RSL document. Field names are
snake_case in Python and camelCase on the wire (``licenseId``,
``userTypes``, ``geographicRestrictions``, ...). The closed vocabularies
(permission types, user types, payment models) come from core.base, the
same enums the XML codec and the policy evaluator consume.
"""

import re
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from core.base import (
    PAYMENT_CONDITION,
    RSL_NAMESPACE,
    RSL_VERSION,
    PaymentModelType,
    PermissionType,
    UserType,
    ensure_utc,
    utcnow,
)

LICENSE_ID_PATTERN = r"^rsl_[0-9a-f]{32}$"
CURRENCY_PATTERN = r"^[A-Z]{3}$"
COUNTRY_PATTERN = r"^[A-Z]{2}$"

# Characters XML 1.0 cannot carry, escaped or not
_XML_ILLEGAL = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")


def new_license_id() -> str:
    return f"rsl_{uuid.uuid4().hex}"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("*")
    @classmethod
    def xml_safe_text(cls, value):
        _reject_xml_illegal(value)
        return value


def _reject_xml_illegal(value) -> None:
    if isinstance(value, str):
        match = _XML_ILLEGAL.search(value)
        if match:
            raise ValueError(f"character U+{ord(match.group()):04X} is not allowed in XML")
    elif isinstance(value, dict):
        for key, item in value.items():
            _reject_xml_illegal(key)
            _reject_xml_illegal(item)
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            _reject_xml_illegal(item)


# ============== Content ==============

class ContentInfo(CamelModel):
    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    file_type: str = Field(min_length=1)
    file_size: int = Field(gt=0)
    hash: str = Field(min_length=1, max_length=128)
    url: Optional[str] = None
    content_type: str = Field(min_length=1)


# ============== Rules ==============

class PermissionRule(CamelModel):
    type: PermissionType
    allowed: bool
    conditions: List[str] = []
    restrictions: List[str] = []

    @property
    def requires_payment(self) -> bool:
        return PAYMENT_CONDITION in self.conditions


class Pricing(CamelModel):
    per_crawl: Optional[float] = Field(default=None, gt=0)
    per_inference: Optional[float] = Field(default=None, gt=0)
    monthly_subscription: Optional[float] = Field(default=None, gt=0)
    currency: str = Field(default="USD", pattern=CURRENCY_PATTERN)


class UserTypeRule(CamelModel):
    type: UserType
    allowed: bool
    conditions: List[str] = []
    pricing: Optional[Pricing] = None


class GeographicRule(CamelModel):
    country_code: str = Field(pattern=COUNTRY_PATTERN)
    allowed: bool
    conditions: List[str] = []

    @field_validator("country_code", mode="before")
    @classmethod
    def _upper(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class PaymentModel(CamelModel):
    type: PaymentModelType
    amount: Optional[float] = Field(default=None, gt=0)
    currency: Optional[str] = Field(default=None, pattern=CURRENCY_PATTERN)
    attribution_text: Optional[str] = None
    subscription_period: Optional[str] = None

    @model_validator(mode="after")
    def _currency_with_amount(self):
        if self.amount is not None and self.currency is None:
            self.currency = "USD"
        return self


# ============== Metadata ==============

class Warranty(CamelModel):
    ownership: bool = False
    authority: bool = False
    non_infringement: bool = False
    text: str = "No warranty provided"


class Disclaimer(CamelModel):
    as_is: bool = True
    liability_limitations: List[str] = [
        "Content provided as-is without warranty",
        "No liability for damages arising from use",
    ]
    text: str = "Use at your own risk"


class AuditTrailEntry(CamelModel):
    timestamp: datetime
    action: str
    user_id: str = "anonymous"
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    details: Dict[str, Any] = {}

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)


class DocumentMetadata(CamelModel):
    creator: str = "Unknown"
    provenance: str = "No provenance information provided"
    warranty: Warranty = Field(default_factory=Warranty)
    disclaimer: Disclaimer = Field(default_factory=Disclaimer)
    audit_trail: List[AuditTrailEntry] = []


# ============== Document ==============

class LicenseDocument(CamelModel):
    """A complete RSL license for one piece of content."""

    namespace: str = RSL_NAMESPACE
    version: str = RSL_VERSION
    license_id: str = Field(default_factory=new_license_id, pattern=LICENSE_ID_PATTERN)
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    content: ContentInfo
    permissions: List[PermissionRule]
    user_types: List[UserTypeRule]
    geographic_restrictions: List[GeographicRule] = []
    payment_model: PaymentModel
    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)

    @field_validator("namespace")
    @classmethod
    def _namespace(cls, v):
        if v != RSL_NAMESPACE:
            raise ValueError(f"namespace must be {RSL_NAMESPACE}")
        return v

    @field_validator("created_at", "expires_at")
    @classmethod
    def _utc(cls, v):
        return ensure_utc(v)

    @model_validator(mode="after")
    def _one_rule_per_key(self):
        _reject_duplicates("permission type", [p.type.value for p in self.permissions])
        _reject_duplicates("user type", [u.type.value for u in self.user_types])
        _reject_duplicates("country", [g.country_code for g in self.geographic_restrictions])
        return self

    # -- lookups used by the evaluator --------------------------------------

    def permission(self, permission_type: PermissionType) -> Optional[PermissionRule]:
        for rule in self.permissions:
            if rule.type == permission_type:
                return rule
        return None

    def user_type(self, user_type: UserType) -> Optional[UserTypeRule]:
        for rule in self.user_types:
            if rule.type == user_type:
                return rule
        return None

    def country(self, country_code: str) -> Optional[GeographicRule]:
        code = (country_code or "").upper()
        for rule in self.geographic_restrictions:
            if rule.country_code == code:
                return rule
        return None

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _reject_duplicates(label: str, values: List[str]) -> None:
    seen, dupes = set(), set()
    for v in values:
        if v in seen:
            dupes.add(v)
        seen.add(v)
    if dupes:
        dupes = sorted(dupes)
        raise ValueError(f"duplicate {label} rule(s): {', '.join(dupes)}")
