"""
modules/licenses/builder.py — Build a full RSL document from a short options form.

Most owners do not write permission tables by hand. They answer a few
questions (AI use? indexing? commercial use?) and the builder expands the
answers into a complete LicenseDocument with the platform defaults. Built-in
templates provide the same shortcut for the two most common licenses.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from core.audit import Actor
from core.base import PAYMENT_CONDITION, PaymentModelType, PermissionType, UserType, utcnow
from modules.licenses.document import (
    ContentInfo,
    Disclaimer,
    DocumentMetadata,
    AuditTrailEntry,
    GeographicRule,
    LicenseDocument,
    PaymentModel,
    PermissionRule,
    Pricing,
    UserTypeRule,
    Warranty,
    CamelModel,
    new_license_id,
)

ATTRIBUTION = "attribution"

DEFAULT_COUNTRIES = ["US", "CA", "GB", "DE", "FR", "JP", "AU"]

COMMERCIAL_PRICING = Pricing(per_crawl=0.01, per_inference=0.001, monthly_subscription=10, currency="USD")


class LicenseOptions(CamelModel):
    """The options form behind POST /licenses/from-options."""
    allow_ai_models: bool = False
    allow_indexing: bool = False
    commercial_use: Literal["yes", "no"] = "no"
    geographic_restrictions: List[GeographicRule] = []
    warranty: Optional[Warranty] = None
    disclaimer: Optional[Disclaimer] = None
    provenance_info: Optional[str] = None
    expires_at: Optional[datetime] = None
    template_id: Optional[str] = None


class FileInfo(CamelModel):
    name: str = Field(min_length=1, max_length=500)
    type: str = Field(min_length=1)
    size: int = Field(gt=0)
    hash: str = Field(min_length=1, max_length=128)
    url: Optional[str] = None


class LicenseTemplate(BaseModel):
    id: str
    name: str
    description: str
    permissions: List[PermissionRule]
    user_types: List[UserTypeRule]
    payment_model: PaymentModel
    geographic_restrictions: List[GeographicRule] = []
    is_default: bool = True

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "permissions": [p.model_dump(mode="json", by_alias=True) for p in self.permissions],
            "userTypes": [
                u.model_dump(mode="json", by_alias=True, exclude_none=True) for u in self.user_types
            ],
            "paymentModel": self.payment_model.model_dump(mode="json", by_alias=True, exclude_none=True),
            "geographicRestrictions": [
                g.model_dump(mode="json", by_alias=True) for g in self.geographic_restrictions
            ],
            "isDefault": self.is_default,
        }


# ============== Templates ==============

DEFAULT_TEMPLATES = {
    "template-free": LicenseTemplate(
        id="template-free",
        name="Free License",
        description="Free use with attribution required",
        permissions=[
            PermissionRule(type=PermissionType.SEARCH, allowed=True, conditions=[ATTRIBUTION]),
            PermissionRule(type=PermissionType.AI_SUMMARIZE, allowed=True, conditions=[ATTRIBUTION]),
        ],
        user_types=[
            UserTypeRule(type=UserType.INDIVIDUAL, allowed=True),
            UserTypeRule(type=UserType.EDUCATION, allowed=True),
            UserTypeRule(type=UserType.NONPROFIT, allowed=True),
        ],
        payment_model=PaymentModel(type=PaymentModelType.ATTRIBUTION,
                                   attribution_text="Attribution required"),
    ),
    "template-commercial": LicenseTemplate(
        id="template-commercial",
        name="Commercial License",
        description="Commercial use with payment required",
        permissions=[
            PermissionRule(type=t, allowed=True, conditions=[PAYMENT_CONDITION])
            for t in PermissionType
        ],
        user_types=[
            UserTypeRule(type=UserType.COMMERCIAL, allowed=True, pricing=COMMERCIAL_PRICING),
        ],
        payment_model=PaymentModel(type=PaymentModelType.PER_CRAWL, amount=0.01, currency="USD"),
    ),
}


def list_templates() -> List[dict]:
    return [t.to_json() for t in DEFAULT_TEMPLATES.values()]


# ============== Defaults ==============

def default_permissions(options: LicenseOptions) -> List[PermissionRule]:
    ai = options.allow_ai_models
    indexing = options.allow_indexing
    return [
        PermissionRule(type=PermissionType.TRAIN_AI, allowed=ai,
                       conditions=[ATTRIBUTION, PAYMENT_CONDITION] if ai else []),
        PermissionRule(type=PermissionType.SEARCH, allowed=indexing,
                       conditions=[ATTRIBUTION] if indexing else []),
        PermissionRule(type=PermissionType.AI_SUMMARIZE, allowed=ai,
                       conditions=[ATTRIBUTION] if ai else []),
        PermissionRule(type=PermissionType.ARCHIVE, allowed=indexing,
                       conditions=[ATTRIBUTION] if indexing else []),
        PermissionRule(type=PermissionType.ANALYSIS, allowed=ai,
                       conditions=[ATTRIBUTION] if ai else []),
    ]


def default_user_types(options: LicenseOptions) -> List[UserTypeRule]:
    commercial = options.commercial_use == "yes"
    rules = [
        UserTypeRule(
            type=UserType.COMMERCIAL,
            allowed=commercial,
            conditions=[PAYMENT_CONDITION] if commercial else [],
            pricing=COMMERCIAL_PRICING if commercial else None,
        )
    ]
    for user_type in (UserType.EDUCATION, UserType.GOVERNMENT, UserType.NONPROFIT, UserType.INDIVIDUAL):
        rules.append(UserTypeRule(type=user_type, allowed=True, conditions=[ATTRIBUTION]))
    return rules


def default_geographic_restrictions(options: LicenseOptions) -> List[GeographicRule]:
    if options.geographic_restrictions:
        return list(options.geographic_restrictions)
    return [GeographicRule(country_code=code, allowed=True) for code in DEFAULT_COUNTRIES]


def default_payment_model(options: LicenseOptions) -> PaymentModel:
    if options.commercial_use == "yes":
        return PaymentModel(type=PaymentModelType.PER_CRAWL, amount=0.01, currency="USD")
    if options.allow_ai_models or options.allow_indexing:
        return PaymentModel(type=PaymentModelType.ATTRIBUTION,
                            attribution_text="Attribution required for use")
    return PaymentModel(type=PaymentModelType.FREE)


def build_document(
    options: LicenseOptions,
    file_info: FileInfo,
    creator: str,
    actor: Actor,
    now: Optional[datetime] = None,
) -> LicenseDocument:
    """Expand an options form (or a template) into a complete document."""
    now = now or utcnow()
    license_id = new_license_id()

    template = DEFAULT_TEMPLATES.get(options.template_id) if options.template_id else None
    if template is not None:
        permissions = list(template.permissions)
        user_types = list(template.user_types)
        payment_model = template.payment_model
        geographic = list(options.geographic_restrictions or template.geographic_restrictions)
    else:
        permissions = default_permissions(options)
        user_types = default_user_types(options)
        payment_model = default_payment_model(options)
        geographic = default_geographic_restrictions(options)

    return LicenseDocument(
        license_id=license_id,
        created_at=now,
        expires_at=options.expires_at,
        content=ContentInfo(
            title=file_info.name,
            description=options.provenance_info or "Digital content with RSL license",
            file_type=file_info.type,
            file_size=file_info.size,
            hash=file_info.hash,
            url=file_info.url,
            content_type=file_info.type,
        ),
        permissions=permissions,
        user_types=user_types,
        geographic_restrictions=geographic,
        payment_model=payment_model,
        metadata=DocumentMetadata(
            creator=creator or "Unknown",
            provenance=options.provenance_info or "No provenance information provided",
            warranty=options.warranty or Warranty(),
            disclaimer=options.disclaimer or Disclaimer(),
            audit_trail=[
                AuditTrailEntry(
                    timestamp=now,
                    action="license_created",
                    user_id=actor.user_id or "anonymous",
                    ip_address=actor.ip_address or "unknown",
                    user_agent=actor.user_agent or "unknown",
                    details={
                        "licenseId": license_id,
                        "fileType": file_info.type,
                        "fileSize": file_info.size,
                    },
                )
            ],
        ),
    )
