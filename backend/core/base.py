"""
core/base.py — Declarative Base and shared enums.

All ORM models import Base from here.
Every closed vocabulary of the RSL document (permission types, user types,
payment models) and of the webhook surface lives here, so that document
generation, validation, and policy evaluation consume one definition.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy.orm import declarative_base

Base = declarative_base()

# SQLAlchemy 2.x defaults to using enum member NAMES as DB values.
# We want member VALUES (lowercase strings) instead.
_ENUM_VALUES = lambda x: [e.value for e in x]

RSL_NAMESPACE = "https://rslstandard.org/rsl"
RSL_VERSION = "1.0"


class PermissionType(str, Enum):
    TRAIN_AI = "train-ai"
    SEARCH = "search"
    AI_SUMMARIZE = "ai-summarize"
    ARCHIVE = "archive"
    ANALYSIS = "analysis"


class UserType(str, Enum):
    COMMERCIAL = "commercial"
    EDUCATION = "education"
    GOVERNMENT = "government"
    NONPROFIT = "nonprofit"
    INDIVIDUAL = "individual"


class PaymentModelType(str, Enum):
    FREE = "free"
    ATTRIBUTION = "attribution"
    PER_CRAWL = "per-crawl"
    PER_INFERENCE = "per-inference"
    SUBSCRIPTION = "subscription"


class WebhookEvent(str, Enum):
    """Events a webhook subscription may subscribe to."""
    LICENSE_CREATED = "license.created"
    LICENSE_UPDATED = "license.updated"
    LICENSE_EXPIRED = "license.expired"
    PAYMENT_COMPLETED = "payment.completed"
    USAGE_DETECTED = "usage.detected"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"
    REFUNDING = "refunding"
    REFUNDED = "refunded"


class GrantType(str, Enum):
    CLIENT_CREDENTIALS = "client_credentials"
    AUTHORIZATION_CODE = "authorization_code"
    RSL = "rsl"


class PaymentMethod(str, Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    CRYPTO = "crypto"


# Condition string that gates a permission behind payment
PAYMENT_CONDITION = "payment"


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
