"""
modules/policy/evaluator.py — License policy evaluation.

evaluate() decides whether a request may use a piece of content under its
RSL license. It is a pure function of (document, context, payment proof,
geo default): it never touches the store, never mutates the document, and
the same inputs always give the same Decision.

Checks run in a fixed order and the first failing one decides:

  1. every requested permission exists with allowed=true   -> permission_denied
  2. the requester's user type exists with allowed=true    -> user_type_not_allowed
  3. no geographic rule denies the requester's country     -> geographic_restriction
  4. permissions gated by the "payment" condition need proof -> payment_required
  5. grant the requested permissions with their restrictions
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional, Tuple

from core.base import PermissionType, UserType
from core.errors import ErrorCode, ServiceError
from modules.licenses.document import LicenseDocument


class Outcome(str, Enum):
    GRANT = "grant"
    DENY = "deny"
    PAYMENT_REQUIRED = "payment_required"


@dataclass(frozen=True)
class AccessContext:
    user_type: UserType
    country_code: str
    requested_permissions: Tuple[PermissionType, ...]

    @classmethod
    def build(cls, user_type, country_code: str, permissions: Iterable) -> "AccessContext":
        requested = []
        for p in permissions:
            p = PermissionType(p)
            if p not in requested:
                requested.append(p)
        return cls(UserType(user_type), (country_code or "").upper(), tuple(requested))


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    reason: Optional[ErrorCode] = None
    message: str = ""
    permissions: Tuple[str, ...] = ()
    restrictions: Tuple[str, ...] = ()
    denied_permissions: Tuple[str, ...] = ()
    gated_permissions: Tuple[str, ...] = ()
    payment_due: bool = False
    payment_model: Optional[dict] = None

    @property
    def granted(self) -> bool:
        return self.outcome == Outcome.GRANT

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"decision": self.outcome.value}
        if self.granted:
            data["permissions"] = list(self.permissions)
            data["restrictions"] = list(self.restrictions)
            data["paymentDue"] = self.payment_due
            if self.payment_due:
                data["requiredPermissions"] = list(self.gated_permissions)
                data["paymentModel"] = self.payment_model
        else:
            data["error"] = self.reason.value
            data["error_description"] = self.message
            if self.denied_permissions:
                data["deniedPermissions"] = list(self.denied_permissions)
            if self.outcome == Outcome.PAYMENT_REQUIRED:
                data["requiredPermissions"] = list(self.gated_permissions)
                data["paymentModel"] = self.payment_model
        return data

    def to_error(self) -> ServiceError:
        """The ServiceError a refused decision maps to."""
        details: dict[str, Any] = {}
        if self.denied_permissions:
            details["deniedPermissions"] = list(self.denied_permissions)
        if self.outcome == Outcome.PAYMENT_REQUIRED:
            details["requiredPermissions"] = list(self.gated_permissions)
            details["paymentModel"] = self.payment_model
        return ServiceError(self.reason, self.message, details)


def _deny(reason: ErrorCode, message: str, **kwargs) -> Decision:
    return Decision(Outcome.DENY, reason=reason, message=message, **kwargs)


def evaluate(
    document: LicenseDocument,
    context: AccessContext,
    payment_proof: Optional[Any] = None,
    geo_default_allow: bool = True,
) -> Decision:
    """Decide a request against a license. See the module docstring for the order."""
    # 1. permissions
    rules = []
    denied = []
    for requested in context.requested_permissions:
        rule = document.permission(requested)
        if rule is None or not rule.allowed:
            denied.append(requested.value)
        else:
            rules.append(rule)
    if denied:
        return _deny(
            ErrorCode.PERMISSION_DENIED,
            f"Permission(s) not granted by this license: {', '.join(denied)}",
            denied_permissions=tuple(denied),
        )

    # 2. user type
    user_rule = document.user_type(context.user_type)
    if user_rule is None or not user_rule.allowed:
        return _deny(
            ErrorCode.USER_TYPE_NOT_ALLOWED,
            f"User type '{context.user_type.value}' not allowed for this license",
        )

    # 3. geography
    geo_rule = document.country(context.country_code)
    geo_allowed = geo_rule.allowed if geo_rule is not None else geo_default_allow
    if not geo_allowed:
        return _deny(
            ErrorCode.GEOGRAPHIC_RESTRICTION,
            f"Access not allowed from country '{context.country_code}'",
        )

    # 4. payment
    gated = tuple(rule.type.value for rule in rules if rule.requires_payment)
    payment_model = document.payment_model.model_dump(mode="json", by_alias=True, exclude_none=True)
    if gated and payment_proof is None:
        return Decision(
            Outcome.PAYMENT_REQUIRED,
            reason=ErrorCode.PAYMENT_REQUIRED,
            message="Payment required for requested permissions",
            gated_permissions=gated,
            payment_model=payment_model,
        )

    # 5. grant
    restrictions = []
    for rule in rules:
        for r in rule.restrictions:
            if r not in restrictions:
                restrictions.append(r)
    return Decision(
        Outcome.GRANT,
        permissions=tuple(rule.type.value for rule in rules),
        restrictions=tuple(restrictions),
        gated_permissions=gated,
        payment_due=bool(gated),
        payment_model=payment_model if gated else None,
    )
