"""
modules/licenses/rsl_xml.py — Canonical XML form of an RSL document.

generate() and parse() are inverses over a valid LicenseDocument.
generate() is deterministic: element order, attribute order, escaping and
indentation are fixed, so one document always serializes to the same bytes.
Optional values that are absent are left out instead of being written as
empty elements.
"""

import json
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from pydantic import ValidationError

from core.base import RSL_NAMESPACE, ensure_utc
from core.errors import ErrorCode, Ok, Result, fail
from modules.licenses.document import LicenseDocument

log = logging.getLogger("rsl.licenses")

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'
XSI_NAMESPACE = "http://www.w3.org/2001/XMLSchema-instance"

REQUIRED_SECTIONS = [
    "content",
    "permissions",
    "user-types",
    "geographic-restrictions",
    "payment-model",
    "metadata",
]


@dataclass
class ValidationReport:
    valid: bool
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"valid": self.valid, "errors": list(self.errors)}


# ============== Formatting helpers ==============

def _iso(value: datetime) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")


def _parse_iso(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))


def _num(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else repr(value)


def _bool(value: bool) -> str:
    return "true" if value else "false"


def _rsl(name: str) -> str:
    return f"rsl:{name}"


def _q(name: str) -> str:
    """Qualified tag as ElementTree reports it after parsing."""
    return f"{{{RSL_NAMESPACE}}}{name}"


def _sub(parent: ET.Element, name: str, text: Optional[str] = None, **attrs) -> ET.Element:
    el = ET.SubElement(parent, _rsl(name), {k.replace("_", "-"): v for k, v in attrs.items()})
    if text is not None:
        el.text = text
    return el


# ============== generate ==============

def generate(doc: LicenseDocument) -> str:
    """Serialize a document to canonical RSL XML."""
    attrs = {
        "xmlns:rsl": RSL_NAMESPACE,
        "xmlns:xsi": XSI_NAMESPACE,
        "xsi:schemaLocation": f"{RSL_NAMESPACE} {RSL_NAMESPACE}/schema/rsl-1.0.xsd",
        "version": doc.version,
        "id": doc.license_id,
        "created": _iso(doc.created_at),
    }
    if doc.expires_at:
        attrs["expires"] = _iso(doc.expires_at)
    root = ET.Element(_rsl("license"), attrs)

    content = _sub(root, "content")
    _sub(content, "title", doc.content.title)
    _sub(content, "description", doc.content.description)
    _sub(content, "type", doc.content.file_type)
    _sub(content, "size", str(doc.content.file_size))
    _sub(content, "hash", doc.content.hash, algorithm="sha256")
    if doc.content.url:
        _sub(content, "url", doc.content.url)
    _sub(content, "content-type", doc.content.content_type)

    permissions = _sub(root, "permissions")
    for rule in doc.permissions:
        el = _sub(permissions, "permission", type=rule.type.value, allowed=_bool(rule.allowed))
        for condition in rule.conditions:
            _sub(el, "condition", condition)
        for restriction in rule.restrictions:
            _sub(el, "restriction", restriction)

    user_types = _sub(root, "user-types")
    for rule in doc.user_types:
        el = _sub(user_types, "user-type", type=rule.type.value, allowed=_bool(rule.allowed))
        for condition in rule.conditions:
            _sub(el, "condition", condition)
        if rule.pricing:
            p = rule.pricing
            pricing = _sub(el, "pricing", currency=p.currency)
            if p.per_crawl is not None:
                _sub(pricing, "per-crawl", amount=_num(p.per_crawl), currency=p.currency)
            if p.per_inference is not None:
                _sub(pricing, "per-inference", amount=_num(p.per_inference), currency=p.currency)
            if p.monthly_subscription is not None:
                _sub(pricing, "monthly-subscription",
                     amount=_num(p.monthly_subscription), currency=p.currency)

    geo = _sub(root, "geographic-restrictions")
    for rule in doc.geographic_restrictions:
        el = _sub(geo, "country", code=rule.country_code, allowed=_bool(rule.allowed))
        for condition in rule.conditions:
            _sub(el, "condition", condition)

    pm = doc.payment_model
    payment = _sub(root, "payment-model", type=pm.type.value)
    if pm.amount is not None:
        _sub(payment, "amount", _num(pm.amount), currency=pm.currency or "USD")
    if pm.attribution_text:
        _sub(payment, "attribution-text", pm.attribution_text)
    if pm.subscription_period:
        _sub(payment, "subscription-period", pm.subscription_period)

    md = doc.metadata
    metadata = _sub(root, "metadata")
    _sub(metadata, "creator", md.creator)
    _sub(metadata, "provenance", md.provenance)
    warranty = _sub(metadata, "warranty")
    _sub(warranty, "ownership", _bool(md.warranty.ownership))
    _sub(warranty, "authority", _bool(md.warranty.authority))
    _sub(warranty, "non-infringement", _bool(md.warranty.non_infringement))
    _sub(warranty, "text", md.warranty.text)
    disclaimer = _sub(metadata, "disclaimer")
    _sub(disclaimer, "as-is", _bool(md.disclaimer.as_is))
    for limitation in md.disclaimer.liability_limitations:
        _sub(disclaimer, "liability-limitation", limitation)
    _sub(disclaimer, "text", md.disclaimer.text)
    trail = _sub(metadata, "audit-trail")
    for entry in md.audit_trail:
        el = _sub(trail, "entry", timestamp=_iso(entry.timestamp),
                  action=entry.action, user_id=entry.user_id)
        _sub(el, "ip-address", entry.ip_address)
        _sub(el, "user-agent", entry.user_agent)
        _sub(el, "details", json.dumps(entry.details, sort_keys=True, separators=(",", ":")))

    ET.indent(root, space="  ")
    return f"{XML_DECLARATION}\n{ET.tostring(root, encoding='unicode')}\n"


# ============== validate ==============

def _parse_root(xml: str):
    if not isinstance(xml, str) or not xml.strip():
        return None, "Empty XML document"
    try:
        return ET.fromstring(xml.encode("utf-8")), None
    except ET.ParseError as e:
        return None, f"Malformed XML: {e}"


def validate(xml: str) -> ValidationReport:
    """Structural check of an RSL XML document.

    Reports every problem found rather than stopping at the first, so a
    document missing two sections yields two named errors.
    """
    root, error = _parse_root(xml)
    if root is None:
        return ValidationReport(False, [error])

    if root.tag != _q("license"):
        if root.tag.rsplit("}", 1)[-1] == "license":
            return ValidationReport(False, ["Missing RSL namespace"])
        return ValidationReport(False, ["Missing RSL license root element"])

    errors = [
        f"Missing required element: rsl:{name}"
        for name in REQUIRED_SECTIONS
        if root.find(_q(name)) is None
    ]
    if not root.get("id"):
        errors.append("Missing license id attribute")
    return ValidationReport(not errors, errors)


# ============== parse ==============

def _text(parent: Optional[ET.Element], name: str, default: str = "") -> str:
    if parent is None:
        return default
    el = parent.find(_q(name))
    if el is None or el.text is None:
        return default
    return el.text


def _opt_text(parent: ET.Element, name: str) -> Optional[str]:
    el = parent.find(_q(name))
    return el.text if el is not None and el.text is not None else None


def _is_true(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


def _texts(parent: ET.Element, name: str) -> List[str]:
    return [el.text or "" for el in parent.findall(_q(name))]


def _to_dict(root: ET.Element) -> dict:
    content = root.find(_q("content"))
    payment = root.find(_q("payment-model"))
    metadata = root.find(_q("metadata"))

    permissions = [
        {
            "type": el.get("type"),
            "allowed": _is_true(el.get("allowed")),
            "conditions": _texts(el, "condition"),
            "restrictions": _texts(el, "restriction"),
        }
        for el in root.find(_q("permissions")).findall(_q("permission"))
    ]

    user_types = []
    for el in root.find(_q("user-types")).findall(_q("user-type")):
        rule = {
            "type": el.get("type"),
            "allowed": _is_true(el.get("allowed")),
            "conditions": _texts(el, "condition"),
        }
        pricing_el = el.find(_q("pricing"))
        if pricing_el is not None:
            pricing = {"currency": pricing_el.get("currency", "USD")}
            for tag, key in (("per-crawl", "perCrawl"), ("per-inference", "perInference"),
                             ("monthly-subscription", "monthlySubscription")):
                tier = pricing_el.find(_q(tag))
                if tier is not None:
                    pricing[key] = float(tier.get("amount"))
                    pricing["currency"] = tier.get("currency", pricing["currency"])
            rule["pricing"] = pricing
        user_types.append(rule)

    geographic = [
        {
            "countryCode": el.get("code"),
            "allowed": _is_true(el.get("allowed")),
            "conditions": _texts(el, "condition"),
        }
        for el in root.find(_q("geographic-restrictions")).findall(_q("country"))
    ]

    payment_model = {"type": payment.get("type")}
    amount = payment.find(_q("amount"))
    if amount is not None:
        payment_model["amount"] = float(amount.text)
        payment_model["currency"] = amount.get("currency", "USD")
    for tag, key in (("attribution-text", "attributionText"),
                     ("subscription-period", "subscriptionPeriod")):
        value = _opt_text(payment, tag)
        if value is not None:
            payment_model[key] = value

    warranty = metadata.find(_q("warranty"))
    disclaimer = metadata.find(_q("disclaimer"))
    trail = metadata.find(_q("audit-trail"))
    audit_trail = []
    if trail is not None:
        for el in trail.findall(_q("entry")):
            details = _text(el, "details", "{}")
            audit_trail.append({
                "timestamp": _parse_iso(el.get("timestamp")),
                "action": el.get("action"),
                "userId": el.get("user-id", "anonymous"),
                "ipAddress": _text(el, "ip-address", "unknown"),
                "userAgent": _text(el, "user-agent", "unknown"),
                "details": json.loads(details) if details else {},
            })

    doc = {
        "version": root.get("version"),
        "licenseId": root.get("id"),
        "createdAt": _parse_iso(root.get("created")),
        "content": {
            "title": _text(content, "title"),
            "description": _text(content, "description"),
            "fileType": _text(content, "type"),
            "fileSize": int(_text(content, "size", "0")),
            "hash": _text(content, "hash"),
            "contentType": _text(content, "content-type"),
        },
        "permissions": permissions,
        "userTypes": user_types,
        "geographicRestrictions": geographic,
        "paymentModel": payment_model,
        "metadata": {
            "creator": _text(metadata, "creator"),
            "provenance": _text(metadata, "provenance"),
            "auditTrail": audit_trail,
        },
    }
    url = _opt_text(content, "url")
    if url is not None:
        doc["content"]["url"] = url
    if root.get("expires"):
        doc["expiresAt"] = _parse_iso(root.get("expires"))
    if warranty is not None:
        doc["metadata"]["warranty"] = {
            "ownership": _is_true(_text(warranty, "ownership")),
            "authority": _is_true(_text(warranty, "authority")),
            "nonInfringement": _is_true(_text(warranty, "non-infringement")),
            "text": _text(warranty, "text"),
        }
    if disclaimer is not None:
        doc["metadata"]["disclaimer"] = {
            "asIs": _is_true(_text(disclaimer, "as-is")),
            "liabilityLimitations": _texts(disclaimer, "liability-limitation"),
            "text": _text(disclaimer, "text"),
        }
    return doc


def parse(xml: str) -> "Result[LicenseDocument]":
    """Read an RSL XML document back into a LicenseDocument."""
    report = validate(xml)
    if not report.valid:
        return fail(ErrorCode.INVALID_RSL_DOCUMENT, "RSL XML validation failed",
                    details=report.errors)
    root, _ = _parse_root(xml)
    try:
        return Ok(LicenseDocument.model_validate(_to_dict(root)))
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        ]
        return fail(ErrorCode.INVALID_RSL_DOCUMENT, "RSL document content is invalid",
                    details=errors)
    except (TypeError, ValueError, AttributeError) as e:
        log.warning(f"RSL XML could not be read: {e}")
        return fail(ErrorCode.INVALID_RSL_DOCUMENT, f"RSL document content is invalid: {e}",
                    details=[str(e)])
