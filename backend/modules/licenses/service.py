"""
modules/licenses/service.py — License lifecycle.

LicenseService owns the licenses table: create, update, deactivate, list,
and the expiry sweep. Every write regenerates the canonical XML, appends to
the audit log in the same unit of work, and publishes the matching
license.* event on the bus once the write has committed.

Other modules read licenses only through load_active(), which fails closed:
a deactivated or expired license is reported as not found.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

import core.audit as audit_actions
from core.audit import Actor, AuditLog, SYSTEM_ACTOR
from core.base import ensure_utc, utcnow
from core.errors import ErrorCode, Ok, Result, fail
from core.events import LICENSE_CREATED, LICENSE_EXPIRED, LICENSE_UPDATED
from core.interfaces.event_bus import Event, EventBus
from core.store import Store
from modules.licenses import rsl_xml
from modules.licenses.builder import DEFAULT_TEMPLATES, FileInfo, LicenseOptions, build_document
from modules.licenses.document import AuditTrailEntry, LicenseDocument
from modules.licenses.models import LicenseRecord

log = logging.getLogger("rsl.licenses")

LIST_STATUSES = ("all", "active", "inactive", "expired")


@dataclass(frozen=True)
class LicenseSnapshot:
    """An active license as other modules see it."""
    license_id: str
    owner_id: str
    content_id: str
    version: int
    document: LicenseDocument


def license_summary(record: LicenseRecord) -> dict:
    return {
        "licenseId": record.license_id,
        "ownerId": record.owner_id,
        "contentId": record.content_id,
        "title": record.title,
        "isActive": bool(record.is_active),
        "expiresAt": _iso(record.expires_at),
        "createdAt": _iso(record.created_at),
        "updatedAt": _iso(record.updated_at),
        "version": record.version,
    }


def license_detail(record: LicenseRecord) -> dict:
    data = license_summary(record)
    data["document"] = record.document
    data["xmlContent"] = record.xml
    return data


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def _trail_entry(action: str, actor: Actor, now: datetime, details: dict) -> AuditTrailEntry:
    return AuditTrailEntry(
        timestamp=now,
        action=action,
        user_id=actor.user_id or "anonymous",
        ip_address=actor.ip_address or "unknown",
        user_agent=actor.user_agent or "unknown",
        details=details,
    )


class LicenseService:
    def __init__(
        self,
        store: Store,
        audit: AuditLog,
        bus: EventBus,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.audit = audit
        self.bus = bus
        self.clock = clock

    # ============== Create ==============

    def create(self, document: LicenseDocument, owner_id: str, actor: Actor) -> "Result[dict]":
        """Register a license from a complete, already-validated document."""
        now = self.clock()
        if not document.metadata.audit_trail:
            entry = _trail_entry(
                audit_actions.LICENSE_CREATED, actor, now,
                {"licenseId": document.license_id, "title": document.content.title},
            )
            metadata = document.metadata.model_copy(update={"audit_trail": [entry]})
            document = document.model_copy(update={"metadata": metadata})

        xml = rsl_xml.generate(document)
        report = rsl_xml.validate(xml)
        if not report.valid:
            return fail(ErrorCode.INVALID_RSL_DOCUMENT, "RSL XML validation failed",
                        details=report.errors)

        try:
            with self.store.session() as db:
                record = LicenseRecord(
                    license_id=document.license_id,
                    owner_id=owner_id,
                    content_id=document.content.hash,
                    title=document.content.title,
                    document=document.to_json(),
                    xml=xml,
                    is_active=True,
                    expires_at=document.expires_at,
                    created_at=now,
                    updated_at=now,
                )
                db.add(record)
                db.flush()
                self.audit.append(
                    record.license_id, actor, audit_actions.LICENSE_CREATED,
                    {"title": record.title, "contentId": record.content_id}, db=db,
                )
                view = license_detail(record)
        except IntegrityError:
            return fail(ErrorCode.CONFLICT, f"License {document.license_id} already exists")

        log.info(f"License created: {view['licenseId']} owner={owner_id} title={view['title']!r}")
        self._publish(LICENSE_CREATED, {
            "license_id": view["licenseId"],
            "owner_id": owner_id,
            "content_id": view["contentId"],
            "title": view["title"],
            "version": view["version"],
        })
        return Ok(view)

    def create_from_options(
        self,
        options: LicenseOptions,
        file_info: FileInfo,
        owner_id: str,
        creator: str,
        actor: Actor,
    ) -> "Result[dict]":
        if options.template_id and options.template_id not in DEFAULT_TEMPLATES:
            return fail(ErrorCode.INVALID_REQUEST, f"Unknown template: {options.template_id}")
        document = build_document(options, file_info, creator, actor, now=self.clock())
        return self.create(document, owner_id, actor)

    # ============== Read ==============

    def get(self, license_id: str, requester_id: str, actor: Actor) -> "Result[dict]":
        """Owner view of a license, including the document and XML."""
        with self.store.session() as db:
            record = self._find(db, license_id)
            if record is None:
                return fail(ErrorCode.LICENSE_NOT_FOUND, "License not found")
            if record.owner_id != requester_id:
                return fail(ErrorCode.ACCESS_DENIED, "You do not have access to this license")
            self.audit.append(license_id, actor, audit_actions.LICENSE_VIEWED, db=db)
            return Ok(license_detail(record))

    def get_xml(self, license_id: str, actor: Actor) -> "Result[str]":
        """Canonical XML of an active license. Public: consumers read the terms."""
        with self.store.session() as db:
            record = self._find(db, license_id)
            if record is None or not record.is_usable(self.clock()):
                return fail(ErrorCode.LICENSE_NOT_FOUND, "License not found or inactive")
            self.audit.append(license_id, actor, audit_actions.LICENSE_DOWNLOADED, db=db)
            return Ok(record.xml)

    def list_licenses(self, owner_id: str, page: int = 1, limit: int = 20, status: str = "all") -> "Result[dict]":
        if status not in LIST_STATUSES:
            return fail(ErrorCode.INVALID_REQUEST, f"status must be one of {', '.join(LIST_STATUSES)}")
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        now = self.clock()
        with self.store.session() as db:
            q = db.query(LicenseRecord).filter(LicenseRecord.owner_id == owner_id)
            if status == "active":
                q = q.filter(
                    LicenseRecord.is_active.is_(True),
                    (LicenseRecord.expires_at.is_(None)) | (LicenseRecord.expires_at > now),
                )
            elif status == "inactive":
                q = q.filter(LicenseRecord.is_active.is_(False))
            elif status == "expired":
                q = q.filter(LicenseRecord.expires_at.isnot(None), LicenseRecord.expires_at <= now)
            total = q.count()
            rows = (
                q.order_by(LicenseRecord.created_at.desc(), LicenseRecord.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            return Ok({
                "licenses": [license_summary(r) for r in rows],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": (total + limit - 1) // limit,
                },
            })

    def load_active(
        self,
        license_id: Optional[str] = None,
        content_id: Optional[str] = None,
    ) -> "Result[LicenseSnapshot]":
        """Resolve a usable license by id or content hash. Fails closed."""
        with self.store.session() as db:
            if license_id:
                record = self._find(db, license_id)
            elif content_id:
                record = (
                    db.query(LicenseRecord)
                    .filter(LicenseRecord.content_id == content_id, LicenseRecord.is_active.is_(True))
                    .order_by(LicenseRecord.created_at.desc(), LicenseRecord.id.desc())
                    .first()
                )
            else:
                return fail(ErrorCode.INVALID_REQUEST, "licenseId or contentId is required")

            if record is None or not record.is_usable(self.clock()):
                return fail(ErrorCode.LICENSE_NOT_FOUND, "License not found or inactive")
            return Ok(LicenseSnapshot(
                license_id=record.license_id,
                owner_id=record.owner_id,
                content_id=record.content_id,
                version=record.version,
                document=LicenseDocument.model_validate(record.document),
            ))

    def load_active_documents(self, license_ids) -> "Result[list]":
        """Documents of the usable licenses among license_ids, in request order.
        Inactive, expired and unknown ids are left out."""
        now = self.clock()
        with self.store.session() as db:
            rows = db.query(LicenseRecord).filter(LicenseRecord.license_id.in_(list(license_ids))).all()
            usable = {r.license_id: r.document for r in rows if r.is_usable(now)}
        docs = [LicenseDocument.model_validate(usable[i]) for i in dict.fromkeys(license_ids) if i in usable]
        if not docs:
            return fail(ErrorCode.LICENSE_NOT_FOUND, "No active licenses found")
        return Ok(docs)

    def stats(self, license_id: str, requester_id: str) -> "Result[dict]":
        denied = self._check_owner(license_id, requester_id)
        if denied is not None:
            return denied
        return Ok(self.audit.usage_stats(license_id))

    def audit_entries(self, license_id: str, requester_id: str, limit: int = 50) -> "Result[list]":
        denied = self._check_owner(license_id, requester_id)
        if denied is not None:
            return denied
        return Ok(self.audit.entries(license_id, limit=min(max(limit, 1), 500)))

    # ============== Update ==============

    def update(
        self,
        license_id: str,
        owner_id: str,
        document: LicenseDocument,
        actor: Actor,
        expected_version: Optional[int] = None,
    ) -> "Result[dict]":
        """Replace the terms of a license. licenseId and createdAt are preserved,
        the stored audit trail is kept and a license_updated entry appended."""
        now = self.clock()
        try:
            with self.store.session() as db:
                record = self._find(db, license_id)
                if record is None or record.owner_id != owner_id:
                    return fail(ErrorCode.LICENSE_NOT_FOUND,
                                "License not found or you do not have permission to modify it")
                if expected_version is not None and record.version != expected_version:
                    return fail(ErrorCode.CONFLICT, "License was modified by another request",
                                currentVersion=record.version)

                stored = LicenseDocument.model_validate(record.document)
                entry = _trail_entry(
                    audit_actions.LICENSE_UPDATED, actor, now,
                    {"licenseId": license_id, "previousVersion": record.version},
                )
                metadata = document.metadata.model_copy(
                    update={"audit_trail": list(stored.metadata.audit_trail) + [entry]}
                )
                updated = document.model_copy(update={
                    "license_id": license_id,
                    "created_at": stored.created_at,
                    "metadata": metadata,
                })

                xml = rsl_xml.generate(updated)
                report = rsl_xml.validate(xml)
                if not report.valid:
                    return fail(ErrorCode.INVALID_RSL_DOCUMENT, "RSL XML validation failed",
                                details=report.errors)

                record.document = updated.to_json()
                record.xml = xml
                record.title = updated.content.title
                record.content_id = updated.content.hash
                record.expires_at = updated.expires_at
                # A new expiry date re-arms the expiry notification
                record.expired_notified_at = None
                record.updated_at = now
                db.flush()
                self.audit.append(
                    license_id, actor, audit_actions.LICENSE_UPDATED,
                    {"version": record.version}, db=db,
                )
                view = license_detail(record)
        except StaleDataError:
            log.info(f"Concurrent update rejected for license {license_id}")
            return fail(ErrorCode.CONFLICT, "License was modified by another request")

        log.info(f"License updated: {license_id} v{view['version']}")
        self._publish(LICENSE_UPDATED, {
            "license_id": license_id,
            "owner_id": owner_id,
            "version": view["version"],
            "is_active": view["isActive"],
        })
        return Ok(view)

    def deactivate(self, license_id: str, owner_id: str, actor: Actor) -> "Result[dict]":
        """Soft-delete: the row stays, every evaluation against it fails closed."""
        changed = False
        try:
            with self.store.session() as db:
                record = self._find(db, license_id)
                if record is None or record.owner_id != owner_id:
                    return fail(ErrorCode.LICENSE_NOT_FOUND,
                                "License not found or you do not have permission to modify it")
                if record.is_active:
                    record.is_active = False
                    record.updated_at = self.clock()
                    db.flush()
                    self.audit.append(license_id, actor, audit_actions.LICENSE_DEACTIVATED, db=db)
                    changed = True
                view = license_summary(record)
        except StaleDataError:
            return fail(ErrorCode.CONFLICT, "License was modified by another request")

        if changed:
            log.info(f"License deactivated: {license_id}")
            self._publish(LICENSE_UPDATED, {
                "license_id": license_id,
                "owner_id": owner_id,
                "version": view["version"],
                "is_active": False,
            })
        return Ok(view)

    # ============== Expiry ==============

    def expire_due(self, now: Optional[datetime] = None) -> list[str]:
        """Mark licenses past their expiry and announce each one once."""
        now = now or self.clock()
        expired = []
        with self.store.session() as db:
            rows = (
                db.query(LicenseRecord)
                .filter(
                    LicenseRecord.is_active.is_(True),
                    LicenseRecord.expires_at.isnot(None),
                    LicenseRecord.expires_at <= now,
                    LicenseRecord.expired_notified_at.is_(None),
                )
                .all()
            )
            for record in rows:
                record.expired_notified_at = now
                self.audit.append(
                    record.license_id, SYSTEM_ACTOR, audit_actions.LICENSE_EXPIRED,
                    {"expiresAt": _iso(record.expires_at)}, db=db,
                )
                expired.append((record.license_id, record.owner_id, _iso(record.expires_at)))

        for license_id, owner_id, expires_at in expired:
            self._publish(LICENSE_EXPIRED, {
                "license_id": license_id,
                "owner_id": owner_id,
                "expires_at": expires_at,
            })
        if expired:
            log.info(f"Expiry sweep: {len(expired)} license(s) expired")
        return [license_id for license_id, _, _ in expired]

    # ============== Helpers ==============

    def _find(self, db, license_id: str) -> Optional[LicenseRecord]:
        return db.query(LicenseRecord).filter(LicenseRecord.license_id == license_id).first()

    def _check_owner(self, license_id: str, requester_id: str):
        with self.store.session() as db:
            record = self._find(db, license_id)
            if record is None:
                return fail(ErrorCode.LICENSE_NOT_FOUND, "License not found")
            if record.owner_id != requester_id:
                return fail(ErrorCode.ACCESS_DENIED, "You do not have access to this license")
        return None

    def _publish(self, event_type: str, data: dict) -> None:
        self.bus.publish(Event(event_type=event_type, source_module="licenses", data=data))
