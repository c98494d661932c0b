"""
RSL Platform — LicenseService and AuditLog tests.

License lifecycle (create, read, update, deactivate, expire), the events it
publishes, and the append-only audit log with its derived statistics.
"""

from datetime import timedelta

import pytest

import core.audit as audit_actions
from core.audit import Actor
from core.errors import ErrorCode
from core.models import AppendOnlyViolation, AuditEntry
from modules.licenses import rsl_xml
from modules.licenses.builder import FileInfo, LicenseOptions

from helpers import document_json, make_document

OWNER = "owner-1"
ACTOR = Actor(user_id=OWNER, ip_address="203.0.113.9", user_agent="pytest")


@pytest.fixture
def events(bus):
    seen = []
    bus.subscribe("*", seen.append)
    return seen


@pytest.fixture
def created(licenses):
    result = licenses.create(make_document(), OWNER, ACTOR)
    assert result.ok
    return result.value


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------

class TestCreate:
    def test_create_stores_document_and_xml(self, created):
        assert created["isActive"] is True
        assert created["version"] == 1
        assert created["contentId"] == make_document().content.hash
        assert rsl_xml.validate(created["xmlContent"]).valid
        assert created["document"]["licenseId"] == created["licenseId"]

    def test_create_seeds_audit_trail(self, created):
        trail = created["document"]["metadata"]["auditTrail"]
        assert [e["action"] for e in trail] == ["license_created"]
        assert trail[0]["ipAddress"] == "203.0.113.9"

    def test_create_publishes_event(self, licenses, events):
        view = licenses.create(make_document(), OWNER, ACTOR).value
        assert [e.event_type for e in events] == ["license.created"]
        assert events[0].data["owner_id"] == OWNER
        assert events[0].data["license_id"] == view["licenseId"]

    def test_duplicate_license_id_conflicts(self, licenses):
        doc = make_document()
        assert licenses.create(doc, OWNER, ACTOR).ok
        assert licenses.create(doc, OWNER, ACTOR).error.code == ErrorCode.CONFLICT

    def test_create_from_options(self, licenses):
        result = licenses.create_from_options(
            LicenseOptions(allow_ai_models=True, commercial_use="yes"),
            FileInfo(name="report.pdf", type="application/pdf", size=900, hash="cafe"),
            OWNER, "Report Author", ACTOR,
        )
        assert result.ok
        assert result.value["title"] == "report.pdf"
        assert result.value["document"]["metadata"]["creator"] == "Report Author"

    def test_unknown_template(self, licenses):
        result = licenses.create_from_options(
            LicenseOptions(template_id="template-nope"),
            FileInfo(name="x", type="text/plain", size=1, hash="h"),
            OWNER, "me", ACTOR,
        )
        assert result.error.code == ErrorCode.INVALID_REQUEST

    def test_get_is_owner_only(self, licenses, created):
        assert licenses.get(created["licenseId"], OWNER, ACTOR).ok
        denied = licenses.get(created["licenseId"], "someone-else", ACTOR)
        assert denied.error.code == ErrorCode.ACCESS_DENIED

    def test_get_unknown(self, licenses):
        assert licenses.get("rsl_" + "f" * 32, OWNER, ACTOR).error.code == ErrorCode.LICENSE_NOT_FOUND

    def test_list_with_status_filter(self, licenses, created):
        second = licenses.create(make_document(), OWNER, ACTOR).value
        licenses.deactivate(second["licenseId"], OWNER, ACTOR)

        active = licenses.list_licenses(OWNER, status="active").value
        inactive = licenses.list_licenses(OWNER, status="inactive").value
        assert [lic["licenseId"] for lic in active["licenses"]] == [created["licenseId"]]
        assert [lic["licenseId"] for lic in inactive["licenses"]] == [second["licenseId"]]
        assert licenses.list_licenses(OWNER).value["pagination"]["total"] == 2

    def test_list_rejects_unknown_status(self, licenses):
        assert licenses.list_licenses(OWNER, status="deleted").error.code == ErrorCode.INVALID_REQUEST


# ---------------------------------------------------------------------------
# Update / deactivate
# ---------------------------------------------------------------------------

class TestUpdate:
    def test_update_preserves_identity_and_trail(self, licenses, created, clock):
        clock.advance(minutes=5)
        content = dict(document_json()["content"], title="Revised Field Notes")
        result = licenses.update(created["licenseId"], OWNER, make_document(content=content), ACTOR)
        assert result.ok
        view = result.value
        assert view["licenseId"] == created["licenseId"]
        assert view["document"]["createdAt"] == created["document"]["createdAt"]
        assert view["version"] == 2
        assert "Revised Field Notes" in view["xmlContent"]
        actions = [e["action"] for e in view["document"]["metadata"]["auditTrail"]]
        assert actions == ["license_created", "license_updated"]

    def test_stale_version_rejected(self, licenses, created):
        doc = make_document()
        assert licenses.update(created["licenseId"], OWNER, doc, ACTOR, expected_version=1).ok
        stale = licenses.update(created["licenseId"], OWNER, doc, ACTOR, expected_version=1)
        assert stale.error.code == ErrorCode.CONFLICT
        assert stale.error.details["currentVersion"] == 2

    def test_only_owner_updates(self, licenses, created):
        result = licenses.update(created["licenseId"], "intruder", make_document(), ACTOR)
        assert result.error.code == ErrorCode.LICENSE_NOT_FOUND

    def test_update_that_breaks_xml_is_not_stored(self, licenses, created):
        doc = make_document()
        # model_copy skips validation, so the title reaches the XML generator
        broken = doc.model_copy(update={"content": doc.content.model_copy(update={"title": "Field\x0bNotes"})})
        result = licenses.update(created["licenseId"], OWNER, broken, ACTOR)
        assert result.error.code == ErrorCode.INVALID_RSL_DOCUMENT

        stored = licenses.get(created["licenseId"], OWNER, ACTOR).value
        assert stored["version"] == 1
        assert stored["title"] == created["title"]
        assert rsl_xml.validate(stored["xmlContent"]).valid

    def test_deactivate_fails_closed(self, licenses, created, events):
        result = licenses.deactivate(created["licenseId"], OWNER, ACTOR)
        assert result.value["isActive"] is False
        assert licenses.load_active(license_id=created["licenseId"]).error.code == ErrorCode.LICENSE_NOT_FOUND
        assert licenses.get_xml(created["licenseId"], ACTOR).error.code == ErrorCode.LICENSE_NOT_FOUND
        assert [e.event_type for e in events] == ["license.updated"]
        assert events[0].data["is_active"] is False

    def test_deactivate_twice_publishes_once(self, licenses, created, events):
        licenses.deactivate(created["licenseId"], OWNER, ACTOR)
        assert licenses.deactivate(created["licenseId"], OWNER, ACTOR).ok
        assert len(events) == 1


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------

class TestExpiry:
    def test_expired_license_is_not_usable(self, licenses, clock):
        doc = make_document(expiresAt=(clock() + timedelta(days=1)).isoformat())
        license_id = licenses.create(doc, OWNER, ACTOR).value["licenseId"]
        assert licenses.load_active(license_id=license_id).ok
        clock.advance(days=2)
        assert licenses.load_active(license_id=license_id).error.code == ErrorCode.LICENSE_NOT_FOUND

    def test_sweep_announces_each_expiry_once(self, licenses, clock, events, audit):
        doc = make_document(expiresAt=(clock() + timedelta(hours=1)).isoformat())
        license_id = licenses.create(doc, OWNER, ACTOR).value["licenseId"]
        events.clear()

        assert licenses.expire_due() == []
        clock.advance(hours=2)
        assert licenses.expire_due() == [license_id]
        assert licenses.expire_due() == []

        assert [e.event_type for e in events] == ["license.expired"]
        assert audit.count(license_id, audit_actions.LICENSE_EXPIRED) == 1

    def test_new_expiry_rearms_notification(self, licenses, clock, events):
        doc = make_document(expiresAt=(clock() + timedelta(hours=1)).isoformat())
        license_id = licenses.create(doc, OWNER, ACTOR).value["licenseId"]
        clock.advance(hours=2)
        licenses.expire_due()

        renewed = make_document(expiresAt=(clock() + timedelta(hours=1)).isoformat())
        licenses.update(license_id, OWNER, renewed, ACTOR)
        clock.advance(hours=2)
        assert licenses.expire_due() == [license_id]


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class TestAuditLog:
    def test_reads_are_audited(self, licenses, created, audit):
        licenses.get(created["licenseId"], OWNER, ACTOR)
        licenses.get_xml(created["licenseId"], ACTOR)
        stats = audit.usage_stats(created["licenseId"])
        assert stats["totalViews"] == 1
        assert stats["totalDownloads"] == 1
        assert stats["byAction"][audit_actions.LICENSE_CREATED] == 1

    def test_entries_newest_first(self, licenses, created, audit):
        licenses.get(created["licenseId"], OWNER, ACTOR)
        entries = audit.entries(created["licenseId"])
        assert [e["action"] for e in entries] == ["license_viewed", "license_created"]
        assert entries[0]["userId"] == OWNER

    def test_revenue_net_of_refunds(self, audit):
        license_id = "rsl_" + "2" * 32
        audit.append(license_id, ACTOR, audit_actions.PAYMENT_COMPLETED, {"amount": "0.05", "currency": "USD"})
        audit.append(license_id, ACTOR, audit_actions.PAYMENT_COMPLETED, {"amount": "0.10", "currency": "USD"})
        audit.append(license_id, ACTOR, audit_actions.PAYMENT_COMPLETED, {"amount": "2", "currency": "EUR"})
        audit.append(license_id, ACTOR, audit_actions.PAYMENT_REFUNDED, {"amount": "0.05", "currency": "USD"})

        stats = audit.usage_stats(license_id)
        assert stats["revenue"] == {"EUR": "2", "USD": "0.10"}
        assert stats["totalPayments"] == 3
        assert stats["totalRefunds"] == 1

    def test_entries_cannot_be_updated(self, audit, store):
        audit.append("rsl_" + "3" * 32, ACTOR, audit_actions.LICENSE_VIEWED)
        with pytest.raises(AppendOnlyViolation):
            with store.session() as db:
                db.query(AuditEntry).first().action = "license_created"
                db.flush()

    def test_entries_cannot_be_deleted(self, audit, store):
        audit.append("rsl_" + "4" * 32, ACTOR, audit_actions.LICENSE_VIEWED)
        with pytest.raises(AppendOnlyViolation):
            with store.session() as db:
                db.delete(db.query(AuditEntry).first())
                db.flush()
        assert audit.count("rsl_" + "4" * 32) == 1

    def test_stats_owner_only(self, licenses, created):
        assert licenses.stats(created["licenseId"], "someone-else").error.code == ErrorCode.ACCESS_DENIED
