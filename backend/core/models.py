"""
core/models.py — Core ORM models.

Owns tables: audit_entries
"""

from sqlalchemy import Column, DateTime, Integer, JSON, String, event

from core.base import Base, utcnow


class AppendOnlyViolation(RuntimeError):
    """An UPDATE or DELETE was attempted on an append-only table."""


class AuditEntry(Base):
    """One policy-relevant action against a license. Never updated, never deleted."""
    __tablename__ = "audit_entries"

    id = Column(Integer, primary_key=True)
    license_id = Column(String(64), nullable=False, index=True)
    action = Column(String(50), nullable=False, index=True)  # e.g. "license_accessed"

    # Actor
    user_id = Column(String(100), nullable=True)
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6
    user_agent = Column(String(500), nullable=True)

    context = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<AuditEntry {self.id}: {self.action} on {self.license_id}>"


@event.listens_for(AuditEntry, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise AppendOnlyViolation(f"audit entry {target.id} is append-only")


@event.listens_for(AuditEntry, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"audit entry {target.id} is append-only")
