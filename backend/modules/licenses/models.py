"""
modules/licenses/models.py — ORM models for the licenses domain.

Owns tables: licenses
"""

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text

from core.base import Base, ensure_utc, utcnow


class LicenseRecord(Base):
    """
    One registered RSL license.

    The JSON document is the source of truth; the canonical XML is regenerated
    from it on every write. Rows are soft-deactivated, never deleted.
    """
    __tablename__ = "licenses"

    id = Column(Integer, primary_key=True)
    license_id = Column(String(64), unique=True, nullable=False, index=True)
    owner_id = Column(String(100), nullable=False, index=True)
    content_id = Column(String(128), nullable=False, index=True)  # content hash

    title = Column(String(500), nullable=False)
    document = Column(JSON, nullable=False)
    xml = Column(Text, nullable=False)

    is_active = Column(Boolean, default=True, nullable=False, index=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    expired_notified_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # Compare-and-swap stamp; SQLAlchemy adds "AND version = :old" to every UPDATE
    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    def is_expired(self, now=None) -> bool:
        expires = ensure_utc(self.expires_at)
        return expires is not None and expires <= (now or utcnow())

    def is_usable(self, now=None) -> bool:
        return bool(self.is_active) and not self.is_expired(now)

    def __repr__(self):
        return f"<LicenseRecord {self.license_id} v{self.version} owner={self.owner_id}>"
