"""
modules/webhooks/models.py — ORM models for outbound webhooks.

Owns tables: webhook_subscriptions, webhook_deliveries
"""

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text, event

from core.base import Base, utcnow
from core.models import AppendOnlyViolation


class WebhookSubscription(Base):
    """A URL an owner wants license/payment/usage events posted to."""
    __tablename__ = "webhook_subscriptions"

    id = Column(Integer, primary_key=True)
    webhook_id = Column(String(64), unique=True, nullable=False, index=True)
    owner_id = Column(String(100), nullable=False, index=True)
    url = Column(String(2000), nullable=False)
    events = Column(JSON, nullable=False, default=list)
    # Fernet-encrypted; replaced only by an explicit rotation
    secret_encrypted = Column(Text, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<WebhookSubscription {self.webhook_id} owner={self.owner_id} v{self.version}>"


class WebhookDeliveryRecord(Base):
    """One delivery attempt. Written once; a retry is a new row."""
    __tablename__ = "webhook_deliveries"

    id = Column(Integer, primary_key=True)
    event_id = Column(String(64), nullable=False, index=True)
    # No foreign key: the ledger outlives a deleted subscription
    webhook_id = Column(String(64), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)
    payload = Column(Text, nullable=False)
    status = Column(String(20), nullable=False)  # sent | failed
    attempt = Column(Integer, nullable=False, default=1)
    http_status = Column(Integer, nullable=True)
    error = Column(String(500), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self):
        return f"<WebhookDeliveryRecord {self.event_id} -> {self.webhook_id} #{self.attempt} {self.status}>"


@event.listens_for(WebhookDeliveryRecord, "before_update")
def _reject_delivery_update(mapper, connection, target):
    raise AppendOnlyViolation(f"delivery record {target.id} is append-only")


@event.listens_for(WebhookDeliveryRecord, "before_delete")
def _reject_delivery_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"delivery record {target.id} is append-only")
