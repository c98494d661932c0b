"""
modules/policy/models.py — Payment ledger.

Owns tables: payment_transactions

A transaction is committed once the provider has charged; after that the row
only moves completed -> refunding -> refunded; a failed provider refund puts
it back to completed. The idempotency key is unique, so a client
retrying a payment it never saw the answer to gets the committed row back,
provided the request fingerprint matches the one stored with it.
"""

from sqlalchemy import Column, DateTime, Integer, JSON, Numeric, String, Text

from core.base import Base, utcnow


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True)
    transaction_id = Column(String(64), unique=True, nullable=False, index=True)
    idempotency_key = Column(String(200), unique=True, nullable=True, index=True)
    license_id = Column(String(64), nullable=False, index=True)
    owner_id = Column(String(100), nullable=False)
    payer_id = Column(String(100), nullable=False, index=True)
    amount = Column(Numeric(12, 4), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    method = Column(String(20), nullable=False)
    provider_transaction_id = Column(String(200), nullable=True)
    refund_id = Column(String(200), nullable=True)
    status = Column(String(20), nullable=False, default="completed")
    # The grant this payment bought, replayed on retry
    permissions = Column(JSON, nullable=False, default=list)
    restrictions = Column(JSON, nullable=False, default=list)
    user_type = Column(String(20), nullable=True)
    country_code = Column(String(2), nullable=True)
    receipt = Column(Text, nullable=True)
    request_fingerprint = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<PaymentTransaction {self.transaction_id} {self.amount} {self.currency} {self.status}>"
