"""
core/audit.py — Append-only audit log and derived usage statistics.

Every module records policy-relevant actions here (license created, viewed,
accessed, paid for, refunded, ...). Entries are only ever inserted; the
statistics reported for a license are computed from them on read.
"""

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.models import AuditEntry
from core.store import Store

log = logging.getLogger("rsl.audit")

# ============== Actions ==============

LICENSE_CREATED = "license_created"
LICENSE_UPDATED = "license_updated"
LICENSE_DEACTIVATED = "license_deactivated"
LICENSE_EXPIRED = "license_expired"
LICENSE_VIEWED = "license_viewed"
LICENSE_DOWNLOADED = "license_downloaded"
LICENSE_ACCESSED = "license_accessed"
PAYMENT_COMPLETED = "payment_completed"
PAYMENT_REFUNDED = "payment_refunded"

RECENT_ACTIVITY_LIMIT = 10


@dataclass(frozen=True)
class Actor:
    """Who performed an action, as far as the request tells us."""
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
        }


SYSTEM_ACTOR = Actor(user_id="system")


def entry_to_dict(entry: AuditEntry) -> dict:
    return {
        "id": entry.id,
        "licenseId": entry.license_id,
        "action": entry.action,
        "userId": entry.user_id,
        "ipAddress": entry.ip_address,
        "userAgent": entry.user_agent,
        "context": entry.context or {},
        "timestamp": entry.timestamp.isoformat() if entry.timestamp else None,
    }


def _amount(context: Optional[dict]) -> Decimal:
    try:
        return Decimal(str((context or {}).get("amount", "0")))
    except InvalidOperation:
        return Decimal("0")


class AuditLog:
    """Insert-only access to the audit_entries table."""

    def __init__(self, store: Store):
        self.store = store

    def append(
        self,
        license_id: str,
        actor: Actor,
        action: str,
        context: Optional[dict] = None,
        db: Optional[Session] = None,
    ) -> AuditEntry:
        """Record an action.

        When ``db`` is given the entry joins that unit of work and commits with
        it; otherwise it is committed on its own.
        """
        entry = AuditEntry(
            license_id=license_id,
            action=action,
            user_id=actor.user_id,
            ip_address=actor.ip_address,
            user_agent=(actor.user_agent or "")[:500] or None,
            context=context or {},
        )
        if db is not None:
            db.add(entry)
            db.flush()
        else:
            with self.store.session() as own:
                own.add(entry)
                own.flush()
        log.debug(f"Audit: {action} on {license_id} by {actor.user_id or actor.ip_address}")
        return entry

    def entries(self, license_id: str, limit: int = 50) -> list[dict]:
        """Entries for a license, newest first."""
        with self.store.session() as db:
            rows = (
                db.query(AuditEntry)
                .filter(AuditEntry.license_id == license_id)
                .order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc())
                .limit(limit)
                .all()
            )
            return [entry_to_dict(r) for r in rows]

    def count(self, license_id: str, action: Optional[str] = None) -> int:
        with self.store.session() as db:
            q = db.query(func.count(AuditEntry.id)).filter(AuditEntry.license_id == license_id)
            if action:
                q = q.filter(AuditEntry.action == action)
            return q.scalar() or 0

    def usage_stats(self, license_id: str) -> dict:
        """Counts and revenue derived from the entries of one license."""
        with self.store.session() as db:
            rows = (
                db.query(AuditEntry)
                .filter(AuditEntry.license_id == license_id)
                .order_by(AuditEntry.timestamp.desc(), AuditEntry.id.desc())
                .all()
            )
            by_action = Counter(r.action for r in rows)
            revenue: dict[str, Decimal] = defaultdict(Decimal)
            for r in rows:
                if r.action == PAYMENT_COMPLETED:
                    revenue[(r.context or {}).get("currency", "USD")] += _amount(r.context)
                elif r.action == PAYMENT_REFUNDED:
                    revenue[(r.context or {}).get("currency", "USD")] -= _amount(r.context)

            return {
                "licenseId": license_id,
                "totalEntries": len(rows),
                "byAction": dict(by_action),
                "totalViews": by_action.get(LICENSE_VIEWED, 0),
                "totalDownloads": by_action.get(LICENSE_DOWNLOADED, 0),
                "totalAccesses": by_action.get(LICENSE_ACCESSED, 0),
                "totalPayments": by_action.get(PAYMENT_COMPLETED, 0),
                "totalRefunds": by_action.get(PAYMENT_REFUNDED, 0),
                "revenue": {cur: str(amount) for cur, amount in sorted(revenue.items())},
                "recentActivity": [entry_to_dict(r) for r in rows[:RECENT_ACTIVITY_LIMIT]],
            }
