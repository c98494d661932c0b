"""
modules/webhooks/dispatcher.py — Outbound webhook subscriptions and delivery.

WebhookDispatcher manages an owner's subscriptions and posts bus events to
them. Delivery never runs on the request that triggered the event: the bus
handler only enqueues onto the DeliveryQueue, a thread pool that keeps at
most one delivery in flight per subscription so a slow receiver sees its
events in order and cannot starve the others.

Every attempt writes exactly one WebhookDeliveryRecord. Receivers verify

    X-RSL-Signature: sha256=<hex HMAC-SHA256(secret, raw body)>

against the secret they were given at registration (or last rotation).
"""

import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Callable, Iterable, Optional

import httpx
from sqlalchemy.orm.exc import StaleDataError

from core.base import DeliveryStatus, WebhookEvent, ensure_utc, utcnow
from core.config import Settings
from core.crypto import SecretBox
from core.errors import ErrorCode, Ok, Result, fail
from core.events import WEBHOOK_TEST
from core.interfaces.event_bus import Event
from core.store import Store
from core.webhook_utils import validate_webhook_url
from modules.webhooks.models import WebhookDeliveryRecord, WebhookSubscription

log = logging.getLogger("rsl.webhooks")

USER_AGENT = "RSL-Platform-Webhook/1.0"
SIGNATURE_HEADER = "X-RSL-Signature"
EVENT_HEADER = "X-RSL-Event"
VALID_EVENTS = [e.value for e in WebhookEvent]


def sign_payload(secret: str, payload: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def envelope(event: Event) -> dict:
    return {
        "id": event.event_id,
        "type": event.event_type,
        "data": event.data,
        "timestamp": ensure_utc(event.occurred_at).isoformat(),
    }


@dataclass(frozen=True)
class DeliveryTarget:
    """What a worker needs to post to one subscription, captured at enqueue time."""
    webhook_id: str
    url: str
    events: tuple
    secret: str


@dataclass(frozen=True)
class DeliveryResult:
    event_id: str
    webhook_id: str
    attempt: int
    status: DeliveryStatus
    http_status: Optional[int] = None
    error: Optional[str] = None

    @property
    def sent(self) -> bool:
        return self.status == DeliveryStatus.SENT

    def to_dict(self) -> dict:
        return {
            "success": self.sent,
            "status": self.http_status,
            "attempt": self.attempt,
            "error": self.error,
        }


def subscription_to_dict(sub: WebhookSubscription) -> dict:
    return {
        "id": sub.webhook_id,
        "url": sub.url,
        "events": list(sub.events or []),
        "isActive": bool(sub.is_active),
        "createdAt": ensure_utc(sub.created_at).isoformat() if sub.created_at else None,
        "updatedAt": ensure_utc(sub.updated_at).isoformat() if sub.updated_at else None,
        "version": sub.version,
    }


def delivery_to_dict(rec: WebhookDeliveryRecord) -> dict:
    try:
        payload = json.loads(rec.payload)
    except ValueError:
        payload = rec.payload
    return {
        "id": rec.event_id,
        "eventType": rec.event_type,
        "status": rec.status,
        "attempt": rec.attempt,
        "httpStatus": rec.http_status,
        "error": rec.error,
        "lastAttemptAt": ensure_utc(rec.last_attempt_at).isoformat() if rec.last_attempt_at else None,
        "payload": payload,
    }


# ============== Delivery queue ==============

class DeliveryQueue:
    """
    Thread pool with a FIFO per key.

    The first job for a key schedules a worker; later jobs for the same key
    wait in its deque and run on that worker, one after another.
    """

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rsl-webhook")
        self._cond = threading.Condition()
        self._pending: dict[str, deque] = {}
        self._closed = False

    def submit(self, key: str, job: Callable[[], None]) -> bool:
        with self._cond:
            if self._closed:
                log.warning(f"Delivery queue closed; dropping job for {key}")
                return False
            chain = self._pending.get(key)
            if chain is not None:
                chain.append(job)
                return True
            self._pending[key] = deque([job])
        self._executor.submit(self._run, key)
        return True

    def _run(self, key: str) -> None:
        while True:
            with self._cond:
                chain = self._pending[key]
                if not chain:
                    del self._pending[key]
                    self._cond.notify_all()
                    return
                job = chain.popleft()
            try:
                job()
            except Exception as e:
                log.error(f"Webhook job for {key} failed: {e}", exc_info=True)

    def in_flight(self) -> int:
        with self._cond:
            return len(self._pending)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued job has run. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending, timeout=timeout)

    def drain(self) -> None:
        """Stop accepting jobs and wait for the queued ones."""
        with self._cond:
            self._closed = True
        self._executor.shutdown(wait=True)


# ============== Dispatcher ==============

class WebhookDispatcher:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        secret_box: SecretBox,
        http_client: httpx.Client,
        queue: Optional[DeliveryQueue] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.settings = settings
        self.secret_box = secret_box
        self.http = http_client
        self.queue = queue or DeliveryQueue(settings.webhook_max_workers)
        self.clock = clock
        self.sleep = sleep

    # ============== Subscriptions ==============

    def _check(self, url: Optional[str], events: Optional[Iterable[str]]):
        if url is not None:
            problem = validate_webhook_url(url, allow_private=self.settings.webhook_allow_private_targets)
            if problem:
                return fail(ErrorCode.INVALID_URL, problem)
        if events is not None:
            events = list(events)
            invalid = [e for e in events if e not in VALID_EVENTS]
            if invalid:
                return fail(ErrorCode.INVALID_EVENTS, f"Invalid events: {', '.join(invalid)}")
            if not events:
                return fail(ErrorCode.INVALID_EVENTS, "At least one event is required")
        return None

    def register(self, owner_id: str, url: str, events: Iterable[str]) -> "Result[dict]":
        """Create a subscription. The secret is returned here and never again."""
        events = list(dict.fromkeys(events))
        problem = self._check(url, events)
        if problem is not None:
            return problem

        secret = secrets.token_hex(32)
        webhook_id = f"wh_{secrets.token_hex(16)}"
        now = self.clock()
        with self.store.session() as db:
            db.add(WebhookSubscription(
                webhook_id=webhook_id,
                owner_id=owner_id,
                url=url.strip(),
                events=events,
                secret_encrypted=self.secret_box.encrypt(secret),
                is_active=True,
                created_at=now,
                updated_at=now,
            ))
        log.info(f"Webhook registered: {webhook_id} owner={owner_id} events={events}")
        return Ok({
            "success": True,
            "webhookId": webhook_id,
            "secret": secret,
            "url": url.strip(),
            "events": events,
        })

    def list_subscriptions(self, owner_id: str) -> list[dict]:
        with self.store.session() as db:
            rows = (
                db.query(WebhookSubscription)
                .filter(WebhookSubscription.owner_id == owner_id)
                .order_by(WebhookSubscription.created_at.desc(), WebhookSubscription.id.desc())
                .all()
            )
            return [subscription_to_dict(s) for s in rows]

    def update(
        self,
        webhook_id: str,
        owner_id: str,
        url: Optional[str] = None,
        events: Optional[Iterable[str]] = None,
        is_active: Optional[bool] = None,
        expected_version: Optional[int] = None,
    ) -> "Result[dict]":
        """Change url, events or the active flag. The secret is left alone."""
        if events is not None:
            events = list(dict.fromkeys(events))
        problem = self._check(url, events)
        if problem is not None:
            return problem
        try:
            with self.store.session() as db:
                sub = self._find(db, webhook_id, owner_id)
                if sub is None:
                    return fail(ErrorCode.WEBHOOK_NOT_FOUND,
                                "Webhook not found or you do not have permission to modify it")
                if expected_version is not None and sub.version != expected_version:
                    return fail(ErrorCode.CONFLICT, "Webhook was modified by another request",
                                currentVersion=sub.version)
                if url is not None:
                    sub.url = url.strip()
                if events is not None:
                    sub.events = events
                if is_active is not None:
                    sub.is_active = is_active
                sub.updated_at = self.clock()
                db.flush()
                view = subscription_to_dict(sub)
        except StaleDataError:
            return fail(ErrorCode.CONFLICT, "Webhook was modified by another request")
        log.info(f"Webhook updated: {webhook_id} v{view['version']}")
        return Ok({"success": True, "webhook": view})

    def delete(self, webhook_id: str, owner_id: str) -> "Result[dict]":
        """Remove a subscription. Its delivery history is kept."""
        with self.store.session() as db:
            sub = self._find(db, webhook_id, owner_id)
            if sub is None:
                return fail(ErrorCode.WEBHOOK_NOT_FOUND,
                            "Webhook not found or you do not have permission to delete it")
            db.delete(sub)
        log.info(f"Webhook deleted: {webhook_id}")
        return Ok({"success": True, "message": "Webhook endpoint deleted successfully"})

    def rotate_secret(self, webhook_id: str, owner_id: str) -> "Result[dict]":
        secret = secrets.token_hex(32)
        try:
            with self.store.session() as db:
                sub = self._find(db, webhook_id, owner_id)
                if sub is None:
                    return fail(ErrorCode.WEBHOOK_NOT_FOUND,
                                "Webhook not found or you do not have permission to modify it")
                sub.secret_encrypted = self.secret_box.encrypt(secret)
                sub.updated_at = self.clock()
                db.flush()
                version = sub.version
        except StaleDataError:
            return fail(ErrorCode.CONFLICT, "Webhook was modified by another request")
        log.info(f"Webhook secret rotated: {webhook_id}")
        return Ok({"success": True, "webhookId": webhook_id, "secret": secret, "version": version})

    def history(self, webhook_id: str, owner_id: str, page: int = 1, limit: int = 20) -> "Result[dict]":
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        with self.store.session() as db:
            if self._find(db, webhook_id, owner_id) is None:
                return fail(ErrorCode.WEBHOOK_NOT_FOUND,
                            "Webhook not found or you do not have permission to view it")
            q = db.query(WebhookDeliveryRecord).filter(WebhookDeliveryRecord.webhook_id == webhook_id)
            total = q.count()
            rows = (
                q.order_by(WebhookDeliveryRecord.last_attempt_at.desc(), WebhookDeliveryRecord.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            return Ok({
                "events": [delivery_to_dict(r) for r in rows],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": (total + limit - 1) // limit,
                },
            })

    # ============== Delivery ==============

    def deliver(self, target: DeliveryTarget, event_envelope: dict, payload: bytes,
                attempt: int = 1) -> Optional[DeliveryResult]:
        """POST one signed payload and record the attempt.

        Events the subscription did not ask for are skipped without a record.
        """
        event_type = event_envelope["type"]
        if event_type != WEBHOOK_TEST and event_type not in target.events:
            return None

        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(target.secret, payload),
            EVENT_HEADER: event_type,
            "User-Agent": USER_AGENT,
        }
        http_status = None
        error = None
        try:
            resp = self.http.post(
                target.url, content=payload, headers=headers,
                timeout=self.settings.webhook_timeout_seconds,
            )
            http_status = resp.status_code
            status = DeliveryStatus.SENT if resp.is_success else DeliveryStatus.FAILED
            if not resp.is_success:
                error = f"HTTP {resp.status_code}"
        except httpx.HTTPError as e:
            status = DeliveryStatus.FAILED
            error = f"{type(e).__name__}: {e}"[:500]

        with self.store.session() as db:
            db.add(WebhookDeliveryRecord(
                event_id=event_envelope["id"],
                webhook_id=target.webhook_id,
                event_type=event_type,
                payload=payload.decode("utf-8"),
                status=status.value,
                attempt=attempt,
                http_status=http_status,
                error=error,
                last_attempt_at=self.clock(),
            ))

        result = DeliveryResult(event_envelope["id"], target.webhook_id, attempt, status, http_status, error)
        if result.sent:
            log.debug(f"Webhook {event_type} delivered to {target.webhook_id} (attempt {attempt})")
        else:
            log.warning(f"Webhook {event_type} to {target.webhook_id} failed (attempt {attempt}): {error}")
        return result

    def deliver_with_retry(self, target: DeliveryTarget, event_envelope: dict, payload: bytes) -> Optional[DeliveryResult]:
        """Up to webhook_max_attempts attempts with exponential backoff."""
        max_attempts = max(self.settings.webhook_max_attempts, 1)
        result = None
        for attempt in range(1, max_attempts + 1):
            result = self.deliver(target, event_envelope, payload, attempt=attempt)
            if result is None or result.sent:
                return result
            if attempt < max_attempts:
                self.sleep(self.settings.webhook_retry_backoff_seconds * (2 ** (attempt - 1)))
        return result

    def fan_out(self, event: Event, owner_id: str) -> int:
        """Queue an event for each of the owner's active subscriptions to it."""
        targets = self._targets(owner_id, event.event_type)
        if not targets:
            return 0
        body = envelope(event)
        # Serialized once: every subscription and every attempt signs the same bytes
        payload = json.dumps(body, separators=(",", ":")).encode("utf-8")
        queued = 0
        for target in targets:
            if self.queue.submit(target.webhook_id, partial(self.deliver_with_retry, target, body, payload)):
                queued += 1
        log.debug(f"Event {event.event_type} queued for {queued} webhook(s) of {owner_id}")
        return queued

    def publish(self, event_type: str, data: dict, owner_id: str) -> int:
        return self.fan_out(Event(event_type=event_type, source_module="webhooks", data=data), owner_id)

    def handle_event(self, event: Event) -> None:
        """Bus subscriber: route an event to its owner's subscriptions."""
        owner_id = (event.data or {}).get("owner_id")
        if not owner_id:
            log.debug(f"Event {event.event_type} carries no owner_id; not delivered")
            return
        self.fan_out(event, owner_id)

    def send_test(self, webhook_id: str, owner_id: str) -> "Result[dict]":
        """Deliver a webhook.test event synchronously and report the outcome."""
        with self.store.session() as db:
            sub = self._find(db, webhook_id, owner_id)
            if sub is None:
                return fail(ErrorCode.WEBHOOK_NOT_FOUND,
                            "Webhook not found or you do not have permission to test it")
            target = self._target(sub)
        event = Event(
            event_type=WEBHOOK_TEST,
            source_module="webhooks",
            data={"message": "This is a test webhook event", "webhookId": webhook_id},
        )
        body = envelope(event)
        payload = json.dumps(body, separators=(",", ":")).encode("utf-8")
        result = self.deliver(target, body, payload)
        return Ok({"success": True, "testEvent": body, "result": result.to_dict()})

    def close(self) -> None:
        self.queue.drain()

    # ============== Helpers ==============

    def _find(self, db, webhook_id: str, owner_id: str) -> Optional[WebhookSubscription]:
        return (
            db.query(WebhookSubscription)
            .filter(WebhookSubscription.webhook_id == webhook_id, WebhookSubscription.owner_id == owner_id)
            .first()
        )

    def _target(self, sub: WebhookSubscription) -> DeliveryTarget:
        return DeliveryTarget(
            webhook_id=sub.webhook_id,
            url=sub.url,
            events=tuple(sub.events or ()),
            secret=self.secret_box.decrypt(sub.secret_encrypted),
        )

    def _targets(self, owner_id: str, event_type: str) -> list[DeliveryTarget]:
        with self.store.session() as db:
            rows = (
                db.query(WebhookSubscription)
                .filter(WebhookSubscription.owner_id == owner_id, WebhookSubscription.is_active.is_(True))
                .order_by(WebhookSubscription.id)
                .all()
            )
            # JSON column: filter the event set in Python
            return [self._target(s) for s in rows if event_type in (s.events or [])]
