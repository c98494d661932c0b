"""
RSL Platform — WebhookDispatcher tests.

Subscription management, signed delivery, one ledger record per attempt,
retry with backoff, event filtering and the per-subscription delivery queue.
Outbound HTTP goes to the in-process WebhookReceiver (httpx.MockTransport).
"""

import hashlib
import hmac
import json
import threading

import httpx
import pytest

from core.errors import ErrorCode
from core.event_bus import InMemoryEventBus
from core.interfaces.event_bus import Event
from core.models import AppendOnlyViolation
from modules.webhooks.dispatcher import (
    DeliveryQueue,
    DeliveryTarget,
    SIGNATURE_HEADER,
    envelope,
    sign_payload,
)
from modules.webhooks.models import WebhookDeliveryRecord, WebhookSubscription

OWNER = "owner-1"
URL = "https://hooks.example.com/rsl"


def _event(event_type="license.created", owner_id=OWNER, **data):
    return Event(event_type=event_type, source_module="test",
                 data={"license_id": "rsl_" + "1" * 32, "owner_id": owner_id, **data})


def _register(dispatcher, events=("license.created",), url=URL, owner=OWNER):
    result = dispatcher.register(owner, url, list(events))
    assert result.ok, result
    return result.value


def _records(store, webhook_id=None):
    with store.session() as db:
        q = db.query(WebhookDeliveryRecord)
        if webhook_id:
            q = q.filter(WebhookDeliveryRecord.webhook_id == webhook_id)
        return q.order_by(WebhookDeliveryRecord.id).all()


def _deliver_now(dispatcher, event):
    dispatcher.handle_event(event)
    assert dispatcher.queue.wait_idle(timeout=10)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------

class TestRegistration:
    def test_register_returns_secret_once(self, dispatcher, store):
        body = _register(dispatcher)
        assert len(body["secret"]) == 64
        assert body["webhookId"].startswith("wh_")
        assert "secret" not in json.dumps(dispatcher.list_subscriptions(OWNER))
        with store.session() as db:
            stored = db.query(WebhookSubscription).one()
        assert body["secret"] not in stored.secret_encrypted

    @pytest.mark.parametrize("url", ["ftp://hooks.example.com", "not a url", "https://"])
    def test_invalid_url(self, dispatcher, url):
        result = dispatcher.register(OWNER, url, ["license.created"])
        assert result.error.code == ErrorCode.INVALID_URL

    def test_private_targets_blocked_unless_allowed(self, dispatcher, settings):
        settings.webhook_allow_private_targets = False
        result = dispatcher.register(OWNER, "http://127.0.0.1:9000/hook", ["license.created"])
        assert result.error.code == ErrorCode.INVALID_URL

    @pytest.mark.parametrize("events", [["license.deleted"], [], ["webhook.test"]])
    def test_invalid_events(self, dispatcher, events):
        result = dispatcher.register(OWNER, URL, events)
        assert result.error.code == ErrorCode.INVALID_EVENTS

    def test_list_is_per_owner(self, dispatcher):
        _register(dispatcher)
        _register(dispatcher, owner="owner-2")
        assert len(dispatcher.list_subscriptions(OWNER)) == 1


class TestManagement:
    def test_update_keeps_secret(self, dispatcher, receiver):
        body = _register(dispatcher)
        updated = dispatcher.update(body["webhookId"], OWNER, events=["license.created", "usage.detected"])
        assert updated.ok
        assert updated.value["webhook"]["version"] == 2

        _deliver_now(dispatcher, _event("usage.detected"))
        request = receiver.requests[-1]
        assert request.headers[SIGNATURE_HEADER] == sign_payload(body["secret"], request.content)

    def test_update_compare_and_swap(self, dispatcher):
        webhook_id = _register(dispatcher)["webhookId"]
        assert dispatcher.update(webhook_id, OWNER, is_active=False, expected_version=1).ok
        stale = dispatcher.update(webhook_id, OWNER, is_active=True, expected_version=1)
        assert stale.error.code == ErrorCode.CONFLICT
        assert stale.error.details["currentVersion"] == 2

    def test_other_owner_cannot_modify(self, dispatcher):
        webhook_id = _register(dispatcher)["webhookId"]
        assert dispatcher.update(webhook_id, "intruder", is_active=False).error.code == ErrorCode.WEBHOOK_NOT_FOUND
        assert dispatcher.delete(webhook_id, "intruder").error.code == ErrorCode.WEBHOOK_NOT_FOUND

    def test_rotate_secret(self, dispatcher, receiver):
        body = _register(dispatcher)
        rotated = dispatcher.rotate_secret(body["webhookId"], OWNER).value
        assert rotated["secret"] != body["secret"]

        _deliver_now(dispatcher, _event())
        request = receiver.requests[-1]
        assert request.headers[SIGNATURE_HEADER] == sign_payload(rotated["secret"], request.content)

    def test_delete_keeps_history(self, dispatcher, store):
        webhook_id = _register(dispatcher)["webhookId"]
        _deliver_now(dispatcher, _event())
        assert dispatcher.delete(webhook_id, OWNER).ok
        assert len(_records(store, webhook_id)) == 1
        assert dispatcher.list_subscriptions(OWNER) == []

    def test_inactive_subscription_not_delivered(self, dispatcher, receiver):
        webhook_id = _register(dispatcher)["webhookId"]
        dispatcher.update(webhook_id, OWNER, is_active=False)
        _deliver_now(dispatcher, _event())
        assert receiver.requests == []


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

class TestDelivery:
    def test_signature_matches_body(self, dispatcher, receiver, store):
        secret = _register(dispatcher)["secret"]
        _deliver_now(dispatcher, _event())

        request = receiver.requests[0]
        expected = "sha256=" + hmac.new(secret.encode(), request.content, hashlib.sha256).hexdigest()
        assert request.headers[SIGNATURE_HEADER] == expected
        assert request.headers["X-RSL-Event"] == "license.created"
        assert request.headers["User-Agent"] == "RSL-Platform-Webhook/1.0"

        record = _records(store)[0]
        assert record.status == "sent"
        assert record.payload.encode() == request.content

    def test_tampered_byte_breaks_signature(self, dispatcher, receiver):
        secret = _register(dispatcher)["secret"]
        _deliver_now(dispatcher, _event())

        request = receiver.requests[0]
        tampered = bytearray(request.content)
        tampered[len(tampered) // 2] ^= 0x01
        assert sign_payload(secret, bytes(tampered)) != request.headers[SIGNATURE_HEADER]

    def test_envelope_shape(self, dispatcher, receiver):
        _register(dispatcher)
        event = _event(title="Lichens")
        _deliver_now(dispatcher, event)

        body = json.loads(receiver.requests[0].content)
        assert body == envelope(event)
        assert body["data"]["title"] == "Lichens"

    def test_unsubscribed_event_creates_no_record(self, dispatcher, receiver, store):
        """Subscribed only to license.created; payment.completed is not delivered."""
        webhook_id = _register(dispatcher, events=["license.created"])["webhookId"]
        _deliver_now(dispatcher, _event("payment.completed", amount="0.05", currency="USD"))
        assert receiver.requests == []
        assert _records(store, webhook_id) == []

    def test_deliver_skips_unsubscribed_target_directly(self, dispatcher, store):
        target = DeliveryTarget("wh_direct", URL, ("license.created",), "s" * 64)
        event = _event("payment.completed")
        payload = json.dumps(envelope(event)).encode()
        assert dispatcher.deliver(target, envelope(event), payload) is None
        assert _records(store) == []

    def test_event_without_owner_ignored(self, dispatcher, receiver):
        _register(dispatcher)
        _deliver_now(dispatcher, _event(owner_id=None))
        assert receiver.requests == []

    def test_other_owners_not_notified(self, dispatcher, receiver):
        _register(dispatcher, owner="owner-2")
        _deliver_now(dispatcher, _event(owner_id=OWNER))
        assert receiver.requests == []

    def test_fan_out_to_every_subscription(self, dispatcher, receiver, store):
        _register(dispatcher, url="https://a.example.com/hook")
        _register(dispatcher, url="https://b.example.com/hook")
        _deliver_now(dispatcher, _event())
        assert sorted(r.url.host for r in receiver.requests) == ["a.example.com", "b.example.com"]
        assert len(_records(store)) == 2


class TestFailuresAndRetry:
    def test_http_error_recorded_once(self, dispatcher, receiver, store, sleeps):
        receiver.status_code = 500
        _register(dispatcher)
        _deliver_now(dispatcher, _event())

        records = _records(store)
        assert len(records) == 1
        assert records[0].status == "failed"
        assert records[0].http_status == 500
        assert records[0].error == "HTTP 500"
        assert sleeps == []

    def test_transport_error_recorded(self, dispatcher, receiver, store):
        receiver.fail_with = httpx.ConnectError
        _register(dispatcher)
        _deliver_now(dispatcher, _event())

        record = _records(store)[0]
        assert record.status == "failed"
        assert record.http_status is None
        assert record.error.startswith("ConnectError")

    def test_retry_writes_one_record_per_attempt(self, dispatcher, receiver, store, settings, sleeps):
        settings.webhook_max_attempts = 3
        receiver.status_code = 503
        _register(dispatcher)
        _deliver_now(dispatcher, _event())

        records = _records(store)
        assert [r.attempt for r in records] == [1, 2, 3]
        assert all(r.status == "failed" for r in records)
        assert len({r.event_id for r in records}) == 1
        assert sleeps == [0.5, 1.0]
        # every attempt carries the same signed bytes
        assert len({r.content for r in receiver.requests}) == 1

    def test_retry_stops_after_success(self, dispatcher, receiver, store, settings):
        settings.webhook_max_attempts = 5
        responses = iter([502, 200])
        dispatcher.http = httpx.Client(transport=httpx.MockTransport(
            lambda request: httpx.Response(next(responses))
        ))
        _register(dispatcher)
        _deliver_now(dispatcher, _event())

        assert [(r.attempt, r.status) for r in _records(store)] == [(1, "failed"), (2, "sent")]

    def test_delivery_records_are_append_only(self, dispatcher, store):
        _register(dispatcher)
        _deliver_now(dispatcher, _event())
        with pytest.raises(AppendOnlyViolation):
            with store.session() as db:
                db.query(WebhookDeliveryRecord).first().status = "sent-again"
                db.flush()


class TestSendTest:
    def test_send_test_is_synchronous(self, dispatcher, receiver):
        webhook_id = _register(dispatcher, events=["usage.detected"])["webhookId"]
        result = dispatcher.send_test(webhook_id, OWNER)
        assert result.ok
        assert result.value["result"]["success"] is True
        assert receiver.requests[0].headers["X-RSL-Event"] == "webhook.test"

    def test_history(self, dispatcher):
        webhook_id = _register(dispatcher)["webhookId"]
        dispatcher.send_test(webhook_id, OWNER)
        _deliver_now(dispatcher, _event())
        history = dispatcher.history(webhook_id, OWNER).value
        assert history["pagination"]["total"] == 2
        assert {e["eventType"] for e in history["events"]} == {"webhook.test", "license.created"}

    def test_unknown_webhook(self, dispatcher):
        assert dispatcher.send_test("wh_missing", OWNER).error.code == ErrorCode.WEBHOOK_NOT_FOUND


# ---------------------------------------------------------------------------
# Bus wiring & queue
# ---------------------------------------------------------------------------

class TestBusAndQueue:
    def test_publishing_on_bus_enqueues_delivery(self, dispatcher, receiver):
        _register(dispatcher)
        bus = InMemoryEventBus()
        bus.subscribe("license.created", dispatcher.handle_event)
        bus.publish(_event())
        assert dispatcher.queue.wait_idle(timeout=10)
        assert len(receiver.requests) == 1

    def test_publish_does_not_wait_for_delivery(self, dispatcher):
        _register(dispatcher)
        release = threading.Event()
        dispatcher.http = httpx.Client(transport=httpx.MockTransport(
            lambda request: (release.wait(10), httpx.Response(200))[1]
        ))
        dispatcher.handle_event(_event())
        # the handler returned while the receiver is still blocked
        assert dispatcher.queue.in_flight() == 1
        release.set()
        assert dispatcher.queue.wait_idle(timeout=10)

    def test_queue_runs_jobs_for_one_key_in_order(self):
        queue = DeliveryQueue(max_workers=4)
        seen = []
        active = []
        overlap = []
        lock = threading.Lock()

        def job(n):
            def run():
                with lock:
                    active.append(n)
                    if len(active) > 1:
                        overlap.append(n)
                seen.append(n)
                with lock:
                    active.remove(n)
            return run

        for n in range(20):
            queue.submit("wh_same", job(n))
        assert queue.wait_idle(timeout=10)
        queue.drain()
        assert seen == list(range(20))
        assert overlap == []

    def test_closed_queue_rejects_jobs(self):
        queue = DeliveryQueue(max_workers=1)
        queue.drain()
        assert queue.submit("wh_x", lambda: None) is False
