# core/events.py — canonical event type definitions
# All cross-module communication should use these constants as event_type values.
# The five license/payment/usage events are also the webhook event vocabulary
# (core.base.WebhookEvent).

from core.base import WebhookEvent

# License events
LICENSE_CREATED = WebhookEvent.LICENSE_CREATED.value      # {license_id, owner_id, content_id, title, version}
LICENSE_UPDATED = WebhookEvent.LICENSE_UPDATED.value      # {license_id, owner_id, version, is_active}
LICENSE_EXPIRED = WebhookEvent.LICENSE_EXPIRED.value      # {license_id, owner_id, expires_at}

# Payment events
PAYMENT_COMPLETED = WebhookEvent.PAYMENT_COMPLETED.value  # {license_id, owner_id, transaction_id, amount, currency}

# Usage events
USAGE_DETECTED = WebhookEvent.USAGE_DETECTED.value        # {license_id, owner_id, permissions, user_type, country_code}

# Test delivery only; never published on the bus
WEBHOOK_TEST = "webhook.test"

ALL_BUS_EVENTS = [e.value for e in WebhookEvent]
