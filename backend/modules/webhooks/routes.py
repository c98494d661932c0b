"""RSL Platform — Webhook subscription management and delivery history."""

import logging

from fastapi import APIRouter, Depends, Query

from core.dependencies import Principal, get_principal, get_service
from core.errors import unwrap
from modules.webhooks.schemas import WebhookRegisterRequest, WebhookUpdateRequest

log = logging.getLogger("rsl.api")

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

webhooks_dep = get_service("WebhookDispatcher")


@router.post("/register", status_code=201)
async def register_webhook(
    body: WebhookRegisterRequest,
    principal: Principal = Depends(get_principal),
    webhooks=Depends(webhooks_dep),
):
    """Subscribe a URL to events. The signing secret is only shown in this response."""
    return unwrap(webhooks.register(principal.id, body.url, body.events))


@router.get("/list")
async def list_webhooks(
    principal: Principal = Depends(get_principal),
    webhooks=Depends(webhooks_dep),
):
    return webhooks.list_subscriptions(principal.id)


@router.put("/{webhook_id}")
async def update_webhook(
    webhook_id: str,
    body: WebhookUpdateRequest,
    principal: Principal = Depends(get_principal),
    webhooks=Depends(webhooks_dep),
):
    return unwrap(webhooks.update(
        webhook_id, principal.id,
        url=body.url, events=body.events, is_active=body.is_active,
        expected_version=body.expected_version,
    ))


@router.delete("/{webhook_id}")
async def delete_webhook(
    webhook_id: str,
    principal: Principal = Depends(get_principal),
    webhooks=Depends(webhooks_dep),
):
    return unwrap(webhooks.delete(webhook_id, principal.id))


@router.post("/{webhook_id}/rotate-secret")
async def rotate_webhook_secret(
    webhook_id: str,
    principal: Principal = Depends(get_principal),
    webhooks=Depends(webhooks_dep),
):
    """Replace the signing secret. The new secret is only shown in this response."""
    return unwrap(webhooks.rotate_secret(webhook_id, principal.id))


@router.post("/{webhook_id}/test")
def test_webhook(
    webhook_id: str,
    principal: Principal = Depends(get_principal),
    webhooks=Depends(webhooks_dep),
):
    # Plain def: the blocking HTTP call runs in the threadpool, not on the event loop
    return unwrap(webhooks.send_test(webhook_id, principal.id))


@router.get("/{webhook_id}/history")
async def webhook_history(
    webhook_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_principal),
    webhooks=Depends(webhooks_dep),
):
    return unwrap(webhooks.history(webhook_id, principal.id, page=page, limit=limit))
