"""RSL Platform — Access evaluation, payments and refunds."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from core.audit import Actor
from core.dependencies import Principal, get_principal, get_request_actor, get_service
from core.errors import unwrap
from modules.policy.schemas import AccessRequest

log = logging.getLogger("rsl.api")

router = APIRouter(tags=["Access"])

access_dep = get_service("AccessService")


@router.post("/access/evaluate")
async def evaluate_access(body: AccessRequest, access=Depends(access_dep)):
    """Evaluate a request against a license without charging or issuing a token."""
    return unwrap(access.evaluate_request(body))


@router.post("/payments/process")
async def process_payment(
    body: AccessRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    principal: Principal = Depends(get_principal),
    actor: Actor = Depends(get_request_actor),
    access=Depends(access_dep),
):
    """Request access to licensed content, paying when the license requires it.

    The idempotency key may be sent in the body or the Idempotency-Key header.
    """
    if idempotency_key and not body.idempotency_key:
        body = body.model_copy(update={"idempotency_key": idempotency_key})
    return unwrap(access.request_access(body, principal.client_id, principal.id, actor))


@router.get("/payments/history")
async def payment_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_principal),
    access=Depends(access_dep),
):
    return unwrap(access.payment_history(principal.id, page=page, limit=limit))


@router.post("/payments/refund/{transaction_id}")
async def refund_payment(
    transaction_id: str,
    principal: Principal = Depends(get_principal),
    actor: Actor = Depends(get_request_actor),
    access=Depends(access_dep),
):
    return unwrap(access.refund(transaction_id, principal.id, actor))
