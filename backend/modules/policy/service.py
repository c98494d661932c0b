"""
modules/policy/service.py — Access requests, payments and refunds.

AccessService wraps the pure evaluator with everything a grant needs:
loading the license, charging when the license gates a permission behind
payment, recording the transaction, auditing, issuing the access token and
announcing payment.completed / usage.detected.

A charge is committed together with its audit entries in one unit of work and
is never rolled back afterwards. Clients that lost the response retry with the
same idempotency key and get the committed grant back (``replayed: true``)
instead of a second charge.
"""

import hashlib
import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError

import core.audit as audit_actions
from core.audit import Actor, AuditLog
from core.base import TransactionStatus, ensure_utc, utcnow
from core.config import Settings
from core.errors import Err, ErrorCode, Ok, Result, fail
from core.events import PAYMENT_COMPLETED, USAGE_DETECTED
from core.interfaces.event_bus import Event, EventBus
from core.interfaces.payment import PaymentProcessor
from core.store import Store
from modules.policy.evaluator import AccessContext, Decision, evaluate
from modules.policy.models import PaymentTransaction
from modules.policy.schemas import AccessRequest

log = logging.getLogger("rsl.policy")

DEFAULT_CHARGE = Decimal("0.01")
DEFAULT_CURRENCY = "USD"


def money(value) -> str:
    """Plain decimal string without exponent or trailing zeros."""
    d = Decimal(str(value)).normalize()
    return format(d, "f")


def request_fingerprint(request: AccessRequest) -> str:
    """Digest of the parts of an access request that decide what a payment buys."""
    payload = {
        "licenseId": request.license_id,
        "contentId": request.content_id,
        "permissions": sorted({p.value for p in request.permissions}),
        "userType": request.user_type.value,
        "countryCode": request.country_code,
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


def transaction_to_dict(tx: PaymentTransaction) -> dict:
    return {
        "transactionId": tx.transaction_id,
        "licenseId": tx.license_id,
        "amount": money(tx.amount),
        "currency": tx.currency,
        "paymentMethod": tx.method,
        "providerTransactionId": tx.provider_transaction_id,
        "status": tx.status,
        "permissions": list(tx.permissions or []),
        "createdAt": ensure_utc(tx.created_at).isoformat() if tx.created_at else None,
        "refundedAt": ensure_utc(tx.refunded_at).isoformat() if tx.refunded_at else None,
    }


class AccessService:
    def __init__(
        self,
        store: Store,
        licenses,
        tokens,
        payments: PaymentProcessor,
        audit: AuditLog,
        bus: EventBus,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.licenses = licenses
        self.tokens = tokens
        self.payments = payments
        self.audit = audit
        self.bus = bus
        self.settings = settings
        self.clock = clock

    # ============== Evaluation ==============

    def _decide(self, request: AccessRequest, payment_proof=None):
        loaded = self.licenses.load_active(license_id=request.license_id, content_id=request.content_id)
        if not loaded.ok:
            return loaded, None
        snapshot = loaded.value
        context = AccessContext.build(request.user_type, request.country_code, request.permissions)
        decision = evaluate(snapshot.document, context, payment_proof=payment_proof,
                            geo_default_allow=self.settings.geo_default_allow)
        return Ok(snapshot), decision

    def evaluate_request(self, request: AccessRequest) -> "Result[dict]":
        """Decision only: no charge, no token, no audit entry."""
        loaded, decision = self._decide(request)
        if not loaded.ok:
            return loaded
        body = decision.to_dict()
        body["licenseId"] = loaded.value.license_id
        return Ok(body)

    # ============== Access ==============

    def request_access(self, request: AccessRequest, client_id: str, payer_id: str, actor: Actor) -> "Result[dict]":
        if request.idempotency_key:
            replay = self._replay(request, client_id, payer_id)
            if replay is not None:
                return replay

        loaded, decision = self._decide(request, payment_proof=request.payment_info)
        if not loaded.ok:
            return loaded
        snapshot = loaded.value
        if not decision.granted:
            log.info(f"Access refused on {snapshot.license_id} for {payer_id}: {decision.reason.value}")
            return Err(decision.to_error())

        payment = None
        if decision.payment_due:
            amount, currency = self._price(decision)
            info = {**request.payment_info.details, "method": request.payment_info.method.value}
            charge = self.payments.charge(info, amount, currency)
            if not charge.success:
                log.warning(f"Charge failed on {snapshot.license_id} for {payer_id}: {charge.error}")
                return fail(ErrorCode.PAYMENT_FAILED, charge.error or "Payment failed")
            payment = {
                "transactionId": f"txn_{uuid.uuid4().hex}",
                "providerTransactionId": charge.transaction_id,
                "amount": money(amount),
                "currency": currency,
                "method": info["method"],
            }

        receipt = None
        if payment is not None:
            receipt = self.tokens.sign({
                "sub": payer_id,
                "rsl_license_id": snapshot.license_id,
                "txn": payment["transactionId"],
                "amount": payment["amount"],
                "currency": payment["currency"],
                "permissions": list(decision.permissions),
            })

        try:
            with self.store.session() as db:
                if payment is not None:
                    db.add(PaymentTransaction(
                        transaction_id=payment["transactionId"],
                        idempotency_key=request.idempotency_key,
                        license_id=snapshot.license_id,
                        owner_id=snapshot.owner_id,
                        payer_id=payer_id,
                        amount=Decimal(payment["amount"]),
                        currency=payment["currency"],
                        method=payment["method"],
                        provider_transaction_id=payment["providerTransactionId"],
                        status=TransactionStatus.COMPLETED.value,
                        permissions=list(decision.permissions),
                        restrictions=list(decision.restrictions),
                        user_type=request.user_type.value,
                        country_code=request.country_code,
                        receipt=receipt,
                        request_fingerprint=request_fingerprint(request),
                        created_at=self.clock(),
                    ))
                    db.flush()
                    self.audit.append(snapshot.license_id, actor, audit_actions.PAYMENT_COMPLETED, {
                        "transactionId": payment["transactionId"],
                        "amount": payment["amount"],
                        "currency": payment["currency"],
                        "method": payment["method"],
                    }, db=db)
                self.audit.append(snapshot.license_id, actor, audit_actions.LICENSE_ACCESSED, {
                    "permissions": list(decision.permissions),
                    "userType": request.user_type.value,
                    "countryCode": request.country_code,
                    "paymentMade": payment is not None,
                }, db=db)
        except IntegrityError:
            # Lost a race with a concurrent request carrying the same key
            log.warning(f"Idempotency key collision on {snapshot.license_id}; "
                        f"provider charge {payment and payment['providerTransactionId']} needs review")
            replay = self._replay(request, client_id, payer_id)
            if replay is not None:
                return replay
            return fail(ErrorCode.CONFLICT, "Payment was recorded by a concurrent request")

        token = self._issue(decision.permissions, client_id, payer_id, snapshot.license_id)
        log.info(f"Access granted on {snapshot.license_id} to {payer_id}: "
                 f"{','.join(decision.permissions)} paid={payment is not None}")

        if payment is not None:
            self._publish(PAYMENT_COMPLETED, {
                "license_id": snapshot.license_id,
                "owner_id": snapshot.owner_id,
                "transaction_id": payment["transactionId"],
                "amount": payment["amount"],
                "currency": payment["currency"],
            })
        self._publish(USAGE_DETECTED, {
            "license_id": snapshot.license_id,
            "owner_id": snapshot.owner_id,
            "permissions": list(decision.permissions),
            "user_type": request.user_type.value,
            "country_code": request.country_code,
        })

        return Ok(self._grant_body(
            snapshot.license_id, token, decision.permissions, decision.restrictions,
            payment, receipt, replayed=False,
        ))

    def _replay(self, request: AccessRequest, client_id: str, payer_id: str) -> "Optional[Result[dict]]":
        key = request.idempotency_key
        if not key:
            return None
        with self.store.session() as db:
            tx = db.query(PaymentTransaction).filter(PaymentTransaction.idempotency_key == key).first()
        if tx is None:
            return None
        if tx.payer_id != payer_id:
            return fail(ErrorCode.CONFLICT, "Idempotency key already used by another payer")
        if tx.request_fingerprint != request_fingerprint(request):
            log.warning(f"Idempotency key of {tx.transaction_id} reused for a different request")
            return fail(ErrorCode.CONFLICT, "Idempotency key already used for a different request",
                        transactionId=tx.transaction_id)
        log.info(f"Replaying payment {tx.transaction_id} for idempotency key")
        token = self._issue(tx.permissions or [], client_id, payer_id, tx.license_id)
        payment = {
            "transactionId": tx.transaction_id,
            "providerTransactionId": tx.provider_transaction_id,
            "amount": money(tx.amount),
            "currency": tx.currency,
            "method": tx.method,
        }
        return Ok(self._grant_body(
            tx.license_id, token, tx.permissions or [], tx.restrictions or [],
            payment, tx.receipt, replayed=True,
        ))

    def _issue(self, permissions, client_id: str, payer_id: str, license_id: str):
        scope = " ".join(["license"] + list(permissions))
        return self.tokens.issue(scope, payer_id, client_id, license_id=license_id)

    def _grant_body(self, license_id, token, permissions, restrictions, payment, receipt, replayed) -> dict:
        body = {
            "success": True,
            "licenseId": license_id,
            "accessToken": token.access_token,
            "tokenType": "Bearer",
            "expiresAt": token.expires_at.isoformat(),
            "scope": token.scope,
            "permissions": list(permissions),
            "restrictions": list(restrictions),
            "paymentInfo": None,
            "replayed": replayed,
        }
        if payment is not None:
            body["paymentInfo"] = {
                "transactionId": payment["transactionId"],
                "amount": payment["amount"],
                "currency": payment["currency"],
                "method": payment["method"],
            }
            body["receipt"] = receipt
        return body

    def _price(self, decision: Decision):
        model = decision.payment_model or {}
        try:
            amount = Decimal(str(model["amount"])) if model.get("amount") else DEFAULT_CHARGE
        except InvalidOperation:
            amount = DEFAULT_CHARGE
        return amount, model.get("currency") or DEFAULT_CURRENCY

    # ============== History & refunds ==============

    def payment_history(self, payer_id: str, page: int = 1, limit: int = 20) -> "Result[dict]":
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        with self.store.session() as db:
            q = db.query(PaymentTransaction).filter(PaymentTransaction.payer_id == payer_id)
            total = q.count()
            rows = (
                q.order_by(PaymentTransaction.created_at.desc(), PaymentTransaction.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
                .all()
            )
            return Ok({
                "transactions": [transaction_to_dict(tx) for tx in rows],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "pages": (total + limit - 1) // limit,
                },
            })

    def refund(self, transaction_id: str, payer_id: str, actor: Actor) -> "Result[dict]":
        """Refund a completed payment.

        The row is claimed (completed -> refunding) in its own commit before
        the provider is called, so of two concurrent refunds only one reaches
        the provider. A failed provider refund releases the claim.
        """
        owned = (
            PaymentTransaction.transaction_id == transaction_id,
            PaymentTransaction.payer_id == payer_id,
        )
        with self.store.session() as db:
            claimed = (
                db.query(PaymentTransaction)
                .filter(*owned, PaymentTransaction.status == TransactionStatus.COMPLETED.value)
                .update({PaymentTransaction.status: TransactionStatus.REFUNDING.value},
                        synchronize_session=False)
            )
            tx = db.query(PaymentTransaction).filter(*owned).first()
            if tx is None:
                return fail(ErrorCode.TRANSACTION_NOT_FOUND,
                            "Transaction not found or you do not have permission to refund it")
            if claimed != 1:
                return fail(ErrorCode.INVALID_TRANSACTION_STATUS,
                            "Only completed transactions can be refunded")
            license_id = tx.license_id
            amount = money(tx.amount)
            currency = tx.currency
            charge = (tx.provider_transaction_id, tx.method, tx.amount, tx.currency)

        try:
            result = self.payments.refund(*charge)
        except Exception:
            self._release_claim(owned)
            raise

        if not result.success:
            self._release_claim(owned)
            log.warning(f"Refund of {transaction_id} failed: {result.error}")
            return fail(ErrorCode.PAYMENT_FAILED, result.error or "Refund failed")

        with self.store.session() as db:
            tx = db.query(PaymentTransaction).filter(*owned).one()
            tx.status = TransactionStatus.REFUNDED.value
            tx.refund_id = result.refund_id
            tx.refunded_at = self.clock()
            self.audit.append(license_id, actor, audit_actions.PAYMENT_REFUNDED, {
                "transactionId": transaction_id,
                "amount": amount,
                "currency": currency,
            }, db=db)

        log.info(f"Payment refunded: {transaction_id} {amount} {currency}")
        return Ok({
            "success": True,
            "refundId": result.refund_id,
            "amount": amount,
            "currency": currency,
            "message": "Refund processed successfully",
        })

    def _release_claim(self, owned) -> None:
        with self.store.session() as db:
            db.query(PaymentTransaction).filter(
                *owned, PaymentTransaction.status == TransactionStatus.REFUNDING.value,
            ).update({PaymentTransaction.status: TransactionStatus.COMPLETED.value},
                     synchronize_session=False)

    def _publish(self, event_type: str, data: dict) -> None:
        self.bus.publish(Event(event_type=event_type, source_module="policy", data=data))
