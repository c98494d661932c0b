"""
Payment processors.

MockPaymentProcessor stands in for the real providers (Stripe, PayPal,
crypto) and is the default PaymentProcessor registered by create_app().
A real integration implements core.interfaces.payment.PaymentProcessor and
is passed to create_app(payment_processor=...).
"""

import logging
import uuid
from decimal import Decimal

from core.base import PaymentMethod
from core.interfaces.payment import ChargeResult, PaymentProcessor, RefundResult

log = logging.getLogger("rsl.payments")


class MockPaymentProcessor(PaymentProcessor):
    """Accepts every charge for a supported method; records what it did."""

    def __init__(self, decline_methods=()):
        self.decline_methods = {PaymentMethod(m).value for m in decline_methods}
        self.charges: list[dict] = []
        self.refunds: list[dict] = []

    def charge(self, payment_info: dict, amount: Decimal, currency: str) -> ChargeResult:
        method = (payment_info or {}).get("method")
        try:
            method = PaymentMethod(method).value
        except ValueError:
            return ChargeResult(success=False, error="Unsupported payment method")
        if method in self.decline_methods:
            log.info(f"Mock {method} charge declined: {amount} {currency}")
            return ChargeResult(success=False, error=f"{method} payment declined")

        transaction_id = f"{method}_{uuid.uuid4().hex}"
        self.charges.append({"method": method, "amount": amount, "currency": currency,
                             "transaction_id": transaction_id})
        log.info(f"Mock {method} charge: {amount} {currency} -> {transaction_id}")
        return ChargeResult(success=True, transaction_id=transaction_id)

    def refund(self, provider_transaction_id: str, method: str,
               amount: Decimal, currency: str) -> RefundResult:
        refund_id = f"refund_{uuid.uuid4().hex}"
        self.refunds.append({"transaction_id": provider_transaction_id, "method": method,
                             "amount": amount, "currency": currency, "refund_id": refund_id})
        log.info(f"Mock refund of {provider_transaction_id}: {amount} {currency} -> {refund_id}")
        return RefundResult(success=True, refund_id=refund_id)
