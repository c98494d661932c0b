# core/interfaces/payment.py
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    transaction_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    success: bool
    refund_id: Optional[str] = None
    error: Optional[str] = None


class PaymentProcessor(ABC):
    """Charges and refunds against an external payment provider."""

    @abstractmethod
    def charge(self, payment_info: dict, amount: Decimal, currency: str) -> ChargeResult: ...

    @abstractmethod
    def refund(self, provider_transaction_id: str, method: str,
               amount: Decimal, currency: str) -> RefundResult: ...
