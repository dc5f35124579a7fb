from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


@dataclass
class PaymentInitializeResult:
    payment_url: str
    reference: str
    provider: str
    raw: dict | None = None


@dataclass
class PaymentVerifyResult:
    status: str  # successful, failed, pending
    reference: str
    amount: Decimal
    currency: str
    raw: dict | None = None

    @property
    def successful(self) -> bool:
        return self.status == "successful"


@dataclass
class EscrowResult:
    escrow_id: str
    raw: dict | None = None


@dataclass
class GatewayStatusResult:
    status: str  # success, failed
    message: str = ""
    raw: dict | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"


class PaymentsGateway:
    """
    Payment and escrow gateway.

    Implementations raise DependencyError for transport or API failures and
    GatewayTimeoutError when the bounded timeout expires.
    """
    name = "unknown"

    def initialize_payment(self, *, reference: str, amount: Decimal, customer: dict, metadata: dict | None = None) -> PaymentInitializeResult:
        raise NotImplementedError

    def verify_payment(self, reference: str) -> PaymentVerifyResult:
        raise NotImplementedError

    def create_escrow(self, *, reference: str, amount: Decimal, customer: dict, seller: dict, title: str = "", description: str = "") -> EscrowResult:
        raise NotImplementedError

    def release_escrow(self, escrow_id: str) -> GatewayStatusResult:
        raise NotImplementedError

    def refund(self, reference: str, amount: Decimal | None = None) -> GatewayStatusResult:
        raise NotImplementedError
