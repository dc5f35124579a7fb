from __future__ import annotations

import threading
import uuid
from decimal import Decimal

from ...errors import DependencyError, GatewayTimeoutError
from .base import (
    EscrowResult,
    GatewayStatusResult,
    PaymentInitializeResult,
    PaymentsGateway,
    PaymentVerifyResult,
)


class MockPaymentsGateway(PaymentsGateway):
    """
    In-memory gateway for development and tests.

    Failures are scripted per operation name ("initialize_payment",
    "verify_payment", "create_escrow", "release_escrow", "refund") through
    `fail_on` and `timeout_on`. `on_release` runs inside release_escrow
    before it returns, so tests can hold two callers at the same point.
    """
    name = "mock"

    def __init__(self):
        self.fail_on: set[str] = set()
        self.timeout_on: set[str] = set()
        self.payment_statuses: dict[str, str] = {}
        self.amounts: dict[str, Decimal] = {}
        self.escrows: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.on_release = None
        self._lock = threading.Lock()

    def _enter(self, operation: str, key: str) -> None:
        with self._lock:
            self.calls.append((operation, key))
        if operation in self.timeout_on:
            raise GatewayTimeoutError(f"MOCK_TIMEOUT:{operation}")
        if operation in self.fail_on:
            raise DependencyError(f"MOCK_FAILED:{operation}")

    def calls_for(self, operation: str) -> list[str]:
        with self._lock:
            return [key for op, key in self.calls if op == operation]

    def initialize_payment(self, *, reference, amount, customer, metadata=None):
        self._enter("initialize_payment", reference)
        self.amounts[reference] = Decimal(amount)
        self.payment_statuses.setdefault(reference, "successful")
        return PaymentInitializeResult(
            payment_url=f"https://example.com/mock/pay?tx_ref={reference}",
            reference=reference,
            provider=self.name,
            raw={"customer": customer, "metadata": metadata or {}},
        )

    def verify_payment(self, reference):
        self._enter("verify_payment", reference)
        return PaymentVerifyResult(
            status=self.payment_statuses.get(reference, "successful"),
            reference=reference,
            amount=self.amounts.get(reference, Decimal("0")),
            currency="NGN",
            raw={"tx_ref": reference, "provider": self.name},
        )

    def create_escrow(self, *, reference, amount, customer, seller, title="", description=""):
        self._enter("create_escrow", reference)
        escrow_id = f"ESC-{uuid.uuid4().hex[:12].upper()}"
        with self._lock:
            self.escrows[escrow_id] = {"reference": reference, "amount": Decimal(amount), "status": "held"}
        return EscrowResult(escrow_id=escrow_id, raw={"id": escrow_id})

    def release_escrow(self, escrow_id):
        self._enter("release_escrow", escrow_id)
        if self.on_release is not None:
            self.on_release(escrow_id)
        with self._lock:
            escrow = self.escrows.get(escrow_id)
            if escrow is None:
                return GatewayStatusResult(status="failed", message="Escrow not found")
            escrow["status"] = "disbursed"
        return GatewayStatusResult(status="success", message="Escrow disbursed")

    def refund(self, reference, amount=None):
        self._enter("refund", reference)
        return GatewayStatusResult(status="success", message="Refund queued")
