from __future__ import annotations

from decimal import Decimal, InvalidOperation

import requests

from ...errors import DependencyError, GatewayTimeoutError
from .base import (
    EscrowResult,
    GatewayStatusResult,
    PaymentInitializeResult,
    PaymentsGateway,
    PaymentVerifyResult,
)


class FlutterwavePaymentsGateway(PaymentsGateway):
    name = "flutterwave"

    def __init__(self, secret_key: str, *, base_url: str, timeout: float, redirect_url: str = "", callback_url: str = ""):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.redirect_url = redirect_url
        self.callback_url = callback_url

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, label: str, payload: dict | None = None, params: dict | None = None) -> dict:
        try:
            r = requests.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers(),
                json=payload,
                params=params,
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise GatewayTimeoutError(f"FLUTTERWAVE_{label}_TIMEOUT") from exc
        except requests.RequestException as exc:
            raise DependencyError(f"FLUTTERWAVE_{label}_UNAVAILABLE:{exc}") from exc

        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {}
        if r.status_code < 200 or r.status_code >= 300 or j.get("status") != "success":
            msg = (j.get("message") or f"HTTP {r.status_code}").strip()
            raise DependencyError(f"FLUTTERWAVE_{label}_FAILED:{msg}")
        return j

    def initialize_payment(self, *, reference, amount, customer, metadata=None):
        payload = {
            "tx_ref": reference,
            "amount": str(amount),
            "currency": "NGN",
            "payment_options": "card,banktransfer,ussd",
            "customer": {
                "email": customer.get("email"),
                "phonenumber": customer.get("phone"),
                "name": customer.get("name"),
            },
            "meta": metadata or {},
        }
        if self.redirect_url:
            payload["redirect_url"] = self.redirect_url
        j = self._request("POST", "/payments", "INIT", payload=payload)
        data = j.get("data") or {}
        return PaymentInitializeResult(
            payment_url=(data.get("link") or "").strip(),
            reference=reference,
            provider=self.name,
            raw=j,
        )

    def verify_payment(self, reference):
        j = self._request("GET", "/transactions/verify_by_reference", "VERIFY", params={"tx_ref": reference})
        data = j.get("data") or {}
        try:
            amount = Decimal(str(data.get("amount") or "0"))
        except InvalidOperation:
            amount = Decimal("0")
        return PaymentVerifyResult(
            status=(data.get("status") or "").strip().lower(),
            reference=(data.get("tx_ref") or reference).strip(),
            amount=amount,
            currency=(data.get("currency") or "NGN").strip().upper(),
            raw=j,
        )

    def create_escrow(self, *, reference, amount, customer, seller, title="", description=""):
        payload = {
            "tx_ref": reference,
            "amount": str(amount),
            "currency": "NGN",
            "customer": {"email": customer.get("email"), "name": customer.get("name")},
            "merchant": {"email": seller.get("email"), "name": seller.get("name")},
            "title": title,
            "description": description,
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url
        j = self._request("POST", "/escrows", "ESCROW", payload=payload)
        data = j.get("data") or {}
        escrow_id = str(data.get("id") or data.get("escrow_id") or "").strip()
        if not escrow_id:
            raise DependencyError("FLUTTERWAVE_ESCROW_FAILED:missing escrow id")
        return EscrowResult(escrow_id=escrow_id, raw=j)

    def release_escrow(self, escrow_id):
        j = self._request("POST", f"/escrows/{escrow_id}/disburse", "RELEASE", payload={})
        return GatewayStatusResult(status="success", message=(j.get("message") or "").strip(), raw=j)

    def refund(self, reference, amount=None):
        payload = {"amount": str(amount)} if amount is not None else {}
        j = self._request("POST", f"/transactions/{reference}/refund", "REFUND", payload=payload)
        return GatewayStatusResult(status="success", message=(j.get("message") or "").strip(), raw=j)
