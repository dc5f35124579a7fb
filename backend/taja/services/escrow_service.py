# Overview: Service-layer operations for escrow; payment capture, escrow funding, release and refund.

from __future__ import annotations

import time
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import (
    DependencyError,
    GatewayTimeoutError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..integrations.payments.base import PaymentInitializeResult, PaymentsGateway, PaymentVerifyResult
from ..models import Order, Transaction, User, WebhookEvent
from ..models.accounts import REVIEW_SUSPICIOUS_ACTIVITY
from ..money import CENT, to_money
from ..time_utils import utcnow
from . import journal_service
from .concurrency import guarded_update
from .notifications import (
    EVENT_ESCROW_FALLBACK,
    EVENT_ESCROW_FUNDED,
    EVENT_ESCROW_REFUNDED,
    EVENT_ESCROW_RELEASED,
    Notifier,
    emit_safely,
)
from .order_service import (
    PAYMENT_METHODS,
    STATUS_CANCELLED,
    STATUS_DELIVERED,
    STATUS_REFUNDED,
    OrderLedger,
    can_be_refunded,
)

"""
Escrow Invariants

- escrow_status only moves forward along ESCROW_TRANSITIONS.
- Release happens at most once per order: the funded -> released write is a
  guarded UPDATE claimed before the gateway disburses, and the PAYOUT_/FEE_
  journal references are unique.
- seller payout + platform fee == order total.
- A gateway call that times out never leads to a committed state change;
  the webhook handler reconciles later.
- Definite escrow-creation failure does not block the order: payment is
  recorded as 'paid' outside escrow and the seller is flagged for review.
"""

PLATFORM_FEE_RATE = Decimal("0.05")

PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"
PAYMENT_ESCROWED = "escrowed"

ESCROW_PENDING = "pending"
ESCROW_FUNDED = "funded"
ESCROW_RELEASED = "released"
ESCROW_REFUNDED = "refunded"

ESCROW_TRANSITIONS = {
    ESCROW_PENDING: {ESCROW_FUNDED, ESCROW_REFUNDED},
    ESCROW_FUNDED: {ESCROW_RELEASED, ESCROW_REFUNDED},
    ESCROW_RELEASED: set(),
    ESCROW_REFUNDED: set(),
}

FUNDING_FUNDED = "funded"
FUNDING_FALLBACK = "fallback"
FUNDING_FAILED = "failed"

WEBHOOK_RECEIVED = "received"
WEBHOOK_PROCESSED = "processed"
WEBHOOK_IGNORED = "ignored"
WEBHOOK_FAILED = "failed"


def can_advance_escrow(current: str, target: str) -> bool:
    return target in ESCROW_TRANSITIONS.get(current, set())


def split_settlement(total, fee_rate: Decimal = PLATFORM_FEE_RATE) -> tuple[Decimal, Decimal]:
    """Return (seller_payout, platform_fee); the two always sum to total."""
    total = to_money(total, "total")
    fee = (total * fee_rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return total - fee, fee


def _timestamped_reference(prefix: str, order_number: str) -> str:
    return f"{prefix}_{order_number}_{int(time.time() * 1000)}"


def _party(user: User | None) -> dict:
    if user is None:
        return {}
    return {"email": user.email, "name": user.full_name, "phone": user.phone}


class EscrowCoordinator:
    """
    Moves money for an order through the payments gateway.

    Writes payment and escrow fields on orders and appends journal rows;
    status changes that accompany a refund go through the OrderLedger.
    """

    def __init__(
        self,
        gateway: PaymentsGateway,
        ledger: OrderLedger,
        notifier: Notifier,
        *,
        currency: str = "NGN",
        fee_rate: Decimal = PLATFORM_FEE_RATE,
    ):
        self.gateway = gateway
        self.ledger = ledger
        self.notifier = notifier
        self.currency = currency
        self.fee_rate = fee_rate

    # -------------------------
    # Payment capture
    # -------------------------

    def initialize_payment(self, order: Order, payment_method: str | None = None) -> PaymentInitializeResult:
        if order.payment_status in (PAYMENT_PAID, PAYMENT_ESCROWED):
            raise InvalidStateError("Order has already been paid")
        if order.status in (STATUS_CANCELLED, STATUS_REFUNDED):
            raise InvalidStateError(f"Cannot pay for a {order.status} order")
        if payment_method is not None and payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Invalid payment method. Must be one of: {', '.join(PAYMENT_METHODS)}")

        reference = _timestamped_reference("TJS", order.order_number)
        buyer = db.session.get(User, order.buyer_id)
        result = self.gateway.initialize_payment(
            reference=reference,
            amount=Decimal(order.total),
            customer=_party(buyer),
            metadata={"order_id": order.id, "order_number": order.order_number, "shop_id": order.shop_id},
        )

        journal_service.record_transaction(
            user_id=order.buyer_id,
            order_id=order.id,
            transaction_type=journal_service.TX_PAYMENT,
            amount=order.total,
            currency=self.currency,
            reference=reference,
            description=f"Payment for order {order.order_number}",
            gateway=self.gateway.name,
        )
        order.payment_reference = reference
        if payment_method is not None:
            order.payment_method = payment_method
        db.session.commit()

        current_app.logger.info("Payment %s initialized for order %s", reference, order.order_number)
        return result

    def verify_payment(self, reference: str) -> Order | None:
        """
        Ask the gateway for the outcome of a payment and apply it.

        Idempotent: an already reconciled payment is returned unchanged.
        """
        tx = journal_service.find_by_reference(reference)
        if tx is None or tx.transaction_type != journal_service.TX_PAYMENT:
            raise NotFoundError("Transaction not found")
        if tx.status != journal_service.TX_PENDING:
            return db.session.get(Order, tx.order_id) if tx.order_id else None

        verification = self.gateway.verify_payment(reference)
        if verification.status not in (journal_service.TX_SUCCESSFUL, journal_service.TX_FAILED):
            # still pending at the gateway
            return db.session.get(Order, tx.order_id) if tx.order_id else None

        order, _ = self._apply_payment_outcome(tx, verification.successful, verification.raw)
        return order

    def _apply_payment_outcome(self, tx: Transaction, successful: bool, raw: dict | None) -> tuple[Order | None, str | None]:
        order = db.session.get(Order, tx.order_id) if tx.order_id else None
        status = journal_service.TX_SUCCESSFUL if successful else journal_service.TX_FAILED

        if not journal_service.mark_transaction_status(tx, status, raw):
            db.session.rollback()
            return order, None

        outcome = None
        if order is not None:
            if successful:
                try:
                    outcome = self._fund(order)
                except GatewayTimeoutError:
                    db.session.rollback()
                    raise
            elif guarded_update(
                Order,
                [Order.id == order.id, Order.payment_status == PAYMENT_PENDING],
                {"payment_status": PAYMENT_FAILED, "updated_at": utcnow()},
            ):
                outcome = FUNDING_FAILED

        db.session.commit()
        if order is not None:
            self._announce_funding(order, outcome)
        return order, outcome

    # -------------------------
    # Escrow funding
    # -------------------------

    def _fund(self, order: Order) -> str | None:
        """
        Hold the payment in escrow. Joins the caller's unit of work.

        Returns FUNDING_FUNDED, FUNDING_FALLBACK, or None when the order was
        already funded or settled.
        """
        if order.escrow_status != ESCROW_PENDING or order.payment_status not in (PAYMENT_PENDING, PAYMENT_FAILED):
            return None
        if order.status in (STATUS_CANCELLED, STATUS_REFUNDED):
            return self._capture_without_escrow(order)

        buyer = db.session.get(User, order.buyer_id)
        seller = db.session.get(User, order.seller_id)
        try:
            escrow = self.gateway.create_escrow(
                reference=order.payment_reference or order.order_number,
                amount=Decimal(order.total),
                customer=_party(buyer),
                seller=_party(seller),
                title=f"Order {order.order_number}",
                description=f"Escrow for order {order.order_number} - {order.total_items} item(s)",
            )
        except GatewayTimeoutError:
            raise
        except DependencyError as exc:
            return self._fallback(order, seller, exc)

        now = utcnow()
        applied = guarded_update(
            Order,
            [
                Order.id == order.id,
                Order.escrow_status == ESCROW_PENDING,
                Order.payment_status.in_((PAYMENT_PENDING, PAYMENT_FAILED)),
            ],
            {
                "escrow_status": ESCROW_FUNDED,
                "payment_status": PAYMENT_ESCROWED,
                "escrow_reference": escrow.escrow_id,
                "escrow_created_at": now,
                "updated_at": now,
            },
        )
        return FUNDING_FUNDED if applied else None

    def _capture_without_escrow(self, order: Order) -> None:
        current_app.logger.warning(
            "Payment captured for %s order %s; holding as paid until refunded", order.status, order.order_number
        )
        guarded_update(
            Order,
            [Order.id == order.id, Order.payment_status.in_((PAYMENT_PENDING, PAYMENT_FAILED))],
            {"payment_status": PAYMENT_PAID, "updated_at": utcnow()},
        )
        return None

    def _fallback(self, order: Order, seller: User | None, exc: DependencyError) -> str | None:
        current_app.logger.warning(
            "Escrow creation failed for order %s, recording direct payment: %s", order.order_number, exc.reason
        )
        applied = guarded_update(
            Order,
            [
                Order.id == order.id,
                Order.escrow_status == ESCROW_PENDING,
                Order.payment_status.in_((PAYMENT_PENDING, PAYMENT_FAILED)),
            ],
            {"payment_status": PAYMENT_PAID, "updated_at": utcnow()},
        )
        if not applied:
            return None
        if seller is not None:
            seller.flag_for_review(REVIEW_SUSPICIOUS_ACTIVITY)
        return FUNDING_FALLBACK

    def _announce_funding(self, order: Order, outcome: str | None) -> None:
        payload = {
            "order_id": order.id,
            "order_number": order.order_number,
            "buyer_id": order.buyer_id,
            "seller_id": order.seller_id,
            "amount": str(order.total),
        }
        if outcome == FUNDING_FUNDED:
            current_app.logger.info("Escrow %s funded for order %s", order.escrow_reference, order.order_number)
            emit_safely(self.notifier, EVENT_ESCROW_FUNDED, {**payload, "escrow_reference": order.escrow_reference})
        elif outcome == FUNDING_FALLBACK:
            emit_safely(self.notifier, EVENT_ESCROW_FALLBACK, payload)

    def fund_escrow(self, order: Order, verification: PaymentVerifyResult) -> str | None:
        """Fund escrow from a gateway verification of the order's payment."""
        if not verification.successful:
            raise InvalidStateError("Payment has not been confirmed")
        if order.payment_reference and verification.reference != order.payment_reference:
            raise ValidationError("Verification does not match the order's payment")
        try:
            outcome = self._fund(order)
        except GatewayTimeoutError:
            db.session.rollback()
            raise
        db.session.commit()
        self._announce_funding(order, outcome)
        return outcome

    # -------------------------
    # Settlement
    # -------------------------

    def release_escrow(self, order: Order, initiator_id: int | None = None) -> dict:
        """
        Pay the seller out of escrow for a delivered order.

        The funded -> released claim is written before the gateway is asked
        to disburse and stays uncommitted until the journal rows join it, so
        a concurrent caller blocks on the row and then finds it settled. At
        most one caller reaches the gateway; a gateway failure rolls the
        claim back and leaves the order funded for a retry.
        """
        if order.status != STATUS_DELIVERED or order.escrow_status != ESCROW_FUNDED:
            raise InvalidStateError("Cannot release escrow at this time")
        if not order.escrow_reference:
            raise InvalidStateError("Order has no escrow reference")

        payout, fee = split_settlement(order.total, self.fee_rate)
        order_id, order_number = order.id, order.order_number
        seller_id, buyer_id = order.seller_id, order.buyer_id
        escrow_reference = order.escrow_reference

        now = utcnow()
        applied = guarded_update(
            Order,
            [Order.id == order_id, Order.escrow_status == ESCROW_FUNDED, Order.status == STATUS_DELIVERED],
            {
                "escrow_status": ESCROW_RELEASED,
                "payment_status": PAYMENT_PAID,
                "escrow_released_at": now,
                "updated_at": now,
            },
        )
        if not applied:
            db.session.rollback()
            raise InvalidStateError("Escrow has already been settled")

        try:
            result = self.gateway.release_escrow(escrow_reference)
        except DependencyError:
            db.session.rollback()
            raise
        if not result.ok:
            db.session.rollback()
            raise DependencyError(result.message or "Escrow release failed")

        try:
            journal_service.record_transaction(
                user_id=seller_id,
                order_id=order_id,
                transaction_type=journal_service.TX_PAYOUT,
                amount=payout,
                currency=self.currency,
                status=journal_service.TX_SUCCESSFUL,
                reference=journal_service.payout_reference(order_number),
                description=f"Payout for order {order_number}",
                gateway=self.gateway.name,
                gateway_response=result.raw,
            )
            journal_service.record_transaction(
                user_id=seller_id,
                order_id=order_id,
                transaction_type=journal_service.TX_FEE,
                amount=fee,
                currency=self.currency,
                status=journal_service.TX_SUCCESSFUL,
                reference=journal_service.fee_reference(order_number),
                description=f"Platform fee for order {order_number}",
                gateway=self.gateway.name,
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise InvalidStateError("Escrow has already been settled")

        current_app.logger.info(
            "Escrow released for order %s: payout=%s fee=%s initiator=%s", order_number, payout, fee, initiator_id
        )
        settlement = {
            "order_id": order_id,
            "order_number": order_number,
            "seller_id": seller_id,
            "buyer_id": buyer_id,
            "seller_payout": str(payout),
            "platform_fee": str(fee),
            "initiator_id": initiator_id,
        }
        emit_safely(self.notifier, EVENT_ESCROW_RELEASED, settlement)
        return settlement

    def refund(self, order: Order, reason: str, initiator_id: int | None = None) -> Transaction:
        """
        Return the buyer's money.

        Allowed while the payment is paid or escrowed and escrow has not
        been released; delivered orders only inside the refund window.
        """
        if not reason:
            raise ValidationError("Refund reason is required")
        if order.payment_status not in (PAYMENT_PAID, PAYMENT_ESCROWED):
            raise InvalidStateError("Order payment cannot be refunded")
        if not can_advance_escrow(order.escrow_status, ESCROW_REFUNDED):
            raise InvalidStateError("Escrow has already been settled")
        if order.status == STATUS_REFUNDED:
            raise InvalidStateError("Order has already been refunded")
        if order.status == STATUS_DELIVERED and not can_be_refunded(order):
            raise InvalidStateError("Refund window has closed")

        refund_tx = journal_service.record_transaction(
            user_id=order.buyer_id,
            order_id=order.id,
            transaction_type=journal_service.TX_REFUND,
            amount=order.total,
            currency=self.currency,
            reference=_timestamped_reference("REFUND", order.order_number),
            description=f"Refund for order {order.order_number}: {reason}",
            gateway=self.gateway.name,
        )

        try:
            result = self.gateway.refund(order.payment_reference or order.order_number, Decimal(order.total))
            if not result.ok:
                raise DependencyError(result.message or "Refund failed")
        except GatewayTimeoutError:
            db.session.rollback()
            raise
        except DependencyError as exc:
            journal_service.mark_transaction_status(refund_tx, journal_service.TX_FAILED, {"error": exc.reason})
            db.session.commit()
            raise

        applied = guarded_update(
            Order,
            [
                Order.id == order.id,
                Order.payment_status.in_((PAYMENT_PAID, PAYMENT_ESCROWED)),
                Order.escrow_status.in_((ESCROW_PENDING, ESCROW_FUNDED)),
            ],
            {"payment_status": PAYMENT_REFUNDED, "escrow_status": ESCROW_REFUNDED, "updated_at": utcnow()},
        )
        if not applied:
            db.session.rollback()
            current_app.logger.error(
                "Refund for order %s accepted by gateway but order was settled concurrently", order.order_number
            )
            raise InvalidStateError("Escrow has already been settled")

        journal_service.mark_transaction_status(refund_tx, journal_service.TX_SUCCESSFUL, result.raw)
        previous = self.ledger.settle_refund(order, f"Refunded: {reason}"[:255])
        db.session.commit()

        current_app.logger.info(
            "Refund %s processed for order %s (initiator=%s)", refund_tx.reference, order.order_number, initiator_id
        )
        emit_safely(self.notifier, EVENT_ESCROW_REFUNDED, {
            "order_id": order.id,
            "order_number": order.order_number,
            "buyer_id": order.buyer_id,
            "seller_id": order.seller_id,
            "amount": str(refund_tx.amount),
            "reason": reason,
        })
        if previous is not None:
            self.ledger.announce_status_change(order, previous)
        return refund_tx

    # -------------------------
    # Webhooks
    # -------------------------

    def _claim_event(self, event_id: str, reference: str, payload: dict) -> WebhookEvent | None:
        """Record a webhook delivery; None when it was already handled."""
        event = WebhookEvent(
            provider=self.gateway.name,
            event_id=event_id,
            reference=reference,
            status=WEBHOOK_RECEIVED,
            payload_json=payload,
        )
        db.session.add(event)
        try:
            db.session.commit()
            return event
        except IntegrityError:
            db.session.rollback()

        existing = db.session.query(WebhookEvent).filter_by(event_id=event_id).first()
        if existing is None or existing.status != WEBHOOK_FAILED:
            return None
        existing.status = WEBHOOK_RECEIVED
        existing.error = None
        db.session.commit()
        return existing

    def _close_event(self, event: WebhookEvent, status: str, error: str | None = None) -> None:
        event.status = status
        event.error = error
        event.processed_at = utcnow()
        db.session.commit()

    def handle_webhook(self, payload: dict, event_id: str | None = None) -> dict:
        """
        Apply a payment notification from the gateway.

        Deliveries are deduplicated on event_id, and the payment transaction
        only ever leaves 'pending' once, so redelivery is a no-op.
        """
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise ValidationError("Webhook payload missing data")
        reference = str(data.get("tx_ref") or "").strip()
        if not reference:
            raise ValidationError("Webhook payload missing tx_ref")
        status = str(data.get("status") or "").strip().lower()
        event_id = (event_id or str(data.get("id") or "") or f"{reference}:{status}")[:128]

        event = self._claim_event(event_id, reference, payload)
        if event is None:
            return {"status": "duplicate", "reference": reference}

        tx = journal_service.find_by_reference(reference)
        if tx is None or tx.transaction_type != journal_service.TX_PAYMENT:
            self._close_event(event, WEBHOOK_IGNORED, "unknown reference")
            return {"status": "ignored", "reference": reference}
        if tx.status != journal_service.TX_PENDING:
            self._close_event(event, WEBHOOK_IGNORED, "already reconciled")
            return {"status": "already_processed", "reference": reference}
        if status not in ("successful", "failed"):
            self._close_event(event, WEBHOOK_IGNORED, f"unhandled status '{status}'")
            return {"status": "ignored", "reference": reference}

        try:
            order, outcome = self._apply_payment_outcome(tx, status == "successful", data)
        except DependencyError as exc:
            db.session.rollback()
            self._close_event(event, WEBHOOK_FAILED, exc.reason)
            raise

        self._close_event(event, WEBHOOK_PROCESSED)
        current_app.logger.info("Webhook %s processed for %s (%s)", event_id, reference, outcome)
        return {
            "status": "processed",
            "reference": reference,
            "payment_status": order.payment_status if order is not None else None,
            "escrow_status": order.escrow_status if order is not None else None,
        }
