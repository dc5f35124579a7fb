"""
Escrow coordinator tests: payment capture, escrow funding (including the
fallback and timeout paths), release, refund and webhook reconciliation.
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from taja.errors import DependencyError, GatewayTimeoutError, InvalidStateError, NotFoundError, ValidationError
from taja.extensions import db
from taja.models import Transaction, User, WebhookEvent
from taja.services import journal_service
from taja.services.escrow_service import FUNDING_FALLBACK, FUNDING_FUNDED, split_settlement
from taja.time_utils import utcnow


@pytest.fixture
def pay(flow, gateway):
    """Initialize and verify payment for an order; returns the payment reference."""
    def _pay(order):
        result = flow.escrow.initialize_payment(order)
        flow.escrow.verify_payment(result.reference)
        return result.reference
    return _pay


@pytest.fixture
def order_28000(make_order, products):
    """Five shirts plus 3000 shipping."""
    def _make():
        return make_order(quantity=5, product=products[1], shipping_cost=3000)
    return _make


def _webhook(reference, status="successful", event_id=9001):
    return {"event": "charge.completed", "data": {"id": event_id, "tx_ref": reference, "status": status}}


# =============================================================================
# PAYMENT CAPTURE AND FUNDING
# =============================================================================

def test_initialize_payment_records_pending_transaction(flow, make_order):
    order = make_order()
    result = flow.escrow.initialize_payment(order, payment_method="ussd")

    assert result.reference.startswith(f"TJS_{order.order_number}_")
    assert order.payment_reference == result.reference
    assert order.payment_method == "ussd"

    tx = journal_service.find_by_reference(result.reference)
    assert tx.transaction_type == "payment"
    assert tx.status == "pending"
    assert tx.amount == Decimal("15000.00")

    with pytest.raises(ValidationError):
        flow.escrow.initialize_payment(order, payment_method="cash")


def test_verified_payment_funds_escrow(flow, make_order, pay, gateway, notifier):
    order = make_order()
    reference = pay(order)

    assert order.payment_status == "escrowed"
    assert order.escrow_status == "funded"
    assert order.escrow_reference.startswith("ESC-")
    assert order.escrow_created_at is not None
    assert journal_service.find_by_reference(reference).status == "successful"
    assert notifier.of_type("escrow.funded")[0]["order_number"] == order.order_number

    # verifying again changes nothing
    flow.escrow.verify_payment(reference)
    assert len(gateway.calls_for("create_escrow")) == 1

    with pytest.raises(InvalidStateError):
        flow.escrow.initialize_payment(order)


def test_pending_and_failed_verification(flow, make_order, gateway):
    order = make_order()
    reference = flow.escrow.initialize_payment(order).reference

    gateway.payment_statuses[reference] = "pending"
    flow.escrow.verify_payment(reference)
    assert order.payment_status == "pending"
    assert journal_service.find_by_reference(reference).status == "pending"

    gateway.payment_statuses[reference] = "failed"
    flow.escrow.verify_payment(reference)
    db.session.refresh(order)
    assert order.payment_status == "failed"
    assert order.escrow_status == "pending"
    assert journal_service.find_by_reference(reference).status == "failed"


def test_verify_unknown_reference(flow):
    with pytest.raises(NotFoundError):
        flow.escrow.verify_payment("TJS_NOPE")


def test_escrow_creation_failure_falls_back_to_direct_payment(flow, make_order, pay, gateway, seller, notifier):
    gateway.fail_on.add("create_escrow")
    order = make_order()
    pay(order)

    assert order.payment_status == "paid"
    assert order.escrow_status == "pending"
    assert order.escrow_reference is None

    owner = db.session.get(User, seller.id)
    assert owner.flag_suspicious_activity is True
    assert owner.account_status == "under_review"
    assert len(notifier.of_type("escrow.fallback")) == 1
    assert notifier.of_type("escrow.funded") == []


def test_escrow_timeout_commits_nothing(flow, make_order, gateway, seller):
    order = make_order()
    reference = flow.escrow.initialize_payment(order).reference

    gateway.timeout_on.add("create_escrow")
    with pytest.raises(GatewayTimeoutError):
        flow.escrow.verify_payment(reference)

    db.session.refresh(order)
    assert order.payment_status == "pending"
    assert order.escrow_status == "pending"
    assert journal_service.find_by_reference(reference).status == "pending"
    assert db.session.get(User, seller.id).flag_suspicious_activity is False

    # a later verification reconciles
    gateway.timeout_on.clear()
    flow.escrow.verify_payment(reference)
    assert order.escrow_status == "funded"


def test_payment_after_cancellation_is_held_for_refund(flow, make_order, gateway):
    order = make_order()
    reference = flow.escrow.initialize_payment(order).reference
    flow.ledger.cancel(order, "Changed my mind")

    flow.escrow.verify_payment(reference)

    assert order.status == "cancelled"
    assert order.payment_status == "paid"
    assert order.escrow_status == "pending"
    assert gateway.calls_for("create_escrow") == []


def test_fund_escrow_directly(flow, make_order, gateway):
    order = make_order()
    reference = flow.escrow.initialize_payment(order).reference
    verification = gateway.verify_payment(reference)

    assert flow.escrow.fund_escrow(order, verification) == FUNDING_FUNDED
    assert flow.escrow.fund_escrow(order, verification) is None

    other = make_order()
    other_reference = flow.escrow.initialize_payment(other).reference
    gateway.fail_on.add("create_escrow")
    assert flow.escrow.fund_escrow(other, gateway.verify_payment(other_reference)) == FUNDING_FALLBACK


def test_fund_escrow_requires_a_matching_successful_verification(flow, make_order, gateway):
    order = make_order()
    reference = flow.escrow.initialize_payment(order).reference

    gateway.payment_statuses[reference] = "pending"
    with pytest.raises(InvalidStateError):
        flow.escrow.fund_escrow(order, gateway.verify_payment(reference))

    other = make_order()
    other_reference = flow.escrow.initialize_payment(other).reference
    with pytest.raises(ValidationError):
        flow.escrow.fund_escrow(order, gateway.verify_payment(other_reference))

    db.session.refresh(order)
    assert (order.escrow_status, order.payment_status) == ("pending", "pending")
    assert gateway.calls_for("create_escrow") == []


# =============================================================================
# RELEASE
# =============================================================================

@pytest.mark.parametrize("total", ["0.01", "0.10", "19.99", "28000", "12345.67", "99999999.99"])
def test_split_settlement_sums_to_total(total):
    payout, fee = split_settlement(total)
    assert payout + fee == Decimal(total)
    assert fee >= 0 and payout >= 0


def test_release_pays_seller_minus_platform_fee(flow, order_28000, pay, deliver, seller, notifier):
    order = order_28000()
    assert order.total == Decimal("28000.00")
    pay(order)
    deliver(order)

    settlement = flow.escrow.release_escrow(order, initiator_id=order.buyer_id)

    assert settlement["seller_payout"] == "26600.00"
    assert settlement["platform_fee"] == "1400.00"
    db.session.refresh(order)
    assert order.escrow_status == "released"
    assert order.payment_status == "paid"
    assert order.escrow_released_at is not None

    payout = journal_service.find_by_reference(f"PAYOUT_{order.order_number}")
    fee = journal_service.find_by_reference(f"FEE_{order.order_number}")
    assert (payout.transaction_type, payout.status, payout.user_id) == ("payout", "successful", seller.id)
    assert (fee.transaction_type, fee.status) == ("fee", "successful")
    assert payout.amount + fee.amount == order.total
    assert notifier.of_type("escrow.released")[0]["seller_payout"] == "26600.00"


def test_second_release_is_refused(flow, make_order, pay, deliver, gateway):
    order = make_order()
    pay(order)
    deliver(order)
    flow.escrow.release_escrow(order)

    with pytest.raises(InvalidStateError):
        flow.escrow.release_escrow(order)

    payouts = db.session.query(Transaction).filter_by(order_id=order.id, transaction_type="payout").count()
    assert payouts == 1
    assert len(gateway.calls_for("release_escrow")) == 1


def test_release_requires_delivered_and_funded(flow, make_order, pay, deliver, advance, gateway):
    order = make_order()
    pay(order)
    advance(order, "confirmed", "processing", "shipped")
    with pytest.raises(InvalidStateError):
        flow.escrow.release_escrow(order)

    gateway.fail_on.add("create_escrow")
    direct = make_order()
    pay(direct)
    deliver(direct)
    with pytest.raises(InvalidStateError):
        flow.escrow.release_escrow(direct)
    assert gateway.calls_for("release_escrow") == []


def test_release_gateway_failure_writes_nothing(flow, make_order, pay, deliver, gateway):
    order = make_order()
    pay(order)
    deliver(order)

    gateway.fail_on.add("release_escrow")
    with pytest.raises(DependencyError):
        flow.escrow.release_escrow(order)

    db.session.refresh(order)
    assert order.escrow_status == "funded"
    assert journal_service.find_by_reference(f"PAYOUT_{order.order_number}") is None

    gateway.fail_on.clear()
    gateway.timeout_on.add("release_escrow")
    with pytest.raises(GatewayTimeoutError):
        flow.escrow.release_escrow(order)
    db.session.refresh(order)
    assert order.escrow_status == "funded"

    gateway.timeout_on.clear()
    flow.escrow.release_escrow(order)
    assert order.escrow_status == "released"
    assert len(gateway.calls_for("release_escrow")) == 3


# =============================================================================
# REFUND
# =============================================================================

def test_refund_before_shipping(flow, make_order, pay, advance, notifier):
    order = make_order()
    pay(order)
    advance(order, "confirmed")

    refund_tx = flow.escrow.refund(order, "Out of stock", initiator_id=order.buyer_id)

    assert refund_tx.status == "successful"
    assert refund_tx.reference.startswith(f"REFUND_{order.order_number}_")
    assert refund_tx.amount == order.total
    assert order.status == "refunded"
    assert order.payment_status == "refunded"
    assert order.escrow_status == "refunded"
    assert notifier.of_type("escrow.refunded")[0]["reason"] == "Out of stock"
    assert notifier.of_type("order.status_changed")[-1]["to_status"] == "refunded"


def test_refund_keeps_cancelled_status(flow, make_order, pay):
    order = make_order()
    pay(order)
    flow.ledger.cancel(order, "Seller asked")

    flow.escrow.refund(order, "Order cancelled")

    assert order.status == "cancelled"
    assert order.payment_status == "refunded"
    assert order.escrow_status == "refunded"


def test_refund_directly_paid_order(flow, make_order, pay, gateway):
    gateway.fail_on.add("create_escrow")
    order = make_order()
    pay(order)

    flow.escrow.refund(order, "Buyer request")
    assert order.payment_status == "refunded"
    assert order.escrow_status == "refunded"


def test_refund_window_for_delivered_orders(flow, make_order, pay, deliver):
    late = make_order()
    pay(late)
    deliver(late)
    late.delivered_at = utcnow() - timedelta(days=8)
    db.session.commit()
    with pytest.raises(InvalidStateError):
        flow.escrow.refund(late, "Broken screen")
    assert journal_service.list_for_order(late.id)[-1].transaction_type == "payment"

    recent = make_order()
    pay(recent)
    deliver(recent)
    flow.escrow.refund(recent, "Broken screen")
    assert recent.status == "refunded"


def test_refund_refused_after_release_or_without_payment(flow, make_order, pay, deliver):
    unpaid = make_order()
    with pytest.raises(InvalidStateError):
        flow.escrow.refund(unpaid, "Nothing to return")

    released = make_order()
    pay(released)
    deliver(released)
    flow.escrow.release_escrow(released)
    with pytest.raises(InvalidStateError):
        flow.escrow.refund(released, "Too late")

    with pytest.raises(ValidationError):
        flow.escrow.refund(released, "")


def test_failed_refund_is_journaled(flow, make_order, pay, gateway):
    order = make_order()
    pay(order)

    gateway.fail_on.add("refund")
    with pytest.raises(DependencyError):
        flow.escrow.refund(order, "Buyer request")

    db.session.refresh(order)
    assert order.payment_status == "escrowed"
    assert order.escrow_status == "funded"
    refunds = [t for t in journal_service.list_for_order(order.id) if t.transaction_type == "refund"]
    assert len(refunds) == 1
    assert refunds[0].status == "failed"


def test_refund_timeout_writes_nothing(flow, make_order, pay, gateway):
    order = make_order()
    pay(order)

    gateway.timeout_on.add("refund")
    with pytest.raises(GatewayTimeoutError):
        flow.escrow.refund(order, "Buyer request")

    db.session.refresh(order)
    assert order.escrow_status == "funded"
    assert [t.transaction_type for t in journal_service.list_for_order(order.id)] == ["payment"]


# =============================================================================
# WEBHOOKS
# =============================================================================

def test_webhook_is_idempotent(flow, make_order, gateway):
    order = make_order()
    reference = flow.escrow.initialize_payment(order).reference

    first = flow.escrow.handle_webhook(_webhook(reference))
    assert first == {
        "status": "processed",
        "reference": reference,
        "payment_status": "escrowed",
        "escrow_status": "funded",
    }

    assert flow.escrow.handle_webhook(_webhook(reference))["status"] == "duplicate"
    assert flow.escrow.handle_webhook(_webhook(reference, event_id=9002))["status"] == "already_processed"
    assert len(gateway.calls_for("create_escrow")) == 1
    assert db.session.query(WebhookEvent).count() == 2


def test_webhook_failed_payment_and_unknown_reference(flow, make_order):
    order = make_order()
    reference = flow.escrow.initialize_payment(order).reference

    result = flow.escrow.handle_webhook(_webhook(reference, status="failed"))
    assert result["payment_status"] == "failed"

    assert flow.escrow.handle_webhook(_webhook("TJS_UNKNOWN", event_id=1))["status"] == "ignored"
    with pytest.raises(ValidationError):
        flow.escrow.handle_webhook({"event": "charge.completed"})


def test_webhook_event_id_falls_back_to_reference_and_status(flow, make_order):
    order = make_order()
    reference = flow.escrow.initialize_payment(order).reference
    payload = {"data": {"tx_ref": reference, "status": "successful"}}

    flow.escrow.handle_webhook(payload)
    assert db.session.query(WebhookEvent).filter_by(event_id=f"{reference}:successful").count() == 1
    assert flow.escrow.handle_webhook(payload)["status"] == "duplicate"


def test_failed_webhook_delivery_can_be_retried(flow, make_order, gateway):
    order = make_order()
    reference = flow.escrow.initialize_payment(order).reference

    gateway.timeout_on.add("create_escrow")
    with pytest.raises(GatewayTimeoutError):
        flow.escrow.handle_webhook(_webhook(reference))

    event = db.session.query(WebhookEvent).filter_by(event_id="9001").one()
    assert event.status == "failed"
    assert journal_service.find_by_reference(reference).status == "pending"

    gateway.timeout_on.clear()
    assert flow.escrow.handle_webhook(_webhook(reference))["status"] == "processed"
    db.session.refresh(event)
    assert event.status == "processed"


def test_webhook_route_checks_signature(app, client, flow, make_order, monkeypatch):
    order = make_order()
    reference = flow.escrow.initialize_payment(order).reference
    monkeypatch.setitem(app.config, "FLUTTERWAVE_WEBHOOK_HASH", "s3cret")

    resp = client.post("/api/payments/webhook", json=_webhook(reference), headers={"verif-hash": "wrong"})
    assert resp.status_code == 401

    resp = client.post(
        "/api/payments/webhook",
        json=_webhook(reference),
        headers={"verif-hash": "s3cret", "X-Webhook-Id": "evt-1"},
    )
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "processed"
    assert db.session.query(WebhookEvent).filter_by(event_id="evt-1").count() == 1


def test_webhook_route_maps_errors(client, flow, make_order, gateway):
    resp = client.post("/api/payments/webhook", data="not json", content_type="text/plain")
    assert resp.status_code == 400

    resp = client.post("/api/payments/webhook", json={"data": {"status": "successful"}})
    assert resp.status_code == 400

    order = make_order()
    reference = flow.escrow.initialize_payment(order).reference
    gateway.timeout_on.add("create_escrow")
    resp = client.post("/api/payments/webhook", json=_webhook(reference))
    assert resp.status_code == 504
