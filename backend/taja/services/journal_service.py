# Overview: Service-layer operations for the transaction journal; records money movement.

from __future__ import annotations

from typing import Optional

from sqlalchemy import func

from ..errors import ValidationError
from ..extensions import db
from ..models import Transaction
from ..money import ZERO, to_money
from ..time_utils import period_start, utcnow
from .concurrency import guarded_update

"""
Transaction Journal Invariants

- Rows are write-once. The only permitted mutation is one status change
  from 'pending' to 'successful' or 'failed'.
- reference is unique; deterministic references (PAYOUT_/FEE_) make a
  second settlement of the same order fail at the database.
- Writers flush but never commit; the caller owns the unit of work.
"""

TX_PAYMENT = "payment"
TX_PAYOUT = "payout"
TX_REFUND = "refund"
TX_FEE = "fee"
TRANSACTION_TYPES = (TX_PAYMENT, TX_PAYOUT, TX_REFUND, TX_FEE)

TX_PENDING = "pending"
TX_SUCCESSFUL = "successful"
TX_FAILED = "failed"
TERMINAL_TX_STATUSES = (TX_SUCCESSFUL, TX_FAILED)

DESCRIPTION_MAX_LENGTH = 200


def payout_reference(order_number: str) -> str:
    return f"PAYOUT_{order_number}"


def fee_reference(order_number: str) -> str:
    return f"FEE_{order_number}"


def record_transaction(
    *,
    user_id: int,
    transaction_type: str,
    amount,
    reference: str,
    description: str,
    gateway: str,
    order_id: int | None = None,
    status: str = TX_PENDING,
    currency: str = "NGN",
    gateway_response: dict | None = None,
) -> Transaction:
    if transaction_type not in TRANSACTION_TYPES:
        raise ValidationError(f"Invalid transaction type '{transaction_type}'")
    if status not in (TX_PENDING,) + TERMINAL_TX_STATUSES:
        raise ValidationError(f"Invalid transaction status '{status}'")
    amount = to_money(amount)
    if amount < ZERO:
        raise ValidationError("Transaction amount cannot be negative")
    if not reference:
        raise ValidationError("Transaction reference is required")

    tx = Transaction(
        user_id=user_id,
        order_id=order_id,
        transaction_type=transaction_type,
        amount=amount,
        currency=currency,
        status=status,
        gateway=gateway,
        reference=reference,
        gateway_response=gateway_response,
        description=(description or "")[:DESCRIPTION_MAX_LENGTH],
        status_changed_at=utcnow() if status != TX_PENDING else None,
    )
    db.session.add(tx)
    db.session.flush()
    return tx


def mark_transaction_status(tx: Transaction, status: str, gateway_response: dict | None = None) -> bool:
    """
    Move a pending transaction to a terminal status.

    Returns False (and changes nothing) when the transaction already left
    'pending', e.g. a webhook and a manual verification racing each other.
    """
    if status not in TERMINAL_TX_STATUSES:
        raise ValidationError(f"Transactions can only move to {', '.join(TERMINAL_TX_STATUSES)}")
    values = {"status": status, "status_changed_at": utcnow()}
    if gateway_response is not None:
        values["gateway_response"] = gateway_response
    applied = guarded_update(
        Transaction,
        [Transaction.id == tx.id, Transaction.status == TX_PENDING],
        values,
    )
    db.session.refresh(tx)
    return applied


def find_by_reference(reference: str) -> Optional[Transaction]:
    if not reference:
        return None
    return db.session.query(Transaction).filter_by(reference=reference).first()


def list_for_order(order_id: int) -> list[Transaction]:
    return (
        db.session.query(Transaction)
        .filter_by(order_id=order_id)
        .order_by(Transaction.created_at.asc(), Transaction.id.asc())
        .all()
    )


def list_for_user(
    user_id: int,
    *,
    transaction_type: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), 100)

    q = db.session.query(Transaction).filter_by(user_id=user_id)
    if transaction_type:
        if transaction_type not in TRANSACTION_TYPES:
            raise ValidationError(f"Invalid transaction type '{transaction_type}'")
        q = q.filter_by(transaction_type=transaction_type)

    total = q.count()
    rows = (
        q.order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "transactions": [t.to_dict() for t in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


def transaction_stats(user_id: int, period: str = "month") -> dict:
    """Successful money movement per type over a trailing window."""
    try:
        since = period_start(period)
    except ValueError as exc:
        raise ValidationError(str(exc))

    rows = (
        db.session.query(
            Transaction.transaction_type,
            func.count(Transaction.id),
            func.coalesce(func.sum(Transaction.amount), 0),
        )
        .filter(
            Transaction.user_id == user_id,
            Transaction.status == TX_SUCCESSFUL,
            Transaction.created_at >= since,
        )
        .group_by(Transaction.transaction_type)
        .all()
    )
    stats = {t: {"count": 0, "total_amount": "0.00"} for t in TRANSACTION_TYPES}
    for tx_type, count, total in rows:
        stats[tx_type] = {"count": int(count), "total_amount": str(to_money(total))}
    return {"period": period, "by_type": stats}
