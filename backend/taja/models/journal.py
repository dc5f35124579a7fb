from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Transaction(db.Model):
    """
    Money-movement record (payment, payout, fee, refund).

    Append-only. The only permitted mutation is a single status change from
    'pending' to a terminal status, performed by journal_service.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.Index("ix_transactions_user_created", "user_id", "created_at"),
        db.Index("ix_transactions_type_status", "transaction_type", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)

    transaction_type = db.Column(db.String(16), nullable=False)  # payment, payout, refund, fee
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="NGN")
    status = db.Column(db.String(16), nullable=False, default="pending")
    gateway = db.Column(db.String(16), nullable=False)
    reference = db.Column(db.String(80), nullable=False, unique=True)
    gateway_response = db.Column(db.JSON, nullable=True)
    description = db.Column(db.String(200), nullable=False)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    status_changed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "order_id": self.order_id,
            "type": self.transaction_type,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status,
            "gateway": self.gateway,
            "reference": self.reference,
            "description": self.description,
            "created_at": to_utc_z(self.created_at),
            "status_changed_at": to_utc_z(self.status_changed_at),
        }
