from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


def _money(value) -> str | None:
    return str(value) if value is not None else None


class Order(db.Model):
    """
    Marketplace order.

    All writes go through OrderLedger (status, totals, timeline) or
    EscrowCoordinator (payment and escrow fields). The totals are derived from
    lines plus adjustments and never edited directly.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_shop_created", "shop_id", "created_at"),
        db.Index("ix_orders_buyer_created", "buyer_id", "created_at"),
        db.Index("ix_orders_seller_created", "seller_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True)

    buyer_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    seller_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False)

    # Totals (currency units, 2dp)
    subtotal = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    shipping_cost = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    tax = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    discount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupons.id"), nullable=True)

    # Lifecycle
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    payment_status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    payment_method = db.Column(db.String(16), nullable=False)  # card, bank_transfer, ussd
    payment_reference = db.Column(db.String(80), nullable=True, index=True)

    escrow_status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    escrow_reference = db.Column(db.String(80), nullable=True)
    escrow_created_at = db.Column(db.DateTime, nullable=True)
    escrow_released_at = db.Column(db.DateTime, nullable=True)

    shipping_address = db.Column(db.JSON, nullable=False)

    # Delivery
    delivery_provider = db.Column(db.String(16), nullable=True)
    tracking_number = db.Column(db.String(80), nullable=True, index=True)
    delivery_status = db.Column(db.String(24), nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )
    timeline = db.relationship(
        "OrderTimelineEntry",
        backref="order",
        lazy=True,
        cascade="all, delete-orphan",
        order_by="OrderTimelineEntry.id",
    )

    @property
    def total_items(self) -> int:
        return sum(item.quantity for item in self.items)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "buyer_id": self.buyer_id,
            "seller_id": self.seller_id,
            "shop_id": self.shop_id,
            "items": [item.to_dict() for item in self.items],
            "totals": {
                "subtotal": _money(self.subtotal),
                "shipping_cost": _money(self.shipping_cost),
                "tax": _money(self.tax),
                "discount": _money(self.discount),
                "total": _money(self.total),
            },
            "coupon_id": self.coupon_id,
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_method": self.payment_method,
            "payment_reference": self.payment_reference,
            "escrow_status": self.escrow_status,
            "escrow_reference": self.escrow_reference,
            "escrow_created_at": to_utc_z(self.escrow_created_at),
            "escrow_released_at": to_utc_z(self.escrow_released_at),
            "shipping_address": self.shipping_address,
            "delivery": {
                "provider": self.delivery_provider,
                "tracking_number": self.tracking_number,
                "status": self.delivery_status,
                "delivered_at": to_utc_z(self.delivered_at),
            },
            "timeline": [entry.to_dict() for entry in self.timeline],
            "total_items": self.total_items,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(14, 2), nullable=False)
    subtotal = db.Column(db.Numeric(14, 2), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "title": self.title,
            "quantity": self.quantity,
            "unit_price": _money(self.unit_price),
            "subtotal": _money(self.subtotal),
        }


class OrderTimelineEntry(db.Model):
    """Append-only status history; one row per transition."""
    __tablename__ = "order_timeline"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False)
    note = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "timestamp": to_utc_z(self.created_at),
            "note": self.note,
        }
