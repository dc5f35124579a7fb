from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow
from .capabilities import MetricsUpdatable, ReviewFlaggable, ShopMetrics


ACCOUNT_ACTIVE = "active"
ACCOUNT_SUSPENDED = "suspended"
ACCOUNT_BANNED = "banned"
ACCOUNT_UNDER_REVIEW = "under_review"

# Review reasons written by automated policies
REVIEW_SUSPICIOUS_ACTIVITY = "suspicious_activity"
REVIEW_HIGH_CANCELLATION_RATE = "high_cancellation_rate"


class User(db.Model, ReviewFlaggable):
    """
    Marketplace account (buyer, seller or admin).

    Identity and authentication live outside this service; only the fields
    the order flow reads or flags are modelled here.
    """
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    role = db.Column(db.String(16), nullable=False, default="buyer")  # buyer, seller, admin

    account_status = db.Column(db.String(16), nullable=False, default=ACCOUNT_ACTIVE, index=True)
    flag_suspicious_activity = db.Column(db.Boolean, nullable=False, default=False)
    flag_high_cancellation_rate = db.Column(db.Boolean, nullable=False, default=False)
    flagged_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def flag_for_review(self, reason: str) -> None:
        if reason == REVIEW_SUSPICIOUS_ACTIVITY:
            self.flag_suspicious_activity = True
        elif reason == REVIEW_HIGH_CANCELLATION_RATE:
            self.flag_high_cancellation_rate = True
        else:
            raise ValueError(f"Unknown review reason: {reason}")
        self.account_status = ACCOUNT_UNDER_REVIEW
        self.flagged_at = utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role,
            "account_status": self.account_status,
            "fraud_flags": {
                "suspicious_activity": bool(self.flag_suspicious_activity),
                "high_cancellation_rate": bool(self.flag_high_cancellation_rate),
            },
            "flagged_at": to_utc_z(self.flagged_at),
            "created_at": to_utc_z(self.created_at),
        }


class Shop(db.Model, MetricsUpdatable):
    __tablename__ = "shops"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    shop_name = db.Column(db.String(50), nullable=False)
    shop_slug = db.Column(db.String(64), nullable=False, unique=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    # Performance metrics (owned by the trust monitor)
    total_orders = db.Column(db.Integer, nullable=False, default=0)
    cancelled_orders = db.Column(db.Integer, nullable=False, default=0)
    cancellation_rate = db.Column(db.Float, nullable=False, default=0.0)
    average_delivery_time = db.Column(db.Float, nullable=False, default=0.0)  # hours
    metrics_updated_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    owner = db.relationship("User", backref=db.backref("shops", lazy=True))

    def apply_performance_metrics(self, metrics: ShopMetrics) -> None:
        self.total_orders = metrics.total_orders
        self.cancelled_orders = metrics.cancelled_orders
        self.cancellation_rate = metrics.cancellation_rate
        self.average_delivery_time = metrics.average_delivery_time
        self.metrics_updated_at = metrics.computed_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "shop_name": self.shop_name,
            "shop_slug": self.shop_slug,
            "is_active": self.is_active,
            "performance_metrics": {
                "total_orders": self.total_orders,
                "cancelled_orders": self.cancelled_orders,
                "cancellation_rate": round(self.cancellation_rate or 0.0, 4),
                "average_delivery_time": self.average_delivery_time,
                "last_updated": to_utc_z(self.metrics_updated_at),
            },
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Minimal product reference used by order lines and coupon scope checks.
    """
    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    category = db.Column(db.String(64), nullable=True, index=True)
    price = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "title": self.title,
            "category": self.category,
            "price": str(self.price) if self.price is not None else None,
        }
