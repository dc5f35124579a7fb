from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Coupon(db.Model):
    """
    Discount code.

    Platform-wide when shop_id is NULL, otherwise shop-specific.
    current_usage_count is only ever changed by the guarded UPDATE in
    coupon_service.mark_used.
    """
    __tablename__ = "coupons"
    __table_args__ = (
        db.Index("ix_coupons_shop_active", "shop_id", "is_active"),
        db.Index("ix_coupons_active_window", "is_active", "starts_at", "expires_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(20), nullable=False, unique=True)
    coupon_type = db.Column(db.String(16), nullable=False)  # percentage, fixed
    value = db.Column(db.Numeric(14, 2), nullable=False)  # percent (0-100) or fixed amount

    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=True, index=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    title = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500), nullable=True)

    minimum_order_amount = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    maximum_discount_amount = db.Column(db.Numeric(14, 2), nullable=True)
    applicable_categories = db.Column(db.JSON, nullable=False, default=list)
    applicable_products = db.Column(db.JSON, nullable=False, default=list)  # product ids

    total_usage_limit = db.Column(db.Integer, nullable=True)  # NULL = unlimited
    per_user_usage_limit = db.Column(db.Integer, nullable=True, default=1)
    current_usage_count = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    starts_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    usages = db.relationship(
        "CouponUsage",
        backref="coupon",
        lazy=True,
        order_by="CouponUsage.id",
    )

    def usage_count_for(self, user_id: int) -> int:
        return sum(1 for usage in self.usages if usage.user_id == user_id)

    @property
    def usage_percentage(self) -> float:
        if not self.total_usage_limit:
            return 0.0
        return (self.current_usage_count / self.total_usage_limit) * 100

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "type": self.coupon_type,
            "value": str(self.value),
            "shop_id": self.shop_id,
            "created_by_user_id": self.created_by_user_id,
            "title": self.title,
            "description": self.description,
            "minimum_order_amount": str(self.minimum_order_amount) if self.minimum_order_amount is not None else None,
            "maximum_discount_amount": (
                str(self.maximum_discount_amount) if self.maximum_discount_amount is not None else None
            ),
            "applicable_categories": list(self.applicable_categories or []),
            "applicable_products": list(self.applicable_products or []),
            "total_usage_limit": self.total_usage_limit,
            "per_user_usage_limit": self.per_user_usage_limit,
            "current_usage_count": self.current_usage_count,
            "usage_percentage": round(self.usage_percentage, 2),
            "is_active": self.is_active,
            "starts_at": to_utc_z(self.starts_at),
            "expires_at": to_utc_z(self.expires_at),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class CouponUsage(db.Model):
    __tablename__ = "coupon_usages"
    __table_args__ = (
        db.Index("ix_coupon_usages_coupon_user", "coupon_id", "user_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    coupon_id = db.Column(db.Integer, db.ForeignKey("coupons.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True)
    used_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    order_amount = db.Column(db.Numeric(14, 2), nullable=False)
    discount_amount = db.Column(db.Numeric(14, 2), nullable=False)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "order_id": self.order_id,
            "used_at": to_utc_z(self.used_at),
            "order_amount": str(self.order_amount),
            "discount_amount": str(self.discount_amount),
        }
