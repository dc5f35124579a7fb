# Overview: Service-layer operations for orders; lifecycle state machine, totals and timeline.

from __future__ import annotations

import math
import random
import time
from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError

from ..errors import (
    ConsistencyViolation,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..integrations.delivery.base import DELIVERY_DELIVERED, DeliveryProvider, TrackingUpdate
from ..models import Order, OrderItem, OrderTimelineEntry, Product, Shop, User
from ..money import ZERO, to_money
from ..time_utils import period_start, utcnow
from . import coupon_service
from .concurrency import guarded_update
from .notifications import (
    EVENT_ORDER_CREATED,
    EVENT_ORDER_STATUS_CHANGED,
    EVENT_ORDER_TERMINAL_TRANSITION,
    Notifier,
    emit_safely,
)

"""
Order Lifecycle Invariants

- status only moves along ALLOWED_TRANSITIONS; every accepted transition
  appends exactly one timeline entry in the same commit.
- total == subtotal + shipping_cost + tax - discount, where subtotal is the
  sum of line subtotals.
- Transitions are applied with a guarded UPDATE on the current status, so
  two actors moving the same order concurrently cannot both succeed.
- Events are emitted after commit; subscriber failures never undo a
  committed transition.
"""

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_PROCESSING = "processing"
STATUS_SHIPPED = "shipped"
STATUS_DELIVERED = "delivered"
STATUS_CANCELLED = "cancelled"
STATUS_REFUNDED = "refunded"

ORDER_STATUSES = (
    STATUS_PENDING,
    STATUS_CONFIRMED,
    STATUS_PROCESSING,
    STATUS_SHIPPED,
    STATUS_DELIVERED,
    STATUS_CANCELLED,
    STATUS_REFUNDED,
)

ALLOWED_TRANSITIONS = {
    STATUS_PENDING: {STATUS_CONFIRMED, STATUS_CANCELLED},
    STATUS_CONFIRMED: {STATUS_PROCESSING, STATUS_CANCELLED},
    STATUS_PROCESSING: {STATUS_SHIPPED, STATUS_CANCELLED},
    STATUS_SHIPPED: {STATUS_DELIVERED, STATUS_CANCELLED},
    STATUS_DELIVERED: {STATUS_REFUNDED},
    STATUS_CANCELLED: set(),
    STATUS_REFUNDED: set(),
}

# Transitions that change a shop's performance metrics
METRIC_AFFECTING_STATUSES = {STATUS_CANCELLED, STATUS_DELIVERED}

CANCELLABLE_STATUSES = {STATUS_PENDING, STATUS_CONFIRMED}
REFUND_WINDOW_DAYS = 7

PAYMENT_METHODS = ("card", "bank_transfer", "ussd")
ORDER_NUMBER_PREFIX = "TJS"
ORDER_NUMBER_ATTEMPTS = 5


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, set())


def can_be_cancelled(order: Order) -> bool:
    return order.status in CANCELLABLE_STATUSES


def can_be_refunded(order: Order, now: datetime | None = None) -> bool:
    """Delivered orders stay refundable for REFUND_WINDOW_DAYS after delivery."""
    if order.status != STATUS_DELIVERED:
        return False
    delivered_at = order.delivered_at or order.updated_at
    if delivered_at is None:
        return False
    return (now or utcnow()) - delivered_at <= timedelta(days=REFUND_WINDOW_DAYS)


def is_immutable(order: Order, now: datetime | None = None) -> bool:
    if order.status in (STATUS_CANCELLED, STATUS_REFUNDED):
        return True
    return order.status == STATUS_DELIVERED and not can_be_refunded(order, now)


def age_in_days(order: Order, now: datetime | None = None) -> int:
    elapsed = (now or utcnow()) - order.created_at
    return max(math.ceil(elapsed.total_seconds() / 86400), 0)


def generate_order_number() -> str:
    millis = str(int(time.time() * 1000))
    return f"{ORDER_NUMBER_PREFIX}{millis[-6:]}{random.randint(0, 999):03d}"


def _recompute_totals(order: Order) -> None:
    subtotal = sum((Decimal(item.subtotal) for item in order.items), ZERO)
    order.subtotal = to_money(subtotal)
    order.total = to_money(
        order.subtotal + Decimal(order.shipping_cost) + Decimal(order.tax) - Decimal(order.discount)
    )


def _non_negative(value, field: str) -> Decimal:
    amount = to_money(value if value is not None else 0, field)
    if amount < ZERO:
        raise ValidationError(f"{field} cannot be negative")
    return amount


def _build_items(shop_id: int, items: list) -> list[dict]:
    if not items:
        raise ValidationError("Order must contain at least one item")

    lines = []
    for raw in items:
        product_id = raw.get("product_id")
        product = db.session.get(Product, product_id) if product_id is not None else None
        if product is None:
            raise ValidationError(f"Product {product_id} not found")
        if product.shop_id != shop_id:
            raise ValidationError(f"Product {product_id} does not belong to this shop")

        try:
            quantity = int(raw.get("quantity", 0))
        except (TypeError, ValueError):
            raise ValidationError("Item quantity must be an integer")
        if quantity < 1:
            raise ValidationError("Item quantity must be at least 1")

        price = raw.get("unit_price", raw.get("price", product.price))
        unit_price = _non_negative(price, "unit_price")

        lines.append({
            "product_id": product.id,
            "title": (raw.get("title") or product.title)[:200],
            "quantity": quantity,
            "unit_price": unit_price,
            "subtotal": to_money(unit_price * quantity),
        })
    return lines


# -------------------------
# Queries
# -------------------------

def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


def get_order_by_number(order_number: str) -> Order:
    order = db.session.query(Order).filter_by(order_number=order_number).first()
    if order is None:
        raise NotFoundError("Order not found")
    return order


def list_orders(
    user_id: int,
    *,
    role: str = "buyer",
    status: str = "all",
    page: int = 1,
    limit: int = 20,
) -> dict:
    if role not in ("buyer", "seller"):
        raise ValidationError("role must be 'buyer' or 'seller'")
    page = max(int(page), 1)
    limit = min(max(int(limit), 1), 100)

    q = db.session.query(Order)
    q = q.filter(Order.buyer_id == user_id) if role == "buyer" else q.filter(Order.seller_id == user_id)
    if status and status != "all":
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Invalid status '{status}'")
        q = q.filter(Order.status == status)

    total = q.count()
    rows = q.order_by(Order.created_at.desc(), Order.id.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "orders": [o.to_dict() for o in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


def order_stats(shop_id: int, period: str = "month") -> dict:
    try:
        since = period_start(period)
    except ValueError as exc:
        raise ValidationError(str(exc))

    def _count(status: str):
        return func.coalesce(func.sum(case((Order.status == status, 1), else_=0)), 0)

    total, revenue, pending, delivered, cancelled = (
        db.session.query(
            func.count(Order.id),
            func.coalesce(func.sum(Order.total), 0),
            _count(STATUS_PENDING),
            _count(STATUS_DELIVERED),
            _count(STATUS_CANCELLED),
        )
        .filter(Order.shop_id == shop_id, Order.created_at >= since)
        .one()
    )
    total = int(total)
    revenue = to_money(revenue)
    return {
        "period": period,
        "total_orders": total,
        "total_revenue": str(revenue),
        "pending_orders": int(pending),
        "delivered_orders": int(delivered),
        "cancelled_orders": int(cancelled),
        "average_order_value": str(to_money(revenue / total)) if total else "0.00",
    }


class OrderLedger:
    """
    Owns order creation and every status change.

    Payment and escrow fields are written by EscrowCoordinator; this class
    only writes status, totals, coupon and delivery tracking.
    """

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    # -------------------------
    # Creation
    # -------------------------

    def create_order(
        self,
        *,
        buyer_id: int,
        shop_id: int,
        items: list,
        seller_id: int | None = None,
        shipping_address: dict,
        payment_method: str,
        shipping_cost=0,
        tax=0,
        notes: str | None = None,
    ) -> Order:
        shop = db.session.get(Shop, shop_id)
        if shop is None:
            raise NotFoundError("Shop not found")
        if seller_id is not None and seller_id != shop.owner_id:
            raise ValidationError("Seller does not own this shop")
        if db.session.get(User, buyer_id) is None:
            raise NotFoundError("Buyer not found")
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Invalid payment method. Must be one of: {', '.join(PAYMENT_METHODS)}")
        if not shipping_address:
            raise ValidationError("Shipping address is required")

        shipping_cost = _non_negative(shipping_cost, "shipping_cost")
        tax = _non_negative(tax, "tax")
        lines = _build_items(shop.id, items)

        last_exc = None
        for _ in range(ORDER_NUMBER_ATTEMPTS):
            order = Order(
                order_number=generate_order_number(),
                buyer_id=buyer_id,
                seller_id=shop.owner_id,
                shop_id=shop.id,
                shipping_cost=shipping_cost,
                tax=tax,
                discount=ZERO,
                payment_method=payment_method,
                shipping_address=shipping_address,
                notes=notes,
            )
            order.items = [OrderItem(**line) for line in lines]
            _recompute_totals(order)
            order.timeline.append(OrderTimelineEntry(status=STATUS_PENDING, note="Order placed"))
            db.session.add(order)
            try:
                db.session.commit()
            except IntegrityError as exc:
                # order_number collision
                db.session.rollback()
                last_exc = exc
                continue

            current_app.logger.info("Order %s created for shop %s", order.order_number, shop.id)
            emit_safely(self.notifier, EVENT_ORDER_CREATED, {
                "order_id": order.id,
                "order_number": order.order_number,
                "buyer_id": order.buyer_id,
                "seller_id": order.seller_id,
                "shop_id": order.shop_id,
                "total": str(order.total),
            })
            return order

        raise ConsistencyViolation("Could not allocate a unique order number") from last_exc

    # -------------------------
    # Status changes
    # -------------------------

    def _apply_status(self, order: Order, new_status: str, note: str | None) -> str:
        """
        Guarded status write plus timeline entry. Does not commit.

        Returns the previous status.
        """
        current = order.status
        now = utcnow()
        values = {"status": new_status, "updated_at": now}
        if new_status == STATUS_DELIVERED:
            values["delivered_at"] = now

        if not guarded_update(Order, [Order.id == order.id, Order.status == current], values):
            db.session.rollback()
            raise ConsistencyViolation(f"Order {order.order_number} was modified concurrently")

        db.session.add(
            OrderTimelineEntry(
                order_id=order.id,
                status=new_status,
                note=(note or f"Order status updated to {new_status}")[:255],
                created_at=now,
            )
        )
        return current

    def announce_status_change(self, order: Order, previous: str) -> None:
        payload = {
            "order_id": order.id,
            "order_number": order.order_number,
            "shop_id": order.shop_id,
            "buyer_id": order.buyer_id,
            "seller_id": order.seller_id,
            "from_status": previous,
            "to_status": order.status,
        }
        emit_safely(self.notifier, EVENT_ORDER_STATUS_CHANGED, payload)
        if order.status in METRIC_AFFECTING_STATUSES:
            emit_safely(self.notifier, EVENT_ORDER_TERMINAL_TRANSITION, payload)

    def transition(self, order: Order, new_status: str, note: str | None = None) -> Order:
        if new_status not in ORDER_STATUSES:
            raise ValidationError(f"Invalid status '{new_status}'")
        if not can_transition(order.status, new_status):
            raise InvalidTransitionError(order.status, new_status)
        if new_status == STATUS_REFUNDED and not can_be_refunded(order):
            raise InvalidTransitionError(order.status, new_status, "Refund window has closed")

        previous = self._apply_status(order, new_status, note)
        db.session.commit()

        current_app.logger.info("Order %s: %s -> %s", order.order_number, previous, new_status)
        self.announce_status_change(order, previous)
        return order

    def settle_refund(self, order: Order, note: str) -> str | None:
        """
        Status half of a refund, joined to the caller's unit of work.

        Cancelled orders keep their status; anything else refundable moves
        to 'refunded'. Returns the previous status when it changed.
        """
        if order.status == STATUS_CANCELLED:
            return None
        if order.status == STATUS_REFUNDED:
            raise InvalidStateError("Order has already been refunded")
        return self._apply_status(order, STATUS_REFUNDED, note)

    def cancel(self, order: Order, reason: str | None = None) -> Order:
        if not can_be_cancelled(order):
            raise InvalidTransitionError(order.status, STATUS_CANCELLED, "Order can no longer be cancelled")
        return self.transition(order, STATUS_CANCELLED, reason or "Order cancelled")

    # -------------------------
    # Coupons
    # -------------------------

    def apply_coupon(self, order: Order, code: str, user_id: int) -> Order:
        if order.status != STATUS_PENDING or order.payment_status != "pending":
            raise InvalidStateError("Coupons can only be applied to unpaid pending orders")
        if order.coupon_id is not None:
            raise InvalidStateError("A coupon has already been applied to this order")
        if user_id != order.buyer_id:
            raise ValidationError("Only the buyer can apply a coupon to this order")

        coupon = coupon_service.get_coupon_by_code(code)
        if coupon is None:
            raise ValidationError("Invalid coupon code")

        check = coupon_service.validate(
            coupon,
            user_id,
            order.subtotal,
            shop_id=order.shop_id,
            product_ids=[item.product_id for item in order.items],
        )
        if not check.valid:
            raise ValidationError(check.reason)

        discount = to_money(coupon_service.calculate_discount(coupon, order.subtotal))
        new_total = to_money(
            Decimal(order.subtotal) + Decimal(order.shipping_cost) + Decimal(order.tax) - discount
        )

        try:
            coupon_service.mark_used(
                coupon, user_id, order.subtotal, discount, order_id=order.id, commit=False
            )
            applied = guarded_update(
                Order,
                [
                    Order.id == order.id,
                    Order.coupon_id.is_(None),
                    Order.status == STATUS_PENDING,
                ],
                {"coupon_id": coupon.id, "discount": discount, "total": new_total, "updated_at": utcnow()},
            )
            if not applied:
                raise ConsistencyViolation(f"Order {order.order_number} was modified concurrently")
        except ConsistencyViolation:
            db.session.rollback()
            raise

        db.session.commit()
        current_app.logger.info("Coupon %s applied to order %s (-%s)", coupon.code, order.order_number, discount)
        return order

    # -------------------------
    # Delivery
    # -------------------------

    def mark_shipped(
        self,
        order: Order,
        tracking_number: str,
        provider_name: str,
        note: str | None = None,
    ) -> Order:
        if not tracking_number:
            raise ValidationError("Tracking number is required")
        if not can_transition(order.status, STATUS_SHIPPED):
            raise InvalidTransitionError(order.status, STATUS_SHIPPED)

        order.tracking_number = tracking_number
        order.delivery_provider = provider_name
        order.delivery_status = "confirmed"
        return self.transition(order, STATUS_SHIPPED, note or f"Shipped via {provider_name}")

    def sync_delivery(self, order: Order, provider: DeliveryProvider) -> list[TrackingUpdate]:
        """
        Pull tracking from the delivery provider and record the latest status.

        A provider-confirmed delivery moves a shipped order to 'delivered'.
        """
        if not order.tracking_number:
            raise InvalidStateError("Order has no tracking number")

        updates = provider.track_delivery(order.tracking_number)
        if not updates:
            return updates

        latest = sorted(updates, key=lambda u: u.timestamp)[-1]
        changed = latest.status != order.delivery_status
        if changed:
            order.delivery_status = latest.status
        if latest.status == DELIVERY_DELIVERED and order.status == STATUS_SHIPPED:
            self.transition(order, STATUS_DELIVERED, f"Delivery confirmed by {provider.name}")
        elif changed:
            db.session.commit()
        return updates
