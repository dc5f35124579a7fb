# Overview: Service-layer operations for shop trust; performance metrics and suspension policy.

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from flask import current_app
from sqlalchemy import case, func

from ..errors import NotFoundError
from ..extensions import db
from ..models import Order, Shop, User
from ..models.accounts import REVIEW_HIGH_CANCELLATION_RATE
from ..models.capabilities import ShopMetrics
from ..time_utils import hours_between, utcnow
from .concurrency import guarded_update, run_with_retry
from .notifications import EVENT_SHOP_REACTIVATED, EVENT_SHOP_SUSPENDED, Notifier, emit_safely

# Suspension policy. The gap between the two rates is hysteresis: a shop
# suspended at >20% must get back under 15% over at least 10 orders.
SUSPEND_CANCELLATION_RATE = 0.20
SUSPEND_MIN_ORDERS = 5
REACTIVATE_CANCELLATION_RATE = 0.15
REACTIVATE_MIN_ORDERS = 10

ACTION_SUSPEND = "suspend"
ACTION_REACTIVATE = "reactivate"


@dataclass(frozen=True)
class TrustDecision:
    shop_id: int
    metrics: ShopMetrics
    action: Optional[str]

    def to_dict(self) -> dict:
        return {
            "shop_id": self.shop_id,
            "total_orders": self.metrics.total_orders,
            "cancelled_orders": self.metrics.cancelled_orders,
            "cancellation_rate": round(self.metrics.cancellation_rate, 4),
            "average_delivery_time": self.metrics.average_delivery_time,
            "action": self.action,
        }


def compute_metrics(shop_id: int) -> ShopMetrics:
    total, cancelled = (
        db.session.query(
            func.count(Order.id),
            func.coalesce(func.sum(case((Order.status == "cancelled", 1), else_=0)), 0),
        )
        .filter(Order.shop_id == shop_id)
        .one()
    )
    total = int(total)
    cancelled = int(cancelled)

    delivered = (
        db.session.query(Order.created_at, Order.delivered_at, Order.updated_at)
        .filter(Order.shop_id == shop_id, Order.status == "delivered")
        .all()
    )
    durations = [
        hours_between(created_at, delivered_at or updated_at)
        for created_at, delivered_at, updated_at in delivered
    ]
    average = round(sum(durations) / len(durations), 1) if durations else 0.0

    return ShopMetrics(
        total_orders=total,
        cancelled_orders=cancelled,
        cancellation_rate=(cancelled / total) if total else 0.0,
        average_delivery_time=average,
        computed_at=utcnow(),
    )


def decide(is_active: bool, metrics: ShopMetrics) -> Optional[str]:
    """Suspension policy; None means leave the shop as it is."""
    if (
        is_active
        and metrics.cancellation_rate > SUSPEND_CANCELLATION_RATE
        and metrics.total_orders >= SUSPEND_MIN_ORDERS
    ):
        return ACTION_SUSPEND
    if (
        not is_active
        and metrics.cancellation_rate <= REACTIVATE_CANCELLATION_RATE
        and metrics.total_orders >= REACTIVATE_MIN_ORDERS
    ):
        return ACTION_REACTIVATE
    return None


class ShopTrustMonitor:
    """
    Recomputes shop performance metrics and applies the suspension policy.

    Subscribed to order.terminal_transition; never called by the ledger
    directly.
    """

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    def recompute_metrics(self, shop_id: int) -> TrustDecision:
        shop = db.session.get(Shop, shop_id)
        if shop is None:
            raise NotFoundError("Shop not found")

        metrics = compute_metrics(shop.id)
        shop.apply_performance_metrics(metrics)

        action = decide(shop.is_active, metrics)
        if action == ACTION_SUSPEND:
            flipped = guarded_update(Shop, [Shop.id == shop.id, Shop.is_active.is_(True)], {"is_active": False})
            if flipped:
                owner = db.session.get(User, shop.owner_id)
                if owner is not None:
                    owner.flag_for_review(REVIEW_HIGH_CANCELLATION_RATE)
        elif action == ACTION_REACTIVATE:
            flipped = guarded_update(Shop, [Shop.id == shop.id, Shop.is_active.is_(False)], {"is_active": True})
        else:
            flipped = False

        db.session.commit()
        decision = TrustDecision(shop_id=shop.id, metrics=metrics, action=action if flipped else None)

        if decision.action == ACTION_SUSPEND:
            current_app.logger.warning(
                "Shop %s suspended: cancellation rate %.1f%% over %s orders",
                shop.id, metrics.cancellation_rate * 100, metrics.total_orders,
            )
            emit_safely(self.notifier, EVENT_SHOP_SUSPENDED, {
                "shop_id": shop.id,
                "owner_id": shop.owner_id,
                "cancellation_rate": metrics.cancellation_rate,
                "total_orders": metrics.total_orders,
            })
        elif decision.action == ACTION_REACTIVATE:
            current_app.logger.info(
                "Shop %s reactivated: cancellation rate %.1f%% over %s orders",
                shop.id, metrics.cancellation_rate * 100, metrics.total_orders,
            )
            emit_safely(self.notifier, EVENT_SHOP_REACTIVATED, {
                "shop_id": shop.id,
                "owner_id": shop.owner_id,
                "cancellation_rate": metrics.cancellation_rate,
                "total_orders": metrics.total_orders,
            })
        return decision

    def handle_terminal_transition(self, payload: dict) -> None:
        """
        order.terminal_transition subscriber.

        The transition is already committed; a failure here is logged and
        left for the next terminal transition (or `flask trust recompute`).
        """
        shop_id = payload.get("shop_id")
        if shop_id is None:
            return
        try:
            run_with_retry(lambda: self.recompute_metrics(shop_id))
        except Exception:
            db.session.rollback()
            current_app.logger.exception(
                "Failed to update performance metrics for shop %s after order %s",
                shop_id, payload.get("order_number"),
            )

    def recompute_all(self) -> list[TrustDecision]:
        decisions = []
        shop_ids = [row[0] for row in db.session.query(Shop.id).order_by(Shop.id.asc()).all()]
        for shop_id in shop_ids:
            try:
                decisions.append(run_with_retry(lambda: self.recompute_metrics(shop_id)))
            except Exception:
                db.session.rollback()
                current_app.logger.exception("Failed to update performance metrics for shop %s", shop_id)
        return decisions
