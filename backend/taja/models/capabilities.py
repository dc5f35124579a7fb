# Overview: Capability interfaces implemented by entities that other services update.

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class ShopMetrics:
    total_orders: int
    cancelled_orders: int
    cancellation_rate: float
    average_delivery_time: float  # hours
    computed_at: datetime


class MetricsUpdatable:
    """Entities whose performance metrics are recomputed by the trust monitor."""

    def apply_performance_metrics(self, metrics: ShopMetrics) -> None:
        raise NotImplementedError


class ReviewFlaggable:
    """Accounts that automated policies can put under manual review."""

    def flag_for_review(self, reason: str) -> None:
        raise NotImplementedError
