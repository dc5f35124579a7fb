from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


# Internal delivery vocabulary
DELIVERY_CONFIRMED = "confirmed"
DELIVERY_IN_TRANSIT = "in_transit"
DELIVERY_OUT_FOR_DELIVERY = "out_for_delivery"
DELIVERY_DELIVERED = "delivered"
DELIVERY_FAILED = "failed"

_PROVIDER_STATUS_MAP = {
    # Gokada
    "pickup_confirmed": DELIVERY_CONFIRMED,
    "in_transit": DELIVERY_IN_TRANSIT,
    "out_for_delivery": DELIVERY_OUT_FOR_DELIVERY,
    "delivered": DELIVERY_DELIVERED,
    "failed": DELIVERY_FAILED,
    # Kwik
    "accepted": DELIVERY_CONFIRMED,
    "picked_up": DELIVERY_IN_TRANSIT,
    "on_the_way": DELIVERY_OUT_FOR_DELIVERY,
    "completed": DELIVERY_DELIVERED,
    "cancelled": DELIVERY_FAILED,
    # Generic
    "confirmed": DELIVERY_CONFIRMED,
    "shipped": DELIVERY_IN_TRANSIT,
    "delivery": DELIVERY_OUT_FOR_DELIVERY,
    "success": DELIVERY_DELIVERED,
    "error": DELIVERY_FAILED,
}


def map_provider_status(provider_status: str) -> str:
    """Normalize a provider's status string; unknown values pass through lower-cased."""
    key = (provider_status or "").strip().lower()
    return _PROVIDER_STATUS_MAP.get(key, key)


@dataclass
class TrackingUpdate:
    status: str
    timestamp: datetime
    location: str | None = None
    note: str | None = None


class DeliveryProvider:
    name = "unknown"

    def track_delivery(self, tracking_number: str) -> list[TrackingUpdate]:
        raise NotImplementedError
