from __future__ import annotations

from ...time_utils import utcnow
from .base import DeliveryProvider, TrackingUpdate, map_provider_status


class MockDeliveryProvider(DeliveryProvider):
    name = "mock"

    def __init__(self):
        self.updates: dict[str, list[TrackingUpdate]] = {}

    def push(self, tracking_number: str, status: str, *, location: str | None = None, note: str | None = None) -> None:
        self.updates.setdefault(tracking_number, []).append(
            TrackingUpdate(status=map_provider_status(status), timestamp=utcnow(), location=location, note=note)
        )

    def track_delivery(self, tracking_number: str) -> list[TrackingUpdate]:
        return list(self.updates.get(tracking_number, []))
