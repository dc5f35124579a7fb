from __future__ import annotations

import requests

from ...errors import DependencyError, GatewayTimeoutError
from ...time_utils import parse_iso_datetime, utcnow
from .base import DeliveryProvider, TrackingUpdate, map_provider_status


class _HttpDeliveryProvider(DeliveryProvider):
    track_path = ""
    updates_key = ""

    def __init__(self, api_key: str, *, base_url: str, timeout: float):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _get(self, path: str) -> dict:
        label = self.name.upper()
        try:
            r = requests.get(
                f"{self.base_url}{path}",
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise GatewayTimeoutError(f"{label}_TRACK_TIMEOUT") from exc
        except requests.RequestException as exc:
            raise DependencyError(f"{label}_TRACK_UNAVAILABLE:{exc}") from exc
        if r.status_code < 200 or r.status_code >= 300:
            raise DependencyError(f"{label}_TRACK_FAILED:HTTP {r.status_code}")
        try:
            return r.json() if r.content else {}
        except ValueError as exc:
            raise DependencyError(f"{label}_TRACK_FAILED:invalid JSON") from exc

    def _parse(self, update: dict) -> TrackingUpdate:
        raise NotImplementedError

    def track_delivery(self, tracking_number: str) -> list[TrackingUpdate]:
        j = self._get(self.track_path.format(tracking_number=tracking_number))
        return [self._parse(u) for u in (j.get(self.updates_key) or [])]


class GokadaDeliveryProvider(_HttpDeliveryProvider):
    name = "gokada"
    track_path = "/delivery/track/{tracking_number}"
    updates_key = "tracking_updates"

    def _parse(self, update: dict) -> TrackingUpdate:
        return TrackingUpdate(
            status=map_provider_status(update.get("status") or ""),
            timestamp=parse_iso_datetime(update.get("timestamp")) or utcnow(),
            location=update.get("location"),
            note=update.get("note"),
        )


class KwikDeliveryProvider(_HttpDeliveryProvider):
    name = "kwik"
    track_path = "/delivery/{tracking_number}/track"
    updates_key = "delivery_updates"

    def _parse(self, update: dict) -> TrackingUpdate:
        return TrackingUpdate(
            status=map_provider_status(update.get("status") or ""),
            timestamp=parse_iso_datetime(update.get("updated_at")) or utcnow(),
            location=update.get("current_location"),
            note=update.get("message"),
        )
