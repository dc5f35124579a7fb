from __future__ import annotations

from ..common import IntegrationDisabledError, IntegrationMisconfiguredError, config_value
from .base import DeliveryProvider
from .http_providers import GokadaDeliveryProvider, KwikDeliveryProvider
from .mock_provider import MockDeliveryProvider


def build_delivery_provider(config, name: str | None = None) -> DeliveryProvider:
    provider = (name or config_value(config, "DELIVERY_PROVIDER", "mock") or "mock").strip().lower()
    timeout = float(config_value(config, "GATEWAY_TIMEOUT_SECONDS", 15))

    if provider == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:delivery")
    if provider == "mock":
        return MockDeliveryProvider()
    if provider == "gokada":
        key = (config_value(config, "GOKADA_API_KEY", "") or "").strip()
        if not key:
            raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing GOKADA_API_KEY")
        return GokadaDeliveryProvider(key, base_url=config_value(config, "GOKADA_BASE_URL", ""), timeout=timeout)
    if provider == "kwik":
        key = (config_value(config, "KWIK_API_KEY", "") or "").strip()
        if not key:
            raise IntegrationMisconfiguredError("INTEGRATION_MISCONFIGURED:missing KWIK_API_KEY")
        return KwikDeliveryProvider(key, base_url=config_value(config, "KWIK_BASE_URL", ""), timeout=timeout)

    raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:delivery_provider={provider}")
