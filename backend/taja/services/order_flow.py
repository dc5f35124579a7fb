# Overview: Builds the order-flow service graph and exposes it on the Flask app.

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from ..integrations.payments.base import PaymentsGateway
from .escrow_service import EscrowCoordinator
from .notifications import EVENT_ORDER_TERMINAL_TRANSITION, EventBus, LogNotifier, Notifier
from .order_service import OrderLedger
from .trust_service import ShopTrustMonitor

EXTENSION_KEY = "order_flow"


@dataclass
class OrderFlow:
    bus: EventBus
    gateway: PaymentsGateway
    ledger: OrderLedger
    escrow: EscrowCoordinator
    trust: ShopTrustMonitor


def build_order_flow(gateway: PaymentsGateway, notifier: Notifier | None = None, *, currency: str = "NGN") -> OrderFlow:
    """
    Wire the services.

    Events flow one way: the ledger publishes terminal transitions on the
    bus and the trust monitor subscribes. Everything is then forwarded to
    `notifier` (the application log by default).
    """
    bus = EventBus(downstream=notifier if notifier is not None else LogNotifier())
    ledger = OrderLedger(bus)
    trust = ShopTrustMonitor(bus)
    bus.subscribe(EVENT_ORDER_TERMINAL_TRANSITION, trust.handle_terminal_transition)
    escrow = EscrowCoordinator(gateway, ledger, bus, currency=currency)
    return OrderFlow(bus=bus, gateway=gateway, ledger=ledger, escrow=escrow, trust=trust)


def get_order_flow() -> OrderFlow:
    return current_app.extensions[EXTENSION_KEY]
