# Overview: Event sink interface, the logging sink, and the in-process event bus.

"""
Outbound events are fire-and-forget: emitting never raises into the caller
and never rolls back the unit of work that produced the event. Events are
emitted only after the producing transaction has committed.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Callable

from flask import current_app


EVENT_ORDER_CREATED = "order.created"
EVENT_ORDER_STATUS_CHANGED = "order.status_changed"
EVENT_ORDER_TERMINAL_TRANSITION = "order.terminal_transition"
EVENT_ESCROW_FUNDED = "escrow.funded"
EVENT_ESCROW_FALLBACK = "escrow.fallback"
EVENT_ESCROW_RELEASED = "escrow.released"
EVENT_ESCROW_REFUNDED = "escrow.refunded"
EVENT_SHOP_SUSPENDED = "shop.suspended"
EVENT_SHOP_REACTIVATED = "shop.reactivated"


class Notifier:
    """Event sink consumed by the external notification/messaging subsystem."""

    def notify(self, event_type: str, payload: dict) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    def notify(self, event_type: str, payload: dict) -> None:
        current_app.logger.info("event=%s payload=%s", event_type, payload)


class EventBus(Notifier):
    """
    In-process fan-out.

    Local subscribers run first, each isolated from the others; the event is
    then forwarded to the downstream sink. A failing subscriber is logged and
    does not affect the publisher.
    """

    def __init__(self, downstream: Notifier | None = None):
        self.downstream = downstream
        self._subscribers: dict[str, list[Callable[[dict], None]]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: Callable[[dict], None]) -> None:
        self._subscribers[event_type].append(handler)

    def notify(self, event_type: str, payload: dict) -> None:
        for handler in list(self._subscribers.get(event_type, ())):
            try:
                handler(payload)
            except Exception:
                current_app.logger.exception("Subscriber for %s failed", event_type)
        if self.downstream is not None:
            emit_safely(self.downstream, event_type, payload)


def emit_safely(notifier: Notifier | None, event_type: str, payload: dict) -> None:
    if notifier is None:
        return
    try:
        notifier.notify(event_type, payload)
    except Exception:
        current_app.logger.exception("Failed to emit %s", event_type)
