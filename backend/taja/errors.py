# Overview: Domain error taxonomy shared by the order, escrow, coupon and trust services.

from __future__ import annotations


class OrderFlowError(Exception):
    """
    Base class for domain errors.

    `reason` is the user-facing string; routes return it verbatim.
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ValidationError(OrderFlowError, ValueError):
    """400-level input problem. Nothing was written."""


class NotFoundError(OrderFlowError, LookupError):
    """Referenced entity does not exist."""


class InvalidTransitionError(OrderFlowError):
    """Order status change not present in the transition table."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        super().__init__(reason or f"Cannot change status from {from_status} to {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class InvalidStateError(OrderFlowError):
    """Operation not permitted in the entity's current state. Nothing was written."""


class DependencyError(OrderFlowError):
    """External gateway or provider failed."""


class GatewayTimeoutError(DependencyError):
    """
    Gateway call exceeded its timeout.

    Outcome is unknown: callers must not commit a state change and must
    leave reconciliation to the webhook handler.
    """


class ConsistencyViolation(OrderFlowError):
    """An atomic guard lost a race (e.g. coupon usage cap). Safe to retry."""
