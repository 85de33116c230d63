"""Error taxonomy for the Lounge POS reconciliation engine.

Every domain error derives from :class:`BusinessRuleViolation`, so the
presentation layer can translate the whole family into one exit status while
still telling the operator exactly which rule was broken.
"""

from __future__ import annotations

from typing import Optional


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation, ValueError):
    """Raised when command inputs are rejected before any write happens."""


class ActiveMembershipConflict(BusinessRuleViolation):
    """Raised when a membership is bought while another one is still active."""

    def __init__(self, customer_id: str, expiry_iso: Optional[str] = None) -> None:
        self.customer_id = customer_id
        self.expiry_iso = expiry_iso
        message = f"Customer '{customer_id}' already holds an active membership"
        if expiry_iso:
            message += f" (expires {expiry_iso})"
        super().__init__(message)


class InsufficientStock(BusinessRuleViolation):
    """Raised when a stock delta would drive a product below zero."""

    def __init__(self, product_id: str, available: int, requested: int, product_name: Optional[str] = None) -> None:
        self.product_id = product_id
        self.available = available
        self.requested = requested
        label = product_name or product_id
        super().__init__(f"Only {available} items available in stock for '{label}' (requested {requested})")


class LoyaltyPointsExceeded(BusinessRuleViolation):
    """Raised when a redemption asks for more points than the customer holds."""

    def __init__(self, requested: int, available: int) -> None:
        self.requested = requested
        self.available = available
        super().__init__(f"Cannot exceed available points: requested {requested}, available {available}")


class NotFoundError(BusinessRuleViolation):
    """Raised when a referenced customer, product, or bill is unknown."""

    def __init__(self, kind: str, key: str) -> None:
        self.kind = kind
        self.key = key
        super().__init__(f"Unknown {kind} id: {key}")


class StoreWriteFailure(BusinessRuleViolation):
    """Raised when the underlying record store rejects a read or write."""

    def __init__(self, operation: str, key: str, reason: object) -> None:
        self.operation = operation
        self.key = key
        self.reason = reason
        super().__init__(f"Record store failed to {operation} '{key}': {reason}")


__all__ = [
    "BusinessRuleViolation",
    "ValidationError",
    "ActiveMembershipConflict",
    "InsufficientStock",
    "LoyaltyPointsExceeded",
    "NotFoundError",
    "StoreWriteFailure",
]
