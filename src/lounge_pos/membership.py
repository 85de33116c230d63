"""Membership window rules.

A membership is a time-boxed customer status bought as a product from the
``membership`` category. This module decides whether a customer currently
holds one and what window a membership product grants.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Iterable, Optional

from . import data_manager, log
from .constants import (
    DEFAULT_MEMBERSHIP_HOURS,
    MEMBERSHIP_DURATION_DAYS,
    ItemType,
    MembershipDuration,
    ProductCategory,
)
from .exceptions import ValidationError


@dataclass(frozen=True)
class MembershipGrant:
    """Membership window produced by buying a membership product."""

    plan: str
    duration: MembershipDuration
    start_date: datetime
    expiry_date: datetime
    hours: int


def _now(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def _as_aware(value: datetime) -> datetime:
    # rows written by older tooling may carry naive timestamps
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def is_membership_active(customer: data_manager.Customer, now: Optional[datetime] = None) -> bool:
    """Return whether ``customer`` holds an unexpired membership.

    The membership must be flagged, its expiry (when recorded) must lie in the
    future, and its hours allowance (when recorded) must not be used up.
    """
    if not customer.is_member:
        return False
    moment = _now(now)
    if customer.membership_expiry_date is not None and _as_aware(customer.membership_expiry_date) < moment:
        return False
    if customer.membership_hours_left is not None and customer.membership_hours_left <= 0:
        return False
    return True


def is_membership_item(item: data_manager.CartItem) -> bool:
    """Return whether a cart line sells a membership."""
    return item.item_type == ItemType.PRODUCT.value and item.category == ProductCategory.MEMBERSHIP.value


def membership_items(items: Iterable[data_manager.CartItem]) -> list[data_manager.CartItem]:
    """Return the membership lines of a cart in cart order."""
    return [item for item in items if is_membership_item(item)]


def resolve_duration(product: data_manager.Product) -> MembershipDuration:
    """Determine the window length a membership product grants.

    The explicit ``duration`` field is authoritative. Products without one
    fall back to looking for "weekly" or "monthly" in the product name.

    Raises:
        ValidationError: If neither the field nor the name names a duration.
    """
    if product.duration:
        try:
            return MembershipDuration(product.duration.strip().lower())
        except ValueError as exc:
            raise ValidationError(
                f"Membership product '{product.product_id}' has unknown duration '{product.duration}'"
            ) from exc

    lowered = product.name.lower()
    for candidate in (MembershipDuration.WEEKLY, MembershipDuration.MONTHLY):
        if candidate.value in lowered:
            log.warning(
                "Membership product '%s' has no duration field; inferred '%s' from its name",
                product.product_id,
                candidate.value,
            )
            return candidate

    raise ValidationError(
        f"Membership product '{product.product_id}' does not declare a weekly or monthly duration"
    )


def grant_for_product(product: data_manager.Product, now: Optional[datetime] = None) -> MembershipGrant:
    """Compute the membership window bought with ``product``, starting now."""
    duration = resolve_duration(product)
    start = _now(now)
    hours = product.membership_hours if product.membership_hours is not None else DEFAULT_MEMBERSHIP_HOURS
    return MembershipGrant(
        plan=product.name,
        duration=duration,
        start_date=start,
        expiry_date=start + timedelta(days=MEMBERSHIP_DURATION_DAYS[duration.value]),
        hours=hours,
    )
