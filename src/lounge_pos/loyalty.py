"""Loyalty accrual and redemption rules."""

from __future__ import annotations

import math
from decimal import Decimal

from . import log
from .constants import MEMBER_LOYALTY_RATE, STANDARD_LOYALTY_RATE
from .exceptions import LoyaltyPointsExceeded


def accrual_rate(is_member: bool, *, member_rate: int = MEMBER_LOYALTY_RATE, standard_rate: int = STANDARD_LOYALTY_RATE) -> int:
    """Return the points earned per 100 currency units."""
    return member_rate if is_member else standard_rate


def points_earned(
    total: Decimal,
    is_member: bool,
    *,
    member_rate: int = MEMBER_LOYALTY_RATE,
    standard_rate: int = STANDARD_LOYALTY_RATE,
) -> int:
    """Return ``floor((total / 100) x rate)``.

    Args:
        total (Decimal): Final bill total after discounts and redemption.
        is_member (bool): Whether the customer earns at the member rate.
        member_rate (int): Points per 100 for members.
        standard_rate (int): Points per 100 for everyone else.

    Returns:
        int: Non-negative number of points earned.
    """
    rate = accrual_rate(is_member, member_rate=member_rate, standard_rate=standard_rate)
    earned = math.floor(Decimal(total) / Decimal(100) * rate)
    return max(0, earned)


def validate_redemption(points_requested: int, points_available: int) -> bool:
    """Return whether ``points_requested`` can be covered by the balance."""
    return points_requested <= points_available


def require_redemption(points_requested: int, points_available: int) -> None:
    """Reject a redemption larger than the available balance.

    Raises:
        LoyaltyPointsExceeded: If ``points_requested`` exceeds
            ``points_available``. The request is never clamped.
    """
    if not validate_redemption(points_requested, points_available):
        log.warning(
            "Loyalty redemption rejected: requested %d, available %d",
            points_requested,
            points_available,
        )
        raise LoyaltyPointsExceeded(points_requested, points_available)
