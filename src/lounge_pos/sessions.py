"""Session costing: turns elapsed station time into a billable cart line."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Optional

from . import data_manager, log
from .constants import MEMBER_SESSION_DISCOUNT_PERCENT, ItemType
from .exceptions import ValidationError
from .membership import is_membership_active


@dataclass(frozen=True)
class Station:
    """A console or pool table billed by the hour."""

    station_id: str
    name: str
    station_type: str
    hourly_rate: Decimal


@dataclass(frozen=True)
class Session:
    """Time a customer spent on a station."""

    session_id: str
    station_id: str
    customer_id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    duration_minutes: Optional[int] = None


def elapsed_minutes(start_time: datetime, end_time: datetime) -> int:
    """Whole minutes between two instants, rounded, never below one."""
    seconds = (end_time - start_time).total_seconds()
    return max(1, round(seconds / 60))


def session_price(
    minutes: int,
    hourly_rate: Decimal,
    *,
    is_member: bool,
    member_discount_percent: Decimal = MEMBER_SESSION_DISCOUNT_PERCENT,
) -> Decimal:
    """Price ``minutes`` of play, rounding up to whole currency units.

    Members pay the base price less ``member_discount_percent``, again
    rounded up.
    """
    price = Decimal(math.ceil(Decimal(minutes) * hourly_rate / Decimal(60)))
    if is_member:
        price = Decimal(math.ceil(price * (Decimal(100) - member_discount_percent) / Decimal(100)))
    return price


def end_session(session: Session, end_time: Optional[datetime] = None) -> Session:
    """Stamp the end time and duration on a running session."""
    if session.end_time is not None:
        raise ValidationError(f"Session '{session.session_id}' has already ended")
    moment = end_time if end_time is not None else datetime.now(UTC)
    return replace(session, end_time=moment, duration_minutes=elapsed_minutes(session.start_time, moment))


def finalize(
    session: Session,
    station: Station,
    customer: Optional[data_manager.Customer],
    *,
    end_time: Optional[datetime] = None,
    member_discount_percent: Decimal = MEMBER_SESSION_DISCOUNT_PERCENT,
) -> data_manager.CartItem:
    """Produce the cart line charged for ``session`` at checkout.

    Args:
        session (Session): Running or already ended session.
        station (Station): Station the session ran on.
        customer (Customer | None): Owner of the session; an active membership
            earns the member discount.
        end_time (datetime | None): End instant for a running session.
            Defaults to now.
        member_discount_percent (Decimal): Member discount on station time.

    Returns:
        CartItem: ``session``-type line with quantity 1.
    """
    if session.station_id != station.station_id:
        raise ValidationError(
            f"Session '{session.session_id}' ran on station '{session.station_id}', not '{station.station_id}'"
        )
    ended = session if session.end_time is not None else end_session(session, end_time)
    minutes = ended.duration_minutes
    if minutes is None:
        minutes = elapsed_minutes(ended.start_time, ended.end_time)

    is_member = customer is not None and is_membership_active(customer, ended.end_time)
    price = session_price(
        minutes,
        station.hourly_rate,
        is_member=is_member,
        member_discount_percent=member_discount_percent,
    )
    log.info(
        "Costed session '%s' on '%s': %d min, price=%s%s",
        session.session_id,
        station.name,
        minutes,
        price,
        " (member rate)" if is_member else "",
    )
    return data_manager.CartItem(
        item_id=session.session_id,
        item_type=ItemType.SESSION.value,
        name=f"{station.name} - {minutes} mins",
        category=None,
        price=price,
        quantity=1,
        total=price,
    )
