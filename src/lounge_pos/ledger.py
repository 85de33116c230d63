"""Customer ledger: loyalty balance, lifetime spend, and membership fields.

The ledger only exposes absolute writes and read-then-write deltas. Deltas
are computed against the value stored at the moment of writing, never against
a copy the caller read earlier, so unrelated updates to the same customer are
not clobbered.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import List, Optional, Protocol

from openpyxl.workbook import Workbook

from . import data_manager, log
from .exceptions import NotFoundError, ValidationError
from .membership import MembershipGrant
from .runtime import RuntimeContext, run_record_io


ZERO = Decimal("0.00")


class CustomerLedger(Protocol):
    """Interface the reconciliation engine uses for customer balances."""

    async def read(self, customer_id: str) -> data_manager.Customer: ...

    async def find(self, customer_id: str) -> Optional[data_manager.Customer]: ...

    async def write(self, customer_id: str, *, loyalty_points: int, total_spent: Decimal) -> None: ...

    async def apply_delta(self, customer_id: str, *, points_delta: int, spent_delta: Decimal) -> data_manager.Customer: ...

    async def activate_membership(self, customer_id: str, grant: MembershipGrant) -> data_manager.Customer: ...


def _require_customer(workbook: Workbook, customer_id: str) -> data_manager.Customer:
    customer = data_manager.find_customer(workbook, customer_id)
    if customer is None:
        log.warning("Customer lookup failed for id '%s'", customer_id)
        raise NotFoundError("customer", customer_id)
    return customer


def _write_balance(workbook: Workbook, customer_id: str, loyalty_points: int, total_spent: Decimal) -> None:
    _require_customer(workbook, customer_id)
    data_manager.update_customer(
        workbook,
        customer_id,
        field_values={"LoyaltyPoints": loyalty_points, "TotalSpent": total_spent},
    )


def _apply_delta(workbook: Workbook, customer_id: str, points_delta: int, spent_delta: Decimal) -> data_manager.Customer:
    latest = _require_customer(workbook, customer_id)
    updated = replace(
        latest,
        loyalty_points=max(0, latest.loyalty_points + points_delta),
        total_spent=max(ZERO, latest.total_spent + spent_delta),
    )
    data_manager.update_customer(
        workbook,
        customer_id,
        field_values={"LoyaltyPoints": updated.loyalty_points, "TotalSpent": updated.total_spent},
    )
    return updated


def _activate(workbook: Workbook, customer_id: str, grant: MembershipGrant) -> data_manager.Customer:
    latest = _require_customer(workbook, customer_id)
    updated = replace(
        latest,
        is_member=True,
        membership_plan=grant.plan,
        membership_duration=grant.duration.value,
        membership_start_date=grant.start_date,
        membership_expiry_date=grant.expiry_date,
        membership_hours_left=grant.hours,
    )
    data_manager.update_customer(
        workbook,
        customer_id,
        field_values={
            "IsMember": True,
            "MembershipPlan": updated.membership_plan,
            "MembershipDuration": updated.membership_duration,
            "MembershipStartDate": updated.membership_start_date,
            "MembershipExpiryDate": updated.membership_expiry_date,
            "MembershipHoursLeft": updated.membership_hours_left,
        },
    )
    return updated


def _register(workbook: Workbook, customer: data_manager.Customer) -> None:
    if data_manager.locate_row(workbook, data_manager.CUSTOMERS_SHEET, "CustomerID", customer.customer_id) is not None:
        raise ValidationError(f"Customer already exists: {customer.customer_id}")
    data_manager.append_customer(workbook, customer)


class WorkbookCustomerLedger:
    """Customer ledger backed by the ``Customers`` sheet."""

    def __init__(self, context: RuntimeContext) -> None:
        self.context = context

    async def find(self, customer_id: str) -> Optional[data_manager.Customer]:
        """Return the stored customer or ``None`` when it does not exist."""
        return await run_record_io(
            self.context,
            data_manager.find_customer,
            customer_id,
            operation="read customer",
            key=customer_id,
        )

    async def read(self, customer_id: str) -> data_manager.Customer:
        """Return the stored customer.

        Raises:
            NotFoundError: If no customer carries ``customer_id``.
        """
        customer = await self.find(customer_id)
        if customer is None:
            log.warning("Customer lookup failed for id '%s'", customer_id)
            raise NotFoundError("customer", customer_id)
        return customer

    async def list_customers(self) -> List[data_manager.Customer]:
        return await run_record_io(
            self.context,
            lambda wb: list(data_manager.iter_customers(wb)),
            operation="list customers",
            key="*",
        )

    async def register(self, customer: data_manager.Customer) -> data_manager.Customer:
        """Create a customer record, stamping ``created_at`` when missing."""
        if customer.loyalty_points < 0 or customer.total_spent < ZERO:
            raise ValidationError("Loyalty points and total spent must be zero or positive")
        if customer.created_at is None:
            customer = replace(customer, created_at=datetime.now(UTC))
        await run_record_io(
            self.context,
            _register,
            customer,
            operation="insert customer",
            key=customer.customer_id,
            write=True,
        )
        log.info("Registered customer '%s'", customer.customer_id)
        return customer

    async def write(self, customer_id: str, *, loyalty_points: int, total_spent: Decimal) -> None:
        """Overwrite the balance fields with absolute values.

        Used for administrative corrections; the engine itself goes through
        :meth:`apply_delta`.
        """
        if loyalty_points < 0 or total_spent < ZERO:
            raise ValidationError("Loyalty points and total spent must be zero or positive")
        await run_record_io(
            self.context,
            _write_balance,
            customer_id,
            loyalty_points,
            total_spent,
            operation="update customer",
            key=customer_id,
            write=True,
        )
        log.info(
            "Set customer '%s' balance to points=%d spent=%s",
            customer_id,
            loyalty_points,
            total_spent,
        )

    async def apply_delta(self, customer_id: str, *, points_delta: int, spent_delta: Decimal) -> data_manager.Customer:
        """Add signed deltas to the latest stored balance.

        The stored record is re-read inside the same record operation that
        writes it. Both fields clamp at zero.

        Raises:
            NotFoundError: If the customer no longer exists.
            StoreWriteFailure: If the workbook rejects the write.
        """
        updated = await run_record_io(
            self.context,
            _apply_delta,
            customer_id,
            points_delta,
            spent_delta,
            operation="update customer",
            key=customer_id,
            write=True,
        )
        log.info(
            "Applied ledger delta to customer '%s': points %+d, spent %+.2f (now points=%d spent=%s)",
            customer_id,
            points_delta,
            spent_delta,
            updated.loyalty_points,
            updated.total_spent,
        )
        return updated

    async def activate_membership(self, customer_id: str, grant: MembershipGrant) -> data_manager.Customer:
        """Start (or replace) the customer's membership window."""
        updated = await run_record_io(
            self.context,
            _activate,
            customer_id,
            grant,
            operation="update customer",
            key=customer_id,
            write=True,
        )
        log.info(
            "Activated %s membership '%s' for customer '%s' until %s",
            grant.duration.value,
            grant.plan,
            customer_id,
            grant.expiry_date.isoformat(),
        )
        return updated
