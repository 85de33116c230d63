"""Transaction store: the authoritative record of bills and their line items.

A bill lives in two sheets, a header row in ``Bills`` and one row per item in
``BillItems``. Every helper here keeps the two in step within a single record
operation: a bill is never created without its items, items are replaced
wholesale rather than merged, and deletion removes items before the header.
"""

from __future__ import annotations

import uuid
from typing import Iterable, List, Optional, Protocol

from openpyxl.workbook import Workbook

from . import data_manager, log
from .exceptions import NotFoundError, ValidationError
from .runtime import RuntimeContext, run_record_io


class TransactionStore(Protocol):
    """Interface the reconciliation engine uses for bills."""

    async def persist(self, bill: data_manager.Bill) -> data_manager.Bill: ...

    async def get(self, bill_id: str) -> data_manager.Bill: ...

    async def find_by_idempotency_key(self, key: str) -> Optional[data_manager.Bill]: ...

    async def replace(self, bill: data_manager.Bill) -> data_manager.Bill: ...

    async def delete(self, bill_id: str) -> None: ...


def generate_bill_id(*, prefix: str = "B") -> str:
    """Return a fresh, never reused bill identifier."""
    return f"{prefix}{uuid.uuid4().hex}"


def _append_items(workbook: Workbook, bill_id: str, items: Iterable[data_manager.CartItem]) -> None:
    for position, item in enumerate(items, start=1):
        data_manager.append_bill_item(workbook, data_manager.BillItemRow(bill_id=bill_id, position=position, item=item))


def _header_fields(bill: data_manager.Bill) -> dict[str, object]:
    return {
        "Subtotal": bill.subtotal,
        "Discount": bill.discount,
        "DiscountType": bill.discount_type,
        "DiscountValue": bill.discount_value,
        "LoyaltyPointsUsed": bill.loyalty_points_used,
        "LoyaltyPointsEarned": bill.loyalty_points_earned,
        "Total": bill.total,
        "PaymentMethod": bill.payment_method,
    }


def _persist(workbook: Workbook, bill: data_manager.Bill) -> None:
    if data_manager.locate_row(workbook, data_manager.BILLS_SHEET, "BillID", bill.bill_id) is not None:
        raise ValidationError(f"Bill already exists: {bill.bill_id}")
    data_manager.append_bill(workbook, bill)
    try:
        _append_items(workbook, bill.bill_id, bill.items)
    except Exception:
        # never leave a header without its items behind
        data_manager.delete_records(workbook, data_manager.BILL_ITEMS_SHEET, "BillID", bill.bill_id)
        data_manager.delete_records(workbook, data_manager.BILLS_SHEET, "BillID", bill.bill_id)
        raise


def _replace_items(workbook: Workbook, bill_id: str, items: Iterable[data_manager.CartItem]) -> None:
    if data_manager.locate_row(workbook, data_manager.BILLS_SHEET, "BillID", bill_id) is None:
        raise NotFoundError("bill", bill_id)
    data_manager.delete_records(workbook, data_manager.BILL_ITEMS_SHEET, "BillID", bill_id)
    _append_items(workbook, bill_id, items)


def _replace(workbook: Workbook, bill: data_manager.Bill) -> None:
    _replace_items(workbook, bill.bill_id, bill.items)
    data_manager.update_bill(workbook, bill.bill_id, field_values=_header_fields(bill))


def _delete(workbook: Workbook, bill_id: str) -> None:
    if data_manager.locate_row(workbook, data_manager.BILLS_SHEET, "BillID", bill_id) is None:
        raise NotFoundError("bill", bill_id)
    data_manager.delete_records(workbook, data_manager.BILL_ITEMS_SHEET, "BillID", bill_id)
    data_manager.delete_records(workbook, data_manager.BILLS_SHEET, "BillID", bill_id)


def _find_by_key(workbook: Workbook, key: str) -> Optional[data_manager.Bill]:
    row_index = data_manager.locate_row(workbook, data_manager.BILLS_SHEET, "IdempotencyKey", key)
    if row_index is None:
        return None
    bill_id = workbook[data_manager.BILLS_SHEET].cell(row=row_index, column=1).value
    return data_manager.load_bill(workbook, str(bill_id))


def _list_bills(workbook: Workbook, customer_id: Optional[str]) -> List[data_manager.Bill]:
    bills = []
    for header in data_manager.iter_bills(workbook):
        if customer_id is None or header.customer_id == customer_id:
            bills.append(data_manager.load_bill(workbook, header.bill_id))
    return bills


class WorkbookTransactionStore:
    """Transaction store backed by the ``Bills`` and ``BillItems`` sheets."""

    def __init__(self, context: RuntimeContext) -> None:
        self.context = context

    async def persist(self, bill: data_manager.Bill) -> data_manager.Bill:
        """Insert a new bill together with all of its items.

        Raises:
            StoreWriteFailure: If the workbook rejects the insert; no partial
                bill is left behind.
        """
        await run_record_io(
            self.context,
            _persist,
            bill,
            operation="insert bill",
            key=bill.bill_id,
            write=True,
        )
        log.info("Persisted bill '%s' with %d item(s), total=%s", bill.bill_id, len(bill.items), bill.total)
        return bill

    async def get(self, bill_id: str) -> data_manager.Bill:
        """Return the stored bill with its items.

        Raises:
            NotFoundError: If no bill carries ``bill_id``.
        """
        bill = await run_record_io(
            self.context,
            data_manager.load_bill,
            bill_id,
            operation="read bill",
            key=bill_id,
        )
        if bill is None:
            log.warning("Bill lookup failed for id '%s'", bill_id)
            raise NotFoundError("bill", bill_id)
        return bill

    async def find_by_idempotency_key(self, key: str) -> Optional[data_manager.Bill]:
        return await run_record_io(
            self.context,
            _find_by_key,
            key,
            operation="read bill",
            key=key,
        )

    async def list_bills(self, customer_id: Optional[str] = None) -> List[data_manager.Bill]:
        """Return every bill (optionally for one customer) in sheet order."""
        return await run_record_io(
            self.context,
            _list_bills,
            customer_id,
            operation="list bills",
            key=customer_id or "*",
        )

    async def replace_items(self, bill_id: str, items: Iterable[data_manager.CartItem]) -> None:
        """Delete every stored item of ``bill_id`` and insert ``items`` in order."""
        await run_record_io(
            self.context,
            _replace_items,
            bill_id,
            tuple(items),
            operation="replace items of bill",
            key=bill_id,
            write=True,
        )
        log.info("Replaced items of bill '%s'", bill_id)

    async def replace(self, bill: data_manager.Bill) -> data_manager.Bill:
        """Store new items and financial fields under an existing bill id.

        ``created_at``, ``customer_id`` and ``idempotency_key`` of the stored
        header are left untouched.

        Raises:
            NotFoundError: If the bill no longer exists.
            StoreWriteFailure: If the workbook rejects the write.
        """
        await run_record_io(
            self.context,
            _replace,
            bill,
            operation="replace bill",
            key=bill.bill_id,
            write=True,
        )
        log.info("Replaced bill '%s' (%d item(s), total=%s)", bill.bill_id, len(bill.items), bill.total)
        return bill

    async def delete(self, bill_id: str) -> None:
        """Remove the items of ``bill_id``, then its header.

        Raises:
            NotFoundError: If the bill does not exist.
            StoreWriteFailure: If the workbook rejects the delete.
        """
        await run_record_io(
            self.context,
            _delete,
            bill_id,
            operation="delete bill",
            key=bill_id,
            write=True,
        )
        log.info("Deleted bill '%s'", bill_id)
