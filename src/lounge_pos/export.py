"""CSV export helpers for the bills and customers reports."""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable

from . import data_manager, log
from .core_logic import BillSummary

BILL_HEADERS = [
    "Bill ID",
    "Customer",
    "Date",
    "Items",
    "Subtotal",
    "Discount",
    "Total",
    "Payment Method",
]

CUSTOMER_HEADERS = [
    "Customer ID",
    "Name",
    "Phone",
    "Email",
    "Member Status",
    "Loyalty Points",
    "Total Spent",
]


def _row_from_bill(summary: BillSummary) -> list[object]:
    bill = summary.bill
    return [
        bill.bill_id,
        summary.customer_name or "Unknown Customer",
        bill.created_at.date().isoformat() if bill.created_at else "",
        len(bill.items),
        bill.subtotal,
        bill.discount_value,
        bill.total,
        bill.payment_method,
    ]


def _row_from_customer(customer: data_manager.Customer) -> list[object]:
    return [
        customer.customer_id,
        customer.name,
        customer.phone or "",
        customer.email or "",
        "Member" if customer.is_member else "Non-Member",
        customer.loyalty_points,
        customer.total_spent,
    ]


def export_bills_to_csv(summaries: Iterable[BillSummary], filepath: Path) -> int:
    """Write one row per bill to ``filepath`` and return the row count."""
    count = 0
    with open(filepath, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(BILL_HEADERS)
        for summary in summaries:
            writer.writerow(_row_from_bill(summary))
            count += 1
    log.info("Exported %d bill(s) to '%s'", count, filepath)
    return count


def export_customers_to_csv(customers: Iterable[data_manager.Customer], filepath: Path) -> int:
    """Write one row per customer to ``filepath`` and return the row count."""
    count = 0
    with open(filepath, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(CUSTOMER_HEADERS)
        for customer in customers:
            writer.writerow(_row_from_customer(customer))
            count += 1
    log.info("Exported %d customer(s) to '%s'", count, filepath)
    return count
