"""Enumerations and fixed values shared across Lounge POS modules.

Centralises domain constants so that the record store, the calculators, the
reconciliation engine, and the command line all agree on identifiers and
default rates.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Loyalty points earned per 100 currency units of the final bill total.
MEMBER_LOYALTY_RATE = 5
STANDARD_LOYALTY_RATE = 2

# Percentage knocked off station time for customers with an active membership.
MEMBER_SESSION_DISCOUNT_PERCENT = Decimal("50")

# Hours credited by a membership product that does not declare its own.
DEFAULT_MEMBERSHIP_HOURS = 4

MEMBERSHIP_DURATION_DAYS = {
    "weekly": 7,
    "monthly": 30,
}


class PaymentMethod(str, Enum):
    """Enumerate supported payment mechanisms for bills."""

    CASH = "cash"
    UPI = "upi"


class DiscountType(str, Enum):
    """Enumerate how the ``discount`` figure of a bill is interpreted."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"


class ItemType(str, Enum):
    """Enumerate the kinds of lines a cart can hold."""

    PRODUCT = "product"
    SESSION = "session"


class ProductCategory(str, Enum):
    """Enumerate the product categories sold at the counter."""

    FOOD = "food"
    DRINKS = "drinks"
    TOBACCO = "tobacco"
    CHALLENGES = "challenges"
    MEMBERSHIP = "membership"


class MembershipDuration(str, Enum):
    """Enumerate the membership windows a product can grant."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the record store."""

    PRODUCTS = "Products"
    CUSTOMERS = "Customers"
    BILLS = "Bills"
    BILL_ITEMS = "BillItems"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MEMBER_LOYALTY_RATE",
    "STANDARD_LOYALTY_RATE",
    "MEMBER_SESSION_DISCOUNT_PERCENT",
    "DEFAULT_MEMBERSHIP_HOURS",
    "MEMBERSHIP_DURATION_DAYS",
    "PaymentMethod",
    "DiscountType",
    "ItemType",
    "ProductCategory",
    "MembershipDuration",
    "SheetName",
]
