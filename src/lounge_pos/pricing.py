"""Pricing and discount calculator.

Pure functions only: the same cart, discount, and redemption always produce
the same financial snapshot, and nothing here reads or writes a record.
Inputs are expected to be validated by the caller (negative discounts or
redemptions never reach :func:`compute_financials`).
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from . import data_manager
from .constants import DiscountType, ItemType


ZERO = Decimal("0.00")


@dataclass(frozen=True)
class Financials:
    """Derived money fields of a bill."""

    subtotal: Decimal
    discount_value: Decimal
    total: Decimal


def line_total(price: Decimal, quantity: int) -> Decimal:
    """Return ``price x quantity`` for a single cart line."""
    return price * quantity


def compute_subtotal(items: Iterable[data_manager.CartItem]) -> Decimal:
    """Sum the ``total`` of every line."""
    return sum((item.total for item in items), ZERO)


def compute_discount_value(subtotal: Decimal, discount: Decimal, discount_type: DiscountType | str) -> Decimal:
    """Turn a discount figure into an amount of money.

    Percentage discounts are taken off the subtotal; fixed discounts are used
    as-is.
    """
    if DiscountType(discount_type) is DiscountType.PERCENTAGE:
        return subtotal * (discount / Decimal(100))
    return discount


def compute_financials(
    items: Iterable[data_manager.CartItem],
    discount: Decimal,
    discount_type: DiscountType | str,
    loyalty_points_used: int,
) -> Financials:
    """Compute subtotal, discount value, and final total.

    ``total = max(0, subtotal - discount_value - loyalty_points_used)``; one
    loyalty point is worth one unit of currency.

    Args:
        items: Cart lines whose ``total`` fields are already consistent.
        discount (Decimal): Discount figure, a percentage or an amount.
        discount_type (DiscountType | str): How ``discount`` is interpreted.
        loyalty_points_used (int): Points redeemed against this bill.

    Returns:
        Financials: Snapshot of the three derived money fields.
    """
    subtotal = compute_subtotal(items)
    discount_value = compute_discount_value(subtotal, discount, discount_type)
    total = max(ZERO, subtotal - discount_value - Decimal(loyalty_points_used))
    return Financials(subtotal=subtotal, discount_value=discount_value, total=total)


def cart_item_from_product(product: data_manager.Product, quantity: int) -> data_manager.CartItem:
    """Build a product cart line priced from the catalog record."""
    return data_manager.CartItem(
        item_id=product.product_id,
        item_type=ItemType.PRODUCT.value,
        name=product.name,
        category=product.category,
        price=product.price,
        quantity=quantity,
        total=line_total(product.price, quantity),
    )
