"""Inventory adjuster for product stock.

Stock only ever moves by signed deltas: negative when a bill consumes units,
positive when units are restored or restocked. A delta that would drive stock
below zero is rejected with :class:`InsufficientStock`; membership products
carry no stock and ignore deltas entirely.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Iterable, List, Protocol

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import ItemType, ProductCategory
from .exceptions import InsufficientStock, NotFoundError, ValidationError
from .runtime import RuntimeContext, run_record_io


class InventoryAdjuster(Protocol):
    """Interface the reconciliation engine uses to move stock."""

    async def read(self, product_id: str) -> data_manager.Product: ...

    async def check_delta(self, product_id: str, delta: int) -> int: ...

    async def apply_delta(self, product_id: str, delta: int) -> int: ...


def is_stock_tracked(product: data_manager.Product) -> bool:
    """Return whether deltas against ``product`` change its stock."""
    return product.category != ProductCategory.MEMBERSHIP.value


def _is_stock_line(item: data_manager.CartItem) -> bool:
    return item.item_type == ItemType.PRODUCT.value and item.category != ProductCategory.MEMBERSHIP.value


def quantities_by_product(items: Iterable[data_manager.CartItem]) -> Dict[str, int]:
    """Total the quantity of every stock-tracked product line, keyed by id.

    Session lines and membership lines are ignored.
    """
    totals: Dict[str, int] = defaultdict(int)
    for item in items:
        if _is_stock_line(item):
            totals[item.item_id] += item.quantity
    return dict(totals)


def consumption_deltas(items: Iterable[data_manager.CartItem]) -> Dict[str, int]:
    """Return the negative stock deltas a new bill applies."""
    return {product_id: -quantity for product_id, quantity in quantities_by_product(items).items()}


def restoration_deltas(items: Iterable[data_manager.CartItem]) -> Dict[str, int]:
    """Return the positive stock deltas that undo a bill."""
    return {product_id: quantity for product_id, quantity in quantities_by_product(items).items()}


def quantity_deltas(
    old_items: Iterable[data_manager.CartItem],
    new_items: Iterable[data_manager.CartItem],
) -> Dict[str, int]:
    """Diff two item sets into per-product stock deltas.

    Added units consume stock (negative), removed units restore it
    (positive). Products whose quantity did not change are omitted, so only
    the incremental units of a resized line are moved.
    """
    old_totals = quantities_by_product(old_items)
    new_totals = quantities_by_product(new_items)
    deltas: Dict[str, int] = {}
    for product_id in dict.fromkeys([*old_totals, *new_totals]):
        delta = old_totals.get(product_id, 0) - new_totals.get(product_id, 0)
        if delta:
            deltas[product_id] = delta
    return deltas


def _require_product(workbook: Workbook, product_id: str) -> data_manager.Product:
    product = data_manager.find_product(workbook, product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise NotFoundError("product", product_id)
    return product


def _projected_stock(product: data_manager.Product, delta: int) -> int:
    if not is_stock_tracked(product):
        return product.stock
    projected = product.stock + delta
    if projected < 0:
        log.warning(
            "Stock delta %d rejected for product '%s' (stock=%d)",
            delta,
            product.product_id,
            product.stock,
        )
        raise InsufficientStock(product.product_id, product.stock, -delta, product.name)
    return projected


def _check_delta(workbook: Workbook, product_id: str, delta: int) -> int:
    return _projected_stock(_require_product(workbook, product_id), delta)


def _apply_delta(workbook: Workbook, product_id: str, delta: int) -> int:
    product = _require_product(workbook, product_id)
    new_stock = _projected_stock(product, delta)
    if new_stock != product.stock:
        data_manager.update_product(workbook, product_id, field_values={"Stock": new_stock})
    return new_stock


def _read(workbook: Workbook, product_id: str) -> data_manager.Product:
    return _require_product(workbook, product_id)


def _register(workbook: Workbook, product: data_manager.Product) -> None:
    if data_manager.locate_row(workbook, data_manager.PRODUCTS_SHEET, "ProductID", product.product_id) is not None:
        raise ValidationError(f"Product already exists: {product.product_id}")
    data_manager.append_product(workbook, product)


class WorkbookInventoryAdjuster:
    """Inventory adjuster backed by the ``Products`` sheet."""

    def __init__(self, context: RuntimeContext) -> None:
        self.context = context

    async def read(self, product_id: str) -> data_manager.Product:
        """Return the stored product.

        Raises:
            NotFoundError: If no product carries ``product_id``.
        """
        return await run_record_io(self.context, _read, product_id, operation="read product", key=product_id)

    async def list_products(self) -> List[data_manager.Product]:
        return await run_record_io(
            self.context,
            lambda wb: list(data_manager.iter_products(wb)),
            operation="list products",
            key="*",
        )

    async def register(self, product: data_manager.Product) -> data_manager.Product:
        """Add a new product to the catalog."""
        if product.stock < 0:
            raise ValidationError(f"Stock cannot be negative for product '{product.product_id}'")
        await run_record_io(
            self.context,
            _register,
            product,
            operation="insert product",
            key=product.product_id,
            write=True,
        )
        log.info("Registered product '%s' (%s, stock=%d)", product.product_id, product.category, product.stock)
        return product

    async def check_delta(self, product_id: str, delta: int) -> int:
        """Return the stock ``delta`` would produce without writing it.

        Raises:
            InsufficientStock: If the resulting stock would be negative.
            NotFoundError: If the product is unknown.
        """
        return await run_record_io(
            self.context,
            _check_delta,
            product_id,
            delta,
            operation="read product",
            key=product_id,
        )

    async def apply_delta(self, product_id: str, delta: int) -> int:
        """Apply one signed stock delta and return the updated stock.

        Membership products are exempt and return their stock unchanged.

        Raises:
            InsufficientStock: If ``stock + delta`` would be negative.
            NotFoundError: If the product is unknown.
            StoreWriteFailure: If the workbook rejects the write.
        """
        new_stock = await run_record_io(
            self.context,
            _apply_delta,
            product_id,
            delta,
            operation="update product",
            key=product_id,
            write=True,
        )
        log.info("Applied stock delta %+d to product '%s' (stock=%d)", delta, product_id, new_stock)
        return new_stock
