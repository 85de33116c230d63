"""Tests for the workbook-backed inventory, customer ledger, and transaction stores."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import Mock

import pytest

from lounge_pos import constants, data_manager, inventory as inventory_module, runtime
from lounge_pos.exceptions import InsufficientStock, NotFoundError, StoreWriteFailure, ValidationError
from lounge_pos.membership import MembershipGrant

from conftest import make_customer, make_product


def _line(item_id: str, quantity: int, *, category: str = "food", item_type: str = "product") -> data_manager.CartItem:
    return data_manager.CartItem(
        item_id=item_id,
        item_type=item_type,
        name=f"Line {item_id}",
        category=category,
        price=Decimal("10"),
        quantity=quantity,
        total=Decimal("10") * quantity,
    )


def _bill(bill_id: str, items, *, customer_id: str = "C100", key: str | None = None) -> data_manager.Bill:
    subtotal = sum((item.total for item in items), Decimal("0"))
    return data_manager.Bill(
        bill_id=bill_id,
        customer_id=customer_id,
        subtotal=subtotal,
        discount=Decimal("0"),
        discount_type="fixed",
        discount_value=Decimal("0"),
        loyalty_points_used=0,
        loyalty_points_earned=0,
        total=subtotal,
        payment_method="cash",
        created_at=datetime(2024, 4, 1, tzinfo=UTC),
        items=tuple(items),
        idempotency_key=key,
    )


# ---------------------------------------------------------------------------
# Delta helpers
# ---------------------------------------------------------------------------


def test_quantities_by_product_skips_sessions_and_memberships():
    items = [
        _line("P1", 2),
        _line("P1", 1),
        _line("S1", 1, item_type="session", category=None),
        _line("M1", 1, category="membership"),
    ]
    assert inventory_module.quantities_by_product(items) == {"P1": 3}


def test_quantity_deltas_only_moves_changed_units():
    old = [_line("P1", 3), _line("P2", 1), _line("P3", 2)]
    new = [_line("P1", 5), _line("P3", 2), _line("P4", 1)]

    assert inventory_module.quantity_deltas(old, new) == {"P1": -2, "P2": 1, "P4": -1}


def test_consumption_and_restoration_are_mirror_images():
    items = [_line("P1", 2), _line("P2", 4)]
    consumed = inventory_module.consumption_deltas(items)
    restored = inventory_module.restoration_deltas(items)
    assert {key: -value for key, value in consumed.items()} == restored


# ---------------------------------------------------------------------------
# Inventory adjuster
# ---------------------------------------------------------------------------


async def test_apply_delta_updates_stock(inventory, seed_product):
    seed_product(stock=5)

    assert await inventory.apply_delta("P100", -3) == 2
    assert await inventory.apply_delta("P100", 4) == 6
    assert (await inventory.read("P100")).stock == 6


async def test_apply_delta_rejects_negative_stock(inventory, seed_product):
    seed_product(stock=2)

    with pytest.raises(InsufficientStock, match="Only 2 items available in stock"):
        await inventory.apply_delta("P100", -3)

    assert (await inventory.read("P100")).stock == 2


async def test_check_delta_never_writes(inventory, seed_product):
    seed_product(stock=4)

    assert await inventory.check_delta("P100", -4) == 0
    assert (await inventory.read("P100")).stock == 4


async def test_membership_products_ignore_deltas(inventory, seed_product):
    seed_product("M1", name="Weekly Pass", category="membership", stock=0, duration="weekly")

    assert await inventory.apply_delta("M1", -1) == 0


async def test_unknown_product_raises_not_found(inventory):
    with pytest.raises(NotFoundError, match="Unknown product id: P404"):
        await inventory.apply_delta("P404", -1)


async def test_register_product_rejects_duplicates(inventory):
    await inventory.register(make_product())

    with pytest.raises(ValidationError, match="already exists"):
        await inventory.register(make_product())
    assert [product.product_id for product in await inventory.list_products()] == ["P100"]


async def test_register_product_rejects_negative_stock(inventory):
    with pytest.raises(ValidationError):
        await inventory.register(make_product(stock=-1))


async def test_writes_are_saved_when_autosave_is_on(inventory, seed_product, runtime_context):
    seed_product(stock=5)

    await inventory.apply_delta("P100", -1)

    reloaded = data_manager.refresh_workbook(runtime_context.settings.data_file)
    assert data_manager.find_product(reloaded, "P100").stock == 4


async def test_workbook_errors_become_store_write_failures(runtime_context, monkeypatch):
    monkeypatch.setattr(
        inventory_module.data_manager,
        "update_product",
        Mock(side_effect=PermissionError("workbook is locked")),
    )
    data_manager.append_product(runtime_context.workbook, make_product(stock=3))
    adjuster = inventory_module.WorkbookInventoryAdjuster(runtime_context)

    with pytest.raises(StoreWriteFailure, match="workbook is locked") as excinfo:
        await adjuster.apply_delta("P100", -1)

    assert excinfo.value.operation == "update product"
    assert excinfo.value.key == "P100"


async def test_failed_save_discards_the_in_memory_change(inventory, seed_product, runtime_context, monkeypatch):
    seed_product(stock=5)
    monkeypatch.setattr(runtime.data_manager, "save_workbook", Mock(side_effect=OSError("disk full")))

    with pytest.raises(StoreWriteFailure, match="disk full"):
        await inventory.apply_delta("P100", -2)

    assert (await inventory.read("P100")).stock == 5

    monkeypatch.undo()
    assert await inventory.apply_delta("P100", -2) == 3


async def test_programming_errors_are_not_wrapped(inventory, seed_product, monkeypatch):
    seed_product(stock=5)
    monkeypatch.setattr(
        inventory_module.data_manager,
        "update_product",
        Mock(side_effect=TypeError("unexpected keyword")),
    )

    with pytest.raises(TypeError, match="unexpected keyword"):
        await inventory.apply_delta("P100", -1)


# ---------------------------------------------------------------------------
# Customer ledger
# ---------------------------------------------------------------------------


async def test_ledger_read_unknown_customer_raises(ledger):
    with pytest.raises(NotFoundError):
        await ledger.read("C404")
    assert await ledger.find("C404") is None


async def test_apply_delta_uses_latest_stored_balance(ledger, seed_customer, runtime_context):
    """A balance changed after the caller's read is not overwritten."""

    seed_customer(loyalty_points=10, total_spent="100")
    stale = await ledger.read("C100")
    data_manager.update_customer(runtime_context.workbook, "C100", field_values={"LoyaltyPoints": 50})

    updated = await ledger.apply_delta("C100", points_delta=5, spent_delta=Decimal("20"))

    assert stale.loyalty_points == 10
    assert updated.loyalty_points == 55
    assert updated.total_spent == Decimal("120")


async def test_apply_delta_clamps_at_zero(ledger, seed_customer):
    seed_customer(loyalty_points=3, total_spent="40")

    updated = await ledger.apply_delta("C100", points_delta=-10, spent_delta=Decimal("-100"))

    assert updated.loyalty_points == 0
    assert updated.total_spent == Decimal("0")


async def test_write_sets_absolute_balance(ledger, seed_customer):
    seed_customer(loyalty_points=3)

    await ledger.write("C100", loyalty_points=80, total_spent=Decimal("1200"))

    customer = await ledger.read("C100")
    assert (customer.loyalty_points, customer.total_spent) == (80, Decimal("1200"))


async def test_write_rejects_negative_values(ledger, seed_customer):
    seed_customer()
    with pytest.raises(ValidationError):
        await ledger.write("C100", loyalty_points=-1, total_spent=Decimal("0"))


async def test_register_customer_stamps_created_at(ledger):
    customer = await ledger.register(replace(make_customer("C300"), created_at=None))

    assert customer.created_at is not None
    assert [c.customer_id for c in await ledger.list_customers()] == ["C300"]


async def test_register_customer_rejects_duplicates(ledger, seed_customer):
    seed_customer("C300", name="Meera")

    with pytest.raises(ValidationError, match="already exists"):
        await ledger.register(make_customer("C300", name="Someone Else"))
    assert (await ledger.read("C300")).name == "Meera"


async def test_activate_membership_writes_window(ledger, seed_customer):
    seed_customer()
    start = datetime(2024, 3, 1, tzinfo=UTC)
    grant = MembershipGrant(
        plan="Weekly Pass",
        duration=constants.MembershipDuration.WEEKLY,
        start_date=start,
        expiry_date=start + timedelta(days=7),
        hours=4,
    )

    await ledger.activate_membership("C100", grant)

    customer = await ledger.read("C100")
    assert customer.is_member is True
    assert customer.membership_plan == "Weekly Pass"
    assert customer.membership_duration == "weekly"
    assert customer.membership_expiry_date == start + timedelta(days=7)
    assert customer.membership_hours_left == 4


# ---------------------------------------------------------------------------
# Transaction store
# ---------------------------------------------------------------------------


async def test_persist_and_get_round_trip(transactions):
    bill = _bill("B1", [_line("P1", 2), _line("P2", 1)])

    await transactions.persist(bill)
    stored = await transactions.get("B1")

    assert stored.items == bill.items
    assert stored.total == Decimal("30")


async def test_persist_rejects_duplicate_ids(transactions):
    await transactions.persist(_bill("B1", [_line("P1", 1)]))

    with pytest.raises(ValidationError, match="already exists"):
        await transactions.persist(_bill("B1", [_line("P1", 1)]))


async def test_persist_removes_header_when_items_fail(transactions, runtime_context, monkeypatch):
    """A bill never exists without its items."""

    monkeypatch.setattr(
        data_manager,
        "append_bill_item",
        Mock(side_effect=OSError("disk full")),
    )

    with pytest.raises(StoreWriteFailure):
        await transactions.persist(_bill("B1", [_line("P1", 1)]))

    assert data_manager.load_bill(runtime_context.workbook, "B1") is None


async def test_get_unknown_bill_raises(transactions):
    with pytest.raises(NotFoundError, match="Unknown bill id"):
        await transactions.get("B404")


async def test_replace_swaps_items_wholesale(transactions):
    original = _bill("B1", [_line("P1", 2), _line("P2", 1)], key="once")
    await transactions.persist(original)
    edited = replace(_bill("B1", [_line("P3", 4)]), created_at=datetime(2030, 1, 1, tzinfo=UTC))

    await transactions.replace(edited)
    stored = await transactions.get("B1")

    assert [item.item_id for item in stored.items] == ["P3"]
    assert stored.total == Decimal("40")
    assert stored.created_at == original.created_at
    assert stored.idempotency_key == "once"


async def test_replace_items_of_missing_bill_raises(transactions):
    with pytest.raises(NotFoundError):
        await transactions.replace_items("B404", [_line("P1", 1)])


async def test_delete_removes_items_then_header(transactions, runtime_context):
    await transactions.persist(_bill("B1", [_line("P1", 2)]))
    await transactions.persist(_bill("B2", [_line("P2", 1)]))

    await transactions.delete("B1")

    assert list(data_manager.iter_bill_items(runtime_context.workbook, "B1")) == []
    assert [bill.bill_id for bill in await transactions.list_bills()] == ["B2"]


async def test_find_by_idempotency_key(transactions):
    await transactions.persist(_bill("B1", [_line("P1", 1)], key="tap-1"))

    found = await transactions.find_by_idempotency_key("tap-1")

    assert found.bill_id == "B1"
    assert await transactions.find_by_idempotency_key("tap-2") is None


async def test_list_bills_filters_by_customer(transactions):
    await transactions.persist(_bill("B1", [_line("P1", 1)], customer_id="C1"))
    await transactions.persist(_bill("B2", [_line("P1", 1)], customer_id="C2"))

    assert [bill.bill_id for bill in await transactions.list_bills("C2")] == ["B2"]


async def test_schema_mismatch_is_fatal(config_factory):
    context = runtime.load_runtime_context(config_factory(schema_version="0.9.0").config_path)

    with pytest.raises(RuntimeError, match="schema mismatch"):
        runtime.ensure_schema_version(context)
