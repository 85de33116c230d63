"""Shared pytest fixtures and utilities for Lounge POS tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from lounge_pos import cli, constants, core_logic, data_manager, runtime  # noqa: E402
from lounge_pos.inventory import WorkbookInventoryAdjuster  # noqa: E402
from lounge_pos.ledger import WorkbookCustomerLedger  # noqa: E402
from lounge_pos.setup_excel import create_master_workbook  # noqa: E402
from lounge_pos.transactions import WorkbookTransactionStore  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "VenueName = {venue_name}\n"
    "SchemaVersion = {schema_version}\n"
    "AutoSave = {autosave}\n\n"
    "[Loyalty]\n"
    "MemberRate = 5\n"
    "StandardRate = 2\n\n"
    "[Sessions]\n"
    "MemberDiscountPercent = {session_discount}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    venue_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(*, subdir: str | None = None, filename: str = "master_workbook.xlsx") -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        venue_name: str = "Test Lounge",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        autosave: bool = True,
        session_discount: str = "50",
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                venue_name=venue_name,
                schema_version=schema_version,
                autosave="true" if autosave else "false",
                session_discount=session_discount,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            venue_name=venue_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> runtime.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = runtime.load_runtime_context(config_file)
    runtime.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# Store and engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def transactions(runtime_context: runtime.RuntimeContext) -> WorkbookTransactionStore:
    return WorkbookTransactionStore(runtime_context)


@pytest.fixture
def ledger(runtime_context: runtime.RuntimeContext) -> WorkbookCustomerLedger:
    return WorkbookCustomerLedger(runtime_context)


@pytest.fixture
def inventory(runtime_context: runtime.RuntimeContext) -> WorkbookInventoryAdjuster:
    return WorkbookInventoryAdjuster(runtime_context)


@pytest.fixture
def engine(
    transactions: WorkbookTransactionStore,
    ledger: WorkbookCustomerLedger,
    inventory: WorkbookInventoryAdjuster,
) -> core_logic.ReconciliationEngine:
    return core_logic.ReconciliationEngine(transactions, ledger, inventory)


def make_product(
    product_id: str = "P100",
    *,
    name: str = "Cold Coffee",
    category: str = constants.ProductCategory.DRINKS.value,
    price: str = "250",
    stock: int = 10,
    membership_hours: int | None = None,
    duration: str | None = None,
) -> data_manager.Product:
    return data_manager.Product(
        product_id=product_id,
        name=name,
        category=category,
        price=Decimal(price),
        stock=stock,
        membership_hours=membership_hours,
        duration=duration,
    )


def make_customer(
    customer_id: str = "C100",
    *,
    name: str = "Asha",
    loyalty_points: int = 0,
    total_spent: str = "0",
    is_member: bool = False,
    membership_expiry_date: datetime | None = None,
) -> data_manager.Customer:
    return data_manager.Customer(
        customer_id=customer_id,
        name=name,
        phone="9999999999",
        loyalty_points=loyalty_points,
        total_spent=Decimal(total_spent),
        is_member=is_member,
        membership_expiry_date=membership_expiry_date,
        created_at=datetime(2024, 1, 1, tzinfo=UTC),
    )


@pytest.fixture
def seed_product(runtime_context: runtime.RuntimeContext) -> Callable[..., data_manager.Product]:
    """Append a product row straight into the workbook and save it."""

    def _seed(*args, **kwargs) -> data_manager.Product:
        product = make_product(*args, **kwargs)
        data_manager.append_product(runtime_context.workbook, product)
        runtime.persist_context(runtime_context)
        return product

    return _seed


@pytest.fixture
def seed_customer(runtime_context: runtime.RuntimeContext) -> Callable[..., data_manager.Customer]:
    """Append a customer row straight into the workbook and save it."""

    def _seed(*args, **kwargs) -> data_manager.Customer:
        customer = make_customer(*args, **kwargs)
        data_manager.append_customer(runtime_context.workbook, customer)
        runtime.persist_context(runtime_context)
        return customer

    return _seed


@pytest.fixture
def active_member(seed_customer: Callable[..., data_manager.Customer]) -> data_manager.Customer:
    """A member whose membership runs well past today."""

    return seed_customer(
        "C200",
        name="Ravi",
        loyalty_points=100,
        is_member=True,
        membership_expiry_date=datetime.now(UTC) + timedelta(days=20),
    )


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="lounge-cli", description="Lounge CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
