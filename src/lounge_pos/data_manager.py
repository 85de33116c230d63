"""Record store layer for Lounge POS.

This module provides low-level helpers that read from and write to the
``lounge_master_data.xlsx`` workbook. Business rules belong elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending, updating, or
   deleting individual rows. There is no multi-row transaction; every helper
   touches the rows of a single record.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterable, List, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    MEMBER_LOYALTY_RATE,
    MEMBER_SESSION_DISCOUNT_PERCENT,
    STANDARD_LOYALTY_RATE,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
BILLS_SHEET = SheetName.BILLS.value
BILL_ITEMS_SHEET = SheetName.BILL_ITEMS.value

_TRUE_STRINGS = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    venue_name: str
    schema_version: str
    autosave: bool = True
    member_loyalty_rate: int = MEMBER_LOYALTY_RATE
    standard_loyalty_rate: int = STANDARD_LOYALTY_RATE
    member_session_discount_percent: Decimal = MEMBER_SESSION_DISCOUNT_PERCENT


@dataclass(frozen=True)
class Product:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    name: str
    category: str
    price: Decimal
    stock: int
    membership_hours: Optional[int] = None
    duration: Optional[str] = None


@dataclass(frozen=True)
class Customer:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    name: str
    phone: str = ""
    email: Optional[str] = None
    is_member: bool = False
    loyalty_points: int = 0
    total_spent: Decimal = Decimal("0.00")
    membership_plan: Optional[str] = None
    membership_start_date: Optional[datetime] = None
    membership_expiry_date: Optional[datetime] = None
    membership_hours_left: Optional[int] = None
    membership_duration: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class CartItem:
    """One priced line of a cart or of a persisted bill."""

    item_id: str
    item_type: str
    name: str
    price: Decimal
    quantity: int
    total: Decimal
    category: Optional[str] = None


@dataclass(frozen=True)
class BillItemRow:
    """In-memory view of a row from the ``BillItems`` sheet."""

    bill_id: str
    position: int
    item: CartItem


@dataclass(frozen=True)
class Bill:
    """In-memory view of a bill header together with its ordered items."""

    bill_id: str
    customer_id: str
    subtotal: Decimal
    discount: Decimal
    discount_type: str
    discount_value: Decimal
    loyalty_points_used: int
    loyalty_points_earned: int
    total: Decimal
    payment_method: str
    created_at: datetime
    items: tuple[CartItem, ...] = field(default_factory=tuple)
    idempotency_key: Optional[str] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the record store behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    The function expands user home references (``~``), resolves the absolute
    path, and validates that the file exists before parsing it. Validation of
    required entries happens in :func:`parse_settings`.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` is mandatory. The ``[Loyalty]`` and ``[Sessions]`` sections are
    optional; missing options fall back to the module constants. Relative
    ``DataFile`` entries are expanded against ``base_path`` when provided, or
    against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries. Defaults to :func:`Path.cwd` when omitted.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
        ValueError: If an optional numeric option cannot be parsed or is out of
            range.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        venue_name = parser.get("System", "VenueName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    autosave = parser.getboolean("System", "AutoSave", fallback=True)
    member_rate = parser.getint("Loyalty", "MemberRate", fallback=MEMBER_LOYALTY_RATE)
    standard_rate = parser.getint("Loyalty", "StandardRate", fallback=STANDARD_LOYALTY_RATE)
    raw_discount = parser.get("Sessions", "MemberDiscountPercent", fallback=str(MEMBER_SESSION_DISCOUNT_PERCENT))
    try:
        session_discount = Decimal(raw_discount)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid [Sessions] MemberDiscountPercent: {raw_discount!r}") from exc
    if not Decimal(0) <= session_discount <= Decimal(100):
        raise ValueError(f"[Sessions] MemberDiscountPercent must be between 0 and 100, got {raw_discount}")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        venue_name=venue_name,
        schema_version=schema_version,
        autosave=autosave,
        member_loyalty_rate=member_rate,
        standard_loyalty_rate=standard_rate,
        member_session_discount_percent=session_discount,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk at an explicitly provided destination.

    Parent directories are created on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str) -> Iterable[tuple]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_products(workbook: Workbook) -> Iterable[Product]:
    """Iterate over product records stored on the ``Products`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.

    Yields:
        Product: One structured row for each meaningful record in the sheet.
    """

    for raw in _iter_sheet(workbook, PRODUCTS_SHEET):
        yield deserialize_product(raw)


def iter_customers(workbook: Workbook) -> Iterable[Customer]:
    """Iterate over the ``Customers`` worksheet and yield typed records."""

    for raw in _iter_sheet(workbook, CUSTOMERS_SHEET):
        yield deserialize_customer(raw)


def iter_bills(workbook: Workbook) -> Iterable[Bill]:
    """Stream bill headers from the ``Bills`` worksheet.

    The yielded bills carry an empty ``items`` tuple; use :func:`load_bill` or
    :func:`iter_bill_items` to attach line items.

    Args:
        workbook (Workbook): Workbook containing the bills sheet.

    Yields:
        Bill: Normalized bill header for each populated row.
    """

    for raw in _iter_sheet(workbook, BILLS_SHEET):
        yield deserialize_bill(raw)


def iter_bill_items(workbook: Workbook, bill_id: Optional[str] = None) -> Iterable[BillItemRow]:
    """Stream line items from the ``BillItems`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the bill items sheet.
        bill_id (str | None): When provided only items of that bill are
            yielded.

    Yields:
        BillItemRow: Line item tagged with its owning bill and position.
    """

    for raw in _iter_sheet(workbook, BILL_ITEMS_SHEET):
        row = deserialize_bill_item(raw)
        if bill_id is None or row.bill_id == bill_id:
            yield row


def find_product(workbook: Workbook, product_id: str) -> Optional[Product]:
    """Return the product stored under ``product_id`` or ``None``."""

    raw = _read_row(workbook, PRODUCTS_SHEET, "ProductID", product_id)
    return deserialize_product(raw) if raw is not None else None


def find_customer(workbook: Workbook, customer_id: str) -> Optional[Customer]:
    """Return the customer stored under ``customer_id`` or ``None``."""

    raw = _read_row(workbook, CUSTOMERS_SHEET, "CustomerID", customer_id)
    return deserialize_customer(raw) if raw is not None else None


def load_bill(workbook: Workbook, bill_id: str) -> Optional[Bill]:
    """Assemble a bill header and its items, ordered by ``Position``.

    Args:
        workbook (Workbook): Workbook holding both bill sheets.
        bill_id (str): Identifier of the bill to load.

    Returns:
        Bill | None: The bill with items attached, or ``None`` when no header
            row carries ``bill_id``.
    """

    raw = _read_row(workbook, BILLS_SHEET, "BillID", bill_id)
    if raw is None:
        return None
    header = deserialize_bill(raw)
    rows = sorted(iter_bill_items(workbook, bill_id), key=lambda row: row.position)
    return replace(header, items=tuple(row.item for row in rows))


def append_product(workbook: Workbook, record: Product) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_customer(workbook: Workbook, record: Customer) -> None:
    """Append a customer record to the ``Customers`` worksheet."""

    workbook[CUSTOMERS_SHEET].append(serialize_customer(record))


def append_bill(workbook: Workbook, record: Bill) -> None:
    """Append a bill header to the ``Bills`` worksheet.

    Items are not written by this helper; callers append them individually
    through :func:`append_bill_item` once the header exists.
    """

    workbook[BILLS_SHEET].append(serialize_bill(record))


def append_bill_item(workbook: Workbook, record: BillItemRow) -> None:
    """Append one line item to the ``BillItems`` worksheet."""

    workbook[BILL_ITEMS_SHEET].append(serialize_bill_item(record))


def update_record(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    *,
    field_values: dict[str, Any],
) -> None:
    """Update selected columns of the row whose ``key_column`` equals ``key_value``.

    The function validates that each requested field exists in the header row
    before writing anything, so an unknown column leaves the row untouched.

    Args:
        workbook (Workbook): Workbook containing ``sheet_name``.
        sheet_name (str): Worksheet holding the record.
        key_column (str): Header title identifying the key column.
        key_value (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the record or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"{sheet_name} record not found: {key_value}")

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    unknown = [name for name in field_values if name not in header_map]
    if unknown:
        raise KeyError(f"Unknown {sheet_name} field(s): {', '.join(unknown)}")

    for name, value in field_values.items():
        sheet.cell(row=row_index, column=header_map[name], value=_to_cell(value))


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product."""

    update_record(workbook, PRODUCTS_SHEET, "ProductID", product_id, field_values=field_values)


def update_customer(workbook: Workbook, customer_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing customer."""

    update_record(workbook, CUSTOMERS_SHEET, "CustomerID", customer_id, field_values=field_values)


def update_bill(workbook: Workbook, bill_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected header columns for an existing bill."""

    update_record(workbook, BILLS_SHEET, "BillID", bill_id, field_values=field_values)


def delete_records(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> int:
    """Delete every row whose ``key_column`` equals ``key_value``.

    Rows are removed bottom-up so earlier indices stay valid while deleting.

    Returns:
        int: Number of rows removed.
    """

    indices = locate_rows(workbook, sheet_name, key_column, key_value)
    sheet = workbook[sheet_name]
    for row_index in reversed(indices):
        sheet.delete_rows(row_index)
    if indices:
        log.debug("Deleted %d row(s) from '%s' for %s=%s", len(indices), sheet_name, key_column, key_value)
    return len(indices)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    matches = locate_rows(workbook, sheet_name, key_column, key_value, first_only=True)
    return matches[0] if matches else None


def locate_rows(
    workbook: Workbook,
    sheet_name: str,
    key_column: str,
    key_value: str,
    *,
    first_only: bool = False,
) -> List[int]:
    """Return the 1-based indices of every row matching ``key_value``."""

    sheet = workbook[sheet_name]
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    matches: List[int] = []
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            matches.append(row_idx)
            if first_only:
                break
    return matches


def _header_map(sheet) -> dict[str, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _read_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[tuple]:
    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        return None
    sheet = workbook[sheet_name]
    return tuple(cell.value for cell in sheet[row_index])


def _to_cell(value: Any) -> Any:
    # datetimes are stored as ISO text so they survive Excel untouched
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _to_decimal(raw: object, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _to_int(raw: object, default: Optional[int] = 0) -> Optional[int]:
    if raw is None or raw == "":
        return default
    return int(Decimal(str(raw)))


def _to_bool(raw: object) -> bool:
    if isinstance(raw, str):
        return raw.strip().lower() in _TRUE_STRINGS
    return bool(raw)


def _to_datetime(raw: object) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw))


def _to_text(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def serialize_product(record: Product) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering.

    Returns:
        list[object]: Values arranged as ``[ProductID, Name, Category, Price,
        Stock, MembershipHours, Duration]``.
    """

    return [
        record.product_id,
        record.name,
        record.category,
        record.price,
        record.stock,
        record.membership_hours,
        record.duration,
    ]


def serialize_customer(record: Customer) -> list[object]:
    """Convert a customer dataclass into the worksheet column ordering."""

    return [
        record.customer_id,
        record.name,
        record.phone,
        record.email,
        record.is_member,
        record.loyalty_points,
        record.total_spent,
        record.membership_plan,
        _iso(record.membership_start_date),
        _iso(record.membership_expiry_date),
        record.membership_hours_left,
        record.membership_duration,
        _iso(record.created_at),
    ]


def serialize_bill(record: Bill) -> list[object]:
    """Convert a bill header into the ``Bills`` column ordering.

    Numeric fields remain :class:`~decimal.Decimal` instances so Excel keeps
    their precision.
    """

    return [
        record.bill_id,
        record.customer_id,
        record.subtotal,
        record.discount,
        record.discount_type,
        record.discount_value,
        record.loyalty_points_used,
        record.loyalty_points_earned,
        record.total,
        record.payment_method,
        record.created_at.isoformat(),
        record.idempotency_key,
    ]


def serialize_bill_item(record: BillItemRow) -> list[object]:
    """Convert a line item into the ``BillItems`` column ordering."""

    item = record.item
    return [
        record.bill_id,
        record.position,
        item.item_id,
        item.item_type,
        item.name,
        item.category,
        item.price,
        item.quantity,
        item.total,
    ]


def deserialize_product(raw_row: Sequence[object]) -> Product:
    """Convert a raw worksheet row into a strongly typed product record.

    Identifier and name fields are coerced to ``str`` to avoid surprises caused
    by Excel automatically interpreting numbers.
    """

    product_id, name, category, price_raw, stock_raw, hours_raw, duration = tuple(raw_row)[:7]
    return Product(
        product_id=str(product_id),
        name=str(name) if name is not None else "",
        category=str(category) if category is not None else "",
        price=_to_decimal(price_raw),
        stock=_to_int(stock_raw),
        membership_hours=_to_int(hours_raw, default=None),
        duration=_to_text(duration) or None,
    )


def deserialize_customer(raw_row: Sequence[object]) -> Customer:
    """Convert a raw worksheet row into a strongly typed customer record."""

    (
        customer_id,
        name,
        phone,
        email,
        is_member,
        loyalty_raw,
        spent_raw,
        plan,
        start_raw,
        expiry_raw,
        hours_raw,
        duration,
        created_raw,
    ) = tuple(raw_row)[:13]
    return Customer(
        customer_id=str(customer_id),
        name=str(name) if name is not None else "",
        phone=str(phone) if phone is not None else "",
        email=_to_text(email),
        is_member=_to_bool(is_member),
        loyalty_points=_to_int(loyalty_raw),
        total_spent=_to_decimal(spent_raw),
        membership_plan=_to_text(plan),
        membership_start_date=_to_datetime(start_raw),
        membership_expiry_date=_to_datetime(expiry_raw),
        membership_hours_left=_to_int(hours_raw, default=None),
        membership_duration=_to_text(duration),
        created_at=_to_datetime(created_raw),
    )


def deserialize_bill(raw_row: Sequence[object]) -> Bill:
    """Convert a raw ``Bills`` row into a bill header with no items."""

    (
        bill_id,
        customer_id,
        subtotal_raw,
        discount_raw,
        discount_type,
        discount_value_raw,
        used_raw,
        earned_raw,
        total_raw,
        payment_method,
        created_raw,
        idempotency_key,
    ) = tuple(raw_row)[:12]
    return Bill(
        bill_id=str(bill_id),
        customer_id=str(customer_id),
        subtotal=_to_decimal(subtotal_raw),
        discount=_to_decimal(discount_raw, "0"),
        discount_type=str(discount_type) if discount_type is not None else "",
        discount_value=_to_decimal(discount_value_raw),
        loyalty_points_used=_to_int(used_raw),
        loyalty_points_earned=_to_int(earned_raw),
        total=_to_decimal(total_raw),
        payment_method=str(payment_method) if payment_method is not None else "",
        created_at=_to_datetime(created_raw),
        idempotency_key=_to_text(idempotency_key),
    )


def deserialize_bill_item(raw_row: Sequence[object]) -> BillItemRow:
    """Convert a raw ``BillItems`` row into a :class:`BillItemRow`."""

    (
        bill_id,
        position_raw,
        item_id,
        item_type,
        name,
        category,
        price_raw,
        quantity_raw,
        total_raw,
    ) = tuple(raw_row)[:9]
    return BillItemRow(
        bill_id=str(bill_id),
        position=_to_int(position_raw),
        item=CartItem(
            item_id=str(item_id),
            item_type=str(item_type) if item_type is not None else "",
            name=str(name) if name is not None else "",
            category=_to_text(category),
            price=_to_decimal(price_raw),
            quantity=_to_int(quantity_raw),
            total=_to_decimal(total_raw),
        ),
    )
