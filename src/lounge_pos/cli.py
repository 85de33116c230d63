"""Command-line entry points for the Lounge POS toolkit.

All orchestration in this module is limited to argparse wiring and translating
command-line arguments into the command objects consumed by the reconciliation
engine. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end that wants to expose
the package capabilities.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, data_manager, export, log, runtime
from .constants import DiscountType, PaymentMethod, ProductCategory
from .exceptions import BusinessRuleViolation, ValidationError
from .inventory import WorkbookInventoryAdjuster
from .ledger import WorkbookCustomerLedger
from .transactions import WorkbookTransactionStore


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_RULE_VIOLATION = 2
EXIT_MISSING_FILE = 3
EXIT_PARTIAL = 4


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[runtime.RuntimeContext, argparse.Namespace], int]


def parse_item_spec(raw: str) -> Tuple[str, int]:
    """Parse ``PRODUCT_ID:QTY`` (quantity defaults to 1)."""
    product_id, _, quantity = raw.partition(":")
    product_id = product_id.strip()
    if not product_id:
        raise argparse.ArgumentTypeError(f"Invalid item '{raw}': expected PRODUCT_ID:QTY")
    try:
        parsed = int(quantity) if quantity else 1
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Invalid quantity in '{raw}'") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError(f"Quantity must be positive in '{raw}'")
    return product_id, parsed


def parse_decimal(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Invalid amount: {raw}") from exc


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="lounge-cli",
        description="Point-of-sale tools for the Lounge POS workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and restocks."""
    specs = {
        "add-product": register_add_product_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "restock": register_restock_command(subparsers),
        "sale": register_sale_command(subparsers),
        "edit-bill": register_edit_bill_command(subparsers),
        "delete-bill": register_delete_bill_command(subparsers),
        "adjust-customer": register_adjust_customer_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "stock": register_stock_command(subparsers),
        "customers": register_customers_command(subparsers),
        "bills": register_bills_command(subparsers),
        "export-bills": register_export_bills_command(subparsers),
        "export-customers": register_export_customers_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_cart_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        type=parse_item_spec,
        required=True,
        metavar="PRODUCT_ID:QTY",
        help="Cart line; repeat for several products.",
    )
    parser.add_argument("--discount", type=parse_decimal, default=Decimal("0"))
    parser.add_argument(
        "--discount-type",
        choices=[member.value for member in DiscountType],
        default=DiscountType.FIXED.value,
    )
    parser.add_argument("--points", type=int, default=0, help="Loyalty points to redeem.")


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--category", choices=[member.value for member in ProductCategory], required=True)
        parser.add_argument("--price", type=parse_decimal, required=True)
        parser.add_argument("--stock", type=int, default=0)
        parser.add_argument("--membership-hours", type=int, default=None)
        parser.add_argument("--duration", choices=["weekly", "monthly"], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new customer in the Customers sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default="")
        parser.add_argument("--email", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer)


def register_restock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restock``."""
    name = "restock"
    help_text = "Add units to a product's stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restock)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Commit a new bill."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        _add_cart_arguments(parser)
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--idempotency-key", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_edit_bill_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-bill``."""
    name = "edit-bill"
    help_text = "Replace the cart and discounts of an existing bill."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--bill-id", required=True)
        _add_cart_arguments(parser)
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=None,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_bill)


def register_delete_bill_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-bill``."""
    name = "delete-bill"
    help_text = "Delete a bill and reverse its effects."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--bill-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_bill)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_customers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``customers``."""
    name = "customers"
    help_text = "Display customers with their loyalty balances."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_customers_report)


def register_bills_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``bills``."""
    name = "bills"
    help_text = "Display stored bills with their items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_bills_report)


def register_adjust_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``adjust-customer``."""
    name = "adjust-customer"
    help_text = "Correct a customer's loyalty points and total spent."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--points", type=int, default=None, help="Signed points change (or new balance with --absolute).")
        parser.add_argument("--spent", type=parse_decimal, default=None, help="Signed spend change (or new total with --absolute).")
        parser.add_argument(
            "--absolute",
            action="store_true",
            help="Overwrite the balance with --points and --spent instead of adding to it.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_adjust_customer)


def register_export_bills_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export-bills``."""
    name = "export-bills"
    help_text = "Export bills to a CSV file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, default=Path("bills_export.csv"))
        parser.add_argument("--customer-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export_bills)


def register_export_customers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export-customers``."""
    name = "export-customers"
    help_text = "Export customers to a CSV file."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, default=Path("customers_export.csv"))
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export_customers)


def load_runtime_context(config_path: Optional[Path] = None) -> runtime.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return runtime.load_runtime_context(target)


def dispatch_command(
    context: runtime.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_add_product(args: argparse.Namespace) -> data_manager.Product:
    """Translate CLI args into a product record."""
    return data_manager.Product(
        product_id=args.product_id,
        name=args.name,
        category=args.category,
        price=args.price,
        stock=args.stock,
        membership_hours=args.membership_hours,
        duration=args.duration,
    )


def translate_add_customer(args: argparse.Namespace) -> data_manager.Customer:
    """Translate CLI args into a customer record."""
    return data_manager.Customer(
        customer_id=args.customer_id,
        name=args.name,
        phone=args.phone,
        email=args.email,
    )


async def translate_sale(engine: core_logic.ReconciliationEngine, args: argparse.Namespace) -> core_logic.CreateBillCommand:
    """Translate CLI args into a create-bill command, pricing lines from the catalog."""
    items = await engine.build_cart(args.items)
    return core_logic.CreateBillCommand(
        customer_id=args.customer_id,
        items=items,
        discount=args.discount,
        discount_type=DiscountType(args.discount_type),
        loyalty_points_used=args.points,
        payment_method=PaymentMethod(args.payment_method),
        idempotency_key=args.idempotency_key,
    )


async def translate_edit_bill(engine: core_logic.ReconciliationEngine, args: argparse.Namespace) -> core_logic.EditBillCommand:
    """Translate CLI args into an edit-bill command."""
    items = await engine.build_cart(args.items)
    return core_logic.EditBillCommand(
        bill_id=args.bill_id,
        items=items,
        discount=args.discount,
        discount_type=DiscountType(args.discount_type),
        loyalty_points_used=args.points,
        payment_method=PaymentMethod(args.payment_method) if args.payment_method else None,
    )


def report_result(result: core_logic.ReconciliationResult) -> int:
    """Print the outcome of an engine operation and pick the exit code."""
    if result.bill is not None:
        prefix = "[REPLAYED]" if result.replayed else "[OK]"
        print(f"{prefix} Bill {result.bill.bill_id}: total={result.bill.total} earned={result.bill.loyalty_points_earned}")
    for note in result.skipped:
        print(f"[SKIPPED] {note}")
    for warning in result.warnings:
        print(f"[WARNING] {warning}")
    return EXIT_OK if result.ok else EXIT_PARTIAL


def run_add_product(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow."""
    product = translate_add_product(args)
    asyncio.run(WorkbookInventoryAdjuster(context).register(product))
    print(f"[OK] Product {product.product_id} registered")
    return EXIT_OK


def run_add_customer(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow."""
    customer = translate_add_customer(args)
    asyncio.run(WorkbookCustomerLedger(context).register(customer))
    print(f"[OK] Customer {customer.customer_id} registered")
    return EXIT_OK


def run_restock(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the restock workflow via the engine."""
    engine = core_logic.ReconciliationEngine.from_context(context)
    new_stock = asyncio.run(engine.restock(args.product_id, args.quantity))
    print(f"[OK] Product {args.product_id} stock={new_stock}")
    return EXIT_OK


def run_sale(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the create-bill workflow via the engine."""
    engine = core_logic.ReconciliationEngine.from_context(context)

    async def _run() -> core_logic.ReconciliationResult:
        return await engine.create(await translate_sale(engine, args))

    return report_result(asyncio.run(_run()))


def run_edit_bill(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit-bill workflow via the engine."""
    engine = core_logic.ReconciliationEngine.from_context(context)

    async def _run() -> core_logic.ReconciliationResult:
        return await engine.edit(await translate_edit_bill(engine, args))

    return report_result(asyncio.run(_run()))


def run_delete_bill(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-bill workflow via the engine."""
    engine = core_logic.ReconciliationEngine.from_context(context)
    return report_result(asyncio.run(engine.delete(args.bill_id)))


def run_stock_report(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    products = asyncio.run(WorkbookInventoryAdjuster(context).list_products())
    for product in products:
        stock = "-" if product.category == ProductCategory.MEMBERSHIP.value else str(product.stock)
        print(f"{product.product_id}\t{product.name}\t{product.category}\t{product.price}\t{stock}")
    return EXIT_OK


def run_customers_report(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    customers = asyncio.run(WorkbookCustomerLedger(context).list_customers())
    for customer in customers:
        member = "member" if customer.is_member else "-"
        print(f"{customer.customer_id}\t{customer.name}\t{member}\t{customer.loyalty_points}\t{customer.total_spent}")
    return EXIT_OK


def _load_bill_summaries(context: runtime.RuntimeContext, customer_id: Optional[str]) -> list[core_logic.BillSummary]:
    async def _load() -> list[core_logic.BillSummary]:
        bills = await WorkbookTransactionStore(context).list_bills(customer_id)
        customers = await WorkbookCustomerLedger(context).list_customers()
        return core_logic.summarize_bills(bills, customers)

    return asyncio.run(_load())


def run_bills_report(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    for summary in _load_bill_summaries(context, args.customer_id):
        bill = summary.bill
        print(
            f"{bill.bill_id}\t{bill.created_at.isoformat()}\t{summary.customer_name or bill.customer_id}"
            f"\t{bill.payment_method}\t{bill.total}"
        )
        for line in summary.lines:
            print(f"    {line}")
    return EXIT_OK


def run_export_bills(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Write the bills report to a CSV file."""
    summaries = _load_bill_summaries(context, args.customer_id)
    if not summaries:
        print("[WARNING] There are no bills to export")
        return EXIT_OK
    count = export.export_bills_to_csv(summaries, args.output)
    print(f"[OK] Exported {count} bill(s) to {args.output}")
    return EXIT_OK


def run_export_customers(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Write the customers report to a CSV file."""
    customers = asyncio.run(WorkbookCustomerLedger(context).list_customers())
    if not customers:
        print("[WARNING] There are no customers to export")
        return EXIT_OK
    count = export.export_customers_to_csv(customers, args.output)
    print(f"[OK] Exported {count} customer(s) to {args.output}")
    return EXIT_OK


def run_adjust_customer(context: runtime.RuntimeContext, args: argparse.Namespace) -> int:
    """Correct a customer balance, typically after a failed ledger step.

    Without ``--absolute`` the values are signed deltas added to the stored
    balance; with it they replace the balance outright.
    """
    ledger = WorkbookCustomerLedger(context)

    async def _run() -> data_manager.Customer:
        if args.absolute:
            if args.points is None or args.spent is None:
                raise ValidationError("--absolute needs both --points and --spent")
            await ledger.write(args.customer_id, loyalty_points=args.points, total_spent=args.spent)
            return await ledger.read(args.customer_id)
        if args.points is None and args.spent is None:
            raise ValidationError("Nothing to adjust: pass --points and/or --spent")
        return await ledger.apply_delta(
            args.customer_id,
            points_delta=args.points or 0,
            spent_delta=args.spent if args.spent is not None else Decimal("0"),
        )

    customer = asyncio.run(_run())
    print(f"[OK] Customer {customer.customer_id}: points={customer.loyalty_points} spent={customer.total_spent}")
    return EXIT_OK


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return EXIT_RULE_VIOLATION
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return EXIT_MISSING_FILE
    log.error("%s", error)
    return EXIT_FAILURE


def persist_workbook(context: runtime.RuntimeContext) -> None:
    """Persist workbook changes after execution."""
    try:
        runtime.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        runtime.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        # a partial success still wrote the bill
        if exit_code in (EXIT_OK, EXIT_PARTIAL):
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
