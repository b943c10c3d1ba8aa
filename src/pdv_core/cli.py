"""Command-line entry points for the POS core.

All orchestration in this module is limited to argparse wiring and
translating command-line arguments into calls on the business layer. Keeping
the CLI thin means the same parser configuration can be reused by tests,
scripts or any other front-end that wants to drive the package.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, log
from .constants import UserRole
from .data_manager import SaleRow
from .integrations import InvoiceExtraction


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pdv-cli",
        description="Command-line tools for the POS workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upwards from the working directory by default).",
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
    """Declare mutating CLI commands such as sales and cancellations."""
    specs = {
        "add-product": register_add_product_command(),
        "add-customer": register_add_customer_command(),
        "add-user": register_add_user_command(),
        "sale": register_sale_command(),
        "cancel-sale": register_cancel_sale_command(),
        "edit-sale": register_edit_sale_command(),
        "adjust-stock": register_adjust_stock_command(),
        "ingest-invoice": register_ingest_invoice_command(),
        "simulate-price": register_simulate_price_command(),
        "set-setting": register_set_setting_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(),
        "low-stock": register_low_stock_command(),
        "customers": register_customers_command(),
        "sales": register_sales_command(),
        "summary": register_summary_command(),
        "audit": register_audit_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _simple_command(
    name: str,
    help_text: str,
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    configure: Optional[Callable[[argparse.ArgumentParser], None]] = None,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        if configure is not None:
            configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def _add_item_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--item",
        dest="items",
        action="append",
        required=True,
        metavar="PRODUCT_ID:QTY",
        help="Sale line; repeat for several products.",
    )


def register_add_product_command() -> CommandSpec:
    """Register the parser and executor for ``add-product``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", default=None)
        parser.add_argument("--name", required=True)
        parser.add_argument("--category", default="")
        parser.add_argument("--quantity", type=int, default=0)
        parser.add_argument("--purchase-price", required=True)
        parser.add_argument("--sale-price", required=True)
        parser.add_argument("--barcode", default="")

    return _simple_command("add-product", "Register a new product.", run_add_product, configure)


def register_add_customer_command() -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--name", required=True)
        parser.add_argument("--nickname", default="")
        parser.add_argument("--phone", default="")
        parser.add_argument("--address", default="")

    return _simple_command("add-customer", "Register a new customer.", run_add_customer, configure)


def register_add_user_command() -> CommandSpec:
    """Register the parser and executor for ``add-user``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--user-id", default=None)
        parser.add_argument("--name", required=True)
        parser.add_argument("--username", required=True)
        parser.add_argument("--password", required=True)
        parser.add_argument("--role", choices=[member.value for member in UserRole], required=True)
        parser.add_argument("--email", default=None)

    return _simple_command("add-user", "Register a new user with the role's default pages.", run_add_user, configure)


def register_sale_command() -> CommandSpec:
    """Register the parser and executor for ``sale``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        _add_item_argument(parser)
        parser.add_argument("--discount", default="0", help="Discount percentage.")
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--seller-id", default=None, help="Defaults to [Defaults] DefaultSeller.")

    return _simple_command("sale", "Commit a sale.", run_sale, configure)


def register_cancel_sale_command() -> CommandSpec:
    """Register the parser and executor for ``cancel-sale``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--sale-id", required=True)

    return _simple_command("cancel-sale", "Cancel a sale and restock its items.", run_cancel_sale, configure)


def register_edit_sale_command() -> CommandSpec:
    """Register the parser and executor for ``edit-sale``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--sale-id", required=True)
        _add_item_argument(parser)
        parser.add_argument("--discount", default=None, help="New discount percentage; unchanged if omitted.")
        customer = parser.add_mutually_exclusive_group()
        customer.add_argument("--customer-id", default=None)
        customer.add_argument("--clear-customer", action="store_true")

    return _simple_command("edit-sale", "Replace the items of a sale.", run_edit_sale, configure)


def register_adjust_stock_command() -> CommandSpec:
    """Register the parser and executor for ``adjust-stock``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--delta", type=int, required=True)

    return _simple_command("adjust-stock", "Correct a product's stock count.", run_adjust_stock, configure)


def register_ingest_invoice_command() -> CommandSpec:
    """Register the parser and executor for ``ingest-invoice``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--file", type=Path, required=True, help="JSON invoice extraction.")

    return _simple_command(
        "ingest-invoice", "Merge a supplier invoice into stock.", run_ingest_invoice, configure
    )


def register_simulate_price_command() -> CommandSpec:
    """Register the parser and executor for ``simulate-price``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--purchase-price", required=True)
        parser.add_argument("--tax-rate", required=True, help="Fraction, e.g. 0.18")
        parser.add_argument("--margin", required=True, help="Fraction, e.g. 0.30")
        parser.add_argument("--suggested", default=None, help="Price from an external suggestion.")

    return _simple_command(
        "simulate-price", "Record a sale price simulation.", run_simulate_price, configure
    )


def register_set_setting_command() -> CommandSpec:
    """Register the parser and executor for ``set-setting``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--section", required=True)
        parser.add_argument("--key", required=True)
        parser.add_argument("--value", required=True)

    return _simple_command("set-setting", "Change one setting.", run_set_setting, configure)


def register_stock_command() -> CommandSpec:
    return _simple_command("stock", "Display current stock levels.", run_stock_report)


def register_low_stock_command() -> CommandSpec:
    return _simple_command("low-stock", "Display products at or below the minimum stock.", run_low_stock_report)


def register_customers_command() -> CommandSpec:
    return _simple_command("customers", "Display customers and their purchase totals.", run_customers_report)


def register_sales_command() -> CommandSpec:
    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--completed-only", action="store_true")

    return _simple_command("sales", "Display sales, most recent first.", run_sales_report, configure)


def register_summary_command() -> CommandSpec:
    return _simple_command("summary", "Display revenue, cost and profit.", run_summary_report)


def register_audit_command() -> CommandSpec:
    return _simple_command("audit", "Check customer totals against the sale history.", run_audit_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
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


def parse_item(raw: str) -> Tuple[str, int]:
    """Split ``PRODUCT_ID:QTY``; a bare product id means one unit."""
    product_id, sep, quantity = raw.rpartition(":")
    if not sep:
        return raw, 1
    if not product_id:
        raise ValueError(f"Invalid item '{raw}': expected PRODUCT_ID:QTY")
    return product_id, int(quantity)


def translate_items(args: argparse.Namespace) -> List[Tuple[str, int]]:
    """Translate repeated ``--item`` flags, merging repeats of the same product."""
    merged: Dict[str, int] = {}
    for raw in args.items:
        product_id, quantity = parse_item(raw)
        merged[product_id] = merged.get(product_id, 0) + quantity
    return list(merged.items())


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    return {
        "product_id": args.product_id,
        "name": args.name,
        "category": args.category,
        "quantity": args.quantity,
        "purchase_price": Decimal(args.purchase_price),
        "sale_price": Decimal(args.sale_price),
        "barcode": args.barcode,
    }


def translate_add_customer(args: argparse.Namespace) -> Mapping[str, Any]:
    return {
        "customer_id": args.customer_id,
        "name": args.name,
        "nickname": args.nickname,
        "phone": args.phone,
        "address": args.address,
    }


def translate_add_user(args: argparse.Namespace) -> Mapping[str, Any]:
    return {
        "user_id": args.user_id,
        "name": args.name,
        "username": args.username,
        "password": args.password,
        "role": args.role,
        "email": args.email,
    }


def _print_sale(sale: SaleRow) -> None:
    print(
        f"{sale.sale_id}  {sale.date_iso}  {sale.status:<9}  "
        f"subtotal={sale.subtotal}  discount={sale.discount}%  total={sale.total}  "
        f"customer={sale.customer_id or '-'}  seller={sale.seller_name or '-'}"
    )
    for line in sale.items:
        print(f"    {line.product_id}  {line.product_name}  {line.quantity} x {line.unit_price} = {line.total_price}")


def _print_diagnostics(context: core_logic.RuntimeContext) -> None:
    for diagnostic in context.diagnostics:
        print(f"[WARN] {diagnostic.operation}: unknown {diagnostic.kind} '{diagnostic.reference_id}' skipped")


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, **translate_add_product(args))
    print(f"Added product {product.product_id}")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    customer = core_logic.add_customer(context, **translate_add_customer(args))
    print(f"Added customer {customer.customer_id}")
    return 0


def run_add_user(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    user = core_logic.add_user(context, **translate_add_user(args))
    print(f"Added user {user.user_id}")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Build a cart from ``--item`` flags and commit it."""
    cart = core_logic.new_cart(context)
    for product_id, quantity in translate_items(args):
        cart.add_line(context.store.get_product(product_id), quantity)
    cart.set_discount(Decimal(args.discount))
    if args.customer_id:
        context.store.get_customer(args.customer_id)
        cart.set_customer(args.customer_id)
    seller = core_logic.seller_for(context, args.seller_id or context.settings.default_seller_id)
    sale = core_logic.commit_sale(context, cart, seller=seller)
    _print_sale(sale)
    _print_diagnostics(context)
    return 0


def run_cancel_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    sale = core_logic.cancel_sale(context, args.sale_id)
    _print_sale(sale)
    _print_diagnostics(context)
    return 0


def run_edit_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Rewrite a sale's lines.

    Products already on the sale keep their recorded unit price; new products
    are priced at their current sale price.
    """
    cart = core_logic.edit_cart(context, args.sale_id)
    wanted = dict(translate_items(args))
    for line in cart.lines:
        if line.product_id not in wanted:
            cart.remove_line(line.product_id)
    for product_id, quantity in wanted.items():
        held = cart.held_quantity(product_id)
        if held:
            cart.adjust_line_quantity(product_id, quantity - held)
        else:
            cart.add_line(context.store.get_product(product_id), quantity)
    if args.discount is not None:
        cart.set_discount(Decimal(args.discount))
    if args.clear_customer:
        cart.set_customer(None)
    elif args.customer_id:
        context.store.get_customer(args.customer_id)
        cart.set_customer(args.customer_id)
    sale = core_logic.update_sale_from_cart(context, cart)
    _print_sale(sale)
    _print_diagnostics(context)
    return 0


def run_adjust_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.adjust_stock(context, args.product_id, args.delta)
    print(f"{product.product_id}: {product.quantity} in stock")
    return 0


def run_ingest_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    payload = json.loads(Path(args.file).expanduser().read_text(encoding="utf-8"))
    result = core_logic.ingest_invoice(context, InvoiceExtraction.from_mapping(payload))
    for product in result.updated:
        print(f"updated  {product.product_id}  {product.name}  qty={product.quantity}")
    for product in result.created:
        print(f"created  {product.product_id}  {product.name}  qty={product.quantity}  price={product.sale_price}")
    return 0


def run_simulate_price(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    simulation = core_logic.record_price_simulation(
        context,
        purchase_price=Decimal(args.purchase_price),
        tax_rate=Decimal(args.tax_rate),
        profit_margin=Decimal(args.margin),
        suggested_sales_price=Decimal(args.suggested) if args.suggested is not None else None,
    )
    print(f"{simulation.simulation_id}: suggested price {simulation.suggested_sales_price}")
    return 0


def run_set_setting(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    core_logic.set_setting(context, args.section, args.key, args.value)
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for product in core_logic.list_products(context):
        print(f"{product.product_id}  {product.name:<30}  {product.quantity:>6}  {product.sale_price:>10}")
    return 0


def run_low_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for product in core_logic.low_stock_products(context):
        print(f"{product.product_id}  {product.name:<30}  {product.quantity:>6}")
    return 0


def run_customers_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for customer in core_logic.list_customers(context):
        print(f"{customer.customer_id}  {customer.name:<30}  {customer.sales_count:>4}  {customer.total_spent:>10}")
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    for sale in core_logic.list_sales(context, include_cancelled=not args.completed_only):
        _print_sale(sale)
    return 0


def run_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    summary = core_logic.sales_summary(context)
    print(f"Completed sales: {summary.completed_count}")
    print(f"Cancelled sales: {summary.cancelled_count}")
    print(f"Revenue: {summary.revenue}")
    print(f"Cost:    {summary.cost}")
    print(f"Profit:  {summary.profit}")
    for seller, revenue in summary.revenue_by_seller.items():
        print(f"  {seller:<30}  {revenue:>10}")
    return 0


def run_audit_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Exit with 4 when any customer aggregate disagrees with the sale history."""
    mismatches = core_logic.verify_customer_aggregates(context)
    for mismatch in mismatches:
        print(
            f"{mismatch.customer_id}: count {mismatch.actual_sales_count} (expected "
            f"{mismatch.expected_sales_count}), spent {mismatch.actual_total_spent} "
            f"(expected {mismatch.expected_total_spent})"
        )
    if mismatches:
        return 4
    print("Customer totals are consistent.")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:
        return handle_cli_error(error)
