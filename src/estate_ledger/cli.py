"""Command-line entry points for the estate ledger engine.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the engine, and
printing results as JSON. Keeping the CLI thin lets tests and other front-ends
reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, ledger, legacy, log, reconciler, recorder, reports
from .constants import EntityType, PaymentMethod
from .errors import ConflictError, NotFoundError, ValidationError
from .models import CounterpartyKey

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_VALIDATION = 2
EXIT_MISSING_FILE = 3
EXIT_NOT_FOUND = 4
EXIT_CONFLICT = 5


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="estate-ledger",
        description="Ledgers, reconciliation and reports over the estate workbook.",
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
    """Declare mutating CLI commands such as purchases and payments."""
    specs = {
        "purchase": register_purchase_command(),
        "invoice": register_invoice_command(),
        "plot-sale": register_plot_sale_command(),
        "expense": register_expense_command(),
        "record-payment": register_record_payment_command(),
        "cancel": register_cancel_command(),
        "recompute": register_recompute_command(),
        "backfill-payees": register_backfill_payees_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as ledgers and reports."""
    specs = {
        "ledger": register_ledger_command(),
        "income-statement": register_income_statement_command(),
        "inventory": register_inventory_command(),
        "dashboard": register_dashboard_command(),
        "project-progress": register_project_progress_command(),
        "reconcile-stock": register_reconcile_stock_command(),
        "audit": register_audit_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_date_range(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", default=None, help="Inclusive start date (YYYY-MM-DD).")
    parser.add_argument("--end", default=None, help="Inclusive end date (YYYY-MM-DD).")


def _add_method(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--method",
        choices=[member.value for member in PaymentMethod],
        default=PaymentMethod.BANK.value,
    )


def register_purchase_command() -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Record a purchase from a supplier."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--supplier-code", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--rate", required=True)
        parser.add_argument("--item-code", default=None)
        parser.add_argument("--discount", default="0")
        parser.add_argument("--project-id", default=None)
        parser.add_argument("--description", default=None)
        parser.add_argument("--date", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase, writes=True)


def register_invoice_command() -> CommandSpec:
    """Register the parser and executor for ``invoice``."""
    name = "invoice"
    help_text = "Record a sales invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            required=True,
            help="Invoice line as ITEM:QUANTITY:RATE; repeat for more lines.",
        )
        parser.add_argument("--amount-received", default="0")
        parser.add_argument("--project-id", default=None)
        parser.add_argument("--description", default=None)
        parser.add_argument("--date", default=None)
        _add_method(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_invoice, writes=True)


def register_plot_sale_command() -> CommandSpec:
    """Register the parser and executor for ``plot-sale``."""
    name = "plot-sale"
    help_text = "Record the sale of a plot."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--plot-number", required=True)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--final-price", required=True)
        parser.add_argument("--booking-amount", default="0")
        parser.add_argument("--project-id", default=None)
        parser.add_argument("--date", default=None)
        _add_method(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_plot_sale, writes=True)


def register_expense_command() -> CommandSpec:
    """Register the parser and executor for ``expense``."""
    name = "expense"
    help_text = "Record an outgoing expense payment."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--description", default=None)
        parser.add_argument("--supplier-code", default=None)
        parser.add_argument("--project-id", default=None)
        parser.add_argument("--pay-to", default=None)
        parser.add_argument("--date", default=None)
        _add_method(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_expense, writes=True)


def register_record_payment_command() -> CommandSpec:
    """Register the parser and executor for ``record-payment``."""
    name = "record-payment"
    help_text = "Settle a purchase, sales invoice or plot sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--target", required=True, help="Serial of the document being settled.")
        parser.add_argument("--amount", required=True)
        parser.add_argument("--description", default=None)
        parser.add_argument("--date", default=None)
        _add_method(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_record_payment, writes=True)


def register_cancel_command() -> CommandSpec:
    """Register the parser and executor for ``cancel``."""
    name = "cancel"
    help_text = "Cancel a transaction and reverse its derived counters."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--entity-type", choices=[member.value for member in EntityType], required=True)
        parser.add_argument("--reference", required=True)
        parser.add_argument("--reason", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_cancel, writes=True)


def register_recompute_command() -> CommandSpec:
    """Register the parser and executor for ``recompute``."""
    name = "recompute"
    help_text = "Recompute stock and payment counters from the transaction log."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--dry-run", action="store_true", help="Report drift without repairing it.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_recompute, writes=True)


def register_backfill_payees_command() -> CommandSpec:
    """Register the parser and executor for ``backfill-payees``."""
    name = "backfill-payees"
    help_text = "Resolve legacy payee names on payments to supplier codes."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_backfill_payees, writes=True)


def register_ledger_command() -> CommandSpec:
    """Register the parser and executor for ``ledger``."""
    name = "ledger"
    help_text = "Display the ledger for a supplier, customer or project."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--counterparty",
            required=True,
            help="Counterparty as kind:reference, e.g. supplier:SUP-01.",
        )
        _add_date_range(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_ledger)


def register_income_statement_command() -> CommandSpec:
    """Register the parser and executor for ``income-statement``."""
    name = "income-statement"
    help_text = "Display revenue, categorized expenses and profit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_date_range(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_income_statement)


def register_inventory_command() -> CommandSpec:
    """Register the parser and executor for ``inventory``."""
    name = "inventory"
    help_text = "Display stock levels, values and statuses."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_inventory)


def register_dashboard_command() -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display this month against last month."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--as-of", default=None, help="Reference date (YYYY-MM-DD); defaults to today.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard)


def register_project_progress_command() -> CommandSpec:
    """Register the parser and executor for ``project-progress``."""
    name = "project-progress"
    help_text = "Display spending against budget per project."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--project-id", default=None)
        parser.add_argument("--limit", type=int, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_project_progress)


def register_reconcile_stock_command() -> CommandSpec:
    """Register the parser and executor for ``reconcile-stock``."""
    name = "reconcile-stock"
    help_text = "Replay stock history and report drift."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-code", default=None, help="Reconcile one item instead of all.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_reconcile_stock)


def register_audit_command() -> CommandSpec:
    """Register the parser and executor for ``audit``."""
    name = "audit"
    help_text = "Replay payments and report settlement drift."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_audit)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve and validate the runtime context for CLI operations."""
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


def parse_decimal(value: Optional[str], field_name: str) -> Decimal:
    """Parse a CLI money or quantity argument.

    Raises:
        ValidationError: If ``value`` is not a finite decimal number.
    """
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid {field_name}: {value!r}") from exc
    if not number.is_finite():
        raise ValidationError(f"Invalid {field_name}: {value!r}")
    return number


def parse_invoice_line(raw: str) -> recorder.InvoiceLineCommand:
    """Parse ``ITEM:QUANTITY:RATE`` into an invoice line command."""
    parts = raw.split(":")
    if len(parts) != 3 or not parts[0].strip():
        raise ValidationError(f"Invoice line must look like ITEM:QUANTITY:RATE, got {raw!r}")
    item_code, quantity, rate = parts
    return recorder.InvoiceLineCommand(
        item_code=item_code.strip(),
        quantity=parse_decimal(quantity, "quantity"),
        rate=parse_decimal(rate, "rate"),
    )


def translate_purchase(args: argparse.Namespace) -> recorder.PurchaseCommand:
    """Translate CLI args into a purchase command object."""
    return recorder.PurchaseCommand(
        supplier_code=args.supplier_code,
        item_code=args.item_code,
        quantity=parse_decimal(args.quantity, "quantity"),
        rate=parse_decimal(args.rate, "rate"),
        discount=parse_decimal(args.discount, "discount"),
        project_id=args.project_id,
        description=args.description,
        date=core_logic.parse_date(args.date),
    )


def translate_invoice(args: argparse.Namespace) -> recorder.SalesInvoiceCommand:
    """Translate CLI args into a sales invoice command object."""
    return recorder.SalesInvoiceCommand(
        customer_id=args.customer_id,
        lines=tuple(parse_invoice_line(raw) for raw in args.lines),
        project_id=args.project_id,
        description=args.description,
        amount_received=parse_decimal(args.amount_received, "amount received"),
        method=PaymentMethod(args.method),
        date=core_logic.parse_date(args.date),
    )


def translate_plot_sale(args: argparse.Namespace) -> recorder.PlotSaleCommand:
    """Translate CLI args into a plot sale command object."""
    return recorder.PlotSaleCommand(
        plot_number=args.plot_number,
        customer_id=args.customer_id,
        final_price=parse_decimal(args.final_price, "final price"),
        booking_amount=parse_decimal(args.booking_amount, "booking amount"),
        project_id=args.project_id,
        method=PaymentMethod(args.method),
        date=core_logic.parse_date(args.date),
    )


def translate_expense(args: argparse.Namespace) -> recorder.ExpensePaymentCommand:
    """Translate CLI args into an expense payment command object."""
    return recorder.ExpensePaymentCommand(
        amount=parse_decimal(args.amount, "amount"),
        description=args.description,
        method=PaymentMethod(args.method),
        counterparty_id=args.supplier_code,
        project_id=args.project_id,
        pay_to=args.pay_to,
        date=core_logic.parse_date(args.date),
    )


def translate_record_payment(args: argparse.Namespace) -> recorder.PaymentCommand:
    """Translate CLI args into a payment command object."""
    return recorder.PaymentCommand(
        target_ref=args.target,
        amount=parse_decimal(args.amount, "amount"),
        date=core_logic.parse_date(args.date),
        description=args.description,
        method=PaymentMethod(args.method),
    )


def translate_counterparty(args: argparse.Namespace) -> CounterpartyKey:
    """Translate ``--counterparty`` into a :class:`CounterpartyKey`."""
    try:
        return CounterpartyKey.parse(args.counterparty)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc


def emit(payload: Any) -> None:
    """Print ``payload`` as indented JSON; decimals keep their exact text."""
    print(json.dumps(payload, indent=2, default=str))


def _row_dict(row: Any) -> Dict[str, Any]:
    return {key: getattr(value, "value", value) for key, value in vars(row).items()}


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase workflow."""
    purchase = recorder.record_purchase(context, translate_purchase(args))
    emit(_row_dict(purchase))
    return EXIT_OK


def run_invoice(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales invoice workflow."""
    invoice = recorder.record_sales_invoice(context, translate_invoice(args))
    emit(_row_dict(invoice))
    return EXIT_OK


def run_plot_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the plot sale workflow."""
    sale = recorder.record_plot_sale(context, translate_plot_sale(args))
    emit(_row_dict(sale))
    return EXIT_OK


def run_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the expense payment workflow."""
    payment = recorder.record_expense_payment(context, translate_expense(args))
    emit(_row_dict(payment))
    return EXIT_OK


def run_record_payment(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the settlement workflow and show the updated document."""
    updated = recorder.record_payment(context, translate_record_payment(args))
    emit(_row_dict(updated))
    return EXIT_OK


def run_cancel(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the cancellation workflow through the patch dispatcher."""
    cancelled = recorder.apply_patch(
        context,
        EntityType(args.entity_type),
        args.reference,
        recorder.CancelPatch(reason=args.reason),
    )
    emit(_row_dict(cancelled))
    return EXIT_OK


def run_recompute(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the derived-field recompute batch."""
    report = reconciler.recompute_derived_fields(context, repair=not args.dry_run)
    emit(
        {
            "driftCount": report.drift_count,
            "stock": [entry.as_dict() for entry in report.stock if entry.has_drift],
            "payments": [_row_dict(entry) for entry in report.payments if not entry.is_consistent],
            "repaired": list(report.repaired),
        }
    )
    return EXIT_OK


def run_backfill_payees(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the legacy payee backfill."""
    emit(legacy.backfill_payee_references(context).as_dict())
    return EXIT_OK


def run_ledger(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the ledger report."""
    period = core_logic.resolve_date_range(args.start, args.end)
    emit(ledger.build_ledger(context, translate_counterparty(args), period).as_dict())
    return EXIT_OK


def run_income_statement(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the income statement report."""
    period = core_logic.resolve_date_range(args.start, args.end)
    emit(reports.get_income_statement(context, period).as_dict())
    return EXIT_OK


def run_inventory(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the inventory report."""
    emit(reports.get_inventory_report(context).as_dict())
    return EXIT_OK


def run_dashboard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the dashboard report."""
    as_of = core_logic.parse_date(args.as_of, field_name="as-of date")
    emit(reports.get_dashboard_stats(context, as_of).as_dict())
    return EXIT_OK


def run_project_progress(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the project progress report."""
    emit(reports.get_project_progress(context, args.project_id, args.limit).as_dict())
    return EXIT_OK


def run_reconcile_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute stock reconciliation for one or every item."""
    if args.item_code is not None:
        emit(reconciler.reconcile_stock(context, args.item_code).as_dict())
    else:
        emit([entry.as_dict() for entry in reconciler.reconcile_all_stock(context)])
    return EXIT_OK


def run_audit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment state audit and list drifted documents."""
    drifted = [entry for entry in reconciler.audit_payment_states(context) if not entry.is_consistent]
    emit([_row_dict(entry) for entry in drifted])
    return EXIT_OK


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    log.error("%s", error)
    if isinstance(error, ValidationError):
        return EXIT_VALIDATION
    if isinstance(error, FileNotFoundError):
        return EXIT_MISSING_FILE
    if isinstance(error, NotFoundError):
        return EXIT_NOT_FOUND
    if isinstance(error, ConflictError):
        return EXIT_CONFLICT
    return EXIT_FAILURE


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
        if exit_code == EXIT_OK and command_table[args.command].writes:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
