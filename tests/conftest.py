"""Shared pytest fixtures and utilities for estate ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from estate_ledger import cli, constants, core_logic, data_manager, recorder  # noqa: E402
from estate_ledger.constants import PaymentDirection, PaymentMethod, PaymentStatus, SheetName  # noqa: E402
from estate_ledger.setup_excel import build_master_workbook, create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "CompanyName = {company_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Engine]\n"
    "MaxConflictRetries = {max_retries}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    company_name: str


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
        company_name: str = "Test Estates",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        max_retries: int = 3,
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        workbook_path = workbook_factory(subdir=bundle_dir_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                company_name=company_name,
                schema_version=schema_version,
                max_retries=max_retries,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            company_name=company_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


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


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        company_name="Test Estates",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        max_conflict_retries=3,
    )


@pytest.fixture
def workbook():
    """Return a blank in-memory master workbook."""

    return build_master_workbook()


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook) -> core_logic.RuntimeContext:
    """Assemble a runtime context around the in-memory workbook."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


class Seeder:
    """Append rows straight to the workbook, bypassing the write path.

    Read-side tests use this to lay out exact transaction histories,
    including inconsistent ones the write path would never produce.
    """

    def __init__(self, context: core_logic.RuntimeContext) -> None:
        self.context = context
        self._seq = 0

    def _append(self, sheet: SheetName, record: object) -> object:
        data_manager.append_record(self.context.workbook, sheet, record)
        core_logic.invalidate_cache(self.context, sheet)
        return record

    def _next_seq(self, seq: Optional[int]) -> int:
        if seq is not None:
            return seq
        self._seq += 1
        return self._seq

    def raw(self, sheet: SheetName, values: list) -> None:
        self.context.workbook[sheet.value].append(values)
        core_logic.invalidate_cache(self.context, sheet)

    def supplier(self, code: str = "SUP-01", name: str = "Acme Cement", is_active: bool = True):
        return self._append(SheetName.SUPPLIERS, data_manager.SupplierRow(code, name, is_active))

    def customer(self, customer_id: str = "CUS-01", name: str = "Jane Buyer", is_active: bool = True):
        return self._append(SheetName.CUSTOMERS, data_manager.CustomerRow(customer_id, name, is_active))

    def project(
        self,
        project_id: str = "PRJ-01",
        name: str = "Hill View",
        value_of_job: str = "0",
        estimated_cost: str = "0",
        status: Optional[str] = "Active",
    ):
        return self._append(
            SheetName.PROJECTS,
            data_manager.ProjectRow(project_id, name, Decimal(value_of_job), Decimal(estimated_cost), status),
        )

    def item(
        self,
        code: str = "ITM-01",
        *,
        name: str = "Cement bag",
        selling_price: str = "10",
        opening_stock: str = "0",
        min_stock_level: str = "10",
        total_purchased: str = "0",
        total_sold: str = "0",
        current_stock: Optional[str] = None,
        version: int = 0,
        is_active: bool = True,
    ):
        opening = Decimal(opening_stock)
        purchased = Decimal(total_purchased)
        sold = Decimal(total_sold)
        current = Decimal(current_stock) if current_stock is not None else opening + purchased - sold
        return self._append(
            SheetName.ITEMS,
            data_manager.ItemRow(
                item_code=code,
                name=name,
                category_name="Materials",
                unit="bag",
                selling_price=Decimal(selling_price),
                opening_stock=opening,
                min_stock_level=Decimal(min_stock_level),
                total_purchased=purchased,
                total_sold=sold,
                current_stock=current,
                version=version,
                is_active=is_active,
            ),
        )

    def purchase(
        self,
        serial: str,
        when: date,
        net_amount: str,
        *,
        supplier_code: Optional[str] = "SUP-01",
        project_id: Optional[str] = None,
        item_code: Optional[str] = None,
        quantity: str = "1",
        description: Optional[str] = None,
        amount_paid: str = "0",
        status: PaymentStatus = PaymentStatus.UNPAID,
        cancelled: bool = False,
        seq: Optional[int] = None,
    ):
        net = Decimal(net_amount)
        return self._append(
            SheetName.PURCHASES,
            data_manager.PurchaseRow(
                serial_no=serial,
                seq=self._next_seq(seq),
                date=when,
                supplier_code=supplier_code,
                project_id=project_id,
                item_code=item_code,
                description=description,
                quantity=Decimal(quantity),
                rate=net / Decimal(quantity),
                discount=Decimal("0"),
                net_amount=net,
                amount_paid=Decimal(amount_paid),
                payment_status=status,
                version=0,
                cancelled=cancelled,
            ),
        )

    def payment(
        self,
        serial: str,
        when: date,
        amount: str,
        *,
        method: PaymentMethod = PaymentMethod.BANK,
        direction: PaymentDirection = PaymentDirection.OUT,
        counterparty_id: Optional[str] = None,
        pay_to: Optional[str] = None,
        project_id: Optional[str] = None,
        target_ref: Optional[str] = None,
        description: Optional[str] = None,
        cancelled: bool = False,
        seq: Optional[int] = None,
    ):
        return self._append(
            SheetName.PAYMENTS,
            data_manager.PaymentRow(
                serial_no=serial,
                seq=self._next_seq(seq),
                date=when,
                method=method,
                direction=direction,
                counterparty_id=counterparty_id,
                pay_to=pay_to,
                project_id=project_id,
                target_ref=target_ref,
                description=description,
                amount=Decimal(amount),
                cancelled=cancelled,
            ),
        )

    def invoice(
        self,
        serial: str,
        when: date,
        net_total: str,
        *,
        customer_id: Optional[str] = "CUS-01",
        project_id: Optional[str] = None,
        amount_received: str = "0",
        status: PaymentStatus = PaymentStatus.UNPAID,
        cancelled: bool = False,
        seq: Optional[int] = None,
    ):
        return self._append(
            SheetName.SALES_INVOICES,
            data_manager.SalesInvoiceRow(
                serial_no=serial,
                seq=self._next_seq(seq),
                date=when,
                customer_id=customer_id,
                project_id=project_id,
                description=None,
                net_total=Decimal(net_total),
                amount_received=Decimal(amount_received),
                payment_status=status,
                version=0,
                cancelled=cancelled,
            ),
        )

    def line(self, invoice_serial: str, item_code: str, quantity: str, rate: str = "10"):
        return self._append(
            SheetName.INVOICE_LINES,
            data_manager.InvoiceLineRow(invoice_serial, item_code, Decimal(quantity), Decimal(rate)),
        )

    def plot_sale(
        self,
        serial: str,
        when: date,
        final_price: str,
        *,
        plot_number: str = "A-1",
        project_id: Optional[str] = "PRJ-01",
        customer_id: Optional[str] = "CUS-01",
        amount_received: str = "0",
        status: PaymentStatus = PaymentStatus.UNPAID,
        cancelled: bool = False,
        seq: Optional[int] = None,
    ):
        return self._append(
            SheetName.PLOT_SALES,
            data_manager.PlotSaleRow(
                serial_no=serial,
                seq=self._next_seq(seq),
                date=when,
                plot_number=plot_number,
                project_id=project_id,
                customer_id=customer_id,
                final_price=Decimal(final_price),
                amount_received=Decimal(amount_received),
                payment_status=status,
                version=0,
                cancelled=cancelled,
            ),
        )


@pytest.fixture
def seed(context: core_logic.RuntimeContext) -> Seeder:
    """Return a :class:`Seeder` bound to the in-memory context."""

    return Seeder(context)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``recorder.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(recorder, "datetime", _FixedDateTime)
        return moment

    return _apply


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh top-level CLI parser."""

    return cli.build_parser()


@pytest.fixture
def subparsers_action(cli_parser: argparse.ArgumentParser):
    """Return the sub-command action of a fresh parser."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def parse_cli() -> Callable[..., argparse.Namespace]:
    """Parse CLI arguments with the real parser and command table."""

    def _parse(*argv: str) -> argparse.Namespace:
        parser = cli.build_parser()
        cli.configure_subcommands(parser)
        return parser.parse_args(list(argv))

    return _parse
