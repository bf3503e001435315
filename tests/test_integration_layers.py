"""Integration tests describing the end-to-end estate ledger workflows.

These scenarios drive the CLI against a workbook on disk, so every command
loads, mutates and persists the file the way a real session does.
"""

from __future__ import annotations

import json
from decimal import Decimal

import openpyxl
import pytest

from estate_ledger import cli, core_logic, data_manager, setup_excel
from estate_ledger.constants import EXPECTED_SCHEMA_VERSION, SEQUENCE_COUNTER, SheetName
from estate_ledger.data_manager import SHEET_COLUMNS


@pytest.fixture
def estate(config_factory):
    """A workbook on disk holding one supplier, customer, project and item."""

    bundle = config_factory()
    context = core_logic.load_runtime_context(bundle.config_path)
    records = {
        SheetName.SUPPLIERS: data_manager.SupplierRow("SUP-01", "Acme Cement", True),
        SheetName.CUSTOMERS: data_manager.CustomerRow("CUS-01", "Jane Buyer", True),
        SheetName.PROJECTS: data_manager.ProjectRow(
            "PRJ-01", "Hill View", Decimal("1000"), Decimal("0"), "Active"
        ),
        SheetName.ITEMS: data_manager.ItemRow(
            item_code="ITM-01",
            name="Cement bag",
            category_name="Materials",
            unit="bag",
            selling_price=Decimal("20"),
            opening_stock=Decimal("0"),
            min_stock_level=Decimal("5"),
            total_purchased=Decimal("0"),
            total_sold=Decimal("0"),
            current_stock=Decimal("0"),
            version=0,
            is_active=True,
        ),
    }
    for sheet, record in records.items():
        data_manager.append_record(context.workbook, sheet, record)
    core_logic.persist_context(context)
    return bundle


def _run(bundle, capsys, *argv: str):
    """Run one CLI command against ``bundle`` and return its exit code and JSON output."""

    exit_code = cli.main(["--config", str(bundle.config_path), *argv])
    out = capsys.readouterr().out
    return exit_code, json.loads(out) if out.strip() else None


def test_purchase_invoice_and_reports_flow(estate, capsys):
    """Walk through buying, selling, settling and reporting on one workbook."""

    code, purchase = _run(
        estate,
        capsys,
        "purchase",
        "--supplier-code", "SUP-01",
        "--quantity", "10",
        "--rate", "5",
        "--item-code", "ITM-01",
        "--project-id", "PRJ-01",
        "--date", "2024-03-01",
    )
    assert code == cli.EXIT_OK
    assert purchase["serial_no"] == "PU000001"

    code, settled = _run(
        estate, capsys, "record-payment", "--target", "PU000001", "--amount", "20", "--date", "2024-03-02"
    )
    assert code == cli.EXIT_OK
    assert settled["payment_status"] == "partial"

    code, invoice = _run(
        estate,
        capsys,
        "invoice",
        "--customer-id", "CUS-01",
        "--line", "ITM-01:4:20",
        "--amount-received", "80",
        "--date", "2024-03-03",
    )
    assert code == cli.EXIT_OK
    assert invoice["serial_no"] == "SI000001"
    assert invoice["payment_status"] == "paid"

    code, _ = _run(
        estate,
        capsys,
        "expense",
        "--amount", "30",
        "--description", "Site labour wages",
        "--project-id", "PRJ-01",
        "--date", "2024-03-04",
    )
    assert code == cli.EXIT_OK

    code, supplier_ledger = _run(estate, capsys, "ledger", "--counterparty", "supplier:SUP-01")
    assert code == cli.EXIT_OK
    assert [entry["reference"] for entry in supplier_ledger["entries"]] == ["PU000001", "BP000001"]
    assert Decimal(supplier_ledger["balance"]) == Decimal("30")

    code, inventory = _run(estate, capsys, "inventory")
    assert code == cli.EXIT_OK
    (line,) = inventory["perItem"]
    assert Decimal(line["currentStock"]) == Decimal("6")
    assert (Decimal(line["purchased"]), Decimal(line["sold"]), Decimal(line["drift"])) == (10, 4, 0)
    assert line["status"] == "In Stock"

    code, statement = _run(estate, capsys, "income-statement", "--start", "2024-03-01", "--end", "2024-03-31")
    assert code == cli.EXIT_OK
    assert Decimal(statement["revenue"]) == Decimal("80")
    assert Decimal(statement["expenses"]["materialExpense"]) == Decimal("50")
    assert Decimal(statement["expenses"]["labourWages"]) == Decimal("30")
    assert Decimal(statement["netIncome"]) == Decimal("0")

    code, progress = _run(estate, capsys, "project-progress", "--project-id", "PRJ-01")
    assert code == cli.EXIT_OK
    assert progress["projects"][0]["progress"] == 8

    code, drift = _run(estate, capsys, "audit")
    assert code == cli.EXIT_OK
    assert drift == []


def test_rejected_command_leaves_workbook_untouched(estate, capsys):
    """A validation failure must not persist partial writes."""

    code, _ = _run(
        estate,
        capsys,
        "invoice",
        "--customer-id", "CUS-01",
        "--line", "ITM-01:1:20",
        "--date", "2024-03-03",
    )
    assert code == cli.EXIT_VALIDATION

    code, _ = _run(estate, capsys, "record-payment", "--target", "PU000404", "--amount", "5")
    assert code == cli.EXIT_NOT_FOUND

    context = core_logic.load_runtime_context(estate.config_path)
    assert core_logic.list_sales_invoices(context) == []
    assert core_logic.list_payments(context) == []


def test_cancel_then_recompute_is_clean(estate, capsys):
    """Cancelling through the CLI reverses counters so a recompute finds nothing."""

    _run(estate, capsys, "purchase", "--supplier-code", "SUP-01", "--quantity", "10",
         "--rate", "5", "--item-code", "ITM-01", "--date", "2024-03-01")
    _run(estate, capsys, "invoice", "--customer-id", "CUS-01", "--line", "ITM-01:3:20",
         "--amount-received", "20", "--date", "2024-03-02")

    code, cancelled = _run(estate, capsys, "cancel", "--entity-type", "SalesInvoice", "--reference", "SI000001")
    assert code == cli.EXIT_OK
    assert cancelled["cancelled"] is True

    code, report = _run(estate, capsys, "recompute")
    assert code == cli.EXIT_OK
    assert report["driftCount"] == 0

    code, customer_ledger = _run(estate, capsys, "ledger", "--counterparty", "customer:CUS-01")
    assert code == cli.EXIT_OK
    assert customer_ledger["entries"] == []

    context = core_logic.load_runtime_context(estate.config_path)
    assert core_logic.get_item(context, "ITM-01").current_stock == Decimal("10")


def test_recompute_repairs_tampered_counter(estate, capsys):
    """Hand edits to a cached counter are detected and rewritten."""

    _run(estate, capsys, "purchase", "--supplier-code", "SUP-01", "--quantity", "4",
         "--rate", "5", "--item-code", "ITM-01", "--date", "2024-03-01")

    context = core_logic.load_runtime_context(estate.config_path)
    data_manager.update_row(context.workbook, SheetName.ITEMS, "ITM-01", field_values={"CurrentStock": 40})
    core_logic.persist_context(context)

    code, drift = _run(estate, capsys, "reconcile-stock", "--item-code", "ITM-01")
    assert code == cli.EXIT_OK
    assert Decimal(drift["drift"]) == Decimal("36")

    code, report = _run(estate, capsys, "recompute")
    assert report["repaired"] == ["ITM-01"]

    code, drift = _run(estate, capsys, "reconcile-stock", "--item-code", "ITM-01")
    assert Decimal(drift["drift"]) == Decimal("0")


# ---------------------------------------------------------------------------
# Workbook bootstrap
# ---------------------------------------------------------------------------


def test_create_master_workbook_lays_out_every_sheet(tmp_path):
    destination = setup_excel.create_master_workbook(tmp_path / "nested" / "master.xlsx")

    workbook = openpyxl.load_workbook(destination)
    assert workbook.sheetnames == [sheet.value for sheet in SHEET_COLUMNS]
    for sheet, columns in SHEET_COLUMNS.items():
        header = [cell.value for cell in workbook[sheet.value][1]]
        assert header == list(columns)
        assert workbook[sheet.value]["A1"].font.bold
    assert [cell.value for cell in workbook[SheetName.COUNTERS.value][2]] == [SEQUENCE_COUNTER, 0]


def test_create_master_workbook_refuses_to_overwrite(tmp_path):
    destination = setup_excel.create_master_workbook(tmp_path / "master.xlsx")
    with pytest.raises(FileExistsError):
        setup_excel.create_master_workbook(destination)
    assert setup_excel.create_master_workbook(destination, overwrite=True) == destination


def test_setup_main_uses_config(tmp_path, capsys):
    config_path = tmp_path / "config.ini"
    config_path.write_text(
        "[System]\nDataFile = data/master.xlsx\nCompanyName = Test Estates\n"
        f"SchemaVersion = {EXPECTED_SCHEMA_VERSION}\n"
    )

    assert setup_excel.main(["--config", str(config_path)]) == 0
    assert (tmp_path / "data" / "master.xlsx").exists()
    assert setup_excel.main(["--config", str(config_path)]) == 1
    assert "--force" in capsys.readouterr().out
    assert setup_excel.main(["--config", str(config_path), "--force"]) == 0


def test_setup_main_reports_missing_config(tmp_path):
    assert setup_excel.main(["--config", str(tmp_path / "absent.ini")]) == 1


def test_setup_main_rejects_other_schema_version(tmp_path, capsys):
    config_path = tmp_path / "config.ini"
    config_path.write_text(
        "[System]\nDataFile = master.xlsx\nCompanyName = Test Estates\nSchemaVersion = 0.9.0\n"
    )

    assert setup_excel.main(["--config", str(config_path)]) == 1
    assert "0.9.0" in capsys.readouterr().out
    assert not (tmp_path / "master.xlsx").exists()


def test_bootstrapped_workbook_loads_as_runtime_context(config_factory):
    bundle = config_factory()
    context = core_logic.load_runtime_context(bundle.config_path)

    assert context.workbook.sheetnames == [sheet.value for sheet in SHEET_COLUMNS]
    assert context.workbook[SheetName.PURCHASES.value].freeze_panes == "A2"
