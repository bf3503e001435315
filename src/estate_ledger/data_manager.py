"""Data access layer for the estate ledger.

This module provides low-level helpers that read from and write to the
master workbook. Business rules belong elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the Excel file.
3. Sheet operations: loading typed records (skipping malformed rows),
   appending rows and updating rows under an optimistic version check.
4. Reference allocation: server-assigned serial numbers and the
   workbook-wide creation sequence kept on the ``Counters`` sheet.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, fields
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEFAULT_MAX_CONFLICT_RETRIES,
    REFERENCE_WIDTH,
    SEQUENCE_COUNTER,
    PaymentDirection,
    PaymentMethod,
    PaymentStatus,
    SheetName,
)
from .errors import ComputationError, ConflictError, NotFoundError
from .models import SkippedRecord


CONFIG_FILE_NAME = "config.ini"

# Column layout for every sheet. Row dataclasses declare their fields in the
# same order so serialization is positional.
SHEET_COLUMNS: Mapping[SheetName, Sequence[str]] = {
    SheetName.ITEMS: [
        "ItemCode",
        "Name",
        "CategoryName",
        "Unit",
        "SellingPrice",
        "OpeningStock",
        "MinStockLevel",
        "TotalPurchased",
        "TotalSold",
        "CurrentStock",
        "Version",
        "IsActive",
    ],
    SheetName.SUPPLIERS: ["SupplierCode", "Name", "IsActive"],
    SheetName.CUSTOMERS: ["CustomerID", "Name", "IsActive"],
    SheetName.PROJECTS: ["ProjectID", "Name", "ValueOfJob", "EstimatedCost", "Status"],
    SheetName.PURCHASES: [
        "SerialNo",
        "Seq",
        "Date",
        "SupplierCode",
        "ProjectID",
        "ItemCode",
        "Description",
        "Quantity",
        "Rate",
        "Discount",
        "NetAmount",
        "AmountPaid",
        "PaymentStatus",
        "Version",
        "Cancelled",
    ],
    SheetName.PAYMENTS: [
        "SerialNo",
        "Seq",
        "Date",
        "Method",
        "Direction",
        "CounterpartyID",
        "PayTo",
        "ProjectID",
        "TargetRef",
        "Description",
        "Amount",
        "Cancelled",
    ],
    SheetName.SALES_INVOICES: [
        "SerialNo",
        "Seq",
        "Date",
        "CustomerID",
        "ProjectID",
        "Description",
        "NetTotal",
        "AmountReceived",
        "PaymentStatus",
        "Version",
        "Cancelled",
    ],
    SheetName.INVOICE_LINES: ["InvoiceSerial", "ItemCode", "Quantity", "Rate"],
    SheetName.PLOT_SALES: [
        "SerialNo",
        "Seq",
        "Date",
        "PlotNumber",
        "ProjectID",
        "CustomerID",
        "FinalPrice",
        "AmountReceived",
        "PaymentStatus",
        "Version",
        "Cancelled",
    ],
    SheetName.COUNTERS: ["Name", "Value"],
}

# Primary key column per sheet, used by ``read_record`` and ``update_row``.
KEY_COLUMNS: Mapping[SheetName, str] = {
    SheetName.ITEMS: "ItemCode",
    SheetName.SUPPLIERS: "SupplierCode",
    SheetName.CUSTOMERS: "CustomerID",
    SheetName.PROJECTS: "ProjectID",
    SheetName.PURCHASES: "SerialNo",
    SheetName.PAYMENTS: "SerialNo",
    SheetName.SALES_INVOICES: "SerialNo",
    SheetName.PLOT_SALES: "SerialNo",
    SheetName.COUNTERS: "Name",
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    company_name: str
    schema_version: str
    max_conflict_retries: int = DEFAULT_MAX_CONFLICT_RETRIES


@dataclass(frozen=True)
class ItemRow:
    """In-memory view of a row from the ``Items`` sheet."""

    item_code: str
    name: str
    category_name: Optional[str]
    unit: Optional[str]
    selling_price: Decimal
    opening_stock: Decimal
    min_stock_level: Decimal
    total_purchased: Decimal
    total_sold: Decimal
    current_stock: Decimal
    version: int
    is_active: bool


@dataclass(frozen=True)
class SupplierRow:
    """In-memory view of a row from the ``Suppliers`` sheet."""

    supplier_code: str
    name: str
    is_active: bool


@dataclass(frozen=True)
class CustomerRow:
    """In-memory view of a row from the ``Customers`` sheet."""

    customer_id: str
    name: str
    is_active: bool


@dataclass(frozen=True)
class ProjectRow:
    """In-memory view of a row from the ``Projects`` sheet."""

    project_id: str
    name: str
    value_of_job: Decimal
    estimated_cost: Decimal
    status: Optional[str]


@dataclass(frozen=True)
class PurchaseRow:
    """In-memory view of a row from the ``Purchases`` sheet."""

    serial_no: str
    seq: int
    date: date
    supplier_code: Optional[str]
    project_id: Optional[str]
    item_code: Optional[str]
    description: Optional[str]
    quantity: Decimal
    rate: Decimal
    discount: Decimal
    net_amount: Decimal
    amount_paid: Decimal
    payment_status: PaymentStatus
    version: int
    cancelled: bool


@dataclass(frozen=True)
class PaymentRow:
    """In-memory view of a row from the ``Payments`` sheet."""

    serial_no: str
    seq: int
    date: date
    method: PaymentMethod
    direction: PaymentDirection
    counterparty_id: Optional[str]
    pay_to: Optional[str]
    project_id: Optional[str]
    target_ref: Optional[str]
    description: Optional[str]
    amount: Decimal
    cancelled: bool


@dataclass(frozen=True)
class SalesInvoiceRow:
    """In-memory view of a row from the ``SalesInvoices`` sheet."""

    serial_no: str
    seq: int
    date: date
    customer_id: Optional[str]
    project_id: Optional[str]
    description: Optional[str]
    net_total: Decimal
    amount_received: Decimal
    payment_status: PaymentStatus
    version: int
    cancelled: bool


@dataclass(frozen=True)
class InvoiceLineRow:
    """In-memory view of a row from the ``InvoiceLines`` sheet."""

    invoice_serial: str
    item_code: str
    quantity: Decimal
    rate: Decimal


@dataclass(frozen=True)
class PlotSaleRow:
    """In-memory view of a row from the ``PlotSales`` sheet."""

    serial_no: str
    seq: int
    date: date
    plot_number: str
    project_id: Optional[str]
    customer_id: Optional[str]
    final_price: Decimal
    amount_received: Decimal
    payment_status: PaymentStatus
    version: int
    cancelled: bool


@dataclass(frozen=True)
class LoadResult:
    """Records read from one sheet along with the rows that were skipped."""

    records: Tuple[Any, ...]
    skipped: Tuple[SkippedRecord, ...]


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

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

    ``[System]`` must provide ``DataFile``, ``CompanyName`` and
    ``SchemaVersion``. ``[Engine] MaxConflictRetries`` is optional. Relative
    data file paths are anchored at ``base_path`` (or the working directory).

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If ``MaxConflictRetries`` is not a positive integer.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        company_name = parser.get("System", "CompanyName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    max_retries = parser.getint(
        "Engine", "MaxConflictRetries", fallback=DEFAULT_MAX_CONFLICT_RETRIES)
    if max_retries < 1:
        raise ValueError("MaxConflictRetries must be at least 1")

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        company_name=company_name,
        schema_version=schema_version,
        max_conflict_retries=max_retries,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def header_map(workbook: Workbook, sheet_name: SheetName) -> Dict[str, int]:
    """Return a mapping of header title to 1-based column index."""

    sheet = workbook[sheet_name.value]
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1]) if cell.value is not None}


def iter_raw_rows(workbook: Workbook, sheet_name: SheetName) -> Iterable[Tuple[int, Tuple[object, ...]]]:
    """Yield ``(row_number, values)`` for every non-empty data row.

    Rows are padded to the full column count so deserializers can unpack
    them positionally even when trailing cells were never written.
    """

    sheet = workbook[sheet_name.value]
    width = len(SHEET_COLUMNS[sheet_name])
    for row_number, raw in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if any(cell is not None for cell in raw):
            padded = tuple(raw[:width]) + (None,) * max(0, width - len(raw))
            yield row_number, padded


def load_records(workbook: Workbook, sheet_name: SheetName) -> LoadResult:
    """Deserialize every row of ``sheet_name``, skipping malformed ones.

    A row that raises :class:`ComputationError` during deserialization is
    logged and reported as a :class:`SkippedRecord` so that one bad cell never
    aborts a whole report.
    """

    deserializer = DESERIALIZERS[sheet_name]
    records: List[Any] = []
    skipped: List[SkippedRecord] = []
    for row_number, raw in iter_raw_rows(workbook, sheet_name):
        try:
            records.append(deserializer(raw))
        except ComputationError as exc:
            log.warning(
                "Skipping malformed row %d on sheet '%s': %s",
                row_number,
                sheet_name.value,
                exc,
            )
            skipped.append(SkippedRecord(sheet=sheet_name.value, row_number=row_number, reason=str(exc)))
    return LoadResult(records=tuple(records), skipped=tuple(skipped))


def locate_row(workbook: Workbook, sheet_name: SheetName, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    columns = header_map(workbook, sheet_name)
    if key_column not in columns:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = columns[key_column]
    sheet = workbook[sheet_name.value]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1] if len(row) >= key_col_index else None
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def read_record(workbook: Workbook, sheet_name: SheetName, key_value: str) -> Any:
    """Read one record straight from the sheet, bypassing any cache.

    Counter updates use this to obtain the current version before writing.

    Raises:
        NotFoundError: If no row carries ``key_value`` in the key column.
        ComputationError: If the row exists but cannot be deserialized.
    """

    row_index = locate_row(workbook, sheet_name, KEY_COLUMNS[sheet_name], key_value)
    if row_index is None:
        raise NotFoundError(f"{sheet_name.value} record not found: {key_value}")

    sheet = workbook[sheet_name.value]
    width = len(SHEET_COLUMNS[sheet_name])
    raw = tuple(sheet.cell(row=row_index, column=col).value for col in range(1, width + 1))
    return DESERIALIZERS[sheet_name](raw)


def append_record(workbook: Workbook, sheet_name: SheetName, record: Any) -> None:
    """Append a row dataclass to its worksheet in column order."""

    sheet = workbook[sheet_name.value]
    sheet.append(serialize_record(record))


def update_row(
    workbook: Workbook,
    sheet_name: SheetName,
    key_value: str,
    *,
    field_values: Mapping[str, Any],
    expected_version: Optional[int] = None,
) -> int:
    """Update selected columns of one row, optionally under a version check.

    When ``expected_version`` is given, the row's ``Version`` cell must still
    hold that value; the update then writes every field together with the
    incremented version. Otherwise the fields are written as-is.

    Args:
        workbook (Workbook): Workbook containing ``sheet_name``.
        sheet_name (SheetName): Sheet holding the row.
        key_value (str): Primary key of the row to update.
        field_values (Mapping[str, Any]): Column header to new value.
        expected_version (int | None): Version observed by the caller.

    Returns:
        int: The version stored on the row after the update.

    Raises:
        NotFoundError: If the row does not exist.
        KeyError: If a referenced column is unknown.
        ConflictError: If the stored version differs from ``expected_version``.
    """

    row_index = locate_row(workbook, sheet_name, KEY_COLUMNS[sheet_name], key_value)
    if row_index is None:
        raise NotFoundError(f"{sheet_name.value} record not found: {key_value}")

    columns = header_map(workbook, sheet_name)
    for field_name in field_values:
        if field_name not in columns:
            raise KeyError(f"Unknown {sheet_name.value} field: {field_name}")

    sheet = workbook[sheet_name.value]
    values = dict(field_values)
    new_version = 0
    if expected_version is not None:
        if "Version" not in columns:
            raise KeyError(f"Sheet {sheet_name.value} is not versioned")
        stored = _parse_int(sheet.cell(row=row_index, column=columns["Version"]).value, "Version")
        if stored != expected_version:
            raise ConflictError(
                f"{sheet_name.value} '{key_value}' changed concurrently "
                f"(expected version {expected_version}, found {stored})"
            )
        new_version = expected_version + 1
        values["Version"] = new_version
    elif "Version" in columns:
        new_version = _parse_int(sheet.cell(row=row_index, column=columns["Version"]).value, "Version")

    for field_name, value in values.items():
        sheet.cell(row=row_index, column=columns[field_name], value=_to_cell(value))
    return new_version


def next_counter_value(workbook: Workbook, name: str) -> int:
    """Increment and return the named counter on the ``Counters`` sheet."""

    row_index = locate_row(workbook, SheetName.COUNTERS, "Name", name)
    sheet = workbook[SheetName.COUNTERS.value]
    if row_index is None:
        sheet.append([name, 1])
        return 1
    current = _parse_int(sheet.cell(row=row_index, column=2).value, "Value")
    sheet.cell(row=row_index, column=2, value=current + 1)
    return current + 1


def next_reference(workbook: Workbook, prefix: str) -> str:
    """Allocate the next serial number for ``prefix`` (e.g. ``BP000001``)."""

    return f"{prefix}{next_counter_value(workbook, prefix):0{REFERENCE_WIDTH}d}"


def next_sequence(workbook: Workbook) -> int:
    """Allocate the next workbook-wide creation sequence number."""

    return next_counter_value(workbook, SEQUENCE_COUNTER)


def serialize_record(record: Any) -> List[object]:
    """Convert a row dataclass into worksheet cell values in column order."""

    return [_to_cell(getattr(record, f.name)) for f in fields(record)]


def _to_cell(value: Any) -> object:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def _parse_decimal(value: object, field_name: str) -> Decimal:
    """Parse a numeric cell; blanks default to zero, junk is a ComputationError."""

    if value is None or (isinstance(value, str) and not value.strip()):
        return Decimal("0")
    if isinstance(value, bool):
        raise ComputationError(f"{field_name} holds a boolean, not a number")
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise ComputationError(f"{field_name} is not numeric: {value!r}") from exc
    if not number.is_finite():
        raise ComputationError(f"{field_name} is not a finite number: {value!r}")
    return number


def _parse_int(value: object, field_name: str) -> int:
    number = _parse_decimal(value, field_name)
    if number != number.to_integral_value():
        raise ComputationError(f"{field_name} is not an integer: {value!r}")
    return int(number)


def _parse_date(value: object, field_name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return date.fromisoformat(value.strip()[:10])
        except ValueError as exc:
            raise ComputationError(f"{field_name} is not an ISO date: {value!r}") from exc
    raise ComputationError(f"{field_name} is missing or not a date: {value!r}")


def _parse_bool(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "y"}
    return bool(value)


def _parse_text(value: object) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_enum(enum_type: type, value: object, field_name: str, default: Optional[Enum] = None) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        if default is not None:
            return default
        raise ComputationError(f"{field_name} is missing")
    try:
        return enum_type(str(value).strip())
    except ValueError as exc:
        raise ComputationError(f"{field_name} has unknown value {value!r}") from exc


def _require_text(value: object, field_name: str) -> str:
    text = _parse_text(value)
    if text is None:
        raise ComputationError(f"{field_name} is missing")
    return text


def deserialize_item(raw_row: Sequence[object]) -> ItemRow:
    """Convert a raw ``Items`` row into an :class:`ItemRow`."""

    (code, name, category, unit, selling, opening, minimum,
     purchased, sold, current, version, is_active) = raw_row
    return ItemRow(
        item_code=_require_text(code, "ItemCode"),
        name=_parse_text(name) or "",
        category_name=_parse_text(category),
        unit=_parse_text(unit),
        selling_price=_parse_decimal(selling, "SellingPrice"),
        opening_stock=_parse_decimal(opening, "OpeningStock"),
        min_stock_level=_parse_decimal(minimum, "MinStockLevel"),
        total_purchased=_parse_decimal(purchased, "TotalPurchased"),
        total_sold=_parse_decimal(sold, "TotalSold"),
        current_stock=_parse_decimal(current, "CurrentStock"),
        version=_parse_int(version, "Version"),
        is_active=True if is_active is None else _parse_bool(is_active),
    )


def deserialize_supplier(raw_row: Sequence[object]) -> SupplierRow:
    code, name, is_active = raw_row
    return SupplierRow(
        supplier_code=_require_text(code, "SupplierCode"),
        name=_parse_text(name) or "",
        is_active=True if is_active is None else _parse_bool(is_active),
    )


def deserialize_customer(raw_row: Sequence[object]) -> CustomerRow:
    customer_id, name, is_active = raw_row
    return CustomerRow(
        customer_id=_require_text(customer_id, "CustomerID"),
        name=_parse_text(name) or "",
        is_active=True if is_active is None else _parse_bool(is_active),
    )


def deserialize_project(raw_row: Sequence[object]) -> ProjectRow:
    project_id, name, value_of_job, estimated_cost, status = raw_row
    return ProjectRow(
        project_id=_require_text(project_id, "ProjectID"),
        name=_parse_text(name) or "",
        value_of_job=_parse_decimal(value_of_job, "ValueOfJob"),
        estimated_cost=_parse_decimal(estimated_cost, "EstimatedCost"),
        status=_parse_text(status),
    )


def deserialize_purchase(raw_row: Sequence[object]) -> PurchaseRow:
    """Convert a raw ``Purchases`` row into a :class:`PurchaseRow`.

    Optional money columns default to zero; a malformed numeric or date cell
    raises :class:`ComputationError` so the loader can skip the row.
    """

    (serial, seq, when, supplier, project, item, description, quantity, rate,
     discount, net, paid, status, version, cancelled) = raw_row
    return PurchaseRow(
        serial_no=_require_text(serial, "SerialNo"),
        seq=_parse_int(seq, "Seq"),
        date=_parse_date(when, "Date"),
        supplier_code=_parse_text(supplier),
        project_id=_parse_text(project),
        item_code=_parse_text(item),
        description=_parse_text(description),
        quantity=_parse_decimal(quantity, "Quantity"),
        rate=_parse_decimal(rate, "Rate"),
        discount=_parse_decimal(discount, "Discount"),
        net_amount=_parse_decimal(net, "NetAmount"),
        amount_paid=_parse_decimal(paid, "AmountPaid"),
        payment_status=_parse_enum(PaymentStatus, status, "PaymentStatus", PaymentStatus.UNPAID),
        version=_parse_int(version, "Version"),
        cancelled=_parse_bool(cancelled),
    )


def deserialize_payment(raw_row: Sequence[object]) -> PaymentRow:
    (serial, seq, when, method, direction, counterparty, pay_to, project,
     target, description, amount, cancelled) = raw_row
    return PaymentRow(
        serial_no=_require_text(serial, "SerialNo"),
        seq=_parse_int(seq, "Seq"),
        date=_parse_date(when, "Date"),
        method=_parse_enum(PaymentMethod, method, "Method", PaymentMethod.BANK),
        direction=_parse_enum(PaymentDirection, direction, "Direction", PaymentDirection.OUT),
        counterparty_id=_parse_text(counterparty),
        pay_to=_parse_text(pay_to),
        project_id=_parse_text(project),
        target_ref=_parse_text(target),
        description=_parse_text(description),
        amount=_parse_decimal(amount, "Amount"),
        cancelled=_parse_bool(cancelled),
    )


def deserialize_sales_invoice(raw_row: Sequence[object]) -> SalesInvoiceRow:
    (serial, seq, when, customer, project, description, net_total, received,
     status, version, cancelled) = raw_row
    return SalesInvoiceRow(
        serial_no=_require_text(serial, "SerialNo"),
        seq=_parse_int(seq, "Seq"),
        date=_parse_date(when, "Date"),
        customer_id=_parse_text(customer),
        project_id=_parse_text(project),
        description=_parse_text(description),
        net_total=_parse_decimal(net_total, "NetTotal"),
        amount_received=_parse_decimal(received, "AmountReceived"),
        payment_status=_parse_enum(PaymentStatus, status, "PaymentStatus", PaymentStatus.UNPAID),
        version=_parse_int(version, "Version"),
        cancelled=_parse_bool(cancelled),
    )


def deserialize_invoice_line(raw_row: Sequence[object]) -> InvoiceLineRow:
    invoice_serial, item_code, quantity, rate = raw_row
    return InvoiceLineRow(
        invoice_serial=_require_text(invoice_serial, "InvoiceSerial"),
        item_code=_require_text(item_code, "ItemCode"),
        quantity=_parse_decimal(quantity, "Quantity"),
        rate=_parse_decimal(rate, "Rate"),
    )


def deserialize_plot_sale(raw_row: Sequence[object]) -> PlotSaleRow:
    (serial, seq, when, plot_number, project, customer, final_price, received,
     status, version, cancelled) = raw_row
    return PlotSaleRow(
        serial_no=_require_text(serial, "SerialNo"),
        seq=_parse_int(seq, "Seq"),
        date=_parse_date(when, "Date"),
        plot_number=_require_text(plot_number, "PlotNumber"),
        project_id=_parse_text(project),
        customer_id=_parse_text(customer),
        final_price=_parse_decimal(final_price, "FinalPrice"),
        amount_received=_parse_decimal(received, "AmountReceived"),
        payment_status=_parse_enum(PaymentStatus, status, "PaymentStatus", PaymentStatus.UNPAID),
        version=_parse_int(version, "Version"),
        cancelled=_parse_bool(cancelled),
    )


def deserialize_counter(raw_row: Sequence[object]) -> Tuple[str, int]:
    name, value = raw_row
    return _require_text(name, "Name"), _parse_int(value, "Value")


DESERIALIZERS: Mapping[SheetName, Callable[[Sequence[object]], Any]] = {
    SheetName.ITEMS: deserialize_item,
    SheetName.SUPPLIERS: deserialize_supplier,
    SheetName.CUSTOMERS: deserialize_customer,
    SheetName.PROJECTS: deserialize_project,
    SheetName.PURCHASES: deserialize_purchase,
    SheetName.PAYMENTS: deserialize_payment,
    SheetName.SALES_INVOICES: deserialize_sales_invoice,
    SheetName.INVOICE_LINES: deserialize_invoice_line,
    SheetName.PLOT_SALES: deserialize_plot_sale,
    SheetName.COUNTERS: deserialize_counter,
}
