"""Runtime context and read-side services for the estate ledger engine.

This module owns the :class:`RuntimeContext` that every engine operation
receives, the explicit side cache hanging off it, and the lookups the
ledger, reconciler and report modules share. It consumes the Data Access
Layer (DAL) for all I/O. Every write path must call :func:`invalidate_cache`
for the sheets it touched so later reads rebuild from the workbook.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, SheetName
from .errors import ConflictError, NotFoundError, ValidationError
from .models import DateRange, SkippedRecord

T = TypeVar("T")

DateLike = Union[date, str, None]


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the engine."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def invalidate_cache(context: RuntimeContext, *sheets: SheetName) -> None:
    """Evict the cache buckets for ``sheets`` after mutating workbook state.

    Missing buckets are ignored so write paths can invalidate everything they
    touched without checking what was loaded.
    """

    if not sheets:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(sheet.value for sheet in sheets))

    for sheet in sheets:
        context._cache.pop(sheet.value, None)


def _ensure_sheet_cache(context: RuntimeContext, sheet: SheetName) -> Dict[str, Any]:
    """Populate the cache bucket for ``sheet`` on demand.

    The bucket stores ``all`` records, the ``skipped`` rows the DAL could not
    read, and a ``by_id`` lookup when the sheet has a primary key.
    """

    bucket = _get_cache_bucket(context, sheet.value)
    if "all" not in bucket:
        result = data_manager.load_records(context.workbook, sheet)
        bucket["all"] = result.records
        bucket["skipped"] = result.skipped
        key_field = _KEY_FIELDS.get(sheet)
        if key_field is not None:
            bucket["by_id"] = {getattr(record, key_field): record for record in result.records}
        log.debug(
            "Populated '%s' cache with %d entries (%d skipped)",
            sheet.value,
            len(result.records),
            len(result.skipped),
        )
    return bucket


_KEY_FIELDS = {
    SheetName.ITEMS: "item_code",
    SheetName.SUPPLIERS: "supplier_code",
    SheetName.CUSTOMERS: "customer_id",
    SheetName.PROJECTS: "project_id",
    SheetName.PURCHASES: "serial_no",
    SheetName.PAYMENTS: "serial_no",
    SheetName.SALES_INVOICES: "serial_no",
    SheetName.PLOT_SALES: "serial_no",
}


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the engine.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before touching state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def list_records(context: RuntimeContext, sheet: SheetName, *, include_cancelled: bool = False) -> List[Any]:
    """Return cached records for ``sheet`` in workbook order.

    Transaction sheets carry a ``cancelled`` flag; cancelled rows are dropped
    unless ``include_cancelled`` is set. The result is a fresh list so callers
    may sort or filter it freely.
    """
    records = _ensure_sheet_cache(context, sheet)["all"]
    if include_cancelled:
        return list(records)
    return [record for record in records if not getattr(record, "cancelled", False)]


def skipped_records(context: RuntimeContext, *sheets: SheetName) -> Tuple[SkippedRecord, ...]:
    """Return the rows the DAL could not read on ``sheets``, in sheet order."""

    collected: List[SkippedRecord] = []
    for sheet in sheets:
        collected.extend(_ensure_sheet_cache(context, sheet)["skipped"])
    return tuple(collected)


def list_items(context: RuntimeContext) -> List[data_manager.ItemRow]:
    return list_records(context, SheetName.ITEMS)


def list_projects(context: RuntimeContext) -> List[data_manager.ProjectRow]:
    return list_records(context, SheetName.PROJECTS)


def list_purchases(context: RuntimeContext, *, include_cancelled: bool = False) -> List[data_manager.PurchaseRow]:
    return list_records(context, SheetName.PURCHASES, include_cancelled=include_cancelled)


def list_payments(context: RuntimeContext, *, include_cancelled: bool = False) -> List[data_manager.PaymentRow]:
    return list_records(context, SheetName.PAYMENTS, include_cancelled=include_cancelled)


def list_sales_invoices(context: RuntimeContext, *, include_cancelled: bool = False) -> List[data_manager.SalesInvoiceRow]:
    return list_records(context, SheetName.SALES_INVOICES, include_cancelled=include_cancelled)


def list_invoice_lines(context: RuntimeContext) -> List[data_manager.InvoiceLineRow]:
    return list_records(context, SheetName.INVOICE_LINES)


def list_plot_sales(context: RuntimeContext, *, include_cancelled: bool = False) -> List[data_manager.PlotSaleRow]:
    return list_records(context, SheetName.PLOT_SALES, include_cancelled=include_cancelled)


def get_record(context: RuntimeContext, sheet: SheetName, key: str) -> Any:
    """Resolve a record by primary key from the cache.

    Raises:
        NotFoundError: If ``key`` is absent from the sheet.
    """
    cache = _ensure_sheet_cache(context, sheet)
    try:
        return cache["by_id"][key]
    except KeyError as exc:
        log.warning("%s lookup failed for id '%s'", sheet.value, key)
        raise NotFoundError(f"Unknown {sheet.value} reference: {key}") from exc


def get_item(context: RuntimeContext, item_code: str) -> data_manager.ItemRow:
    return get_record(context, SheetName.ITEMS, item_code)


def get_supplier(context: RuntimeContext, supplier_code: str) -> data_manager.SupplierRow:
    return get_record(context, SheetName.SUPPLIERS, supplier_code)


def get_customer(context: RuntimeContext, customer_id: str) -> data_manager.CustomerRow:
    return get_record(context, SheetName.CUSTOMERS, customer_id)


def get_project(context: RuntimeContext, project_id: str) -> data_manager.ProjectRow:
    return get_record(context, SheetName.PROJECTS, project_id)


def parse_date(value: DateLike, *, field_name: str = "date") -> Optional[date]:
    """Coerce ``value`` into a date, treating blanks as ``None``.

    Raises:
        ValidationError: If a string value is not an ISO ``YYYY-MM-DD`` date.
    """
    if value is None or isinstance(value, date):
        return value
    text = value.strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError as exc:
        log.error("Invalid %s supplied: %r", field_name, value)
        raise ValidationError(f"Invalid {field_name}: {value!r}") from exc


def resolve_date_range(start: DateLike = None, end: DateLike = None) -> DateRange:
    """Build a validated :class:`DateRange` from optional bounds.

    Raises:
        ValidationError: If either bound is malformed or ``start`` is after
            ``end``.
    """
    start_date = parse_date(start, field_name="start date")
    end_date = parse_date(end, field_name="end date")
    if start_date is not None and end_date is not None and start_date > end_date:
        log.error("Rejected date range: %s is after %s", start_date, end_date)
        raise ValidationError(f"Start date {start_date} is after end date {end_date}")
    return DateRange(start=start_date, end=end_date)


def run_with_retries(context: RuntimeContext, operation: Callable[[], T], *, label: str) -> T:
    """Run ``operation``, retrying on :class:`ConflictError`.

    ``operation`` must re-read whatever it updates on every attempt. After
    ``settings.max_conflict_retries`` failed attempts the last conflict is
    re-raised to the caller.
    """
    attempts = max(1, context.settings.max_conflict_retries)
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except ConflictError:
            if attempt == attempts:
                log.error("Giving up on %s after %d conflicting attempts", label, attempts)
                raise
            log.warning("Conflict while %s (attempt %d/%d); retrying", label, attempt, attempts)
    raise AssertionError("unreachable")  # pragma: no cover


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    A new :class:`RuntimeContext` is produced, so any cached data from the
    previous context is discarded with it.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def iter_in_period(records: Iterable[T], period: DateRange) -> Iterable[T]:
    """Yield records whose ``date`` attribute falls inside ``period``."""

    for record in records:
        if period.contains(record.date):
            yield record
