"""Write path for new transactions.

Each ``record_*`` operation validates a command, applies the derived-counter
update it implies (stock or settlement) through the reconciler, and only then
appends the transaction row. When a counter update fails after its retries,
counters already changed by the same operation are restored and no
transaction row is written. Every operation invalidates the cache buckets for
the sheets it touched.

Follow-up mutations of existing documents go through :func:`apply_patch`, a
closed dispatch table over ``(EntityType, patch type)`` pairs.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Type, Union

from . import core_logic, data_manager, log, reconciler
from .constants import (
    ENTITY_PREFIXES,
    PAYMENT_ENTITY_TYPES,
    EntityType,
    PaymentDirection,
    PaymentMethod,
    PaymentStatus,
    ReferencePrefix,
    SheetName,
)
from .errors import LedgerError, ValidationError
from .models import ZERO


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for recording a purchase from a supplier."""

    supplier_code: str
    quantity: Decimal
    rate: Decimal
    item_code: Optional[str] = None
    discount: Decimal = ZERO
    project_id: Optional[str] = None
    description: Optional[str] = None
    date: Optional[date] = None


@dataclass(frozen=True)
class InvoiceLineCommand:
    """One line of a sales invoice."""

    item_code: str
    quantity: Decimal
    rate: Decimal


@dataclass(frozen=True)
class SalesInvoiceCommand:
    """User intent for recording a sales invoice.

    ``amount_received`` is money taken with the invoice; it is stored as an
    incoming payment against the new invoice.
    """

    customer_id: str
    lines: Tuple[InvoiceLineCommand, ...]
    project_id: Optional[str] = None
    description: Optional[str] = None
    amount_received: Decimal = ZERO
    method: PaymentMethod = PaymentMethod.BANK
    date: Optional[date] = None


@dataclass(frozen=True)
class PlotSaleCommand:
    """User intent for recording the sale of a plot; the booking amount is paid up front."""

    plot_number: str
    customer_id: str
    final_price: Decimal
    project_id: Optional[str] = None
    booking_amount: Decimal = ZERO
    method: PaymentMethod = PaymentMethod.BANK
    date: Optional[date] = None


@dataclass(frozen=True)
class ExpensePaymentCommand:
    """User intent for an outgoing payment that settles no document."""

    amount: Decimal
    description: Optional[str] = None
    method: PaymentMethod = PaymentMethod.BANK
    counterparty_id: Optional[str] = None
    project_id: Optional[str] = None
    pay_to: Optional[str] = None
    date: Optional[date] = None


@dataclass(frozen=True)
class PaymentCommand:
    """User intent for settling part or all of a purchase, invoice or plot sale."""

    target_ref: str
    amount: Decimal
    date: Optional[date] = None
    description: Optional[str] = None
    method: PaymentMethod = PaymentMethod.BANK


@dataclass(frozen=True)
class RecordPaymentPatch:
    """Patch that appends a settlement payment to a document."""

    amount: Decimal
    date: Optional[date] = None
    description: Optional[str] = None
    method: PaymentMethod = PaymentMethod.BANK


@dataclass(frozen=True)
class CancelPatch:
    """Patch that cancels a transaction and reverses its derived counters."""

    reason: Optional[str] = None


Patch = Union[RecordPaymentPatch, CancelPatch]

_ENTITY_SHEETS: Mapping[EntityType, SheetName] = {
    EntityType.PURCHASE: SheetName.PURCHASES,
    EntityType.BANK_PAYMENT: SheetName.PAYMENTS,
    EntityType.CASH_PAYMENT: SheetName.PAYMENTS,
    EntityType.SALES_INVOICE: SheetName.SALES_INVOICES,
    EntityType.PLOT_SALE: SheetName.PLOT_SALES,
}

_SETTLEMENT_DIRECTIONS: Mapping[EntityType, PaymentDirection] = {
    EntityType.PURCHASE: PaymentDirection.OUT,
    EntityType.SALES_INVOICE: PaymentDirection.IN,
    EntityType.PLOT_SALE: PaymentDirection.IN,
}


def _resolve_date(candidate: Optional[date]) -> date:
    """Return ``candidate`` or today's UTC date when it is omitted."""

    return candidate if candidate is not None else datetime.now(UTC).date()


def require_positive(value: Decimal, field_name: str) -> None:
    """Validate that a quantity or amount is strictly positive.

    Raises:
        ValidationError: If ``value`` is zero or negative.
    """
    if value <= ZERO:
        log.error("%s validation failed: %s", field_name, value)
        raise ValidationError(f"{field_name} must be greater than zero")


def require_nonnegative(value: Decimal, field_name: str) -> None:
    """Validate that a monetary value is zero or positive.

    Raises:
        ValidationError: If ``value`` is negative.
    """
    if value < ZERO:
        log.error("%s validation failed: %s", field_name, value)
        raise ValidationError(f"{field_name} must be zero or positive")


def _require_active(record: Any, label: str, key: str) -> None:
    if not record.is_active:
        log.warning("Attempted to use inactive %s '%s'", label, key)
        raise ValidationError(f"{label.capitalize()} '{key}' is inactive")


def _allocate(context: core_logic.RuntimeContext, prefix: ReferencePrefix) -> Tuple[str, int]:
    serial = data_manager.next_reference(context.workbook, prefix.value)
    seq = data_manager.next_sequence(context.workbook)
    return serial, seq


def record_purchase(context: core_logic.RuntimeContext, command: PurchaseCommand) -> data_manager.PurchaseRow:
    """Validate and append a purchase, crediting the item's stock.

    The net amount is ``quantity * rate - discount``. When an item is given,
    its ``TotalPurchased`` and ``CurrentStock`` grow by ``quantity``.

    Returns:
        data_manager.PurchaseRow: The appended purchase.

    Raises:
        NotFoundError: If the supplier, project or item is unknown.
        ValidationError: If the supplier or item is inactive, or if the
            quantity, rate, discount or resulting net amount is invalid.
    """
    supplier = core_logic.get_supplier(context, command.supplier_code)
    _require_active(supplier, "supplier", command.supplier_code)
    if command.project_id is not None:
        core_logic.get_project(context, command.project_id)
    if command.item_code is not None:
        item = core_logic.get_item(context, command.item_code)
        _require_active(item, "item", command.item_code)
    require_positive(command.quantity, "Quantity")
    require_nonnegative(command.rate, "Rate")
    require_nonnegative(command.discount, "Discount")
    net_amount = command.quantity * command.rate - command.discount
    require_nonnegative(net_amount, "Net amount")

    if command.item_code is not None:
        reconciler.increment_stock(context, command.item_code, purchased=command.quantity)

    serial, seq = _allocate(context, ReferencePrefix.PURCHASE)
    purchase = data_manager.PurchaseRow(
        serial_no=serial,
        seq=seq,
        date=_resolve_date(command.date),
        supplier_code=command.supplier_code,
        project_id=command.project_id,
        item_code=command.item_code,
        description=command.description,
        quantity=command.quantity,
        rate=command.rate,
        discount=command.discount,
        net_amount=net_amount,
        amount_paid=ZERO,
        payment_status=PaymentStatus.UNPAID,
        version=0,
        cancelled=False,
    )
    data_manager.append_record(context.workbook, SheetName.PURCHASES, purchase)
    core_logic.invalidate_cache(context, SheetName.PURCHASES)
    log.info(
        "Recorded purchase '%s' from supplier '%s' (net=%s)",
        serial,
        command.supplier_code,
        net_amount,
    )
    return purchase


def _apply_sold_deltas(context: core_logic.RuntimeContext, deltas: Mapping[str, Decimal]) -> None:
    """Apply per-item sold deltas to every item, or to none of them.

    If one item's update fails, the items already updated are restored before
    the error propagates.
    """

    applied: List[Tuple[str, Decimal]] = []
    try:
        for item_code, quantity in deltas.items():
            reconciler.increment_stock(context, item_code, sold=quantity)
            applied.append((item_code, quantity))
    except LedgerError:
        for item_code, quantity in reversed(applied):
            log.warning("Restoring stock for item '%s' after a failed stock update", item_code)
            reconciler.increment_stock(context, item_code, sold=-quantity)
        raise


def record_sales_invoice(
    context: core_logic.RuntimeContext, command: SalesInvoiceCommand
) -> data_manager.SalesInvoiceRow:
    """Validate and append a sales invoice with its lines.

    Stock for every line is checked before anything is written; a line that
    would drive an item's stock below zero rejects the whole invoice. Any
    ``amount_received`` is then recorded as an incoming payment.

    Raises:
        NotFoundError: If the customer, project or an item is unknown.
        ValidationError: If the invoice has no lines, a line is invalid, or
            stock is insufficient.
    """
    customer = core_logic.get_customer(context, command.customer_id)
    _require_active(customer, "customer", command.customer_id)
    if command.project_id is not None:
        core_logic.get_project(context, command.project_id)
    if not command.lines:
        log.error("Sales invoice for '%s' has no lines", command.customer_id)
        raise ValidationError("A sales invoice needs at least one line")
    require_nonnegative(command.amount_received, "Amount received")

    demand: Dict[str, Decimal] = {}
    for line in command.lines:
        require_positive(line.quantity, "Quantity")
        require_nonnegative(line.rate, "Rate")
        demand[line.item_code] = demand.get(line.item_code, ZERO) + line.quantity
    for item_code, quantity in demand.items():
        item = core_logic.get_item(context, item_code)
        _require_active(item, "item", item_code)
        if item.current_stock - quantity < ZERO:
            log.error(
                "Insufficient stock for item '%s': have %s, need %s",
                item_code,
                item.current_stock,
                quantity,
            )
            raise ValidationError(
                f"Insufficient stock for item '{item_code}': have {item.current_stock}, need {quantity}"
            )

    _apply_sold_deltas(context, demand)

    serial, seq = _allocate(context, ReferencePrefix.SALES_INVOICE)
    when = _resolve_date(command.date)
    net_total = sum((line.quantity * line.rate for line in command.lines), ZERO)
    invoice = data_manager.SalesInvoiceRow(
        serial_no=serial,
        seq=seq,
        date=when,
        customer_id=command.customer_id,
        project_id=command.project_id,
        description=command.description,
        net_total=net_total,
        amount_received=ZERO,
        payment_status=PaymentStatus.UNPAID,
        version=0,
        cancelled=False,
    )
    data_manager.append_record(context.workbook, SheetName.SALES_INVOICES, invoice)
    for line in command.lines:
        data_manager.append_record(
            context.workbook,
            SheetName.INVOICE_LINES,
            data_manager.InvoiceLineRow(
                invoice_serial=serial,
                item_code=line.item_code,
                quantity=line.quantity,
                rate=line.rate,
            ),
        )
    core_logic.invalidate_cache(context, SheetName.SALES_INVOICES, SheetName.INVOICE_LINES)
    log.info(
        "Recorded sales invoice '%s' for customer '%s' (lines=%d, net=%s)",
        serial,
        command.customer_id,
        len(command.lines),
        net_total,
    )

    if command.amount_received > ZERO:
        return record_payment(
            context,
            PaymentCommand(
                target_ref=serial,
                amount=command.amount_received,
                date=when,
                description=f"Receipt with invoice {serial}",
                method=command.method,
            ),
        )
    return invoice


def record_plot_sale(context: core_logic.RuntimeContext, command: PlotSaleCommand) -> data_manager.PlotSaleRow:
    """Validate and append a plot sale, recording any booking amount.

    Raises:
        NotFoundError: If the customer or project is unknown.
        ValidationError: If the price is not positive, the booking amount is
            negative, or the plot already has a live sale in the project.
    """
    customer = core_logic.get_customer(context, command.customer_id)
    _require_active(customer, "customer", command.customer_id)
    if command.project_id is not None:
        core_logic.get_project(context, command.project_id)
    plot_number = command.plot_number.strip()
    if not plot_number:
        log.error("Plot sale for '%s' is missing a plot number", command.customer_id)
        raise ValidationError("Plot number is required")
    require_positive(command.final_price, "Final price")
    require_nonnegative(command.booking_amount, "Booking amount")
    for existing in core_logic.list_plot_sales(context):
        if existing.plot_number == plot_number and existing.project_id == command.project_id:
            log.error("Plot '%s' already sold as '%s'", plot_number, existing.serial_no)
            raise ValidationError(f"Plot {plot_number} is already sold ({existing.serial_no})")

    serial, seq = _allocate(context, ReferencePrefix.PLOT_SALE)
    when = _resolve_date(command.date)
    sale = data_manager.PlotSaleRow(
        serial_no=serial,
        seq=seq,
        date=when,
        plot_number=plot_number,
        project_id=command.project_id,
        customer_id=command.customer_id,
        final_price=command.final_price,
        amount_received=ZERO,
        payment_status=PaymentStatus.UNPAID,
        version=0,
        cancelled=False,
    )
    data_manager.append_record(context.workbook, SheetName.PLOT_SALES, sale)
    core_logic.invalidate_cache(context, SheetName.PLOT_SALES)
    log.info("Recorded plot sale '%s' of plot '%s' (price=%s)", serial, plot_number, command.final_price)

    if command.booking_amount > ZERO:
        return record_payment(
            context,
            PaymentCommand(
                target_ref=serial,
                amount=command.booking_amount,
                date=when,
                description=f"Booking amount for plot {plot_number}",
                method=command.method,
            ),
        )
    return sale


def _payment_prefix(method: PaymentMethod) -> ReferencePrefix:
    return ENTITY_PREFIXES[PAYMENT_ENTITY_TYPES[method]]


def record_expense_payment(
    context: core_logic.RuntimeContext, command: ExpensePaymentCommand
) -> data_manager.PaymentRow:
    """Append an outgoing bank or cash payment that settles no document.

    Raises:
        NotFoundError: If the supplier or project is unknown.
        ValidationError: If the amount is not positive.
    """
    require_positive(command.amount, "Amount")
    if command.counterparty_id is not None:
        core_logic.get_supplier(context, command.counterparty_id)
    if command.project_id is not None:
        core_logic.get_project(context, command.project_id)

    serial, seq = _allocate(context, _payment_prefix(command.method))
    payment = data_manager.PaymentRow(
        serial_no=serial,
        seq=seq,
        date=_resolve_date(command.date),
        method=command.method,
        direction=PaymentDirection.OUT,
        counterparty_id=command.counterparty_id,
        pay_to=command.pay_to,
        project_id=command.project_id,
        target_ref=None,
        description=command.description,
        amount=command.amount,
        cancelled=False,
    )
    data_manager.append_record(context.workbook, SheetName.PAYMENTS, payment)
    core_logic.invalidate_cache(context, SheetName.PAYMENTS)
    log.info("Recorded %s payment '%s' (amount=%s)", command.method.value.lower(), serial, command.amount)
    return payment


def record_payment(context: core_logic.RuntimeContext, command: PaymentCommand) -> Any:
    """Settle part or all of a document and return the updated document.

    The document's paid amount and status are updated in one versioned write
    before the payment row is appended. Purchases are settled by outgoing
    payments to their supplier; invoices and plot sales by incoming payments
    from their customer. Paying more than the net amount is allowed and marks
    the document ``paid``.

    Raises:
        NotFoundError: If the document is unknown.
        ValidationError: If the amount is not positive, the reference is not a
            payable or receivable document, or the document is cancelled.
        ConflictError: If the settlement update keeps conflicting.
    """
    require_positive(command.amount, "Amount")
    target = reconciler.settlement_target_for(command.target_ref)
    document = core_logic.get_record(context, target.sheet, command.target_ref)
    if document.cancelled:
        log.warning("Attempted payment against cancelled '%s'", command.target_ref)
        raise ValidationError(f"{command.target_ref} is cancelled")

    direction = _SETTLEMENT_DIRECTIONS[target.entity_type]
    counterparty = document.supplier_code if target.entity_type is EntityType.PURCHASE else document.customer_id
    updated = reconciler.increment_amount_paid(context, target, command.target_ref, command.amount)

    serial, seq = _allocate(context, _payment_prefix(command.method))
    payment = data_manager.PaymentRow(
        serial_no=serial,
        seq=seq,
        date=_resolve_date(command.date),
        method=command.method,
        direction=direction,
        counterparty_id=counterparty,
        pay_to=None,
        project_id=document.project_id,
        target_ref=command.target_ref,
        description=command.description,
        amount=command.amount,
        cancelled=False,
    )
    data_manager.append_record(context.workbook, SheetName.PAYMENTS, payment)
    core_logic.invalidate_cache(context, SheetName.PAYMENTS)
    log.info(
        "Recorded payment '%s' against '%s' (amount=%s, status=%s)",
        serial,
        command.target_ref,
        command.amount,
        updated.payment_status.value,
    )
    return updated


def _set_cancelled(context: core_logic.RuntimeContext, sheet: SheetName, reference: str) -> Any:
    def attempt() -> Any:
        row = data_manager.read_record(context.workbook, sheet, reference)
        version = getattr(row, "version", None)
        new_version = data_manager.update_row(
            context.workbook,
            sheet,
            reference,
            field_values={"Cancelled": True},
            expected_version=version,
        )
        if version is None:
            return replace(row, cancelled=True)
        return replace(row, cancelled=True, version=new_version)

    cancelled = core_logic.run_with_retries(context, attempt, label=f"cancelling '{reference}'")
    core_logic.invalidate_cache(context, sheet)
    return cancelled


def _live_settlements(context: core_logic.RuntimeContext, reference: str) -> List[data_manager.PaymentRow]:
    return [payment for payment in core_logic.list_payments(context) if payment.target_ref == reference]


def _reverse_payment(context: core_logic.RuntimeContext, payment: data_manager.PaymentRow) -> None:
    if payment.target_ref is None:
        return
    target = reconciler.settlement_target_for(payment.target_ref)
    reconciler.increment_amount_paid(context, target, payment.target_ref, -payment.amount)


def cancel_transaction(context: core_logic.RuntimeContext, entity_type: EntityType, reference: str) -> Any:
    """Cancel a transaction and reverse everything it contributed.

    * purchase: ``TotalPurchased``/``CurrentStock`` drop by its quantity.
    * sales invoice: each line's quantity returns to stock.
    * payment: the settled document's paid amount and status are rolled back.

    Cancelling a purchase, invoice or plot sale also cancels the live
    payments that settle it. Cancelled rows stay in the workbook and are
    excluded from every later aggregate.

    Returns:
        The cancelled row.

    Raises:
        NotFoundError: If ``reference`` is unknown.
        ValidationError: If the row is already cancelled, belongs to another
            entity type, or reversing it would drive stock below zero.
    """
    sheet = _ENTITY_SHEETS[entity_type]
    row = core_logic.get_record(context, sheet, reference)
    if row.cancelled:
        log.warning("Attempted to cancel '%s' twice", reference)
        raise ValidationError(f"{reference} is already cancelled")
    if sheet is SheetName.PAYMENTS and PAYMENT_ENTITY_TYPES[row.method] is not entity_type:
        log.error("'%s' is a %s, not a %s", reference, PAYMENT_ENTITY_TYPES[row.method].value, entity_type.value)
        raise ValidationError(f"{reference} is not a {entity_type.value}")

    if entity_type is EntityType.PURCHASE and row.item_code is not None:
        reconciler.increment_stock(context, row.item_code, purchased=-row.quantity)
    elif entity_type is EntityType.SALES_INVOICE:
        returned: Dict[str, Decimal] = {}
        for line in core_logic.list_invoice_lines(context):
            if line.invoice_serial == reference:
                returned[line.item_code] = returned.get(line.item_code, ZERO) - line.quantity
        _apply_sold_deltas(context, returned)
    elif sheet is SheetName.PAYMENTS:
        _reverse_payment(context, row)

    if sheet is not SheetName.PAYMENTS:
        for payment in _live_settlements(context, reference):
            _set_cancelled(context, SheetName.PAYMENTS, payment.serial_no)
            log.info("Cancelled settlement '%s' with '%s'", payment.serial_no, reference)

    cancelled = _set_cancelled(context, sheet, reference)
    log.info("Cancelled %s '%s'", entity_type.value, reference)
    return cancelled


def _apply_payment_patch(
    context: core_logic.RuntimeContext, entity_type: EntityType, reference: str, patch: RecordPaymentPatch
) -> Any:
    target = reconciler.settlement_target_for(reference)
    if target.entity_type is not entity_type:
        log.error("'%s' is a %s, not a %s", reference, target.entity_type.value, entity_type.value)
        raise ValidationError(f"{reference} is not a {entity_type.value}")
    return record_payment(
        context,
        PaymentCommand(
            target_ref=reference,
            amount=patch.amount,
            date=patch.date,
            description=patch.description,
            method=patch.method,
        ),
    )


def _apply_cancel_patch(
    context: core_logic.RuntimeContext, entity_type: EntityType, reference: str, patch: CancelPatch
) -> Any:
    if patch.reason:
        log.info("Cancelling '%s': %s", reference, patch.reason)
    return cancel_transaction(context, entity_type, reference)


PatchHandler = Callable[[core_logic.RuntimeContext, EntityType, str, Any], Any]

PATCH_HANDLERS: Mapping[Tuple[EntityType, Type[Any]], PatchHandler] = {
    (EntityType.PURCHASE, RecordPaymentPatch): _apply_payment_patch,
    (EntityType.SALES_INVOICE, RecordPaymentPatch): _apply_payment_patch,
    (EntityType.PLOT_SALE, RecordPaymentPatch): _apply_payment_patch,
    (EntityType.PURCHASE, CancelPatch): _apply_cancel_patch,
    (EntityType.BANK_PAYMENT, CancelPatch): _apply_cancel_patch,
    (EntityType.CASH_PAYMENT, CancelPatch): _apply_cancel_patch,
    (EntityType.SALES_INVOICE, CancelPatch): _apply_cancel_patch,
    (EntityType.PLOT_SALE, CancelPatch): _apply_cancel_patch,
}


def supported_patches() -> Sequence[Tuple[EntityType, Type[Any]]]:
    """Return the supported ``(entity type, patch type)`` pairs."""

    return tuple(PATCH_HANDLERS)


def apply_patch(
    context: core_logic.RuntimeContext, entity_type: EntityType, reference: str, patch: Patch
) -> Any:
    """Apply ``patch`` to the ``entity_type`` row identified by ``reference``.

    Raises:
        ValidationError: If the pair is not in :data:`PATCH_HANDLERS`, plus
            whatever the handler raises.
    """
    handler = PATCH_HANDLERS.get((entity_type, type(patch)))
    if handler is None:
        log.error("Unsupported patch %s for %s", type(patch).__name__, entity_type.value)
        raise ValidationError(f"{type(patch).__name__} is not supported for {entity_type.value}")
    return handler(context, entity_type, reference, patch)
