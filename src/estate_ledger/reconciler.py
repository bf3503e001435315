"""Stock and payment reconciler.

Maintains the derived counters cached on item and document rows
(``TotalPurchased``/``TotalSold``/``CurrentStock`` and
``AmountPaid``/``AmountReceived`` with ``PaymentStatus``) and audits them
against a replay of the transaction log.

Every counter update follows the same optimistic cycle: read the row fresh
from the workbook, compute the new values, then write them together with an
incremented ``Version`` only if the stored version is still the one that was
read. A mismatch raises :class:`ConflictError`, which
:func:`core_logic.run_with_retries` retries up to the configured bound.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Tuple

from . import core_logic, data_manager, log
from .constants import EntityType, ReferencePrefix, SheetName
from .errors import ValidationError
from .models import (
    ZERO,
    PaymentDrift,
    PaymentState,
    ReconciliationReport,
    StockReconciliation,
    StockState,
)


@dataclass(frozen=True)
class SettlementTarget:
    """Describes where a payable or receivable document keeps its settlement."""

    entity_type: EntityType
    sheet: SheetName
    total_field: str
    paid_field: str
    paid_column: str

    def state_of(self, row: Any, amount_paid: Decimal) -> PaymentState:
        return PaymentState(amount_paid=amount_paid, net_amount=getattr(row, self.total_field))


SETTLEMENT_TARGETS: Mapping[EntityType, SettlementTarget] = {
    EntityType.PURCHASE: SettlementTarget(
        EntityType.PURCHASE, SheetName.PURCHASES, "net_amount", "amount_paid", "AmountPaid"
    ),
    EntityType.SALES_INVOICE: SettlementTarget(
        EntityType.SALES_INVOICE, SheetName.SALES_INVOICES, "net_total", "amount_received", "AmountReceived"
    ),
    EntityType.PLOT_SALE: SettlementTarget(
        EntityType.PLOT_SALE, SheetName.PLOT_SALES, "final_price", "amount_received", "AmountReceived"
    ),
}

_TARGET_PREFIXES = {
    ReferencePrefix.PURCHASE.value: EntityType.PURCHASE,
    ReferencePrefix.SALES_INVOICE.value: EntityType.SALES_INVOICE,
    ReferencePrefix.PLOT_SALE.value: EntityType.PLOT_SALE,
}


@dataclass(frozen=True)
class StockMovement:
    """Replayed quantities for one item."""

    purchased: Decimal = ZERO
    sold: Decimal = ZERO


def settlement_target_for(reference: str) -> SettlementTarget:
    """Return the settlement target a document reference points at.

    Raises:
        ValidationError: If ``reference`` is not a purchase, sales invoice or
            plot sale serial.
    """

    entity_type = _TARGET_PREFIXES.get(reference[:2].upper())
    if entity_type is None:
        log.error("Reference '%s' cannot receive payments", reference)
        raise ValidationError(f"Reference {reference!r} is not a payable or receivable document")
    return SETTLEMENT_TARGETS[entity_type]


def increment_stock(
    context: core_logic.RuntimeContext,
    item_code: str,
    *,
    purchased: Decimal = ZERO,
    sold: Decimal = ZERO,
) -> data_manager.ItemRow:
    """Apply a purchased/sold delta to an item's stock counters.

    Negative deltas reverse an earlier contribution (used on cancellation).
    A change that lowers ``CurrentStock`` may not take it below zero.

    Raises:
        NotFoundError: If the item does not exist.
        ValidationError: If the update would leave negative stock.
        ConflictError: If the row keeps changing underneath the update after
            every retry.
    """

    def attempt() -> data_manager.ItemRow:
        item = data_manager.read_record(context.workbook, SheetName.ITEMS, item_code)
        total_purchased = item.total_purchased + purchased
        total_sold = item.total_sold + sold
        current_stock = item.current_stock + purchased - sold
        if current_stock < ZERO and current_stock < item.current_stock:
            log.error("Stock for item '%s' would drop to %s", item_code, current_stock)
            raise ValidationError(f"Insufficient stock for item '{item_code}'")
        version = data_manager.update_row(
            context.workbook,
            SheetName.ITEMS,
            item_code,
            field_values={
                "TotalPurchased": total_purchased,
                "TotalSold": total_sold,
                "CurrentStock": current_stock,
            },
            expected_version=item.version,
        )
        return replace(
            item,
            total_purchased=total_purchased,
            total_sold=total_sold,
            current_stock=current_stock,
            version=version,
        )

    updated = core_logic.run_with_retries(context, attempt, label=f"updating stock for item '{item_code}'")
    core_logic.invalidate_cache(context, SheetName.ITEMS)
    log.info(
        "Updated stock for item '%s' (purchased=%s, sold=%s, current=%s)",
        item_code,
        purchased,
        sold,
        updated.current_stock,
    )
    return updated


def increment_amount_paid(
    context: core_logic.RuntimeContext,
    target: SettlementTarget,
    reference: str,
    delta: Decimal,
) -> Any:
    """Add ``delta`` to a document's paid amount and recompute its status.

    Amount and status are written in one versioned update, so a reader never
    sees one without the other.

    Raises:
        NotFoundError: If the document does not exist.
        ValidationError: If the update would drive the paid amount negative.
        ConflictError: If retries are exhausted.
    """

    def attempt() -> Any:
        row = data_manager.read_record(context.workbook, target.sheet, reference)
        new_paid = getattr(row, target.paid_field) + delta
        if new_paid < ZERO:
            log.error("Paid amount for '%s' would become negative (%s)", reference, new_paid)
            raise ValidationError(f"Paid amount for {reference} cannot become negative")
        status = target.state_of(row, new_paid).status
        version = data_manager.update_row(
            context.workbook,
            target.sheet,
            reference,
            field_values={target.paid_column: new_paid, "PaymentStatus": status},
            expected_version=row.version,
        )
        return replace(row, **{target.paid_field: new_paid, "payment_status": status, "version": version})

    updated = core_logic.run_with_retries(context, attempt, label=f"settling '{reference}'")
    core_logic.invalidate_cache(context, target.sheet)
    log.info(
        "Updated settlement on %s '%s' (delta=%s, status=%s)",
        target.entity_type.value,
        reference,
        delta,
        updated.payment_status.value,
    )
    return updated


def stock_movements(context: core_logic.RuntimeContext) -> Dict[str, StockMovement]:
    """Replay purchases and invoice lines into per-item quantities.

    Only non-cancelled purchases and lines of non-cancelled invoices count.
    The sums are order-independent, so the replay gives the same totals
    whatever order the rows are read in.
    """

    purchased: Dict[str, Decimal] = {}
    for purchase in core_logic.list_purchases(context):
        if purchase.item_code is None:
            continue
        purchased[purchase.item_code] = purchased.get(purchase.item_code, ZERO) + purchase.quantity

    live_invoices = {invoice.serial_no for invoice in core_logic.list_sales_invoices(context)}
    sold: Dict[str, Decimal] = {}
    for line in core_logic.list_invoice_lines(context):
        if line.invoice_serial not in live_invoices:
            continue
        sold[line.item_code] = sold.get(line.item_code, ZERO) + line.quantity

    movements = {
        code: StockMovement(purchased=purchased.get(code, ZERO), sold=sold.get(code, ZERO))
        for code in set(purchased) | set(sold)
    }
    log.debug("Replayed stock movements for %d items", len(movements))
    return movements


def cached_stock_state(item: data_manager.ItemRow) -> StockState:
    return StockState(
        item_code=item.item_code,
        opening_stock=item.opening_stock,
        total_purchased=item.total_purchased,
        total_sold=item.total_sold,
        current_stock=item.current_stock,
    )


def replayed_stock_state(item: data_manager.ItemRow, movement: StockMovement) -> StockState:
    return StockState(
        item_code=item.item_code,
        opening_stock=item.opening_stock,
        total_purchased=movement.purchased,
        total_sold=movement.sold,
        current_stock=item.opening_stock + movement.purchased - movement.sold,
    )


def compare_stock(item: data_manager.ItemRow, movement: StockMovement) -> StockReconciliation:
    """Compare an item's cached counters against its replayed history."""

    cached = cached_stock_state(item)
    replayed = replayed_stock_state(item, movement)
    return StockReconciliation(
        item_code=item.item_code,
        expected=replayed.current_stock,
        actual=cached.current_stock,
        cached=cached,
        replayed=replayed,
    )


def reconcile_stock(context: core_logic.RuntimeContext, item_code: str) -> StockReconciliation:
    """Replay one item's history and report drift against its cached counter.

    Raises:
        NotFoundError: If the item is unknown.
    """

    item = core_logic.get_item(context, item_code)
    movement = stock_movements(context).get(item_code, StockMovement())
    result = compare_stock(item, movement)
    if result.has_drift:
        log.warning(
            "Stock drift on item '%s': expected %s, cached %s",
            item_code,
            result.expected,
            result.actual,
        )
    return result


def reconcile_all_stock(context: core_logic.RuntimeContext) -> Tuple[StockReconciliation, ...]:
    """Reconcile every readable item, one item at a time."""

    movements = stock_movements(context)
    results = tuple(
        compare_stock(item, movements.get(item.item_code, StockMovement()))
        for item in core_logic.list_items(context)
    )
    drifted = sum(1 for result in results if result.has_drift)
    log.info("Reconciled stock for %d items (%d drifted)", len(results), drifted)
    return results


def repair_stock(context: core_logic.RuntimeContext, reconciliation: StockReconciliation) -> data_manager.ItemRow:
    """Overwrite an item's cached counters with the replayed values."""

    replayed = reconciliation.replayed

    def attempt() -> data_manager.ItemRow:
        item = data_manager.read_record(context.workbook, SheetName.ITEMS, replayed.item_code)
        version = data_manager.update_row(
            context.workbook,
            SheetName.ITEMS,
            replayed.item_code,
            field_values={
                "TotalPurchased": replayed.total_purchased,
                "TotalSold": replayed.total_sold,
                "CurrentStock": replayed.current_stock,
            },
            expected_version=item.version,
        )
        return replace(
            item,
            total_purchased=replayed.total_purchased,
            total_sold=replayed.total_sold,
            current_stock=replayed.current_stock,
            version=version,
        )

    repaired = core_logic.run_with_retries(context, attempt, label=f"repairing stock for '{replayed.item_code}'")
    core_logic.invalidate_cache(context, SheetName.ITEMS)
    log.info("Repaired stock counters for item '%s' (current=%s)", replayed.item_code, replayed.current_stock)
    return repaired


def settlement_totals(context: core_logic.RuntimeContext) -> Dict[str, Decimal]:
    """Sum non-cancelled payments per settled document reference."""

    totals: Dict[str, Decimal] = {}
    for payment in core_logic.list_payments(context):
        if payment.target_ref is None:
            continue
        totals[payment.target_ref] = totals.get(payment.target_ref, ZERO) + payment.amount
    return totals


def _documents(context: core_logic.RuntimeContext, target: SettlementTarget) -> List[Any]:
    return core_logic.list_records(context, target.sheet)


def compare_payment_state(target: SettlementTarget, row: Any, paid: Decimal) -> PaymentDrift:
    """Compare one document's cached settlement against replayed payments."""

    return PaymentDrift(
        entity_type=target.entity_type,
        reference=row.serial_no,
        cached_amount=getattr(row, target.paid_field),
        expected_amount=paid,
        cached_status=row.payment_status,
        expected_status=target.state_of(row, paid).status,
    )


def audit_payment_states(context: core_logic.RuntimeContext) -> Tuple[PaymentDrift, ...]:
    """Replay payments for every live document and report each comparison.

    The result contains one entry per document; use
    :attr:`PaymentDrift.is_consistent` to pick out the drifted ones.
    """

    totals = settlement_totals(context)
    results: List[PaymentDrift] = []
    for target in SETTLEMENT_TARGETS.values():
        for row in _documents(context, target):
            results.append(compare_payment_state(target, row, totals.get(row.serial_no, ZERO)))
    drifted = [entry for entry in results if not entry.is_consistent]
    for entry in drifted:
        log.warning(
            "Payment drift on %s '%s': cached %s/%s, expected %s/%s",
            entry.entity_type.value,
            entry.reference,
            entry.cached_amount,
            entry.cached_status.value if entry.cached_status else None,
            entry.expected_amount,
            entry.expected_status.value,
        )
    log.info("Audited %d documents (%d drifted)", len(results), len(drifted))
    return tuple(results)


def repair_payment_state(context: core_logic.RuntimeContext, drift: PaymentDrift) -> Any:
    """Overwrite a document's paid amount and status with the replayed values."""

    target = SETTLEMENT_TARGETS[drift.entity_type]

    def attempt() -> Any:
        row = data_manager.read_record(context.workbook, target.sheet, drift.reference)
        version = data_manager.update_row(
            context.workbook,
            target.sheet,
            drift.reference,
            field_values={target.paid_column: drift.expected_amount, "PaymentStatus": drift.expected_status},
            expected_version=row.version,
        )
        return replace(
            row,
            **{target.paid_field: drift.expected_amount, "payment_status": drift.expected_status, "version": version},
        )

    repaired = core_logic.run_with_retries(context, attempt, label=f"repairing settlement on '{drift.reference}'")
    core_logic.invalidate_cache(context, target.sheet)
    log.info("Repaired settlement on %s '%s'", drift.entity_type.value, drift.reference)
    return repaired


def recompute_derived_fields(context: core_logic.RuntimeContext, *, repair: bool = True) -> ReconciliationReport:
    """Audit every derived counter and optionally rewrite the drifted ones.

    Running the job twice in a row is idempotent: the second run finds no
    drift and writes nothing.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        repair (bool): When ``False`` only report drift.

    Returns:
        ReconciliationReport: The stock and payment comparisons taken before
            any repair, plus the references that were rewritten.
    """

    stock = reconcile_all_stock(context)
    payments = audit_payment_states(context)
    repaired: List[str] = []
    if repair:
        for entry in _drifted_stock(stock):
            repair_stock(context, entry)
            repaired.append(entry.item_code)
        for drift in payments:
            if not drift.is_consistent:
                repair_payment_state(context, drift)
                repaired.append(drift.reference)
    report = ReconciliationReport(stock=stock, payments=payments, repaired=tuple(repaired))
    log.info(
        "Recomputed derived fields: %d drifted, %d repaired",
        report.drift_count,
        len(report.repaired),
    )
    return report


def _drifted_stock(results: Iterable[StockReconciliation]) -> List[StockReconciliation]:
    return [entry for entry in results if entry.has_drift]
