"""Ledger builder.

Merges the purchase, payment, sales-invoice and plot-sale streams that
reference one counterparty into a single chronological ledger with a running
balance. The builder is a pure read-then-aggregate step: it never writes, and
rebuilding from the same records always yields the same ledger.

Posting rules per counterparty kind:

* supplier: purchases debit, outgoing payments credit.
* customer: sales invoices and plot sales debit, incoming payments credit.
* project: purchases and outgoing non-settlement payments debit (cost),
  sales invoices and plot sales credit (revenue).

A date range filters entries *before* the running balance is computed, so a
period ledger always opens at zero instead of carrying the prior balance.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from . import core_logic, data_manager, log
from .constants import (
    PAYMENT_ENTITY_TYPES,
    CounterpartyKind,
    Direction,
    EntityType,
    PaymentDirection,
    SheetName,
)
from .models import ZERO, CounterpartyKey, DateRange, Ledger, LedgerEntry, SkippedRecord, Transaction

ENTRY_LABELS: Dict[EntityType, str] = {
    EntityType.PURCHASE: "Purchase",
    EntityType.BANK_PAYMENT: "Bank Payment",
    EntityType.CASH_PAYMENT: "Cash Payment",
    EntityType.SALES_INVOICE: "Sales Invoice",
    EntityType.PLOT_SALE: "Plot Sale",
}

# Project ledgers post costs as debits and revenue as credits.
PROJECT_POSTINGS: Dict[EntityType, Direction] = {
    EntityType.PURCHASE: Direction.DEBIT,
    EntityType.BANK_PAYMENT: Direction.DEBIT,
    EntityType.CASH_PAYMENT: Direction.DEBIT,
    EntityType.SALES_INVOICE: Direction.CREDIT,
    EntityType.PLOT_SALE: Direction.CREDIT,
}

_LEDGER_SHEETS: Dict[CounterpartyKind, Tuple[SheetName, ...]] = {
    CounterpartyKind.SUPPLIER: (SheetName.PURCHASES, SheetName.PAYMENTS),
    CounterpartyKind.CUSTOMER: (SheetName.SALES_INVOICES, SheetName.PLOT_SALES, SheetName.PAYMENTS),
    CounterpartyKind.PROJECT: (
        SheetName.PURCHASES,
        SheetName.PAYMENTS,
        SheetName.SALES_INVOICES,
        SheetName.PLOT_SALES,
    ),
}


def purchase_transaction(row: data_manager.PurchaseRow) -> Transaction:
    """Normalize a purchase row; purchases debit the supplier's ledger."""

    description = row.description or f"{row.item_code or 'Purchase'} - Qty: {row.quantity}"
    return Transaction(
        reference=row.serial_no,
        seq=row.seq,
        date=row.date,
        amount=row.net_amount,
        direction=Direction.DEBIT,
        entity_type=EntityType.PURCHASE,
        counterparty_id=row.supplier_code,
        project_id=row.project_id,
        item_code=row.item_code,
        description=description,
        cancelled=row.cancelled,
        quantity=row.quantity,
    )


def payment_transaction(row: data_manager.PaymentRow) -> Transaction:
    """Normalize a payment row; a payment credits its counterparty's ledger."""

    fallback = "Receipt" if row.direction is PaymentDirection.IN else "Payment"
    return Transaction(
        reference=row.serial_no,
        seq=row.seq,
        date=row.date,
        amount=row.amount,
        direction=Direction.CREDIT,
        entity_type=PAYMENT_ENTITY_TYPES[row.method],
        counterparty_id=row.counterparty_id,
        project_id=row.project_id,
        item_code=None,
        description=row.description or fallback,
        cancelled=row.cancelled,
        settles=row.target_ref,
    )


def invoice_transaction(row: data_manager.SalesInvoiceRow) -> Transaction:
    """Normalize a sales invoice; invoices debit the customer's ledger."""

    return Transaction(
        reference=row.serial_no,
        seq=row.seq,
        date=row.date,
        amount=row.net_total,
        direction=Direction.DEBIT,
        entity_type=EntityType.SALES_INVOICE,
        counterparty_id=row.customer_id,
        project_id=row.project_id,
        item_code=None,
        description=row.description or f"Invoice {row.serial_no}",
        cancelled=row.cancelled,
    )


def plot_sale_transaction(row: data_manager.PlotSaleRow) -> Transaction:
    """Normalize a plot sale; the final price debits the buyer's ledger."""

    return Transaction(
        reference=row.serial_no,
        seq=row.seq,
        date=row.date,
        amount=row.final_price,
        direction=Direction.DEBIT,
        entity_type=EntityType.PLOT_SALE,
        counterparty_id=row.customer_id,
        project_id=row.project_id,
        item_code=None,
        description=f"Plot {row.plot_number}",
        cancelled=row.cancelled,
    )


def require_counterparty(context: core_logic.RuntimeContext, counterparty: CounterpartyKey) -> None:
    """Ensure the counterparty exists in master data.

    Raises:
        NotFoundError: If the supplier, customer or project is unknown.
    """

    if counterparty.kind is CounterpartyKind.SUPPLIER:
        core_logic.get_supplier(context, counterparty.reference)
    elif counterparty.kind is CounterpartyKind.CUSTOMER:
        core_logic.get_customer(context, counterparty.reference)
    else:
        core_logic.get_project(context, counterparty.reference)


def collect_transactions(context: core_logic.RuntimeContext, counterparty: CounterpartyKey) -> List[Transaction]:
    """Gather the non-cancelled transactions that post to ``counterparty``.

    The direction on each returned transaction is already the posting side
    for this counterparty's ledger.
    """

    ref = counterparty.reference
    collected: List[Transaction] = []

    if counterparty.kind is CounterpartyKind.SUPPLIER:
        collected.extend(
            purchase_transaction(row)
            for row in core_logic.list_purchases(context)
            if row.supplier_code == ref
        )
        collected.extend(
            payment_transaction(row)
            for row in core_logic.list_payments(context)
            if row.direction is PaymentDirection.OUT and row.counterparty_id == ref
        )
    elif counterparty.kind is CounterpartyKind.CUSTOMER:
        collected.extend(
            invoice_transaction(row)
            for row in core_logic.list_sales_invoices(context)
            if row.customer_id == ref
        )
        collected.extend(
            plot_sale_transaction(row)
            for row in core_logic.list_plot_sales(context)
            if row.customer_id == ref
        )
        collected.extend(
            payment_transaction(row)
            for row in core_logic.list_payments(context)
            if row.direction is PaymentDirection.IN and row.counterparty_id == ref
        )
    else:
        project_rows: List[Transaction] = []
        project_rows.extend(
            purchase_transaction(row)
            for row in core_logic.list_purchases(context)
            if row.project_id == ref
        )
        # Settlement payments are already represented by the document they settle.
        project_rows.extend(
            payment_transaction(row)
            for row in core_logic.list_payments(context)
            if row.direction is PaymentDirection.OUT and row.project_id == ref and row.target_ref is None
        )
        project_rows.extend(
            invoice_transaction(row)
            for row in core_logic.list_sales_invoices(context)
            if row.project_id == ref
        )
        project_rows.extend(
            plot_sale_transaction(row)
            for row in core_logic.list_plot_sales(context)
            if row.project_id == ref
        )
        collected.extend(_repost(txn, PROJECT_POSTINGS[txn.entity_type]) for txn in project_rows)

    return [txn for txn in collected if not txn.cancelled]


def _repost(transaction: Transaction, direction: Direction) -> Transaction:
    if transaction.direction is direction:
        return transaction
    return replace(transaction, direction=direction)


def order_transactions(transactions: Iterable[Transaction]) -> List[Transaction]:
    """Sort by date, then creation sequence, then reference."""

    return sorted(transactions, key=lambda txn: txn.sort_key)


def assemble_ledger(
    counterparty: CounterpartyKey,
    transactions: Iterable[Transaction],
    *,
    period: DateRange = DateRange(),
    skipped: Sequence[SkippedRecord] = (),
    label_for: Callable[[Transaction], str] = lambda txn: ENTRY_LABELS[txn.entity_type],
) -> Ledger:
    """Filter, order and accumulate ``transactions`` into a :class:`Ledger`.

    Cancelled transactions and those outside ``period`` are dropped before
    the running balance starts, so the first entry of a period ledger is
    measured from zero.
    """

    in_scope = [txn for txn in transactions if not txn.cancelled and period.contains(txn.date)]
    entries: List[LedgerEntry] = []
    running = ZERO
    total_debit = ZERO
    total_credit = ZERO
    for txn in order_transactions(in_scope):
        debit = txn.amount if txn.direction is Direction.DEBIT else ZERO
        credit = txn.amount if txn.direction is Direction.CREDIT else ZERO
        running += debit - credit
        total_debit += debit
        total_credit += credit
        entries.append(
            LedgerEntry(
                date=txn.date,
                type=label_for(txn),
                reference=txn.reference,
                description=txn.description,
                debit=debit,
                credit=credit,
                running_balance=running,
            )
        )

    return Ledger(
        counterparty=counterparty,
        period=period,
        entries=tuple(entries),
        total_debit=total_debit,
        total_credit=total_credit,
        balance=running,
        skipped=tuple(skipped),
    )


def build_ledger(
    context: core_logic.RuntimeContext,
    counterparty: CounterpartyKey,
    date_range: Optional[DateRange] = None,
) -> Ledger:
    """Build the ledger for ``counterparty``, optionally limited to a period.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        counterparty (CounterpartyKey): Supplier code, customer id or project
            id together with its kind.
        date_range (DateRange | None): Optional inclusive window. Entries
            outside it are excluded and the running balance restarts at zero.

    Returns:
        Ledger: Entries, debit and credit totals, the closing balance, and any
            rows skipped because they could not be read.

    Raises:
        NotFoundError: If the counterparty is unknown.
        ValidationError: If the date range starts after it ends.
    """

    period = date_range or DateRange()
    # Re-validate ranges built directly rather than via resolve_date_range.
    period = core_logic.resolve_date_range(period.start, period.end)
    require_counterparty(context, counterparty)

    transactions = collect_transactions(context, counterparty)
    skipped = core_logic.skipped_records(context, *_LEDGER_SHEETS[counterparty.kind])
    ledger = assemble_ledger(counterparty, transactions, period=period, skipped=skipped)
    log.info(
        "Built %s ledger with %d entries (balance=%s, skipped=%d)",
        counterparty,
        len(ledger.entries),
        ledger.balance,
        len(ledger.skipped),
    )
    return ledger


def outstanding_balances(
    context: core_logic.RuntimeContext,
    kind: CounterpartyKind,
    references: Iterable[str],
) -> Dict[str, Decimal]:
    """Return the all-time closing balance for each counterparty reference.

    Each counterparty is built on its own so only one counterparty's
    transactions are held at a time.
    """

    balances: Dict[str, Decimal] = {}
    for reference in references:
        ledger = build_ledger(context, CounterpartyKey(kind=kind, reference=reference))
        balances[reference] = ledger.balance
    return balances
