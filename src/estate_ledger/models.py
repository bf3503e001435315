"""Shared data model for the ledger and reconciliation engine.

Everything here is an immutable value object. Rows read from the workbook
live in :mod:`estate_ledger.data_manager`; this module holds the normalized
transaction view the engine computes over and the derived, never-persisted
results it hands back to callers.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from .constants import CounterpartyKind, Direction, EntityType, PaymentStatus

ZERO = Decimal("0")


@dataclass(frozen=True)
class DateRange:
    """Inclusive date window; an open end means unbounded on that side."""

    start: Optional[date] = None
    end: Optional[date] = None

    def contains(self, moment: date) -> bool:
        if self.start is not None and moment < self.start:
            return False
        if self.end is not None and moment > self.end:
            return False
        return True

    @property
    def is_open(self) -> bool:
        return self.start is None and self.end is None

    def labels(self) -> Dict[str, str]:
        """Return display labels, using "Beginning"/"Present" for open ends."""

        return {
            "startDate": self.start.isoformat() if self.start else "Beginning",
            "endDate": self.end.isoformat() if self.end else "Present",
        }


@dataclass(frozen=True)
class SkippedRecord:
    """A stored row excluded from an aggregate because it could not be read."""

    sheet: str
    row_number: int
    reason: str


@dataclass(frozen=True)
class CounterpartyKey:
    """Identifies whose ledger to build: a supplier, customer or project."""

    kind: CounterpartyKind
    reference: str

    @classmethod
    def parse(cls, raw: str) -> "CounterpartyKey":
        """Parse ``kind:reference`` strings such as ``supplier:SUP-01``."""

        kind, sep, reference = raw.partition(":")
        if not sep or not reference.strip():
            raise ValueError(f"Counterparty must look like 'kind:reference', got {raw!r}")
        return cls(kind=CounterpartyKind(kind.strip().lower()), reference=reference.strip())

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.reference}"


@dataclass(frozen=True)
class Transaction:
    """Normalized view over purchases, payments, invoices and plot sales.

    ``direction`` is the side the transaction posts to in the ledger of its
    own counterparty (supplier or customer). Project ledgers apply their own
    posting rules on top.
    """

    reference: str
    seq: int
    date: date
    amount: Decimal
    direction: Direction
    entity_type: EntityType
    counterparty_id: Optional[str]
    project_id: Optional[str]
    item_code: Optional[str]
    description: str
    cancelled: bool = False
    quantity: Decimal = ZERO
    settles: Optional[str] = None

    @property
    def sort_key(self) -> Tuple[date, int, str]:
        return (self.date, self.seq, self.reference)


@dataclass(frozen=True)
class LedgerEntry:
    """One computed ledger line with its running balance."""

    date: date
    type: str
    reference: str
    description: str
    debit: Decimal
    credit: Decimal
    running_balance: Decimal

    def as_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "type": self.type,
            "reference": self.reference,
            "description": self.description,
            "debit": self.debit,
            "credit": self.credit,
            "runningBalance": self.running_balance,
        }


@dataclass(frozen=True)
class Ledger:
    """Chronological ledger for one counterparty over one period."""

    counterparty: CounterpartyKey
    period: DateRange
    entries: Tuple[LedgerEntry, ...]
    total_debit: Decimal
    total_credit: Decimal
    balance: Decimal
    skipped: Tuple[SkippedRecord, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "counterparty": str(self.counterparty),
            "period": self.period.labels(),
            "entries": [entry.as_dict() for entry in self.entries],
            "totalDebit": self.total_debit,
            "totalCredit": self.total_credit,
            "balance": self.balance,
            "skipped": [asdict(record) for record in self.skipped],
        }


@dataclass(frozen=True)
class StockState:
    """Stock counters for one item.

    ``current_stock`` is stored rather than derived so that the cached
    counter read from the workbook can be compared against a replay.
    """

    item_code: str
    opening_stock: Decimal
    total_purchased: Decimal
    total_sold: Decimal
    current_stock: Decimal


@dataclass(frozen=True)
class StockReconciliation:
    """Outcome of replaying an item's history against its cached counters."""

    item_code: str
    expected: Decimal
    actual: Decimal
    cached: StockState
    replayed: StockState

    @property
    def drift(self) -> Decimal:
        return self.actual - self.expected

    @property
    def has_drift(self) -> bool:
        return self.cached != self.replayed

    def as_dict(self) -> Dict[str, Any]:
        return {
            "itemCode": self.item_code,
            "expected": self.expected,
            "actual": self.actual,
            "drift": self.drift,
        }


@dataclass(frozen=True)
class PaymentState:
    """Amount paid against a payable or receivable document.

    Zero paid is always ``unpaid`` (even for a zero-value document); anything
    covering the net amount is ``paid``; the rest is ``partial``.
    """

    amount_paid: Decimal
    net_amount: Decimal

    @property
    def status(self) -> PaymentStatus:
        if self.amount_paid == ZERO:
            return PaymentStatus.UNPAID
        if self.amount_paid >= self.net_amount:
            return PaymentStatus.PAID
        return PaymentStatus.PARTIAL


@dataclass(frozen=True)
class PaymentDrift:
    """Difference between a document's cached settlement and its payments."""

    entity_type: EntityType
    reference: str
    cached_amount: Decimal
    expected_amount: Decimal
    cached_status: Optional[PaymentStatus]
    expected_status: PaymentStatus

    @property
    def is_consistent(self) -> bool:
        return self.cached_amount == self.expected_amount and self.cached_status == self.expected_status


@dataclass(frozen=True)
class ReconciliationReport:
    """Result of a derived-field recompute batch."""

    stock: Tuple[StockReconciliation, ...] = ()
    payments: Tuple[PaymentDrift, ...] = ()
    repaired: Tuple[str, ...] = field(default=())

    @property
    def drift_count(self) -> int:
        stock_drift = sum(1 for entry in self.stock if entry.has_drift)
        payment_drift = sum(1 for entry in self.payments if not entry.is_consistent)
        return stock_drift + payment_drift
