"""Enumerations shared across the estate ledger modules.

Centralises domain constants so the data access layer, the ledger and
reconciliation engine, and the reporting layer agree on sheet names,
transaction kinds, and the fixed category vocabularies.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "2.1.0"

# Conflicting counter updates are retried this many times unless config.ini
# overrides it.
DEFAULT_MAX_CONFLICT_RETRIES = 3

# Width of the zero-padded numeric part of server-assigned references.
REFERENCE_WIDTH = 6


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    ITEMS = "Items"
    SUPPLIERS = "Suppliers"
    CUSTOMERS = "Customers"
    PROJECTS = "Projects"
    PURCHASES = "Purchases"
    PAYMENTS = "Payments"
    SALES_INVOICES = "SalesInvoices"
    INVOICE_LINES = "InvoiceLines"
    PLOT_SALES = "PlotSales"
    COUNTERS = "Counters"


class EntityType(str, Enum):
    """Enumerate the transaction streams the engine merges."""

    PURCHASE = "Purchase"
    BANK_PAYMENT = "BankPayment"
    CASH_PAYMENT = "CashPayment"
    SALES_INVOICE = "SalesInvoice"
    PLOT_SALE = "PlotSale"


class ReferencePrefix(str, Enum):
    """Two-letter prefixes used for server-assigned serial numbers."""

    PURCHASE = "PU"
    BANK_PAYMENT = "BP"
    CASH_PAYMENT = "CP"
    SALES_INVOICE = "SI"
    PLOT_SALE = "PS"


# Counter row holding the workbook-wide creation sequence.
SEQUENCE_COUNTER = "SEQ"


class PaymentMethod(str, Enum):
    """How money moved for a payment row."""

    BANK = "Bank"
    CASH = "Cash"


class PaymentDirection(str, Enum):
    """Whether a payment left the business or was received by it."""

    OUT = "Out"
    IN = "In"


class Direction(str, Enum):
    """Side of the ledger a transaction posts to."""

    DEBIT = "debit"
    CREDIT = "credit"


class CounterpartyKind(str, Enum):
    """Kinds of counterparty a ledger can be built for."""

    SUPPLIER = "supplier"
    CUSTOMER = "customer"
    PROJECT = "project"


class PaymentStatus(str, Enum):
    """Settlement state of a payable or receivable document."""

    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


class StockStatus(str, Enum):
    """Inventory health labels used by the inventory report."""

    OUT_OF_STOCK = "Out of Stock"
    LOW_STOCK = "Low Stock"
    IN_STOCK = "In Stock"


class ExpenseCategory(str, Enum):
    """Fixed expense categories, in classification precedence order."""

    MATERIAL = "materialExpense"
    LABOUR = "labourWages"
    TRANSPORTATION = "transportationExpense"
    ADMINISTRATIVE = "administrativeExpenses"
    UTILITIES = "utilities"
    MAINTENANCE = "maintenance"
    OTHER = "otherExpenses"


# Project status counted as active on the dashboard.
ACTIVE_PROJECT_STATUS = "Active"


ENTITY_PREFIXES = {
    EntityType.PURCHASE: ReferencePrefix.PURCHASE,
    EntityType.BANK_PAYMENT: ReferencePrefix.BANK_PAYMENT,
    EntityType.CASH_PAYMENT: ReferencePrefix.CASH_PAYMENT,
    EntityType.SALES_INVOICE: ReferencePrefix.SALES_INVOICE,
    EntityType.PLOT_SALE: ReferencePrefix.PLOT_SALE,
}

PAYMENT_ENTITY_TYPES = {
    PaymentMethod.BANK: EntityType.BANK_PAYMENT,
    PaymentMethod.CASH: EntityType.CASH_PAYMENT,
}


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_MAX_CONFLICT_RETRIES",
    "REFERENCE_WIDTH",
    "SheetName",
    "EntityType",
    "ReferencePrefix",
    "SEQUENCE_COUNTER",
    "PaymentMethod",
    "PaymentDirection",
    "Direction",
    "CounterpartyKind",
    "PaymentStatus",
    "StockStatus",
    "ExpenseCategory",
    "ACTIVE_PROJECT_STATUS",
    "ENTITY_PREFIXES",
    "PAYMENT_ENTITY_TYPES",
]
