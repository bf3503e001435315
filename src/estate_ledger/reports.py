"""Aggregate reports built over the transaction log.

Every report is best effort: rows the data layer could not read are left
out of the totals and listed on the result's ``skipped`` attribute instead of
failing the whole report. Cancelled transactions never contribute.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from . import classifier, core_logic, data_manager, log, reconciler
from .constants import (
    ACTIVE_PROJECT_STATUS,
    ExpenseCategory,
    PaymentDirection,
    PaymentMethod,
    SheetName,
    StockStatus,
)
from .errors import ValidationError
from .models import ZERO, DateRange, SkippedRecord

HUNDRED = Decimal("100")


def percent_change(current: Decimal, previous: Decimal) -> str:
    """Format the change from ``previous`` to ``current`` as a signed percentage.

    ``(current - previous) / previous * 100`` with one decimal place. A zero
    ``previous`` yields ``"+100%"``, ``"0%"`` or ``"-100%"`` depending on the
    sign of ``current``.
    """

    if previous == ZERO:
        if current > ZERO:
            return "+100%"
        if current < ZERO:
            return "-100%"
        return "0%"
    change = (current - previous) / previous * HUNDRED
    return f"{change:+.1f}%"


def _skipped_dicts(skipped: Iterable[SkippedRecord]) -> List[Dict[str, Any]]:
    return [asdict(record) for record in skipped]


def expense_payments(context: core_logic.RuntimeContext) -> List[data_manager.PaymentRow]:
    """Return outgoing bank payments that settle no document.

    Payments against a purchase are already counted through the purchase.
    """

    return [
        payment
        for payment in core_logic.list_payments(context)
        if payment.method is PaymentMethod.BANK
        and payment.direction is PaymentDirection.OUT
        and payment.target_ref is None
    ]


@dataclass(frozen=True)
class IncomeStatement:
    period: DateRange
    revenue: Decimal
    expenses: Mapping[ExpenseCategory, Decimal]
    total_expenses: Decimal
    gross_profit: Decimal
    other_income: Decimal
    net_income: Decimal
    skipped: Tuple[SkippedRecord, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period.labels(),
            "revenue": self.revenue,
            "expenses": {category.value: amount for category, amount in self.expenses.items()},
            "totalExpenses": self.total_expenses,
            "grossProfit": self.gross_profit,
            "otherIncome": self.other_income,
            "netIncome": self.net_income,
            "skipped": _skipped_dicts(self.skipped),
        }


def _period_figures(
    context: core_logic.RuntimeContext, period: DateRange
) -> Tuple[Decimal, Dict[ExpenseCategory, Decimal], Decimal]:
    """Return revenue, categorized expenses and other income for ``period``."""

    revenue = ZERO
    other_income = ZERO
    for invoice in core_logic.iter_in_period(core_logic.list_sales_invoices(context), period):
        revenue += invoice.net_total
        other_income += max(ZERO, invoice.amount_received - invoice.net_total)

    expenses = classifier.empty_expense_totals()
    for purchase in core_logic.iter_in_period(core_logic.list_purchases(context), period):
        expenses[ExpenseCategory.MATERIAL] += purchase.net_amount
    for payment in core_logic.iter_in_period(expense_payments(context), period):
        classifier.allocate_expense(expenses, payment.description, payment.amount)

    return revenue, expenses, other_income


def get_income_statement(
    context: core_logic.RuntimeContext, date_range: Optional[DateRange] = None
) -> IncomeStatement:
    """Compute revenue, expenses by category and profit for a period.

    Revenue is the sum of sales-invoice net totals. Purchases always count as
    material expense; outgoing bank payments that settle no document are
    classified by their description. Other income is what customers paid
    beyond an invoice's net total.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        date_range (DateRange | None): Inclusive period; open ends are
            unbounded.

    Raises:
        ValidationError: If the range starts after it ends.
    """

    period = date_range or DateRange()
    period = core_logic.resolve_date_range(period.start, period.end)
    revenue, expenses, other_income = _period_figures(context, period)
    total_expenses = sum(expenses.values(), ZERO)
    gross_profit = revenue - total_expenses
    statement = IncomeStatement(
        period=period,
        revenue=revenue,
        expenses=expenses,
        total_expenses=total_expenses,
        gross_profit=gross_profit,
        other_income=other_income,
        net_income=gross_profit + other_income,
        skipped=core_logic.skipped_records(
            context, SheetName.SALES_INVOICES, SheetName.PURCHASES, SheetName.PAYMENTS
        ),
    )
    log.info(
        "Built income statement for %s..%s (revenue=%s, expenses=%s, net=%s)",
        period.labels()["startDate"],
        period.labels()["endDate"],
        revenue,
        total_expenses,
        statement.net_income,
    )
    return statement


@dataclass(frozen=True)
class DashboardMetric:
    current: Decimal
    previous: Decimal

    @property
    def change(self) -> str:
        return percent_change(self.current, self.previous)

    def as_dict(self) -> Dict[str, Any]:
        return {"value": self.current, "previous": self.previous, "change": self.change}


@dataclass(frozen=True)
class DashboardStats:
    as_of: date
    total_sales: DashboardMetric
    total_expenses: DashboardMetric
    net_profit: DashboardMetric
    active_projects: int
    skipped: Tuple[SkippedRecord, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "asOf": self.as_of.isoformat(),
            "totalSales": self.total_sales.as_dict(),
            "totalExpenses": self.total_expenses.as_dict(),
            "netProfit": self.net_profit.as_dict(),
            "activeProjects": {"value": self.active_projects, "change": f"+{self.active_projects}"},
            "skipped": _skipped_dicts(self.skipped),
        }


def month_periods(as_of: date) -> Tuple[DateRange, DateRange]:
    """Return the calendar month containing ``as_of`` and the month before it."""

    current_start = as_of.replace(day=1)
    next_month = (current_start + timedelta(days=32)).replace(day=1)
    previous_end = current_start - timedelta(days=1)
    return (
        DateRange(start=current_start, end=next_month - timedelta(days=1)),
        DateRange(start=previous_end.replace(day=1), end=previous_end),
    )


def get_dashboard_stats(context: core_logic.RuntimeContext, as_of: Optional[date] = None) -> DashboardStats:
    """Compare the current calendar month against the previous one.

    Sales are sales-invoice net totals, expenses follow the income statement
    rules, and net profit is their difference. Active projects are those whose
    status is ``Active``.
    """

    as_of = as_of if as_of is not None else datetime.now(UTC).date()
    current_period, previous_period = month_periods(as_of)
    current_sales, current_expenses, _ = _period_figures(context, current_period)
    previous_sales, previous_expenses, _ = _period_figures(context, previous_period)
    current_total = sum(current_expenses.values(), ZERO)
    previous_total = sum(previous_expenses.values(), ZERO)

    active = sum(
        1
        for project in core_logic.list_projects(context)
        if (project.status or "").casefold() == ACTIVE_PROJECT_STATUS.casefold()
    )
    stats = DashboardStats(
        as_of=as_of,
        total_sales=DashboardMetric(current_sales, previous_sales),
        total_expenses=DashboardMetric(current_total, previous_total),
        net_profit=DashboardMetric(current_sales - current_total, previous_sales - previous_total),
        active_projects=active,
        skipped=core_logic.skipped_records(
            context, SheetName.SALES_INVOICES, SheetName.PURCHASES, SheetName.PAYMENTS, SheetName.PROJECTS
        ),
    )
    log.debug("Dashboard stats as of %s: sales change %s", as_of, stats.total_sales.change)
    return stats


def stock_status(current_stock: Decimal, min_stock_level: Decimal) -> StockStatus:
    if current_stock <= ZERO:
        return StockStatus.OUT_OF_STOCK
    if current_stock <= min_stock_level:
        return StockStatus.LOW_STOCK
    return StockStatus.IN_STOCK


@dataclass(frozen=True)
class InventoryLine:
    item_code: str
    name: str
    category: Optional[str]
    unit: Optional[str]
    purchased: Decimal
    sold: Decimal
    current_stock: Decimal
    min_stock_level: Decimal
    selling_price: Decimal
    stock_value: Decimal
    status: StockStatus
    is_active: bool = True
    drift: Decimal = ZERO

    def as_dict(self) -> Dict[str, Any]:
        return {
            "itemCode": self.item_code,
            "name": self.name,
            "category": self.category,
            "unit": self.unit,
            "purchased": self.purchased,
            "sold": self.sold,
            "currentStock": self.current_stock,
            "minStockLevel": self.min_stock_level,
            "sellingPrice": self.selling_price,
            "stockValue": self.stock_value,
            "status": self.status.value,
            "isActive": self.is_active,
            "drift": self.drift,
        }


@dataclass(frozen=True)
class InventorySummary:
    total_items: int
    total_stock_value: Decimal
    out_of_stock: int
    low_stock: int
    in_stock: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "totalItems": self.total_items,
            "totalStockValue": self.total_stock_value,
            "outOfStock": self.out_of_stock,
            "lowStock": self.low_stock,
            "inStock": self.in_stock,
        }


@dataclass(frozen=True)
class InventoryReport:
    summary: InventorySummary
    items: Tuple[InventoryLine, ...]
    skipped: Tuple[SkippedRecord, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary.as_dict(),
            "perItem": [line.as_dict() for line in self.items],
            "skipped": _skipped_dicts(self.skipped),
        }


def inventory_line(item: data_manager.ItemRow, movement: reconciler.StockMovement) -> InventoryLine:
    """Purchased and sold come from the replay; stock is the maintained counter."""
    expected = item.opening_stock + movement.purchased - movement.sold
    return InventoryLine(
        item_code=item.item_code,
        name=item.name,
        category=item.category_name,
        unit=item.unit,
        purchased=movement.purchased,
        sold=movement.sold,
        current_stock=item.current_stock,
        min_stock_level=item.min_stock_level,
        selling_price=item.selling_price,
        stock_value=item.current_stock * item.selling_price,
        status=stock_status(item.current_stock, item.min_stock_level),
        is_active=item.is_active,
        drift=item.current_stock - expected,
    )


def get_inventory_report(context: core_logic.RuntimeContext) -> InventoryReport:
    """Report stock, stock value and status for every item, ordered by name.

    Purchased and sold quantities are replayed from the live history, while
    stock, value and status use the maintained ``CurrentStock`` counter. Each
    line's ``drift`` is the difference between the two.
    """

    movements = reconciler.stock_movements(context)
    lines: List[InventoryLine] = []
    counts = {status: 0 for status in StockStatus}
    total_value = ZERO
    for item in sorted(core_logic.list_items(context), key=lambda row: (row.name.casefold(), row.item_code)):
        line = inventory_line(item, movements.get(item.item_code, reconciler.StockMovement()))
        if line.drift != ZERO:
            log.warning("Item '%s' stock counter drifts from history by %s", item.item_code, line.drift)
        lines.append(line)
        counts[line.status] += 1
        total_value += line.stock_value

    summary = InventorySummary(
        total_items=len(lines),
        total_stock_value=total_value,
        out_of_stock=counts[StockStatus.OUT_OF_STOCK],
        low_stock=counts[StockStatus.LOW_STOCK],
        in_stock=counts[StockStatus.IN_STOCK],
    )
    log.info(
        "Built inventory report for %d items (out=%d, low=%d)",
        summary.total_items,
        summary.out_of_stock,
        summary.low_stock,
    )
    return InventoryReport(
        summary=summary,
        items=tuple(lines),
        skipped=core_logic.skipped_records(
            context, SheetName.ITEMS, SheetName.PURCHASES, SheetName.SALES_INVOICES, SheetName.INVOICE_LINES
        ),
    )


@dataclass(frozen=True)
class ProjectProgress:
    project_id: str
    name: str
    status: Optional[str]
    budget: Decimal
    spent: Decimal
    progress: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "projectId": self.project_id,
            "name": self.name,
            "status": self.status,
            "budget": self.budget,
            "spent": self.spent,
            "progress": self.progress,
        }


@dataclass(frozen=True)
class ProjectProgressReport:
    projects: Tuple[ProjectProgress, ...]
    skipped: Tuple[SkippedRecord, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "projects": [entry.as_dict() for entry in self.projects],
            "skipped": _skipped_dicts(self.skipped),
        }


def progress_percent(spent: Decimal, budget: Decimal) -> int:
    """Return ``min(spent / budget * 100, 100)`` rounded half up; 0 without a budget."""

    if budget <= ZERO:
        return 0
    ratio = min(spent / budget * HUNDRED, HUNDRED)
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def project_spending(context: core_logic.RuntimeContext) -> Dict[str, Decimal]:
    """Sum purchases and outgoing expense bank payments per project."""

    spent: Dict[str, Decimal] = {}
    for purchase in core_logic.list_purchases(context):
        if purchase.project_id is not None:
            spent[purchase.project_id] = spent.get(purchase.project_id, ZERO) + purchase.net_amount
    for payment in expense_payments(context):
        if payment.project_id is not None:
            spent[payment.project_id] = spent.get(payment.project_id, ZERO) + payment.amount
    return spent


def project_progress(project: data_manager.ProjectRow, spent: Decimal) -> ProjectProgress:
    budget = project.value_of_job if project.value_of_job > ZERO else project.estimated_cost
    return ProjectProgress(
        project_id=project.project_id,
        name=project.name,
        status=project.status,
        budget=budget,
        spent=spent,
        progress=progress_percent(spent, budget),
    )


def get_project_progress(
    context: core_logic.RuntimeContext,
    project_id: Optional[str] = None,
    limit: Optional[int] = None,
) -> ProjectProgressReport:
    """Report spending against budget for one project or the first ``limit`` projects.

    Raises:
        NotFoundError: If ``project_id`` is unknown.
        ValidationError: If ``limit`` is not positive.
    """

    if limit is not None and limit < 1:
        log.error("Rejected project progress limit %s", limit)
        raise ValidationError("Limit must be at least 1")

    if project_id is not None:
        projects = [core_logic.get_project(context, project_id)]
    else:
        projects = core_logic.list_projects(context)
        if limit is not None:
            projects = projects[:limit]

    spending = project_spending(context)
    entries = tuple(project_progress(project, spending.get(project.project_id, ZERO)) for project in projects)
    log.debug("Computed progress for %d projects", len(entries))
    return ProjectProgressReport(
        projects=entries,
        skipped=core_logic.skipped_records(
            context, SheetName.PROJECTS, SheetName.PURCHASES, SheetName.PAYMENTS
        ),
    )
