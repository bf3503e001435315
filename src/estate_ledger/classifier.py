"""Keyword-based classification of free-text expense descriptions."""

from __future__ import annotations

from decimal import Decimal
from typing import Dict, MutableMapping, Optional, Sequence, Tuple

from .constants import ExpenseCategory

# Precedence is the tuple order: the first group with a matching keyword wins.
KEYWORD_GROUPS: Tuple[Tuple[ExpenseCategory, Sequence[str]], ...] = (
    (ExpenseCategory.MATERIAL, ("material", "cement", "steel")),
    (ExpenseCategory.LABOUR, ("labour", "labor", "wage", "salary")),
    (ExpenseCategory.TRANSPORTATION, ("transport", "freight", "delivery")),
    (ExpenseCategory.ADMINISTRATIVE, ("admin", "office")),
    (ExpenseCategory.UTILITIES, ("utility", "utilities", "electricity", "water")),
    (ExpenseCategory.MAINTENANCE, ("maintenance", "repair")),
)


def classify_expense(description: Optional[str]) -> ExpenseCategory:
    """Return the expense category for ``description``.

    Matching is a case-insensitive substring test. A missing or blank
    description, or one that matches no group, lands in ``otherExpenses``.
    """

    text = (description or "").casefold()
    if not text.strip():
        return ExpenseCategory.OTHER
    for category, keywords in KEYWORD_GROUPS:
        if any(keyword in text for keyword in keywords):
            return category
    return ExpenseCategory.OTHER


def empty_expense_totals() -> Dict[ExpenseCategory, Decimal]:
    """Return a zeroed total for every category, in precedence order."""

    return {category: Decimal("0") for category in ExpenseCategory}


def allocate_expense(
    totals: MutableMapping[ExpenseCategory, Decimal],
    description: Optional[str],
    amount: Decimal,
) -> ExpenseCategory:
    """Add ``amount`` to the bucket ``description`` classifies into."""

    category = classify_expense(description)
    totals[category] = totals.get(category, Decimal("0")) + amount
    return category
