from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Dict, Iterable, List, Optional, Tuple

ZERO = Decimal("0")
HUNDRED = Decimal("100")
PERCENT_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class Transaction:
    amount: Decimal
    type: str
    date: date
    currency: str = "USD"
    workspace_id: Optional[int] = None
    category_id: Optional[int] = None
    converted_amount: Optional[Decimal] = None
    exchange_rate: Optional[Decimal] = None
    income_source_id: Optional[int] = None
    description: Optional[str] = None
    recurring_definition_id: Optional[int] = None
    tags: Tuple[str, ...] = ()
    id: Optional[int] = None


@dataclass(frozen=True)
class BudgetCategory:
    id: int
    name: str
    workspace_id: Optional[int] = None
    icon: Optional[str] = None
    color: Optional[str] = None
    is_default: bool = False


@dataclass(frozen=True)
class MonthlyBudget:
    category_id: int
    year: int
    month: int
    planned_amount: Decimal
    currency: str
    workspace_id: Optional[int] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class BudgetLine:
    category: BudgetCategory
    planned: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: Decimal
    is_over_budget: bool
    currency: str


@dataclass(frozen=True)
class BudgetSummary:
    total_planned: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    overall_percentage: Decimal


@dataclass(frozen=True)
class BudgetOverview:
    workspace_id: int
    year: int
    month: int
    lines: List[BudgetLine]
    summary: BudgetSummary


@dataclass(frozen=True)
class TransactionSummary:
    total_income: Decimal
    total_expenses: Decimal
    net_balance: Decimal
    transaction_count: int
    currency: str
    expenses_by_category: Dict[int, Decimal] = field(default_factory=dict)
    income_by_source: Dict[int, Decimal] = field(default_factory=dict)


def build_budget_overview(
    workspace_id: int,
    year: int,
    month: int,
    categories: Iterable[BudgetCategory],
    budgets: Iterable[MonthlyBudget],
    transactions: Iterable[Transaction],
) -> BudgetOverview:
    """Planned-vs-actual spending for every budgeted category of one month.

    Only categories with a budget row for the period get a line. Budget rows
    whose category is unknown are ignored, as are transactions outside the
    workspace or the month.
    """
    start_date, end_date = month_range(year, month)
    categories_by_id = {
        category.id: category
        for category in categories
        if category.workspace_id in (None, workspace_id)
    }
    filtered = [
        txn
        for txn in transactions
        if txn.workspace_id in (None, workspace_id) and start_date <= txn.date <= end_date
    ]

    lines: List[BudgetLine] = []
    seen: set[int] = set()
    for budget in budgets:
        if budget.workspace_id not in (None, workspace_id):
            continue
        if budget.year != year or budget.month != month:
            continue
        category = categories_by_id.get(budget.category_id)
        if category is None or budget.category_id in seen:
            continue
        seen.add(budget.category_id)
        planned = _coerce_amount(budget.planned_amount)
        spent = _sum_category_expenses(filtered, budget.category_id, budget.currency)
        lines.append(
            BudgetLine(
                category=category,
                planned=planned,
                spent=spent,
                remaining=planned - spent,
                percentage=percentage_of(spent, planned),
                is_over_budget=planned > ZERO and spent > planned,
                currency=budget.currency,
            )
        )

    lines.sort(key=lambda line: (line.category.name.lower(), line.category.id))
    return BudgetOverview(
        workspace_id=workspace_id,
        year=year,
        month=month,
        lines=lines,
        summary=summarize_lines(lines),
    )


def summarize_lines(lines: Iterable[BudgetLine]) -> BudgetSummary:
    total_planned = ZERO
    total_spent = ZERO
    for line in lines:
        total_planned += line.planned
        total_spent += line.spent
    return BudgetSummary(
        total_planned=total_planned,
        total_spent=total_spent,
        total_remaining=total_planned - total_spent,
        overall_percentage=percentage_of(total_spent, total_planned),
    )


def summarize_transactions(
    workspace_id: int,
    year: int,
    month: int,
    transactions: Iterable[Transaction],
    workspace_currency: str,
) -> TransactionSummary:
    """Monthly income/expense totals, uncategorized transactions included."""
    start_date, end_date = month_range(year, month)
    total_income = ZERO
    total_expenses = ZERO
    count = 0
    expenses_by_category: Dict[int, Decimal] = {}
    income_by_source: Dict[int, Decimal] = {}
    for txn in transactions:
        if txn.workspace_id not in (None, workspace_id):
            continue
        if not start_date <= txn.date <= end_date:
            continue
        amount = _amount_in(txn, workspace_currency)
        txn_type = txn.type.strip().lower()
        count += 1
        if txn_type == "income":
            total_income += amount
            if txn.income_source_id is not None:
                income_by_source[txn.income_source_id] = (
                    income_by_source.get(txn.income_source_id, ZERO) + amount
                )
        elif txn_type == "expense":
            total_expenses += amount
            if txn.category_id is not None:
                expenses_by_category[txn.category_id] = (
                    expenses_by_category.get(txn.category_id, ZERO) + amount
                )
    return TransactionSummary(
        total_income=total_income,
        total_expenses=total_expenses,
        net_balance=total_income - total_expenses,
        transaction_count=count,
        currency=workspace_currency,
        expenses_by_category=expenses_by_category,
        income_by_source=income_by_source,
    )


def percentage_of(part: Decimal, whole: Decimal) -> Decimal:
    if whole <= ZERO:
        return ZERO
    return (part / whole * HUNDRED).quantize(PERCENT_PLACES, rounding=ROUND_HALF_EVEN)


def month_range(year: int, month: int) -> tuple[date, date]:
    if not 1 <= month <= 12:
        raise ValueError("Month must be between 1 and 12.")
    return date(year, month, 1), date(year, month, monthrange(year, month)[1])


def _sum_category_expenses(
    transactions: Iterable[Transaction],
    category_id: int,
    budget_currency: str,
) -> Decimal:
    total = ZERO
    for txn in transactions:
        if txn.type.strip().lower() != "expense":
            continue
        if txn.category_id != category_id:
            continue
        total += _amount_in(txn, budget_currency)
    return total


def _amount_in(txn: Transaction, currency: str) -> Decimal:
    if txn.converted_amount is not None and txn.currency.upper() != currency.upper():
        return _coerce_amount(txn.converted_amount)
    return _coerce_amount(txn.amount)


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
