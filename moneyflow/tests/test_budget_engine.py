import unittest
from datetime import date
from decimal import Decimal

from moneyflow.budget_engine import (
    BudgetCategory,
    MonthlyBudget,
    Transaction,
    build_budget_overview,
    month_range,
    summarize_transactions,
)

FOOD = BudgetCategory(id=1, name="Food", workspace_id=7)
RENT = BudgetCategory(id=2, name="Rent", workspace_id=7)
TRAVEL = BudgetCategory(id=3, name="Travel", workspace_id=7)


def expense(amount: str, category_id, day: int = 10, currency: str = "USD", **extra) -> Transaction:
    return Transaction(
        amount=Decimal(amount),
        type="expense",
        date=date(2024, 5, day),
        currency=currency,
        workspace_id=7,
        category_id=category_id,
        **extra,
    )


def budget(category_id: int, planned: str, currency: str = "USD") -> MonthlyBudget:
    return MonthlyBudget(
        category_id=category_id,
        year=2024,
        month=5,
        planned_amount=Decimal(planned),
        currency=currency,
        workspace_id=7,
    )


class BudgetOverviewTests(unittest.TestCase):
    def test_over_budget_line(self) -> None:
        overview = build_budget_overview(
            7,
            2024,
            5,
            [FOOD],
            [budget(1, "500")],
            [expense("350", 1), expense("250", 1, day=20)],
        )

        line = overview.lines[0]
        self.assertEqual(line.planned, Decimal("500"))
        self.assertEqual(line.spent, Decimal("600"))
        self.assertEqual(line.remaining, Decimal("-100"))
        self.assertEqual(line.percentage, Decimal("120"))
        self.assertTrue(line.is_over_budget)

    def test_zero_planned_is_never_over_budget(self) -> None:
        overview = build_budget_overview(
            7, 2024, 5, [FOOD], [budget(1, "0")], [expense("50", 1)]
        )

        line = overview.lines[0]
        self.assertEqual(line.spent, Decimal("50"))
        self.assertEqual(line.percentage, Decimal("0"))
        self.assertFalse(line.is_over_budget)
        self.assertEqual(line.remaining, Decimal("-50"))

    def test_only_budgeted_categories_are_listed(self) -> None:
        overview = build_budget_overview(
            7,
            2024,
            5,
            [FOOD, RENT, TRAVEL],
            [budget(2, "1000"), budget(1, "300")],
            [expense("40", 3)],
        )

        self.assertEqual([line.category.name for line in overview.lines], ["Food", "Rent"])

    def test_budget_for_unknown_category_is_skipped(self) -> None:
        overview = build_budget_overview(
            7, 2024, 5, [FOOD], [budget(99, "100"), budget(1, "100")], []
        )

        self.assertEqual([line.category.id for line in overview.lines], [1])
        self.assertEqual(overview.summary.total_planned, Decimal("100"))

    def test_spent_ignores_income_uncategorized_and_other_months(self) -> None:
        transactions = [
            expense("20", 1),
            expense("30", None),
            Transaction(
                amount=Decimal("999"),
                type="income",
                date=date(2024, 5, 2),
                workspace_id=7,
                category_id=1,
            ),
            Transaction(
                amount=Decimal("75"),
                type="expense",
                date=date(2024, 4, 30),
                workspace_id=7,
                category_id=1,
            ),
            Transaction(
                amount=Decimal("11"),
                type="expense",
                date=date(2024, 5, 3),
                workspace_id=8,
                category_id=1,
            ),
        ]

        overview = build_budget_overview(7, 2024, 5, [FOOD], [budget(1, "100")], transactions)

        self.assertEqual(overview.lines[0].spent, Decimal("20"))

    def test_uses_converted_amount_for_foreign_currency(self) -> None:
        transactions = [
            expense("100000", 1, currency="UZS", converted_amount=Decimal("8.00")),
            expense("5", 1, currency="USD", converted_amount=Decimal("62500")),
            expense("3", 1, currency="EUR"),
        ]

        overview = build_budget_overview(7, 2024, 5, [FOOD], [budget(1, "50")], transactions)

        self.assertEqual(overview.lines[0].spent, Decimal("16.00"))

    def test_summary_is_recomputed_from_lines(self) -> None:
        overview = build_budget_overview(
            7,
            2024,
            5,
            [FOOD, RENT],
            [budget(1, "500"), budget(2, "300")],
            [expense("600", 1), expense("150", 2), expense("40", None)],
        )

        summary = overview.summary
        self.assertEqual(summary.total_planned, sum(line.planned for line in overview.lines))
        self.assertEqual(summary.total_spent, sum(line.spent for line in overview.lines))
        self.assertEqual(summary.total_spent, Decimal("750"))
        self.assertEqual(summary.total_remaining, Decimal("50"))
        self.assertEqual(summary.overall_percentage, Decimal("93.75"))

    def test_empty_overview_has_zero_percentage(self) -> None:
        overview = build_budget_overview(7, 2024, 5, [FOOD], [], [expense("10", 1)])

        self.assertEqual(overview.lines, [])
        self.assertEqual(overview.summary.total_planned, Decimal("0"))
        self.assertEqual(overview.summary.overall_percentage, Decimal("0"))

    def test_invalid_month_raises(self) -> None:
        with self.assertRaises(ValueError):
            month_range(2024, 13)


class TransactionSummaryTests(unittest.TestCase):
    def test_totals_include_uncategorized_transactions(self) -> None:
        transactions = [
            expense("40", 1),
            expense("10", None),
            Transaction(
                amount=Decimal("1000"),
                type="income",
                date=date(2024, 5, 1),
                workspace_id=7,
                income_source_id=4,
            ),
            Transaction(
                amount=Decimal("200"),
                type="income",
                date=date(2024, 5, 15),
                workspace_id=7,
            ),
            Transaction(
                amount=Decimal("500"),
                type="expense",
                date=date(2024, 6, 1),
                workspace_id=7,
                category_id=1,
            ),
        ]

        summary = summarize_transactions(7, 2024, 5, transactions, "USD")

        self.assertEqual(summary.total_income, Decimal("1200"))
        self.assertEqual(summary.total_expenses, Decimal("50"))
        self.assertEqual(summary.net_balance, Decimal("1150"))
        self.assertEqual(summary.transaction_count, 4)
        self.assertEqual(summary.expenses_by_category, {1: Decimal("40")})
        self.assertEqual(summary.income_by_source, {4: Decimal("1000")})


if __name__ == "__main__":
    unittest.main()
