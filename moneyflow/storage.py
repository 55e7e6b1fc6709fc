from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterator, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.pool import StaticPool

from moneyflow.budget_engine import BudgetCategory, MonthlyBudget, Transaction, month_range
from moneyflow.currency_conversion import normalize_currency
from moneyflow.errors import StorageUnavailable
from moneyflow.recurrence import RecurringDefinition

logger = logging.getLogger(__name__)

metadata = MetaData()

workspaces = Table(
    "workspaces",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("currency", String(3)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

budget_categories = Table(
    "budget_categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workspace_id", Integer, ForeignKey("workspaces.id"), nullable=False),
    Column("name", String(50), nullable=False),
    Column("icon", String(50)),
    Column("color", String(20)),
    Column("is_default", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

monthly_budgets = Table(
    "monthly_budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workspace_id", Integer, ForeignKey("workspaces.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("budget_categories.id"), nullable=False),
    Column("year", Integer, nullable=False),
    Column("month", Integer, nullable=False),
    Column("planned_amount", Numeric(18, 4), nullable=False),
    Column("currency", String(3), nullable=False),
    UniqueConstraint(
        "workspace_id", "category_id", "year", "month", name="uq_monthly_budgets_period"
    ),
)

recurring_definitions = Table(
    "recurring_definitions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workspace_id", Integer, ForeignKey("workspaces.id"), nullable=False),
    Column("name", String(100), nullable=False),
    Column("type", String(20), nullable=False, server_default="expense"),
    Column("category_id", Integer, ForeignKey("budget_categories.id")),
    Column("amount", Numeric(18, 4), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("frequency", String(20), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date),
    Column("next_due_date", Date, nullable=False),
    Column("last_processed_date", Date),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("notes", String(500)),
    Column("version", Integer, nullable=False, server_default="1"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("workspace_id", Integer, ForeignKey("workspaces.id"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("category_id", Integer, ForeignKey("budget_categories.id")),
    Column("income_source_id", Integer),
    Column("amount", Numeric(18, 4), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("converted_amount", Numeric(18, 4)),
    Column("exchange_rate", Numeric(20, 10)),
    Column("description", String(500)),
    Column("transaction_date", Date, nullable=False),
    Column("recurring_definition_id", Integer, ForeignKey("recurring_definitions.id")),
    Column("tags", JSON),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint(
        "workspace_id",
        "recurring_definition_id",
        "transaction_date",
        name="uq_transactions_recurring_occurrence",
    ),
)


class CommitStatus(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class CommitResult:
    status: CommitStatus
    transaction_id: Optional[int] = None


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **kwargs)


class LedgerStore:
    """Row store for workspaces, budgets, recurring definitions, and transactions."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> "LedgerStore":
        return cls(build_engine(database_url))

    def create_all(self) -> None:
        metadata.create_all(self.engine)

    @contextmanager
    def _begin(self) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError:
            raise
        except DBAPIError as exc:
            logger.warning("Storage unavailable: %s", exc)
            raise StorageUnavailable(str(exc)) from exc

    # Workspaces

    def create_workspace(self, name: str, currency: str | None = None) -> int:
        values = {"name": name.strip(), "currency": normalize_currency(currency) if currency else None}
        with self._begin() as conn:
            result = conn.execute(insert(workspaces).values(**values))
            return result.inserted_primary_key[0]

    def get_workspace(self, workspace_id: int) -> Optional[dict]:
        with self._begin() as conn:
            row = conn.execute(
                select(workspaces).where(workspaces.c.id == workspace_id)
            ).mappings().first()
        return dict(row) if row else None

    def get_workspace_currency(self, workspace_id: int, default: str) -> str:
        workspace = self.get_workspace(workspace_id)
        if workspace and workspace["currency"]:
            try:
                return normalize_currency(workspace["currency"])
            except ValueError:
                pass
        return default

    # Categories

    def create_category(
        self,
        workspace_id: int,
        name: str,
        icon: str | None = None,
        color: str | None = None,
        is_default: bool = False,
    ) -> BudgetCategory:
        name = name.strip()
        if not name:
            raise ValueError("Category name required.")
        with self._begin() as conn:
            result = conn.execute(
                insert(budget_categories).values(
                    workspace_id=workspace_id,
                    name=name,
                    icon=icon,
                    color=color or "#9B87F5",
                    is_default=is_default,
                )
            )
            category_id = result.inserted_primary_key[0]
            row = conn.execute(
                select(budget_categories).where(budget_categories.c.id == category_id)
            ).mappings().one()
        return _category_from_row(row)

    def list_categories(self, workspace_id: int) -> list[BudgetCategory]:
        with self._begin() as conn:
            rows = conn.execute(
                select(budget_categories)
                .where(budget_categories.c.workspace_id == workspace_id)
                .order_by(budget_categories.c.name.asc())
            ).mappings().all()
        return [_category_from_row(row) for row in rows]

    # Budgets

    def set_budget(
        self,
        workspace_id: int,
        category_id: int,
        year: int,
        month: int,
        planned_amount: Decimal,
        currency: str,
    ) -> MonthlyBudget:
        if not 1 <= month <= 12:
            raise ValueError("Month must be between 1 and 12.")
        if planned_amount < 0:
            raise ValueError("Planned amount must not be negative.")
        currency = normalize_currency(currency)
        key = (
            monthly_budgets.c.workspace_id == workspace_id,
            monthly_budgets.c.category_id == category_id,
            monthly_budgets.c.year == year,
            monthly_budgets.c.month == month,
        )
        with self._begin() as conn:
            existing = conn.execute(select(monthly_budgets.c.id).where(*key)).scalar_one_or_none()
            if existing is None:
                conn.execute(
                    insert(monthly_budgets).values(
                        workspace_id=workspace_id,
                        category_id=category_id,
                        year=year,
                        month=month,
                        planned_amount=planned_amount,
                        currency=currency,
                    )
                )
            else:
                conn.execute(
                    update(monthly_budgets)
                    .where(monthly_budgets.c.id == existing)
                    .values(planned_amount=planned_amount, currency=currency)
                )
            row = conn.execute(select(monthly_budgets).where(*key)).mappings().one()
        return _budget_from_row(row)

    def list_budgets(self, workspace_id: int, year: int, month: int) -> list[MonthlyBudget]:
        with self._begin() as conn:
            rows = conn.execute(
                select(monthly_budgets)
                .where(
                    monthly_budgets.c.workspace_id == workspace_id,
                    monthly_budgets.c.year == year,
                    monthly_budgets.c.month == month,
                )
                .order_by(monthly_budgets.c.id.asc())
            ).mappings().all()
        return [_budget_from_row(row) for row in rows]

    def copy_budgets_from_previous_month(
        self, workspace_id: int, year: int, month: int
    ) -> list[MonthlyBudget]:
        previous_year, previous_month = (year - 1, 12) if month == 1 else (year, month - 1)
        previous = self.list_budgets(workspace_id, previous_year, previous_month)
        if not previous:
            raise ValueError("No budgets found in previous month.")
        existing = {budget.category_id for budget in self.list_budgets(workspace_id, year, month)}
        created: list[MonthlyBudget] = []
        for budget in previous:
            if budget.category_id in existing:
                continue
            created.append(
                self.set_budget(
                    workspace_id,
                    budget.category_id,
                    year,
                    month,
                    budget.planned_amount,
                    budget.currency,
                )
            )
        return created

    # Recurring definitions

    def create_definition(
        self,
        workspace_id: int,
        name: str,
        amount: Decimal,
        currency: str,
        frequency: str,
        start_date: date,
        category_id: int | None = None,
        type: str = "expense",
        end_date: date | None = None,
        is_active: bool = True,
        notes: str | None = None,
    ) -> RecurringDefinition:
        if end_date is not None and end_date < start_date:
            raise ValueError("end_date must be on or after start_date.")
        with self._begin() as conn:
            result = conn.execute(
                insert(recurring_definitions).values(
                    workspace_id=workspace_id,
                    name=name.strip(),
                    type=type,
                    category_id=category_id,
                    amount=amount,
                    currency=normalize_currency(currency),
                    frequency=frequency,
                    start_date=start_date,
                    end_date=end_date,
                    next_due_date=start_date,
                    last_processed_date=None,
                    is_active=is_active,
                    notes=notes.strip() if notes else None,
                    version=1,
                )
            )
            definition_id = result.inserted_primary_key[0]
        return self.get_definition(definition_id)

    def get_definition(self, definition_id: int) -> Optional[RecurringDefinition]:
        with self._begin() as conn:
            row = conn.execute(
                select(recurring_definitions).where(recurring_definitions.c.id == definition_id)
            ).mappings().first()
        return _definition_from_row(row) if row else None

    def list_definitions(
        self, workspace_id: int, active_only: bool = False
    ) -> list[RecurringDefinition]:
        stmt = select(recurring_definitions).where(
            recurring_definitions.c.workspace_id == workspace_id
        )
        if active_only:
            stmt = stmt.where(recurring_definitions.c.is_active.is_(True))
        with self._begin() as conn:
            rows = conn.execute(stmt.order_by(recurring_definitions.c.id.asc())).mappings().all()
        return [_definition_from_row(row) for row in rows]

    def toggle_definition(self, definition_id: int) -> Optional[RecurringDefinition]:
        with self._begin() as conn:
            conn.execute(
                update(recurring_definitions)
                .where(recurring_definitions.c.id == definition_id)
                .values(
                    is_active=~recurring_definitions.c.is_active,
                    version=recurring_definitions.c.version + 1,
                )
            )
        return self.get_definition(definition_id)

    def commit_occurrence(
        self,
        definition_id: int,
        expected_version: int,
        advance: dict,
        transaction: dict,
    ) -> CommitResult:
        """Advance a definition and record its transaction in one database transaction.

        The update only applies while the stored version still equals
        ``expected_version``. When the transaction for the occurrence already
        exists the cursor still advances but no row is inserted.
        """
        with self._begin() as conn:
            updated = conn.execute(
                update(recurring_definitions)
                .where(
                    recurring_definitions.c.id == definition_id,
                    recurring_definitions.c.version == expected_version,
                )
                .values(**advance, version=expected_version + 1)
            )
            if updated.rowcount != 1:
                return CommitResult(CommitStatus.CONFLICT)
            existing = conn.execute(
                select(transactions.c.id).where(
                    transactions.c.workspace_id == transaction["workspace_id"],
                    transactions.c.recurring_definition_id == definition_id,
                    transactions.c.transaction_date == transaction["transaction_date"],
                )
            ).scalar_one_or_none()
            if existing is not None:
                return CommitResult(CommitStatus.DUPLICATE, existing)
            result = conn.execute(
                insert(transactions).values(**transaction, recurring_definition_id=definition_id)
            )
            return CommitResult(CommitStatus.CREATED, result.inserted_primary_key[0])

    def deactivate_definition(self, definition_id: int, expected_version: int) -> bool:
        with self._begin() as conn:
            updated = conn.execute(
                update(recurring_definitions)
                .where(
                    recurring_definitions.c.id == definition_id,
                    recurring_definitions.c.version == expected_version,
                )
                .values(is_active=False, version=expected_version + 1)
            )
        return updated.rowcount == 1

    # Transactions

    def create_transaction(
        self,
        workspace_id: int,
        type: str,
        amount: Decimal,
        currency: str,
        transaction_date: date,
        category_id: int | None = None,
        income_source_id: int | None = None,
        converted_amount: Decimal | None = None,
        exchange_rate: Decimal | None = None,
        description: str | None = None,
        recurring_definition_id: int | None = None,
        tags: list[str] | None = None,
    ) -> Transaction:
        with self._begin() as conn:
            result = conn.execute(
                insert(transactions).values(
                    workspace_id=workspace_id,
                    type=type,
                    category_id=category_id,
                    income_source_id=income_source_id,
                    amount=amount,
                    currency=normalize_currency(currency),
                    converted_amount=converted_amount,
                    exchange_rate=exchange_rate,
                    description=description,
                    transaction_date=transaction_date,
                    recurring_definition_id=recurring_definition_id,
                    tags=tags,
                )
            )
            transaction_id = result.inserted_primary_key[0]
            row = conn.execute(
                select(transactions).where(transactions.c.id == transaction_id)
            ).mappings().one()
        return _transaction_from_row(row)

    def list_transactions(
        self,
        workspace_id: int,
        start_date: date | None = None,
        end_date: date | None = None,
        recurring_definition_id: int | None = None,
    ) -> list[Transaction]:
        stmt = select(transactions).where(transactions.c.workspace_id == workspace_id)
        if start_date is not None:
            stmt = stmt.where(transactions.c.transaction_date >= start_date)
        if end_date is not None:
            stmt = stmt.where(transactions.c.transaction_date <= end_date)
        if recurring_definition_id is not None:
            stmt = stmt.where(transactions.c.recurring_definition_id == recurring_definition_id)
        stmt = stmt.order_by(transactions.c.transaction_date.asc(), transactions.c.id.asc())
        with self._begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_transaction_from_row(row) for row in rows]

    def list_month_transactions(self, workspace_id: int, year: int, month: int) -> list[Transaction]:
        start_date, end_date = month_range(year, month)
        return self.list_transactions(workspace_id, start_date, end_date)


def _definition_from_row(row) -> RecurringDefinition:
    return RecurringDefinition(
        id=row["id"],
        workspace_id=row["workspace_id"],
        name=row["name"],
        type=row["type"],
        category_id=row["category_id"],
        amount=_coerce_decimal(row["amount"]),
        currency=row["currency"],
        frequency=row["frequency"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        next_due_date=row["next_due_date"],
        last_processed_date=row["last_processed_date"],
        is_active=bool(row["is_active"]),
        notes=row["notes"],
        version=row["version"],
    )


def _transaction_from_row(row) -> Transaction:
    return Transaction(
        id=row["id"],
        workspace_id=row["workspace_id"],
        type=row["type"],
        category_id=row["category_id"],
        income_source_id=row["income_source_id"],
        amount=_coerce_decimal(row["amount"]),
        currency=row["currency"],
        converted_amount=_coerce_optional_decimal(row["converted_amount"]),
        exchange_rate=_coerce_optional_decimal(row["exchange_rate"]),
        description=row["description"],
        date=row["transaction_date"],
        recurring_definition_id=row["recurring_definition_id"],
        tags=tuple(row["tags"] or ()),
    )


def _category_from_row(row) -> BudgetCategory:
    return BudgetCategory(
        id=row["id"],
        workspace_id=row["workspace_id"],
        name=row["name"],
        icon=row["icon"],
        color=row["color"],
        is_default=bool(row["is_default"]),
    )


def _budget_from_row(row) -> MonthlyBudget:
    return MonthlyBudget(
        id=row["id"],
        workspace_id=row["workspace_id"],
        category_id=row["category_id"],
        year=row["year"],
        month=row["month"],
        planned_amount=_coerce_decimal(row["planned_amount"]),
        currency=row["currency"],
    )


def _coerce_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _coerce_optional_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return _coerce_decimal(value)
