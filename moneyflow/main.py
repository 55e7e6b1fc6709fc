import logging
from datetime import date, datetime
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from moneyflow.budget_engine import build_budget_overview, summarize_transactions
from moneyflow.currency_conversion import StaticRateProvider, normalize_currency
from moneyflow.errors import StorageUnavailable
from moneyflow.materializer import TransactionMaterializer
from moneyflow.reconciliation import ReconciliationDriver, ReconciliationReport
from moneyflow.recurrence import RecurringDefinition, validate_frequency, validate_type
from moneyflow.settings import Settings, load_settings
from moneyflow.storage import LedgerStore

logger = logging.getLogger(__name__)


class WorkspacePayload(BaseModel):
    name: str
    currency: str | None = None

    @classmethod
    def validate_payload(cls, payload: "WorkspacePayload") -> "WorkspacePayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Workspace name required.")
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        return payload


class WorkspaceResponse(BaseModel):
    id: int
    name: str
    currency: str
    created_at: datetime | None = None


class CategoryPayload(BaseModel):
    name: str
    icon: str | None = None
    color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        if len(payload.name) > 50:
            raise ValueError("Category name must be at most 50 characters.")
        return payload


class CategoryResponse(BaseModel):
    id: int
    workspace_id: int
    name: str
    icon: str | None = None
    color: str | None = None
    is_default: bool = False


class RecurringDefinitionPayload(BaseModel):
    name: str
    amount: Decimal
    currency: str | None = None
    frequency: str = "monthly"
    type: str = "expense"
    start_date: date
    end_date: date | None = None
    category_id: int | None = None
    is_active: bool = True
    notes: str | None = None

    @classmethod
    def validate_payload(
        cls, payload: "RecurringDefinitionPayload"
    ) -> "RecurringDefinitionPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Recurring definition name required.")
        if payload.amount <= 0:
            raise ValueError("Recurring definition amount must be greater than zero.")
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        payload.frequency = validate_frequency(payload.frequency)
        payload.type = validate_type(payload.type)
        if payload.end_date is not None and payload.end_date < payload.start_date:
            raise ValueError("End date must be on or after start date.")
        payload.notes = payload.notes.strip() if payload.notes else None
        return payload


class RecurringDefinitionResponse(BaseModel):
    id: int
    workspace_id: int
    name: str
    type: str
    category_id: int | None = None
    amount: Decimal
    currency: str
    frequency: str
    start_date: date
    end_date: date | None = None
    next_due_date: date
    last_processed_date: date | None = None
    is_active: bool
    notes: str | None = None
    version: int


class TransactionPayload(BaseModel):
    type: str
    amount: Decimal
    currency: str | None = None
    transaction_date: date
    category_id: int | None = None
    income_source_id: int | None = None
    converted_amount: Decimal | None = None
    exchange_rate: Decimal | None = None
    description: str | None = None
    tags: list[str] | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = validate_type(payload.type)
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        payload.description = payload.description.strip() if payload.description else None
        return payload


class TransactionResponse(BaseModel):
    id: int
    workspace_id: int
    type: str
    amount: Decimal
    currency: str
    transaction_date: date
    category_id: int | None = None
    income_source_id: int | None = None
    converted_amount: Decimal | None = None
    exchange_rate: Decimal | None = None
    description: str | None = None
    recurring_definition_id: int | None = None
    tags: list[str] | None = None


class BudgetPayload(BaseModel):
    category_id: int
    year: int
    month: int
    planned_amount: Decimal
    currency: str | None = None

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        if not 2000 <= payload.year <= 2100:
            raise ValueError("Year must be between 2000 and 2100.")
        if not 1 <= payload.month <= 12:
            raise ValueError("Month must be between 1 and 12.")
        if payload.planned_amount < 0:
            raise ValueError("Planned amount must not be negative.")
        payload.currency = normalize_currency(payload.currency) if payload.currency else None
        return payload


class BudgetResponse(BaseModel):
    id: int
    workspace_id: int
    category_id: int
    year: int
    month: int
    planned_amount: Decimal
    currency: str


class CopyBudgetsResponse(BaseModel):
    created: list[BudgetResponse]
    count: int


class SkippedOccurrenceResponse(BaseModel):
    due_date: date
    reason: str
    detail: str | None = None


class DefinitionResultResponse(BaseModel):
    definition_id: int
    created: list[date]
    transaction_ids: list[int]
    skipped: list[SkippedOccurrenceResponse]
    overflow: bool
    exhausted: bool
    error: str | None = None


class ReconciliationResponse(BaseModel):
    workspace_id: int
    as_of: date
    created_count: int
    skipped_count: int
    needs_attention: list[int]
    results: list[DefinitionResultResponse]


class BudgetLineResponse(BaseModel):
    category: CategoryResponse
    planned: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: Decimal
    is_over_budget: bool
    currency: str


class BudgetSummaryResponse(BaseModel):
    total_planned: Decimal
    total_spent: Decimal
    total_remaining: Decimal
    overall_percentage: Decimal


class BudgetOverviewResponse(BaseModel):
    workspace_id: int
    year: int
    month: int
    overview: list[BudgetLineResponse]
    summary: BudgetSummaryResponse


class TransactionSummaryResponse(BaseModel):
    total_income: Decimal
    total_expenses: Decimal
    net_balance: Decimal
    transaction_count: int
    currency: str
    expenses_by_category: dict[int, Decimal]
    income_by_source: dict[int, Decimal]


def create_app(settings: Settings | None = None, store: LedgerStore | None = None) -> FastAPI:
    settings = settings or load_settings()
    store = store or LedgerStore.from_url(settings.database_url)
    materializer = TransactionMaterializer(store, allow_unconverted=settings.allow_unconverted)
    driver = ReconciliationDriver(
        store,
        materializer,
        rate_lookup=StaticRateProvider(),
        default_currency=settings.default_currency,
        max_workers=settings.max_workers,
        max_occurrences=settings.max_occurrences,
    )

    app = FastAPI()
    app.state.store = store
    app.state.driver = driver

    @app.on_event("startup")
    def init_db() -> None:
        store.create_all()

    def require_workspace(workspace_id: int) -> dict:
        workspace = _call(store.get_workspace, workspace_id)
        if not workspace:
            raise HTTPException(status_code=404, detail="Workspace not found.")
        return workspace

    def workspace_currency(workspace: dict) -> str:
        return workspace["currency"] or settings.default_currency

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.post("/workspaces", response_model=WorkspaceResponse)
    def create_workspace(payload: WorkspacePayload) -> WorkspaceResponse:
        try:
            payload = WorkspacePayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        workspace_id = _call(store.create_workspace, payload.name, payload.currency)
        return _workspace_response(require_workspace(workspace_id), settings.default_currency)

    @app.get("/workspaces/{workspace_id}", response_model=WorkspaceResponse)
    def get_workspace(workspace_id: int) -> WorkspaceResponse:
        return _workspace_response(require_workspace(workspace_id), settings.default_currency)

    @app.get("/workspaces/{workspace_id}/categories", response_model=list[CategoryResponse])
    def list_categories(workspace_id: int) -> list[CategoryResponse]:
        require_workspace(workspace_id)
        return [
            CategoryResponse(**vars(category))
            for category in _call(store.list_categories, workspace_id)
        ]

    @app.post("/workspaces/{workspace_id}/categories", response_model=CategoryResponse)
    def create_category(workspace_id: int, payload: CategoryPayload) -> CategoryResponse:
        require_workspace(workspace_id)
        try:
            payload = CategoryPayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        category = _call(
            store.create_category, workspace_id, payload.name, payload.icon, payload.color
        )
        return CategoryResponse(**vars(category))

    @app.get(
        "/workspaces/{workspace_id}/recurring",
        response_model=list[RecurringDefinitionResponse],
    )
    def list_recurring(workspace_id: int) -> list[RecurringDefinitionResponse]:
        require_workspace(workspace_id)
        return [
            _definition_response(definition)
            for definition in _call(store.list_definitions, workspace_id)
        ]

    @app.post(
        "/workspaces/{workspace_id}/recurring",
        response_model=RecurringDefinitionResponse,
    )
    def create_recurring(
        workspace_id: int, payload: RecurringDefinitionPayload
    ) -> RecurringDefinitionResponse:
        workspace = require_workspace(workspace_id)
        try:
            payload = RecurringDefinitionPayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        _require_category(store, workspace_id, payload.category_id)
        definition = _call(
            store.create_definition,
            workspace_id=workspace_id,
            name=payload.name,
            amount=payload.amount,
            currency=payload.currency or workspace_currency(workspace),
            frequency=payload.frequency,
            start_date=payload.start_date,
            category_id=payload.category_id,
            type=payload.type,
            end_date=payload.end_date,
            is_active=payload.is_active,
            notes=payload.notes,
        )
        return _definition_response(definition)

    @app.post("/recurring/{definition_id}/toggle", response_model=RecurringDefinitionResponse)
    def toggle_recurring(definition_id: int) -> RecurringDefinitionResponse:
        definition = _call(store.toggle_definition, definition_id)
        if definition is None:
            raise HTTPException(status_code=404, detail="Recurring definition not found.")
        return _definition_response(definition)

    @app.post("/workspaces/{workspace_id}/transactions", response_model=TransactionResponse)
    def create_transaction(workspace_id: int, payload: TransactionPayload) -> TransactionResponse:
        workspace = require_workspace(workspace_id)
        try:
            payload = TransactionPayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        _require_category(store, workspace_id, payload.category_id)
        txn = _call(
            store.create_transaction,
            workspace_id=workspace_id,
            type=payload.type,
            amount=payload.amount,
            currency=payload.currency or workspace_currency(workspace),
            transaction_date=payload.transaction_date,
            category_id=payload.category_id,
            income_source_id=payload.income_source_id,
            converted_amount=payload.converted_amount,
            exchange_rate=payload.exchange_rate,
            description=payload.description,
            tags=payload.tags,
        )
        return TransactionResponse(
            id=txn.id,
            workspace_id=txn.workspace_id,
            type=txn.type,
            amount=txn.amount,
            currency=txn.currency,
            transaction_date=txn.date,
            category_id=txn.category_id,
            income_source_id=txn.income_source_id,
            converted_amount=txn.converted_amount,
            exchange_rate=txn.exchange_rate,
            description=txn.description,
            recurring_definition_id=txn.recurring_definition_id,
            tags=list(txn.tags) or None,
        )

    @app.put("/workspaces/{workspace_id}/budgets", response_model=BudgetResponse)
    def set_budget(workspace_id: int, payload: BudgetPayload) -> BudgetResponse:
        workspace = require_workspace(workspace_id)
        try:
            payload = BudgetPayload.validate_payload(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        _require_category(store, workspace_id, payload.category_id)
        budget = _call(
            store.set_budget,
            workspace_id,
            payload.category_id,
            payload.year,
            payload.month,
            payload.planned_amount,
            payload.currency or workspace_currency(workspace),
        )
        return BudgetResponse(**vars(budget))

    @app.post(
        "/workspaces/{workspace_id}/budgets/copy-previous",
        response_model=CopyBudgetsResponse,
    )
    def copy_budgets(
        workspace_id: int,
        year: int = Query(...),
        month: int = Query(...),
    ) -> CopyBudgetsResponse:
        require_workspace(workspace_id)
        try:
            created = _call(store.copy_budgets_from_previous_month, workspace_id, year, month)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return CopyBudgetsResponse(
            created=[BudgetResponse(**vars(budget)) for budget in created],
            count=len(created),
        )

    @app.post("/workspaces/{workspace_id}/reconcile", response_model=ReconciliationResponse)
    def reconcile(workspace_id: int, now: date | None = Query(None)) -> ReconciliationResponse:
        require_workspace(workspace_id)
        report = _call(driver.reconcile, workspace_id, now or date.today())
        if report.needs_attention:
            logger.warning(
                "Reconciliation of workspace %s needs attention for definitions %s",
                workspace_id,
                report.needs_attention,
            )
        return _report_response(report)

    @app.get(
        "/workspaces/{workspace_id}/budget-overview",
        response_model=BudgetOverviewResponse,
    )
    def budget_overview(
        workspace_id: int,
        year: int = Query(...),
        month: int = Query(...),
    ) -> BudgetOverviewResponse:
        require_workspace(workspace_id)
        if not 1 <= month <= 12:
            raise HTTPException(status_code=400, detail="Month must be between 1 and 12.")
        overview = build_budget_overview(
            workspace_id,
            year,
            month,
            _call(store.list_categories, workspace_id),
            _call(store.list_budgets, workspace_id, year, month),
            _call(store.list_month_transactions, workspace_id, year, month),
        )
        return BudgetOverviewResponse(
            workspace_id=overview.workspace_id,
            year=overview.year,
            month=overview.month,
            overview=[
                BudgetLineResponse(
                    category=CategoryResponse(**vars(line.category)),
                    planned=line.planned,
                    spent=line.spent,
                    remaining=line.remaining,
                    percentage=line.percentage,
                    is_over_budget=line.is_over_budget,
                    currency=line.currency,
                )
                for line in overview.lines
            ],
            summary=BudgetSummaryResponse(**vars(overview.summary)),
        )

    @app.get(
        "/workspaces/{workspace_id}/summary",
        response_model=TransactionSummaryResponse,
    )
    def transaction_summary(
        workspace_id: int,
        year: int = Query(...),
        month: int = Query(...),
    ) -> TransactionSummaryResponse:
        workspace = require_workspace(workspace_id)
        if not 1 <= month <= 12:
            raise HTTPException(status_code=400, detail="Month must be between 1 and 12.")
        summary = summarize_transactions(
            workspace_id,
            year,
            month,
            _call(store.list_month_transactions, workspace_id, year, month),
            workspace_currency(workspace),
        )
        return TransactionSummaryResponse(**vars(summary))

    return app


def _call(func, *args, **kwargs):
    try:
        return func(*args, **kwargs)
    except StorageUnavailable as exc:
        raise HTTPException(status_code=503, detail="Storage unavailable.") from exc


def _require_category(store: LedgerStore, workspace_id: int, category_id: int | None) -> None:
    if category_id is None:
        return
    category_ids = {category.id for category in _call(store.list_categories, workspace_id)}
    if category_id not in category_ids:
        raise HTTPException(status_code=404, detail="Category not found.")


def _workspace_response(row: dict, default_currency: str) -> WorkspaceResponse:
    return WorkspaceResponse(
        id=row["id"],
        name=row["name"],
        currency=row["currency"] or default_currency,
        created_at=row["created_at"],
    )


def _definition_response(definition: RecurringDefinition) -> RecurringDefinitionResponse:
    return RecurringDefinitionResponse(**vars(definition))


def _report_response(report: ReconciliationReport) -> ReconciliationResponse:
    return ReconciliationResponse(
        workspace_id=report.workspace_id,
        as_of=report.as_of,
        created_count=report.created_count,
        skipped_count=report.skipped_count,
        needs_attention=report.needs_attention,
        results=[
            DefinitionResultResponse(
                definition_id=result.definition_id,
                created=result.created,
                transaction_ids=result.transaction_ids,
                skipped=[
                    SkippedOccurrenceResponse(
                        due_date=item.due_date,
                        reason=item.reason.value,
                        detail=item.detail,
                    )
                    for item in result.skipped
                ],
                overflow=result.overflow,
                exhausted=result.exhausted,
                error=result.error,
            )
            for result in report.results
        ],
    )


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


_settings = load_settings()
configure_logging(_settings.log_level)
app = create_app(_settings)
