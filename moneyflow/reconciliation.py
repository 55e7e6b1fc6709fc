from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from moneyflow.currency_conversion import RateLookup
from moneyflow.errors import StorageUnavailable
from moneyflow.materializer import MaterializationStatus, TransactionMaterializer
from moneyflow.recurrence import (
    MAX_OCCURRENCES_PER_RUN,
    Occurrence,
    RecurringDefinition,
    plan_occurrences,
)
from moneyflow.storage import LedgerStore

logger = logging.getLogger(__name__)


class SkipReason(str, Enum):
    ALREADY_PROCESSED = "already_processed"
    RATE_UNAVAILABLE = "rate_unavailable"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    INACTIVE = "inactive"
    DEFERRED = "deferred"


@dataclass(frozen=True)
class SkippedOccurrence:
    due_date: date
    reason: SkipReason
    detail: Optional[str] = None


@dataclass
class DefinitionResult:
    definition_id: int
    created: List[date] = field(default_factory=list)
    transaction_ids: List[int] = field(default_factory=list)
    skipped: List[SkippedOccurrence] = field(default_factory=list)
    overflow: bool = False
    exhausted: bool = False
    error: Optional[str] = None

    @property
    def needs_attention(self) -> bool:
        if self.overflow or self.error:
            return True
        return any(
            item.reason in {SkipReason.RATE_UNAVAILABLE, SkipReason.STORAGE_UNAVAILABLE}
            for item in self.skipped
        )


@dataclass(frozen=True)
class ReconciliationReport:
    workspace_id: int
    as_of: date
    results: List[DefinitionResult]

    @property
    def created_count(self) -> int:
        return sum(len(result.created) for result in self.results)

    @property
    def skipped_count(self) -> int:
        return sum(len(result.skipped) for result in self.results)

    @property
    def needs_attention(self) -> List[int]:
        return [result.definition_id for result in self.results if result.needs_attention]

    @property
    def overflowed(self) -> List[int]:
        return [result.definition_id for result in self.results if result.overflow]


class ReconciliationDriver:
    """Materializes every due occurrence of a workspace's active recurring definitions.

    Definitions are handled independently: a failure is recorded on that
    definition's result and never stops its siblings. The driver itself only
    reads from the store; all writes go through the materializer.
    """

    def __init__(
        self,
        store: LedgerStore,
        materializer: TransactionMaterializer,
        rate_lookup: RateLookup | None = None,
        default_currency: str = "USD",
        max_workers: int = 1,
        max_occurrences: int = MAX_OCCURRENCES_PER_RUN,
    ) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be greater than zero.")
        self.store = store
        self.materializer = materializer
        self.rate_lookup = rate_lookup
        self.default_currency = default_currency
        self.max_workers = max_workers
        self.max_occurrences = max_occurrences

    def reconcile(self, workspace_id: int, now: date | datetime) -> ReconciliationReport:
        as_of = now.date() if isinstance(now, datetime) else now
        workspace_currency = self.store.get_workspace_currency(workspace_id, self.default_currency)
        definitions = self.store.list_definitions(workspace_id, active_only=True)

        if self.max_workers == 1 or len(definitions) <= 1:
            results = [
                self._reconcile_definition(definition, as_of, workspace_currency)
                for definition in definitions
            ]
        else:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                results = list(
                    executor.map(
                        lambda definition: self._reconcile_definition(
                            definition, as_of, workspace_currency
                        ),
                        definitions,
                    )
                )

        report = ReconciliationReport(workspace_id=workspace_id, as_of=as_of, results=results)
        logger.info(
            "Reconciled workspace %s as of %s: %s created, %s skipped",
            workspace_id,
            as_of,
            report.created_count,
            report.skipped_count,
        )
        return report

    def _reconcile_definition(
        self,
        definition: RecurringDefinition,
        as_of: date,
        workspace_currency: str,
    ) -> DefinitionResult:
        result = DefinitionResult(definition_id=definition.id)
        try:
            self._process(definition, as_of, workspace_currency, result)
        except StorageUnavailable as exc:
            logger.warning("Storage unavailable for recurring definition %s: %s", definition.id, exc)
            result.error = str(exc)
        except Exception as exc:
            logger.exception("Failed to reconcile recurring definition %s", definition.id)
            result.error = str(exc)
        return result

    def _process(
        self,
        definition: RecurringDefinition,
        as_of: date,
        workspace_currency: str,
        result: DefinitionResult,
    ) -> None:
        plan = plan_occurrences(definition, as_of, limit=self.max_occurrences)
        result.overflow = plan.overflow
        result.exhausted = plan.exhausted
        if plan.overflow:
            logger.warning(
                "Recurring definition %s has more than %s due occurrences; resuming at %s",
                definition.id,
                self.max_occurrences,
                plan.next_due_date,
            )
        if plan.exhausted and not plan.occurrences:
            self.materializer.retire(definition)
            return

        occurrences = list(plan.occurrences)
        current: Optional[RecurringDefinition] = definition
        index = 0
        retried = False
        while index < len(occurrences):
            occurrence = occurrences[index]
            if current is None or occurrence.due_date < current.next_due_date:
                result.skipped.append(
                    SkippedOccurrence(occurrence.due_date, SkipReason.ALREADY_PROCESSED)
                )
                index += 1
                continue
            if not current.is_active:
                result.skipped.append(SkippedOccurrence(occurrence.due_date, SkipReason.INACTIVE))
                index += 1
                continue

            try:
                outcome = self.materializer.materialize(
                    current, occurrence, self.rate_lookup, workspace_currency
                )
            except StorageUnavailable as exc:
                result.error = str(exc)
                self._skip_rest(result, occurrences[index:], SkipReason.STORAGE_UNAVAILABLE, str(exc))
                logger.warning(
                    "Storage unavailable for recurring definition %s: %s", definition.id, exc
                )
                return

            if outcome.status is MaterializationStatus.RATE_UNAVAILABLE:
                result.skipped.append(
                    SkippedOccurrence(
                        occurrence.due_date, SkipReason.RATE_UNAVAILABLE, outcome.detail
                    )
                )
                self._skip_rest(result, occurrences[index + 1 :], SkipReason.DEFERRED)
                return
            current = outcome.definition
            if outcome.status is MaterializationStatus.CREATED:
                result.created.append(occurrence.due_date)
                result.transaction_ids.append(outcome.transaction_id)
            elif (
                not retried
                and current is not None
                and current.is_active
                and current.next_due_date == occurrence.due_date
            ):
                # The version moved without the cursor moving (an edit, not another run).
                retried = True
                continue
            else:
                result.skipped.append(
                    SkippedOccurrence(
                        occurrence.due_date, SkipReason.ALREADY_PROCESSED, outcome.detail
                    )
                )
            retried = False
            index += 1

    @staticmethod
    def _skip_rest(
        result: DefinitionResult,
        occurrences: List[Occurrence],
        reason: SkipReason,
        detail: Optional[str] = None,
    ) -> None:
        for occurrence in occurrences:
            result.skipped.append(SkippedOccurrence(occurrence.due_date, reason, detail))
