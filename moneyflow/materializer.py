from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from sqlalchemy.exc import IntegrityError

from moneyflow.currency_conversion import Conversion, RateLookup, convert_amount, normalize_currency
from moneyflow.errors import RateUnavailable
from moneyflow.recurrence import Occurrence, RecurringDefinition
from moneyflow.storage import CommitStatus, LedgerStore

logger = logging.getLogger(__name__)


class MaterializationStatus(str, Enum):
    CREATED = "created"
    ALREADY_PROCESSED = "already_processed"
    RATE_UNAVAILABLE = "rate_unavailable"


@dataclass(frozen=True)
class MaterializationResult:
    status: MaterializationStatus
    definition: Optional[RecurringDefinition]
    transaction_id: Optional[int] = None
    conversion: Optional[Conversion] = None
    detail: Optional[str] = None


class TransactionMaterializer:
    """Turns one due occurrence into one stored transaction.

    The transaction insert and the definition's cursor advance commit together,
    guarded by the definition's version. Losing that race, or finding the
    occurrence's transaction already stored, is reported as ``ALREADY_PROCESSED``.
    ``StorageUnavailable`` from the store propagates to the caller.
    """

    def __init__(self, store: LedgerStore, allow_unconverted: bool = False) -> None:
        self.store = store
        self.allow_unconverted = allow_unconverted

    def materialize(
        self,
        definition: RecurringDefinition,
        occurrence: Occurrence,
        rate_lookup: RateLookup | None,
        workspace_currency: str,
    ) -> MaterializationResult:
        try:
            conversion = convert_amount(
                definition.amount,
                definition.currency,
                workspace_currency,
                rate_lookup,
            )
        except RateUnavailable as exc:
            if not self.allow_unconverted:
                logger.warning(
                    "Skipping %s for recurring definition %s: %s",
                    occurrence.due_date,
                    definition.id,
                    exc,
                )
                return MaterializationResult(
                    status=MaterializationStatus.RATE_UNAVAILABLE,
                    definition=definition,
                    detail=str(exc),
                )
            conversion = None

        advance = {
            "last_processed_date": occurrence.due_date,
            "next_due_date": occurrence.next_due_date,
            "is_active": not occurrence.exhausts,
        }
        transaction = {
            "workspace_id": definition.workspace_id,
            "type": definition.type,
            "category_id": definition.category_id,
            "amount": definition.amount,
            "currency": normalize_currency(definition.currency),
            "converted_amount": _converted_amount(conversion),
            "exchange_rate": _exchange_rate(conversion),
            "description": f"Recurring: {definition.name}" if definition.name else definition.notes,
            "transaction_date": occurrence.due_date,
        }

        try:
            outcome = self.store.commit_occurrence(
                definition.id, definition.version, advance, transaction
            )
        except IntegrityError:
            logger.info(
                "Transaction for recurring definition %s on %s already exists",
                definition.id,
                occurrence.due_date,
            )
            return MaterializationResult(
                status=MaterializationStatus.ALREADY_PROCESSED,
                definition=self.store.get_definition(definition.id),
                detail="duplicate",
            )

        if outcome.status is CommitStatus.CONFLICT:
            logger.info(
                "Recurring definition %s was advanced concurrently; %s left to the other run",
                definition.id,
                occurrence.due_date,
            )
            return MaterializationResult(
                status=MaterializationStatus.ALREADY_PROCESSED,
                definition=self.store.get_definition(definition.id),
                detail="conflict",
            )

        advanced = replace(definition, **advance, version=definition.version + 1)
        if outcome.status is CommitStatus.DUPLICATE:
            logger.info(
                "Transaction %s already covers recurring definition %s on %s",
                outcome.transaction_id,
                definition.id,
                occurrence.due_date,
            )
            return MaterializationResult(
                status=MaterializationStatus.ALREADY_PROCESSED,
                definition=advanced,
                transaction_id=outcome.transaction_id,
                detail="duplicate",
            )

        logger.debug(
            "Created transaction %s for recurring definition %s on %s",
            outcome.transaction_id,
            definition.id,
            occurrence.due_date,
        )
        return MaterializationResult(
            status=MaterializationStatus.CREATED,
            definition=advanced,
            transaction_id=outcome.transaction_id,
            conversion=conversion,
        )

    def retire(self, definition: RecurringDefinition) -> Optional[RecurringDefinition]:
        """Deactivate a definition whose schedule has run past its end date."""
        if self.store.deactivate_definition(definition.id, definition.version):
            logger.info("Recurring definition %s reached its end date", definition.id)
            return replace(definition, is_active=False, version=definition.version + 1)
        return self.store.get_definition(definition.id)


def _converted_amount(conversion: Conversion | None):
    if conversion is None or conversion.source_currency == conversion.target_currency:
        return None
    return conversion.amount


def _exchange_rate(conversion: Conversion | None):
    if conversion is None or conversion.source_currency == conversion.target_currency:
        return None
    return conversion.rate
