from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional, Tuple

WEEKLY_DAYS = 7
BIWEEKLY_DAYS = 14
MAX_OCCURRENCES_PER_RUN = 24

MONTH_STEPS = {"monthly": 1, "quarterly": 3, "yearly": 12}
DAY_STEPS = {"weekly": WEEKLY_DAYS, "biweekly": BIWEEKLY_DAYS}
SUPPORTED_FREQUENCIES = {"weekly", "biweekly", "monthly", "quarterly", "yearly", "one_time"}
FREQUENCY_ALIASES = {
    "byweekly": "biweekly",
    "annual": "yearly",
    "annually": "yearly",
    "onetime": "one_time",
    "once": "one_time",
}
SUPPORTED_TYPES = {"income", "expense"}


@dataclass(frozen=True)
class RecurringDefinition:
    id: int
    workspace_id: int
    amount: Decimal
    currency: str
    frequency: str
    start_date: date
    next_due_date: date
    category_id: Optional[int] = None
    name: str = ""
    type: str = "expense"
    end_date: Optional[date] = None
    last_processed_date: Optional[date] = None
    is_active: bool = True
    notes: Optional[str] = None
    version: int = 1


@dataclass(frozen=True)
class Occurrence:
    due_date: date
    next_due_date: date
    exhausts: bool = False


@dataclass(frozen=True)
class OccurrencePlan:
    occurrences: Tuple[Occurrence, ...]
    next_due_date: date
    exhausted: bool = False
    overflow: bool = False


def plan_occurrences(
    definition: RecurringDefinition,
    now: date | datetime,
    limit: int = MAX_OCCURRENCES_PER_RUN,
) -> OccurrencePlan:
    """Enumerate the occurrences of ``definition`` that are due on or before ``now``.

    Enumeration starts at the definition's ``next_due_date`` and walks forward one
    period at a time. At most ``limit`` occurrences are returned; when more are
    still due the plan reports ``overflow`` and its ``next_due_date`` points at the
    first occurrence left for a later run.
    """
    if limit <= 0:
        raise ValueError("limit must be greater than zero.")
    as_of = _as_date(now)
    frequency = validate_frequency(definition.frequency)
    due = definition.next_due_date

    if not definition.is_active:
        return OccurrencePlan(occurrences=(), next_due_date=due)
    if definition.end_date is not None and due > definition.end_date:
        return OccurrencePlan(occurrences=(), next_due_date=due, exhausted=True)

    anchor_day = definition.start_date.day
    occurrences: list[Occurrence] = []
    while due <= as_of:
        if len(occurrences) == limit:
            return OccurrencePlan(
                occurrences=tuple(occurrences),
                next_due_date=due,
                overflow=True,
            )
        following = advance_date(due, frequency, anchor_day)
        exhausts = following is None or (
            definition.end_date is not None and following > definition.end_date
        )
        next_due = due if following is None else following
        occurrences.append(Occurrence(due_date=due, next_due_date=next_due, exhausts=exhausts))
        if exhausts:
            return OccurrencePlan(
                occurrences=tuple(occurrences),
                next_due_date=next_due,
                exhausted=True,
            )
        due = following

    return OccurrencePlan(occurrences=tuple(occurrences), next_due_date=due)


def advance_date(current: date, frequency: str, anchor_day: int | None = None) -> date | None:
    """Return the date one period after ``current``, or None for one-time schedules."""
    normalized = validate_frequency(frequency)
    if normalized == "one_time":
        return None
    if normalized in DAY_STEPS:
        return current + timedelta(days=DAY_STEPS[normalized])
    return _add_months(current, MONTH_STEPS[normalized], anchor_day or current.day)


def validate_frequency(frequency: str) -> str:
    normalized = _normalize_frequency(frequency)
    normalized = FREQUENCY_ALIASES.get(normalized, normalized)
    if normalized not in SUPPORTED_FREQUENCIES:
        raise ValueError(
            "Only weekly, biweekly, monthly, quarterly, yearly, or one_time schedules are supported."
        )
    return normalized


def validate_type(value: str) -> str:
    normalized = value.strip().lower()
    if normalized not in SUPPORTED_TYPES:
        raise ValueError("Only income or expense recurring definitions are supported.")
    return normalized


def _normalize_frequency(value: str) -> str:
    return "".join(ch for ch in value.strip().lower() if ch.isalnum())


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value
