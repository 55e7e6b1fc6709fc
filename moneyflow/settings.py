from __future__ import annotations

import os
from dataclasses import dataclass

from moneyflow.currency_conversion import normalize_currency
from moneyflow.recurrence import MAX_OCCURRENCES_PER_RUN

TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./moneyflow.db"
    default_currency: str = "USD"
    max_occurrences: int = MAX_OCCURRENCES_PER_RUN
    max_workers: int = 1
    allow_unconverted: bool = False
    log_level: str = "INFO"


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./moneyflow.db"),
        default_currency=get_system_default_currency(),
        max_occurrences=_positive_int("RECONCILE_MAX_OCCURRENCES", MAX_OCCURRENCES_PER_RUN),
        max_workers=_positive_int("RECONCILE_MAX_WORKERS", 1),
        allow_unconverted=os.getenv("RECONCILE_ALLOW_UNCONVERTED", "false").strip().lower()
        in TRUE_VALUES,
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


def _positive_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer.") from exc
    if value <= 0:
        raise ValueError(f"{name} must be greater than zero.")
    return value
