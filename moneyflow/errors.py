from __future__ import annotations


class MoneyflowError(Exception):
    """Base class for engine errors."""


class RateUnavailable(MoneyflowError):
    """Raised when no exchange rate exists for a currency pair."""

    def __init__(self, source_currency: str, target_currency: str) -> None:
        super().__init__(f"No exchange rate for {source_currency} -> {target_currency}.")
        self.source_currency = source_currency
        self.target_currency = target_currency


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot serve rates at all."""


class StorageUnavailable(MoneyflowError):
    """Raised when the row store cannot be read or written."""
