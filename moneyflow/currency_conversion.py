from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Callable, Mapping, Optional, Protocol, Union

from moneyflow.errors import RateProviderUnavailable, RateUnavailable

ONE = Decimal("1")
RATE_PLACES = Decimal("0.0000000001")
DEFAULT_MINOR_UNITS = 2
MINOR_UNITS: dict[str, int] = {
    "JPY": 0,
    "KRW": 0,
    "UZS": 0,
    "VND": 0,
    "CLP": 0,
    "ISK": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
}

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("147.50"),
    "CAD": Decimal("1.34"),
    "AUD": Decimal("1.52"),
    "CHF": Decimal("0.88"),
    "UZS": Decimal("12500"),
}


class RateProvider(Protocol):
    def lookup_rate(self, source_currency: str, target_currency: str) -> Optional[Decimal]:
        ...


RateLookup = Union[RateProvider, Callable[[str, str], Optional[Decimal]]]


@dataclass(frozen=True)
class Conversion:
    amount: Decimal
    rate: Decimal
    source_currency: str
    target_currency: str


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as units of each currency per 1 unit of the base
    currency, so any pair resolves to a cross rate.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        normalized = {
            normalize_currency(code): _coerce_amount(rate)
            for code, rate in (self.rates or DEFAULT_RATES).items()
        }
        object.__setattr__(self, "rates", normalized)

    def lookup_rate(self, source_currency: str, target_currency: str) -> Optional[Decimal]:
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        if source == target:
            return ONE
        source_rate = self.rates.get(source)
        target_rate = self.rates.get(target)
        if not source_rate or target_rate is None:
            return None
        return (target_rate / source_rate).quantize(RATE_PLACES, rounding=ROUND_HALF_EVEN)


@dataclass(frozen=True)
class TableRateProvider:
    """Explicit pair rates; the inverse of each pair is derived when missing."""

    pairs: Mapping[tuple[str, str], Decimal] = None

    def __post_init__(self) -> None:
        normalized: dict[tuple[str, str], Decimal] = {}
        for (source, target), rate in (self.pairs or {}).items():
            key = (normalize_currency(source), normalize_currency(target))
            normalized[key] = _coerce_amount(rate)
        for (source, target), rate in list(normalized.items()):
            if (target, source) not in normalized and rate:
                normalized[(target, source)] = (ONE / rate).quantize(
                    RATE_PLACES, rounding=ROUND_HALF_EVEN
                )
        object.__setattr__(self, "pairs", normalized)

    def lookup_rate(self, source_currency: str, target_currency: str) -> Optional[Decimal]:
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        if source == target:
            return ONE
        return self.pairs.get((source, target))


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: RateLookup
    fallback: RateLookup

    def lookup_rate(self, source_currency: str, target_currency: str) -> Optional[Decimal]:
        try:
            rate = _lookup(self.primary, source_currency, target_currency)
        except RateProviderUnavailable:
            rate = None
        if rate is not None:
            return rate
        return _lookup(self.fallback, source_currency, target_currency)


def convert_amount(
    amount: Decimal | int | str,
    source_currency: str,
    target_currency: str,
    rate_lookup: RateLookup | None = None,
) -> Conversion:
    """Convert ``amount`` into ``target_currency`` and report the rate applied.

    Same-currency conversions return the amount untouched at a rate of exactly 1.
    Otherwise the rate comes from ``rate_lookup`` and the result is rounded once,
    half-to-even, to the target currency's minor unit.
    """
    source = normalize_currency(source_currency)
    target = normalize_currency(target_currency)
    coerced_amount = _coerce_amount(amount)

    if source == target:
        return Conversion(amount=coerced_amount, rate=ONE, source_currency=source, target_currency=target)

    rate = None
    if rate_lookup is not None:
        try:
            rate = _lookup(rate_lookup, source, target)
        except RateProviderUnavailable as exc:
            raise RateUnavailable(source, target) from exc
    if rate is None:
        raise RateUnavailable(source, target)

    rate = _coerce_amount(rate)
    if rate <= 0:
        raise RateUnavailable(source, target)
    converted = round_to_minor_unit(coerced_amount * rate, target)
    return Conversion(amount=converted, rate=rate, source_currency=source, target_currency=target)


def round_to_minor_unit(amount: Decimal, currency: str) -> Decimal:
    places = MINOR_UNITS.get(normalize_currency(currency), DEFAULT_MINOR_UNITS)
    return amount.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_EVEN)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _lookup(provider: RateLookup, source: str, target: str) -> Optional[Decimal]:
    if hasattr(provider, "lookup_rate"):
        return provider.lookup_rate(source, target)
    return provider(source, target)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
