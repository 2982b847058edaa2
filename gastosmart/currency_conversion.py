from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Mapping

import structlog

logger = structlog.get_logger(__name__)

BASE_CURRENCY = "UYU"
SUPPORTED_CURRENCIES = ("UYU", "USD", "UI")

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("42.50"),
    "UI": Decimal("6.16"),
}


class UnsupportedCurrency(ValueError):
    """Raised for a currency outside UYU, USD and UI."""


class InvalidRate(ValueError):
    """Raised when a rate is zero, negative or not a number."""


class RateTable:
    """Process-wide conversion multipliers, UYU per unit of each foreign currency.

    The base currency is implicit (rate 1) and cannot be edited. A single
    instance is shared by every consumer; edits go through ``set_rate`` or
    ``update``, which reject non-positive values before touching the table.
    """

    def __init__(self, rates: Mapping[str, Decimal | int | float | str] | None = None) -> None:
        self._rates: dict[str, Decimal] = dict(DEFAULT_RATES)
        if rates:
            self.update(rates)

    def get_rate(self, currency: str) -> Decimal:
        normalized = normalize_currency(currency)
        if normalized == BASE_CURRENCY:
            return Decimal("1")
        return self._rates[normalized]

    def set_rate(self, currency: str, value: Decimal | int | float | str) -> None:
        self.update({currency: value})

    def update(self, rates: Mapping[str, Decimal | int | float | str]) -> None:
        validated: dict[str, Decimal] = {}
        for currency, value in rates.items():
            normalized = normalize_currency(currency)
            if normalized == BASE_CURRENCY:
                raise InvalidRate(f"{BASE_CURRENCY} is the base currency and has a fixed rate of 1.")
            try:
                validated[normalized] = validate_rate(value)
            except InvalidRate:
                logger.warning("rate_rejected", currency=normalized, value=str(value))
                raise
        self._rates.update(validated)
        for currency, rate in validated.items():
            logger.info("rate_updated", currency=currency, rate=str(rate))

    def snapshot(self) -> tuple[tuple[str, Decimal], ...]:
        return tuple(sorted(self._rates.items()))

    def as_dict(self) -> dict[str, Decimal]:
        return dict(self._rates)

    def __repr__(self) -> str:
        return f"RateTable({self.as_dict()!r})"


RateSource = RateTable | Mapping[str, Decimal]


def to_base(amount: Decimal | int | float | str, currency: str, rates: RateSource) -> Decimal:
    """Value an amount in UYU."""
    coerced_amount = _coerce_amount(amount)
    normalized = normalize_currency(currency)
    if normalized == BASE_CURRENCY:
        return coerced_amount
    return coerced_amount * _lookup_rate(rates, normalized)


def from_base(amount_in_base: Decimal | int | float | str, target_currency: str, rates: RateSource) -> Decimal:
    """Express a UYU amount in ``target_currency``.

    A zero rate raises ``decimal.DivisionByZero``; rates are expected to be
    validated by ``RateTable`` before they get here.
    """
    coerced_amount = _coerce_amount(amount_in_base)
    normalized = normalize_currency(target_currency)
    if normalized == BASE_CURRENCY:
        return coerced_amount
    return coerced_amount / _lookup_rate(rates, normalized)


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rates: RateSource,
) -> Decimal:
    """Convert a monetary amount between two currencies, pivoting through UYU."""
    normalized_source = normalize_currency(source_currency)
    normalized_target = normalize_currency(target_currency)
    coerced_amount = _coerce_amount(amount)

    if normalized_source == normalized_target:
        return coerced_amount

    return from_base(to_base(coerced_amount, normalized_source, rates), normalized_target, rates)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if normalized not in SUPPORTED_CURRENCIES:
        raise UnsupportedCurrency(f"Unsupported currency: {normalized or value!r}")
    return normalized


def validate_rate(value: Decimal | int | float | str) -> Decimal:
    try:
        rate = _coerce_amount(value)
    except (InvalidOperation, ValueError) as exc:
        raise InvalidRate(f"Rate must be a number, got {value!r}.") from exc
    if not rate.is_finite() or rate <= 0:
        raise InvalidRate("Rate must be greater than zero.")
    return rate


def _lookup_rate(rates: RateSource, currency: str) -> Decimal:
    if isinstance(rates, RateTable):
        return rates.get_rate(currency)
    try:
        return _coerce_amount(rates[currency])
    except KeyError as exc:
        raise UnsupportedCurrency(f"No rate for currency: {currency}") from exc


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount).strip())
