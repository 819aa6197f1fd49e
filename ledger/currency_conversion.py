from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from ledger.errors import RateNotFoundForCurrency, RateNotFoundForDate, RefreshFailure
from ledger.exchange_rates import ExchangeRateCache
from ledger.logger import get_logger

LOGGER = get_logger(__name__)

ONE = Decimal("1")


class CurrencyConverter:
    """Cross-rate conversion over an :class:`ExchangeRateCache`.

    Snapshot rates are units of currency per one unit of the snapshot's
    base currency, so ``rate[from] / rate[to]`` is the number of ``from``
    units worth one ``to`` unit.
    """

    def __init__(self, cache: ExchangeRateCache) -> None:
        self.cache = cache

    def rate_between(
        self, rate_date: date | datetime, source_currency: str, target_currency: str
    ) -> Decimal:
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        rates = self.cache.get_rates(rate_date)
        day = rate_date.date() if isinstance(rate_date, datetime) else rate_date
        if source == target:
            return ONE

        try:
            source_rate = rates[source]
        except KeyError as exc:
            LOGGER.warning("No exchange rate found for currency: %s", source)
            raise RateNotFoundForCurrency(day, source) from exc
        try:
            target_rate = rates[target]
        except KeyError as exc:
            LOGGER.warning("No exchange rate found for currency: %s", target)
            raise RateNotFoundForCurrency(day, target) from exc
        return source_rate / target_rate

    def convert(
        self,
        rate_date: date | datetime,
        amount: Decimal | int | str,
        source_currency: str,
        target_currency: str,
    ) -> Decimal:
        coerced_amount = _coerce_amount(amount)
        if normalize_currency(source_currency) == normalize_currency(target_currency):
            return coerced_amount

        self.cache.ensure_fresh()
        rate = self.rate_between(rate_date, source_currency, target_currency)
        return coerced_amount / rate

    def convert_or_original(
        self,
        rate_date: date | datetime,
        amount: Decimal | int | str,
        source_currency: str,
        target_currency: str,
    ) -> Decimal:
        """Reporting-side conversion: fall back to the unconverted amount."""
        try:
            return self.convert(rate_date, amount, source_currency, target_currency)
        except (RateNotFoundForDate, RateNotFoundForCurrency, RefreshFailure, ValueError):
            return _coerce_amount(amount)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _coerce_amount(amount: Decimal | int | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
