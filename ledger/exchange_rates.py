"""Day-keyed exchange-rate cache built from stored rate snapshots.

The cache holds an immutable :class:`RateTable`. A refresh builds a new
table off to the side and publishes it with a single reference swap, so a
reader always sees either the old table or the new one in full. Refreshes
requested while one is already running wait on that same refresh instead
of starting their own.

Every build is numbered when it is submitted. A table only replaces one
with a lower number, and it only clears an invalidation that happened
before its build was submitted.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from threading import RLock
from types import MappingProxyType
from typing import Callable, Mapping, Optional

from ledger.config import RATE_CACHE_MAX_AGE_DAYS, RATE_REFRESH_TIMEOUT_SECONDS
from ledger.errors import RateNotFoundForDate, RefreshFailure
from ledger.logger import get_logger
from ledger.stores import RateSnapshotStore

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class RateTable:
    rates: Mapping[date, Mapping[str, Decimal]] = field(default_factory=dict)
    base_currencies: Mapping[date, str] = field(default_factory=dict)
    refreshed_at: Optional[datetime] = None
    sequence: int = 0
    invalidation_count: int = 0


class ExchangeRateCache:
    def __init__(
        self,
        store: RateSnapshotStore,
        *,
        max_age_days: int = RATE_CACHE_MAX_AGE_DAYS,
        refresh_timeout: float | None = RATE_REFRESH_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._store = store
        self._max_age_days = max_age_days
        self._refresh_timeout = refresh_timeout
        self._clock = clock
        self._table = RateTable()
        self._invalidated = False
        self._invalidation_count = 0
        self._build_count = 0
        self._lock = RLock()
        self._inflight: Future | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="rate-refresh")

    @property
    def is_empty(self) -> bool:
        return not self._table.rates

    @property
    def last_refreshed_at(self) -> datetime | None:
        return self._table.refreshed_at

    def get_rates(self, rate_date: date | datetime) -> Mapping[str, Decimal]:
        day = _to_day(rate_date)
        table = self._table
        try:
            return table.rates[day]
        except KeyError as exc:
            raise RateNotFoundForDate(day) from exc

    def base_currency_for(self, rate_date: date | datetime) -> str:
        day = _to_day(rate_date)
        table = self._table
        try:
            return table.base_currencies[day]
        except KeyError as exc:
            raise RateNotFoundForDate(day) from exc

    def dates(self) -> list[date]:
        return sorted(self._table.rates)

    def is_stale(self, now: datetime | None = None) -> bool:
        """Staleness counts whole calendar days, not hours since the refresh."""
        refreshed_at = self._table.refreshed_at
        if refreshed_at is None or self._invalidated:
            return True
        current = now or self._clock()
        elapsed_days = (current.date() - refreshed_at.date()).days
        return elapsed_days > self._max_age_days

    def ensure_fresh(self, now: datetime | None = None, timeout: float | None = None) -> None:
        if self.is_empty or self.is_stale(now):
            LOGGER.debug("Rate cache empty or stale, refreshing")
            self.refresh(timeout=timeout)

    def invalidate(self) -> None:
        """Force the next ``ensure_fresh`` to reload; current rates stay readable.

        A load already in flight may have read the store before the change
        that prompted this call, so later refreshes start a new one.
        """
        with self._lock:
            self._invalidation_count += 1
            self._invalidated = True
            self._inflight = None

    def refresh(self, timeout: float | None = None) -> RateTable:
        with self._lock:
            future = self._inflight
            if future is None:
                self._build_count += 1
                future = self._executor.submit(
                    self._build_table,
                    self._table,
                    self._build_count,
                    self._invalidation_count,
                )
                self._inflight = future
                future.add_done_callback(self._clear_inflight)

        wait_for = timeout if timeout is not None else self._refresh_timeout
        try:
            table = future.result(timeout=wait_for)
        except FutureTimeoutError as exc:
            LOGGER.error("Exchange rate refresh exceeded %s seconds", wait_for)
            raise RefreshFailure("Exchange rate refresh timed out.") from exc

        self._publish(table)
        return table

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def _clear_inflight(self, future: Future) -> None:
        with self._lock:
            if self._inflight is future:
                self._inflight = None

    def _publish(self, table: RateTable) -> None:
        with self._lock:
            if table.sequence <= self._table.sequence:
                return
            self._table = table
            if table.invalidation_count == self._invalidation_count:
                self._invalidated = False
            LOGGER.info("Exchange rate cache refreshed with %d dates", len(table.rates))

    def _build_table(
        self, previous: RateTable, sequence: int, invalidation_count: int
    ) -> RateTable:
        try:
            snapshots = self._store.list_non_deleted_snapshots()
        except Exception as exc:
            LOGGER.error("Error loading exchange rate snapshots: %s", exc)
            raise RefreshFailure("Exchange rate snapshot store unavailable.") from exc

        rates: dict[date, Mapping[str, Decimal]] = dict(previous.rates)
        base_currencies: dict[date, str] = dict(previous.base_currencies)
        for snapshot in snapshots:
            if snapshot.is_deleted:
                continue
            day = _to_day(snapshot.actual_date)
            rates[day] = MappingProxyType(_coerce_rates(snapshot.rates))
            base_currencies[day] = snapshot.base_currency.strip().upper()

        return RateTable(
            rates=MappingProxyType(rates),
            base_currencies=MappingProxyType(base_currencies),
            refreshed_at=self._clock(),
            sequence=sequence,
            invalidation_count=invalidation_count,
        )


def _coerce_rates(raw: Mapping[str, object]) -> dict[str, Decimal]:
    converted: dict[str, Decimal] = {}
    for code, value in raw.items():
        try:
            converted[code.strip().upper()] = (
                value if isinstance(value, Decimal) else Decimal(str(value))
            )
        except (InvalidOperation, TypeError, ValueError):
            LOGGER.warning("Invalid rate for currency %s: %r", code, value)
    return converted


def _to_day(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value
