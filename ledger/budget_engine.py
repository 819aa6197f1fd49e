from __future__ import annotations

from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from threading import Lock
from typing import Callable, Iterable, Optional

from ledger.currency_conversion import CurrencyConverter, normalize_currency
from ledger.errors import (
    BudgetNotFound,
    ConversionFailure,
    RateNotFoundForCurrency,
    RateNotFoundForDate,
)
from ledger.logger import get_logger
from ledger.models import ZERO, Budget, Transaction
from ledger.stores import AccountStore, BudgetStore, TransactionStore

LOGGER = get_logger(__name__)

CENT = Decimal("0.01")

QueryKey = tuple[int, tuple[int, ...], date, date]


class TransactionQueryCache:
    """Shares expense-transaction query results across budgets of one batch."""

    def __init__(self) -> None:
        self._entries: dict[QueryKey, list[Transaction]] = {}
        self._lock = Lock()

    def get_or_fetch(
        self, key: QueryKey, fetch: Callable[[], list[Transaction]]
    ) -> list[Transaction]:
        with self._lock:
            cached = self._entries.get(key)
        if cached is not None:
            return cached
        transactions = fetch()
        with self._lock:
            self._entries.setdefault(key, transactions)
        return transactions


class BudgetAggregationEngine:
    def __init__(
        self,
        budgets: BudgetStore,
        transactions: TransactionStore,
        accounts: AccountStore,
        converter: CurrencyConverter,
    ) -> None:
        self.budgets = budgets
        self.transactions = transactions
        self.accounts = accounts
        self.converter = converter

    def recompute(
        self,
        budget: Budget | int,
        query_cache: Optional[TransactionQueryCache] = None,
    ) -> Decimal:
        """Rebuild a budget's collected amount from its matching transactions.

        The stored value is replaced, never adjusted. Any conversion failure
        aborts the whole recomputation and leaves the stored value untouched.
        """
        if not isinstance(budget, Budget):
            found = self.budgets.get_any(budget)
            if found is None:
                raise BudgetNotFound(budget)
            budget = found

        total = self.collect(budget, query_cache=query_cache)
        self.budgets.update_collected_amount(budget.id, total)
        LOGGER.debug("Budget %s collected amount set to %s", budget.id, total)
        return total

    def collect(
        self,
        budget: Budget,
        query_cache: Optional[TransactionQueryCache] = None,
    ) -> Decimal:
        if not budget.included_categories:
            return ZERO

        category_ids = tuple(sorted(budget.included_categories))

        def fetch() -> list[Transaction]:
            return self.transactions.find_expense_transactions(
                budget.user_id, category_ids, budget.start_date, budget.end_date
            )

        if query_cache is None:
            matching = fetch()
        else:
            key = (budget.user_id, category_ids, budget.start_date, budget.end_date)
            matching = query_cache.get_or_fetch(key, fetch)

        return self._sum_contributions(matching, budget)

    def _sum_contributions(
        self, transactions: Iterable[Transaction], budget: Budget
    ) -> Decimal:
        budget_currency = normalize_currency(budget.currency)
        account_currencies: dict[int, str] = {}
        base_currency: list[Optional[str]] = []

        def user_base_currency() -> Optional[str]:
            if not base_currency:
                raw = self.accounts.get_user_base_currency(budget.user_id)
                base_currency.append(normalize_currency(raw) if raw else None)
            return base_currency[0]

        total = ZERO
        for txn in transactions:
            if txn.account_id not in account_currencies:
                account_currencies[txn.account_id] = normalize_currency(
                    self.accounts.get_account_currency(txn.account_id)
                )
            account_currency = account_currencies[txn.account_id]
            total += self._contribution(
                txn, budget, account_currency, budget_currency, user_base_currency
            )
        return total.quantize(CENT, rounding=ROUND_HALF_UP)

    def _contribution(
        self,
        txn: Transaction,
        budget: Budget,
        account_currency: str,
        budget_currency: str,
        user_base_currency: Callable[[], Optional[str]],
    ) -> Decimal:
        amount = _coerce_amount(txn.amount)
        if account_currency == budget_currency:
            return amount

        if txn.base_currency_amount is not None and user_base_currency() == budget_currency:
            return _coerce_amount(txn.base_currency_amount)

        try:
            return self.converter.convert(txn.date, amount, account_currency, budget_currency)
        except (RateNotFoundForDate, RateNotFoundForCurrency) as exc:
            raise ConversionFailure(
                transaction_id=txn.id,
                budget_id=budget.id,
                amount=amount,
                source_currency=account_currency,
                target_currency=budget_currency,
                reason=str(exc),
            ) from exc


def _coerce_amount(amount: Decimal) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
