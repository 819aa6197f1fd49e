from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Sequence


class LedgerError(Exception):
    """Base class for errors raised by the budget and exchange-rate core."""


class RateNotFoundForDate(LedgerError, LookupError):
    def __init__(self, rate_date: date) -> None:
        super().__init__(f"No exchange rates found for date: {rate_date.isoformat()}")
        self.date = rate_date


class RateNotFoundForCurrency(LedgerError, LookupError):
    def __init__(self, rate_date: date, currency: str) -> None:
        super().__init__(
            f"No exchange rate found for currency {currency} on {rate_date.isoformat()}"
        )
        self.date = rate_date
        self.currency = currency


class InvalidPeriod(LedgerError, ValueError):
    def __init__(self, value: str, accepted: Sequence[str]) -> None:
        super().__init__(
            f"Invalid period: {value}. Valid periods are: {', '.join(accepted)}"
        )
        self.value = value
        self.accepted = list(accepted)


class InvalidPeriodForRenewal(LedgerError, ValueError):
    def __init__(self, period: str) -> None:
        super().__init__(f"Invalid period for auto-renewal: {period}")
        self.period = period


class BudgetNotFound(LedgerError, LookupError):
    def __init__(self, budget_id: int | None, owner_id: int | None = None) -> None:
        if owner_id is None:
            message = f"Budget {budget_id} not found."
        else:
            message = f"Budget {budget_id} not found for user {owner_id}."
        super().__init__(message)
        self.budget_id = budget_id
        self.owner_id = owner_id


class ConversionFailure(LedgerError):
    """A transaction amount could not be converted into a budget's currency."""

    def __init__(
        self,
        *,
        transaction_id: int | None,
        budget_id: int | None,
        amount: Decimal,
        source_currency: str,
        target_currency: str,
        reason: str,
    ) -> None:
        super().__init__(
            f"Failed to convert transaction {transaction_id} "
            f"({amount} {source_currency} -> {target_currency}) "
            f"for budget {budget_id}: {reason}"
        )
        self.transaction_id = transaction_id
        self.budget_id = budget_id
        self.amount = amount
        self.source_currency = source_currency
        self.target_currency = target_currency


class RefreshFailure(LedgerError, RuntimeError):
    """Raised when exchange-rate snapshots cannot be reloaded."""


class BudgetRefreshError(LedgerError):
    """User-facing failure to recompute a budget.

    The message is generic; the underlying cause is chained for logs.
    """

    user_message = "Unable to refresh budget."

    def __init__(self, budget_id: int | None) -> None:
        super().__init__(f"{self.user_message} (budget {budget_id})")
        self.budget_id = budget_id
