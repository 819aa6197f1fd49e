"""Collaborator interfaces consumed by the budget and exchange-rate core."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from decimal import Decimal
from typing import Iterable

from ledger.models import Budget, ExchangeRateSnapshot, Transaction

BUDGET_FILTERS = ("active", "archived", "all")


class RateSnapshotStore(ABC):
    @abstractmethod
    def list_non_deleted_snapshots(self) -> list[ExchangeRateSnapshot]:
        """Return every snapshot that has not been soft-deleted."""


class TransactionStore(ABC):
    @abstractmethod
    def find_expense_transactions(
        self,
        owner_id: int,
        category_ids: Iterable[int],
        start_inclusive: date,
        end_exclusive: date,
    ) -> list[Transaction]:
        """Return non-deleted, non-transfer expense transactions in ``[start, end)``."""


class AccountStore(ABC):
    @abstractmethod
    def get_account_currency(self, account_id: int) -> str:
        """Return the currency code of an account."""

    @abstractmethod
    def get_user_base_currency(self, owner_id: int) -> str | None:
        """Return the user's base (reporting) currency, if one is set."""


class CategoryStore(ABC):
    @abstractmethod
    def filter_valid_category_ids(
        self, owner_id: int, requested_ids: Iterable[int]
    ) -> list[int]:
        """Keep only ids of non-deleted categories owned by the user."""


class BudgetStore(ABC):
    @abstractmethod
    def create(self, budget: Budget) -> Budget:
        """Persist a new budget and return it with its id."""

    @abstractmethod
    def get(self, budget_id: int, owner_id: int) -> Budget | None:
        """Return a non-deleted budget owned by the user."""

    @abstractmethod
    def get_any(self, budget_id: int) -> Budget | None:
        """Return a non-deleted budget regardless of owner."""

    @abstractmethod
    def update(self, budget: Budget) -> bool:
        """Replace the editable fields of a budget; False when no row matched."""

    @abstractmethod
    def update_collected_amount(self, budget_id: int, amount: Decimal) -> None:
        """Overwrite the collected amount of a budget."""

    @abstractmethod
    def soft_delete(self, budget_id: int, owner_id: int) -> bool:
        """Flag a budget deleted; False when no row matched id and owner."""

    @abstractmethod
    def archive(self, budget_id: int, owner_id: int) -> bool:
        """Flag a budget archived; False when no row matched id and owner."""

    @abstractmethod
    def list_outdated(self, today: date) -> list[Budget]:
        """Active budgets whose exclusive end date is on or before ``today``."""

    @abstractmethod
    def list_by_owner(self, owner_id: int, include: str = "all") -> list[Budget]:
        """Non-deleted budgets of a user filtered by ``include``."""

    @abstractmethod
    def list_covering(self, owner_id: int, category_id: int, on_date: date) -> list[Budget]:
        """Non-deleted budgets including the category whose window covers the date."""


def validate_budget_filter(include: str) -> str:
    normalized = include.strip().lower()
    if normalized not in BUDGET_FILTERS:
        raise ValueError(f"Invalid include parameter: {include}")
    return normalized

