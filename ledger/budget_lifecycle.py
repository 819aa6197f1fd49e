from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable

from ledger.budget_engine import BudgetAggregationEngine, TransactionQueryCache
from ledger.budget_periods import encode_end_date, next_period
from ledger.config import RECOMPUTE_MAX_WORKERS
from ledger.errors import BudgetNotFound, BudgetRefreshError
from ledger.logger import get_logger
from ledger.models import ZERO, Budget, CategoryDate
from ledger.schemas import BudgetPayload, BudgetResponse, BudgetUpdatePayload
from ledger.stores import BudgetStore, CategoryStore, validate_budget_filter

LOGGER = get_logger(__name__)

COPY_SUFFIX = " (copy)"


class BudgetLifecycleManager:
    """Create, edit, archive and renew budgets, keeping collected amounts current."""

    def __init__(
        self,
        budgets: BudgetStore,
        categories: CategoryStore,
        engine: BudgetAggregationEngine,
        *,
        clock: Callable[[], datetime] = datetime.now,
        max_workers: int = RECOMPUTE_MAX_WORKERS,
    ) -> None:
        self.budgets = budgets
        self.categories = categories
        self.engine = engine
        self._clock = clock
        self._max_workers = max_workers

    def create(self, payload: BudgetPayload, owner_id: int) -> Budget:
        LOGGER.debug("Creating budget for user %s", owner_id)
        payload = BudgetPayload.validate_payload(payload)
        now = self._clock()
        budget = Budget(
            id=None,
            user_id=owner_id,
            name=payload.name,
            currency=payload.currency,
            target_amount=payload.target_amount,
            collected_amount=ZERO,
            period=payload.period,
            repeat=payload.repeat,
            start_date=payload.start_date,
            end_date=encode_end_date(payload.end_date),
            included_categories=self._valid_categories(owner_id, payload.categories),
            comment=payload.comment,
            created_at=now,
            updated_at=now,
        )
        created = self.budgets.create(budget)
        return self._recompute_after_write(created)

    def update(self, payload: BudgetUpdatePayload, owner_id: int) -> Budget:
        LOGGER.debug("Updating budget %s for user %s", payload.id, owner_id)
        payload = BudgetUpdatePayload.validate_payload(payload)
        existing = self.budgets.get(payload.id, owner_id)
        if existing is None:
            raise BudgetNotFound(payload.id, owner_id)

        budget = replace(
            existing,
            name=payload.name,
            currency=payload.currency,
            target_amount=payload.target_amount,
            collected_amount=ZERO,
            period=payload.period,
            repeat=payload.repeat,
            start_date=payload.start_date,
            end_date=encode_end_date(payload.end_date),
            included_categories=self._valid_categories(owner_id, payload.categories),
            comment=payload.comment,
            updated_at=self._clock(),
        )
        if not self.budgets.update(budget):
            raise BudgetNotFound(payload.id, owner_id)
        return self._recompute_after_write(budget)

    def delete(self, budget_id: int, owner_id: int) -> None:
        LOGGER.debug("Deleting budget %s for user %s", budget_id, owner_id)
        if not self.budgets.soft_delete(budget_id, owner_id):
            raise BudgetNotFound(budget_id, owner_id)

    def archive(self, budget_id: int, owner_id: int) -> None:
        LOGGER.debug("Archiving budget %s for user %s", budget_id, owner_id)
        if not self.budgets.archive(budget_id, owner_id):
            raise BudgetNotFound(budget_id, owner_id)

    def recompute(self, budget_id: int, owner_id: int) -> Budget:
        budget = self.budgets.get(budget_id, owner_id)
        if budget is None:
            raise BudgetNotFound(budget_id, owner_id)
        return self._recompute_after_write(budget)

    def list_budgets(self, owner_id: int, include: str = "active") -> list[BudgetResponse]:
        include = validate_budget_filter(include)
        budgets = sorted(
            self.budgets.list_by_owner(owner_id, include),
            key=lambda item: (item.is_archived, item.end_date, item.name),
        )
        return [BudgetResponse.from_budget(budget) for budget in budgets]

    def process_outdated(self, now: datetime | None = None) -> list[int]:
        """Archive every budget whose period has ended, renewing repeating ones.

        A failure on one budget is logged and the sweep moves on.
        """
        today = (now or self._clock()).date()
        outdated = self.budgets.list_outdated(today)
        LOGGER.info("Processing %d outdated budgets", len(outdated))

        archived_ids: list[int] = []
        for budget in outdated:
            if budget.repeat:
                try:
                    self._create_successor(budget)
                except Exception:
                    LOGGER.exception("Error creating copy of outdated budget %s", budget.id)

            try:
                if not self.budgets.archive(budget.id, budget.user_id):
                    raise BudgetNotFound(budget.id, budget.user_id)
            except Exception:
                LOGGER.exception("Error archiving outdated budget %s", budget.id)
                continue
            archived_ids.append(budget.id)

        LOGGER.info("Archived %d outdated budgets", len(archived_ids))
        return archived_ids

    def recompute_all_for_user(self, owner_id: int) -> None:
        budgets = self.budgets.list_by_owner(owner_id, "all")
        self._recompute_batch(budgets, owner_id)

    def recompute_for_categories(
        self, owner_id: int, pairs: Iterable[CategoryDate]
    ) -> list[int]:
        """Recompute only budgets whose window covers a touched category and date."""
        affected: dict[int, Budget] = {}
        for pair in pairs:
            if not pair.category_id or pair.date is None:
                continue
            try:
                covering = self.budgets.list_covering(owner_id, pair.category_id, pair.date)
            except Exception:
                LOGGER.exception(
                    "Failed to get active budgets for user %s, category %s, date %s",
                    owner_id,
                    pair.category_id,
                    pair.date.isoformat(),
                )
                continue
            for budget in covering:
                if budget.id is not None:
                    affected[budget.id] = budget

        if not affected:
            return []
        return self._recompute_batch(affected.values(), owner_id)

    def _recompute_batch(self, budgets: Iterable[Budget], owner_id: int) -> list[int]:
        query_cache = TransactionQueryCache()
        succeeded: list[int] = []
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            futures = {
                pool.submit(self.engine.recompute, budget, query_cache): budget
                for budget in budgets
                if budget.id is not None
            }
            for future in as_completed(futures):
                budget = futures[future]
                try:
                    future.result()
                except Exception:
                    LOGGER.exception(
                        "Failed to update budget %s (%s) for user %s",
                        budget.id,
                        budget.name,
                        owner_id,
                    )
                    continue
                succeeded.append(budget.id)
        return sorted(succeeded)

    def _create_successor(self, budget: Budget) -> Budget:
        start_date, end_date = next_period(budget.end_date, budget.period)
        now = self._clock()
        successor = replace(
            budget,
            id=None,
            name=f"{budget.name}{COPY_SUFFIX}",
            collected_amount=ZERO,
            start_date=start_date,
            end_date=end_date,
            is_archived=False,
            is_deleted=False,
            created_at=now,
            updated_at=now,
        )
        created = self.budgets.create(successor)
        LOGGER.info("Created budget %s renewing budget %s", created.id, budget.id)
        try:
            self.engine.recompute(created)
        except Exception:
            LOGGER.exception("Failed to fill renewed budget %s", created.id)
        return created

    def _valid_categories(self, owner_id: int, requested: Iterable[int]) -> frozenset[int]:
        requested_ids = list(dict.fromkeys(requested))
        if not requested_ids:
            return frozenset()
        return frozenset(self.categories.filter_valid_category_ids(owner_id, requested_ids))

    def _recompute_after_write(self, budget: Budget) -> Budget:
        try:
            total = self.engine.recompute(budget)
        except Exception as exc:
            LOGGER.exception("Error filling budget %s with existing transactions", budget.id)
            raise BudgetRefreshError(budget.id) from exc
        return replace(budget, collected_amount=total)
