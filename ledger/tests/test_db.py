import os
import tempfile
import unittest
from dataclasses import replace
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import insert, select

from ledger.budget_engine import BudgetAggregationEngine
from ledger.budget_lifecycle import BudgetLifecycleManager
from ledger.config import create_db_engine
from ledger.currency_conversion import CurrencyConverter
from ledger.db import (
    SqlAccountStore,
    SqlBudgetStore,
    SqlCategoryStore,
    SqlRateSnapshotStore,
    SqlTransactionStore,
    accounts,
    budgets,
    categories,
    init_db,
    parse_category_ids,
    serialize_category_ids,
    transactions,
    users,
)
from ledger.exchange_rates import ExchangeRateCache
from ledger.models import Budget, CategoryDate, ExchangeRateSnapshot
from ledger.schemas import BudgetPayload

OWNER = 1
OTHER_OWNER = 2
NOW = datetime(2024, 2, 1, 8, 0)


class SqlStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        # File-backed so that worker threads share one database.
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.engine = create_db_engine(f"sqlite:///{os.path.join(tmp.name, 'ledger.db')}")
        self.addCleanup(self.engine.dispose)
        init_db(self.engine)
        with self.engine.begin() as conn:
            conn.execute(
                insert(users),
                [
                    {"id": OWNER, "email": "owner@example.com", "base_currency": "EUR"},
                    {"id": OTHER_OWNER, "email": "other@example.com", "base_currency": None},
                ],
            )
            conn.execute(
                insert(accounts),
                [
                    {"id": 10, "user_id": OWNER, "name": "Checking", "currency": "USD"},
                    {"id": 11, "user_id": OWNER, "name": "Euro card", "currency": "EUR"},
                    {"id": 20, "user_id": OTHER_OWNER, "name": "Other", "currency": "USD"},
                ],
            )
            conn.execute(
                insert(categories),
                [
                    {"id": 5, "user_id": OWNER, "name": "Groceries", "is_deleted": False},
                    {"id": 6, "user_id": OWNER, "name": "Fuel", "is_deleted": False},
                    {"id": 7, "user_id": OWNER, "name": "Old", "is_deleted": True},
                    {"id": 999, "user_id": OTHER_OWNER, "name": "Theirs", "is_deleted": False},
                ],
            )
        self.rate_store = SqlRateSnapshotStore(self.engine)
        self.transaction_store = SqlTransactionStore(self.engine)
        self.account_store = SqlAccountStore(self.engine)
        self.category_store = SqlCategoryStore(self.engine)
        self.budget_store = SqlBudgetStore(self.engine)

    def add_transactions(self, *rows) -> None:
        defaults = {
            "user_id": OWNER,
            "category_id": 5,
            "is_income": False,
            "is_transfer": False,
            "is_deleted": False,
        }
        with self.engine.begin() as conn:
            conn.execute(insert(transactions), [{**defaults, **row} for row in rows])

    def make_budget(self, **overrides) -> Budget:
        values = {
            "id": None,
            "user_id": OWNER,
            "name": "Groceries",
            "currency": "USD",
            "target_amount": Decimal("500.00"),
            "period": "MONTHLY",
            "start_date": date(2024, 1, 1),
            "end_date": date(2024, 2, 1),
            "included_categories": frozenset({5}),
        }
        values.update(overrides)
        return self.budget_store.create(Budget(**values))


class CategoryEncodingTests(unittest.TestCase):
    def test_serializes_sorted_unique_ids(self) -> None:
        self.assertEqual(serialize_category_ids([12, 5, 12, 7]), "5,7,12")
        self.assertEqual(serialize_category_ids([]), "")

    def test_parses_with_whitespace_and_blanks(self) -> None:
        self.assertEqual(parse_category_ids(" 5, 7,,12 "), frozenset({5, 7, 12}))
        self.assertEqual(parse_category_ids(""), frozenset())
        self.assertEqual(parse_category_ids(None), frozenset())

    def test_rejects_non_numeric_ids(self) -> None:
        with self.assertRaises(ValueError):
            parse_category_ids("5,abc")


class SqlRateSnapshotStoreTests(SqlStoreTestCase):
    def test_save_replaces_snapshot_for_same_date(self) -> None:
        self.rate_store.save_snapshot(
            ExchangeRateSnapshot(
                actual_date=date(2024, 1, 15),
                base_currency="USD",
                rates={"USD": Decimal("1.00"), "EUR": Decimal("0.91")},
                service_name="test",
            )
        )
        self.rate_store.save_snapshot(
            ExchangeRateSnapshot(
                actual_date=date(2024, 1, 15),
                base_currency="USD",
                rates={"USD": Decimal("1.00"), "EUR": Decimal("0.92")},
                service_name="test",
            )
        )

        snapshots = self.rate_store.list_non_deleted_snapshots()

        self.assertEqual(len(snapshots), 1)
        self.assertEqual(snapshots[0].rates["EUR"], Decimal("0.92"))
        self.assertIsInstance(snapshots[0].rates["USD"], Decimal)
        self.assertEqual(snapshots[0].base_currency, "USD")


class SqlLookupStoreTests(SqlStoreTestCase):
    def test_expense_query_applies_filters(self) -> None:
        self.add_transactions(
            {"id": 1, "account_id": 10, "amount": Decimal("10.00"), "date": date(2024, 1, 1)},
            {"id": 2, "account_id": 10, "amount": Decimal("20.00"), "date": date(2024, 1, 31)},
            {"id": 3, "account_id": 10, "amount": Decimal("40.00"), "date": date(2024, 2, 1)},
            {"id": 4, "account_id": 10, "amount": Decimal("1.00"), "date": date(2024, 1, 5), "is_income": True},
            {"id": 5, "account_id": 10, "amount": Decimal("2.00"), "date": date(2024, 1, 5), "is_transfer": True},
            {"id": 6, "account_id": 10, "amount": Decimal("4.00"), "date": date(2024, 1, 5), "is_deleted": True},
            {"id": 7, "account_id": 10, "amount": Decimal("8.00"), "date": date(2024, 1, 5), "category_id": 6},
            {"id": 8, "account_id": 20, "amount": Decimal("16.00"), "date": date(2024, 1, 5), "user_id": OTHER_OWNER},
        )

        found = self.transaction_store.find_expense_transactions(
            OWNER, [5], date(2024, 1, 1), date(2024, 2, 1)
        )

        self.assertEqual([txn.id for txn in found], [1, 2])
        self.assertEqual(found[1].amount, Decimal("20.00"))
        self.assertIsNone(found[0].base_currency_amount)
        self.assertEqual(
            self.transaction_store.find_expense_transactions(
                OWNER, [], date(2024, 1, 1), date(2024, 2, 1)
            ),
            [],
        )

    def test_account_and_user_currency(self) -> None:
        self.assertEqual(self.account_store.get_account_currency(11), "EUR")
        self.assertEqual(self.account_store.get_user_base_currency(OWNER), "EUR")
        self.assertIsNone(self.account_store.get_user_base_currency(OTHER_OWNER))
        with self.assertRaises(LookupError):
            self.account_store.get_account_currency(404)

    def test_category_filter_keeps_owned_live_ids(self) -> None:
        valid = self.category_store.filter_valid_category_ids(OWNER, [5, 6, 7, 999])

        self.assertEqual(sorted(valid), [5, 6])


class SqlBudgetStoreTests(SqlStoreTestCase):
    def test_create_round_trips_fields(self) -> None:
        created = self.make_budget(included_categories=frozenset({6, 5}), comment="weekly shop")

        stored = self.budget_store.get(created.id, OWNER)

        self.assertEqual(stored.included_categories, frozenset({5, 6}))
        self.assertEqual(stored.target_amount, Decimal("500.00"))
        self.assertEqual(stored.end_date, date(2024, 2, 1))
        self.assertEqual(stored.comment, "weekly shop")
        self.assertFalse(stored.is_archived)
        with self.engine.begin() as conn:
            raw = conn.execute(
                select(budgets.c.included_categories).where(budgets.c.id == created.id)
            ).scalar_one()
        self.assertEqual(raw, "5,6")

    def test_get_checks_owner(self) -> None:
        created = self.make_budget()

        self.assertIsNone(self.budget_store.get(created.id, OTHER_OWNER))
        self.assertIsNotNone(self.budget_store.get_any(created.id))

    def test_update_and_collected_amount(self) -> None:
        created = self.make_budget()

        self.assertTrue(self.budget_store.update(replace(created, name="Food")))
        self.budget_store.update_collected_amount(created.id, Decimal("12.34"))

        stored = self.budget_store.get(created.id, OWNER)
        self.assertEqual(stored.name, "Food")
        self.assertEqual(stored.collected_amount, Decimal("12.34"))
        self.assertFalse(
            self.budget_store.update(replace(created, user_id=OTHER_OWNER))
        )

    def test_soft_delete_and_archive_check_owner(self) -> None:
        created = self.make_budget()

        self.assertFalse(self.budget_store.archive(created.id, OTHER_OWNER))
        self.assertTrue(self.budget_store.archive(created.id, OWNER))
        self.assertFalse(self.budget_store.soft_delete(created.id, OTHER_OWNER))
        self.assertTrue(self.budget_store.soft_delete(created.id, OWNER))
        self.assertIsNone(self.budget_store.get_any(created.id))
        self.assertFalse(self.budget_store.soft_delete(created.id, OWNER))

    def test_list_outdated_uses_exclusive_end(self) -> None:
        ended = self.make_budget(name="Ended")
        self.make_budget(name="Running", end_date=date(2024, 2, 2))
        archived = self.make_budget(name="Archived")
        self.budget_store.archive(archived.id, OWNER)

        outdated = self.budget_store.list_outdated(date(2024, 2, 1))

        self.assertEqual([budget.id for budget in outdated], [ended.id])

    def test_list_by_owner_filters(self) -> None:
        active = self.make_budget(name="Active")
        archived = self.make_budget(name="Archived")
        self.budget_store.archive(archived.id, OWNER)
        deleted = self.make_budget(name="Deleted")
        self.budget_store.soft_delete(deleted.id, OWNER)
        self.make_budget(name="Theirs", user_id=OTHER_OWNER)

        self.assertEqual(
            [budget.id for budget in self.budget_store.list_by_owner(OWNER, "active")],
            [active.id],
        )
        self.assertEqual(
            [budget.id for budget in self.budget_store.list_by_owner(OWNER, "archived")],
            [archived.id],
        )
        self.assertEqual(
            [budget.id for budget in self.budget_store.list_by_owner(OWNER, "all")],
            [active.id, archived.id],
        )
        with self.assertRaises(ValueError):
            self.budget_store.list_by_owner(OWNER, "everything")

    def test_list_covering_matches_category_and_window(self) -> None:
        january = self.make_budget(included_categories=frozenset({5, 15}))
        self.make_budget(name="February", start_date=date(2024, 2, 1), end_date=date(2024, 3, 1))
        self.make_budget(name="Fuel", included_categories=frozenset({6}))

        covering = self.budget_store.list_covering(OWNER, 5, date(2024, 1, 31))

        self.assertEqual([budget.id for budget in covering], [january.id])
        self.assertEqual(self.budget_store.list_covering(OWNER, 1, date(2024, 1, 31)), [])


class SqlEndToEndTests(SqlStoreTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.rate_store.save_snapshot(
            ExchangeRateSnapshot(
                actual_date=date(2024, 1, 15),
                base_currency="USD",
                rates={"USD": Decimal("1.00"), "EUR": Decimal("0.92")},
                service_name="test",
            )
        )
        self.add_transactions(
            {"id": 1, "account_id": 11, "amount": Decimal("100.00"), "date": date(2024, 1, 15)},
            {"id": 2, "account_id": 10, "amount": Decimal("25.00"), "date": date(2024, 1, 20)},
            {"id": 3, "account_id": 10, "amount": Decimal("7.00"), "date": date(2024, 1, 20), "category_id": 6},
        )
        self.cache = ExchangeRateCache(self.rate_store, clock=lambda: NOW)
        self.addCleanup(self.cache.close)
        engine = BudgetAggregationEngine(
            self.budget_store,
            self.transaction_store,
            self.account_store,
            CurrencyConverter(self.cache),
        )
        self.manager = BudgetLifecycleManager(
            self.budget_store, self.category_store, engine, clock=lambda: NOW, max_workers=4
        )

    def create(self, **overrides) -> Budget:
        values = {
            "name": "Groceries",
            "currency": "USD",
            "target_amount": Decimal("500"),
            "period": "monthly",
            "repeat": True,
            "start_date": date(2024, 1, 1),
            "end_date": date(2024, 1, 31),
            "categories": [5, 999],
        }
        values.update(overrides)
        return self.manager.create(BudgetPayload(**values), OWNER)

    def test_create_collects_through_sql_stores(self) -> None:
        budget = self.create()

        stored = self.budget_store.get(budget.id, OWNER)
        self.assertEqual(stored.collected_amount, Decimal("133.70"))
        self.assertEqual(stored.included_categories, frozenset({5}))

    def test_batch_recompute_and_renewal(self) -> None:
        groceries = self.create()
        fuel = self.create(name="Fuel", categories=[6], repeat=False)
        self.add_transactions(
            {"id": 4, "account_id": 10, "amount": Decimal("3.00"), "date": date(2024, 1, 21), "category_id": 6},
            {"id": 5, "account_id": 10, "amount": Decimal("5.00"), "date": date(2024, 1, 22)},
        )

        recomputed = self.manager.recompute_for_categories(
            OWNER, [CategoryDate(category_id=6, date=date(2024, 1, 21))]
        )
        self.assertEqual(recomputed, [fuel.id])
        self.assertEqual(self.budget_store.get(fuel.id, OWNER).collected_amount, Decimal("10.00"))
        self.assertEqual(
            self.budget_store.get(groceries.id, OWNER).collected_amount, Decimal("133.70")
        )

        self.manager.recompute_all_for_user(OWNER)
        self.assertEqual(
            self.budget_store.get(groceries.id, OWNER).collected_amount, Decimal("138.70")
        )

        archived = self.manager.process_outdated()

        self.assertEqual(sorted(archived), sorted([groceries.id, fuel.id]))
        active = self.budget_store.list_by_owner(OWNER, "active")
        self.assertEqual([budget.name for budget in active], ["Groceries (copy)"])
        self.assertEqual(active[0].start_date, date(2024, 2, 1))
        self.assertEqual(active[0].end_date, date(2024, 3, 1))
        self.assertEqual(active[0].collected_amount, Decimal("0"))


if __name__ == "__main__":
    unittest.main()
