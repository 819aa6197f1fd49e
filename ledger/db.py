"""SQLAlchemy-backed implementations of the store interfaces."""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Mapping

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    and_,
    false,
    func,
    insert,
    select,
    true,
    update,
)
from sqlalchemy.engine import Engine

from ledger.config import SYSTEM_DEFAULT_CURRENCY
from ledger.models import Budget, ExchangeRateSnapshot, Transaction
from ledger.stores import (
    AccountStore,
    BudgetStore,
    CategoryStore,
    RateSnapshotStore,
    TransactionStore,
    validate_budget_filter,
)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("base_currency", String(3)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False, server_default=SYSTEM_DEFAULT_CURRENCY),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("parent_id", Integer, ForeignKey("categories.id")),
    Column("is_income", Boolean, nullable=False, default=False),
    Column("is_deleted", Boolean, nullable=False, default=False),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("base_currency_amount", Numeric(12, 2)),
    Column("date", Date, nullable=False),
    Column("is_income", Boolean, nullable=False, default=False),
    Column("is_transfer", Boolean, nullable=False, default=False),
    Column("is_deleted", Boolean, nullable=False, default=False),
    Column("notes", String(500)),
)

exchange_rates = Table(
    "exchange_rates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actual_date", Date, nullable=False),
    Column("base_currency_code", String(3), nullable=False),
    Column("service_name", String(100), nullable=False),
    Column("rates", JSON, nullable=False),
    Column("is_deleted", Boolean, nullable=False, default=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("target_amount", Numeric(12, 2), nullable=False),
    Column("collected_amount", Numeric(12, 2), nullable=False, default=0),
    Column("period", String(20), nullable=False),
    Column("repeat", Boolean, nullable=False, default=False),
    Column("start_date", Date, nullable=False),
    Column("end_date", Date, nullable=False),
    # Comma-separated category ids; only this module reads or writes the format.
    Column("included_categories", String(1000), nullable=False, default=""),
    Column("comment", String(500)),
    Column("is_deleted", Boolean, nullable=False, default=False),
    Column("is_archived", Boolean, nullable=False, default=False),
    Column("created_at", DateTime),
    Column("updated_at", DateTime),
)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)


class SqlRateSnapshotStore(RateSnapshotStore):
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def list_non_deleted_snapshots(self) -> list[ExchangeRateSnapshot]:
        stmt = (
            select(exchange_rates)
            .where(exchange_rates.c.is_deleted == false())
            .order_by(exchange_rates.c.actual_date.asc(), exchange_rates.c.id.asc())
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [
            ExchangeRateSnapshot(
                id=row["id"],
                actual_date=row["actual_date"],
                base_currency=row["base_currency_code"],
                rates={code: Decimal(str(value)) for code, value in row["rates"].items()},
                service_name=row["service_name"],
                is_deleted=row["is_deleted"],
            )
            for row in rows
        ]

    def save_snapshot(self, snapshot: ExchangeRateSnapshot) -> int:
        """Store a snapshot, soft-deleting any earlier one for the same date."""
        with self.engine.begin() as conn:
            conn.execute(
                update(exchange_rates)
                .where(
                    exchange_rates.c.actual_date == snapshot.actual_date,
                    exchange_rates.c.is_deleted == false(),
                )
                .values(is_deleted=True)
            )
            result = conn.execute(
                insert(exchange_rates).values(
                    actual_date=snapshot.actual_date,
                    base_currency_code=snapshot.base_currency,
                    service_name=snapshot.service_name,
                    rates={code: str(value) for code, value in snapshot.rates.items()},
                    is_deleted=False,
                )
            )
        return result.inserted_primary_key[0]


class SqlTransactionStore(TransactionStore):
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def find_expense_transactions(
        self,
        owner_id: int,
        category_ids: Iterable[int],
        start_inclusive: date,
        end_exclusive: date,
    ) -> list[Transaction]:
        category_list = list(category_ids)
        if not category_list:
            return []
        stmt = (
            select(transactions)
            .where(
                transactions.c.user_id == owner_id,
                transactions.c.is_deleted == false(),
                transactions.c.is_income == false(),
                transactions.c.is_transfer == false(),
                transactions.c.category_id.in_(category_list),
                transactions.c.date >= start_inclusive,
                transactions.c.date < end_exclusive,
            )
            .order_by(transactions.c.date.asc(), transactions.c.id.asc())
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_transaction(row) for row in rows]


class SqlAccountStore(AccountStore):
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_account_currency(self, account_id: int) -> str:
        with self.engine.begin() as conn:
            currency = conn.execute(
                select(accounts.c.currency).where(accounts.c.id == account_id)
            ).scalar_one_or_none()
        if currency is None:
            raise LookupError(f"Account {account_id} not found.")
        return currency

    def get_user_base_currency(self, owner_id: int) -> str | None:
        with self.engine.begin() as conn:
            return conn.execute(
                select(users.c.base_currency).where(users.c.id == owner_id)
            ).scalar_one_or_none()


class SqlCategoryStore(CategoryStore):
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def filter_valid_category_ids(
        self, owner_id: int, requested_ids: Iterable[int]
    ) -> list[int]:
        requested = list(requested_ids)
        if not requested:
            return []
        stmt = select(categories.c.id).where(
            categories.c.user_id == owner_id,
            categories.c.id.in_(requested),
            categories.c.is_deleted == false(),
        )
        with self.engine.begin() as conn:
            return list(conn.execute(stmt).scalars().all())


class SqlBudgetStore(BudgetStore):
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, budget: Budget) -> Budget:
        with self.engine.begin() as conn:
            result = conn.execute(insert(budgets).values(**_budget_values(budget)))
            budget_id = result.inserted_primary_key[0]
        return replace(budget, id=budget_id)

    def get(self, budget_id: int, owner_id: int) -> Budget | None:
        return self._first(
            budgets.c.id == budget_id,
            budgets.c.user_id == owner_id,
            budgets.c.is_deleted == false(),
        )

    def get_any(self, budget_id: int) -> Budget | None:
        return self._first(budgets.c.id == budget_id, budgets.c.is_deleted == false())

    def update(self, budget: Budget) -> bool:
        values = _budget_values(budget)
        for key in ("user_id", "is_deleted", "is_archived", "created_at"):
            values.pop(key)
        stmt = (
            update(budgets)
            .where(
                budgets.c.id == budget.id,
                budgets.c.user_id == budget.user_id,
                budgets.c.is_deleted == false(),
            )
            .values(**values)
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount > 0

    def update_collected_amount(self, budget_id: int, amount: Decimal) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(budgets)
                .where(budgets.c.id == budget_id)
                .values(collected_amount=amount, updated_at=func.now())
            )

    def soft_delete(self, budget_id: int, owner_id: int) -> bool:
        return self._flag(budget_id, owner_id, is_deleted=True)

    def archive(self, budget_id: int, owner_id: int) -> bool:
        return self._flag(budget_id, owner_id, is_archived=True)

    def list_outdated(self, today: date) -> list[Budget]:
        return self._all(
            budgets.c.end_date <= today,
            budgets.c.is_archived == false(),
            budgets.c.is_deleted == false(),
        )

    def list_by_owner(self, owner_id: int, include: str = "all") -> list[Budget]:
        include = validate_budget_filter(include)
        conditions = [budgets.c.user_id == owner_id, budgets.c.is_deleted == false()]
        if include == "active":
            conditions.append(budgets.c.is_archived == false())
        elif include == "archived":
            conditions.append(budgets.c.is_archived == true())
        return self._all(*conditions)

    def list_covering(self, owner_id: int, category_id: int, on_date: date) -> list[Budget]:
        candidates = self._all(
            budgets.c.user_id == owner_id,
            budgets.c.is_deleted == false(),
            budgets.c.start_date <= on_date,
            budgets.c.end_date > on_date,
        )
        return [budget for budget in candidates if category_id in budget.included_categories]

    def _flag(self, budget_id: int, owner_id: int, **values: Any) -> bool:
        stmt = (
            update(budgets)
            .where(
                budgets.c.id == budget_id,
                budgets.c.user_id == owner_id,
                budgets.c.is_deleted == false(),
            )
            .values(updated_at=func.now(), **values)
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount > 0

    def _first(self, *conditions: Any) -> Budget | None:
        with self.engine.begin() as conn:
            row = conn.execute(select(budgets).where(and_(*conditions))).mappings().first()
        return _row_to_budget(row) if row else None

    def _all(self, *conditions: Any) -> list[Budget]:
        stmt = (
            select(budgets)
            .where(and_(*conditions))
            .order_by(budgets.c.is_archived.asc(), budgets.c.end_date.asc(), budgets.c.name.asc())
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_budget(row) for row in rows]


def serialize_category_ids(category_ids: Iterable[int]) -> str:
    return ",".join(str(category_id) for category_id in sorted(set(category_ids)))


def parse_category_ids(value: str | None) -> frozenset[int]:
    if not value:
        return frozenset()
    parsed = set()
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            parsed.add(int(part))
        except ValueError as exc:
            raise ValueError(f"Invalid category ID: {part}") from exc
    return frozenset(parsed)


def _budget_values(budget: Budget) -> dict[str, Any]:
    return {
        "user_id": budget.user_id,
        "name": budget.name,
        "currency": budget.currency,
        "target_amount": budget.target_amount,
        "collected_amount": budget.collected_amount,
        "period": budget.period,
        "repeat": budget.repeat,
        "start_date": budget.start_date,
        "end_date": budget.end_date,
        "included_categories": serialize_category_ids(budget.included_categories),
        "comment": budget.comment,
        "is_deleted": budget.is_deleted,
        "is_archived": budget.is_archived,
        "created_at": budget.created_at,
        "updated_at": budget.updated_at,
    }


def _row_to_budget(row: Mapping[str, Any]) -> Budget:
    return Budget(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        currency=row["currency"],
        target_amount=_coerce_decimal(row["target_amount"]),
        collected_amount=_coerce_decimal(row["collected_amount"]),
        period=row["period"],
        repeat=row["repeat"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        included_categories=parse_category_ids(row["included_categories"]),
        comment=row["comment"],
        is_deleted=row["is_deleted"],
        is_archived=row["is_archived"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_transaction(row: Mapping[str, Any]) -> Transaction:
    base_amount = row["base_currency_amount"]
    return Transaction(
        id=row["id"],
        user_id=row["user_id"],
        account_id=row["account_id"],
        category_id=row["category_id"],
        amount=_coerce_decimal(row["amount"]),
        date=row["date"],
        is_income=row["is_income"],
        is_transfer=row["is_transfer"],
        is_deleted=row["is_deleted"],
        base_currency_amount=_coerce_decimal(base_amount) if base_amount is not None else None,
    )


def _coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))
