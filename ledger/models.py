from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Mapping, Optional

ZERO = Decimal("0")


@dataclass(frozen=True)
class ExchangeRateSnapshot:
    """Rates for one day, each expressed as units of currency per 1 base unit."""

    actual_date: date
    base_currency: str
    rates: Mapping[str, Decimal]
    service_name: str = "unknown"
    is_deleted: bool = False
    id: Optional[int] = None


@dataclass(frozen=True)
class Transaction:
    id: Optional[int]
    user_id: int
    account_id: int
    amount: Decimal
    date: date
    category_id: Optional[int] = None
    is_income: bool = False
    is_transfer: bool = False
    is_deleted: bool = False
    base_currency_amount: Optional[Decimal] = None


@dataclass(frozen=True)
class Budget:
    id: Optional[int]
    user_id: int
    name: str
    currency: str
    target_amount: Decimal
    period: str
    start_date: date
    end_date: date
    collected_amount: Decimal = ZERO
    repeat: bool = False
    included_categories: frozenset[int] = field(default_factory=frozenset)
    comment: Optional[str] = None
    is_archived: bool = False
    is_deleted: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class CategoryDate:
    category_id: int
    date: date
