from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel

from ledger.budget_periods import (
    decode_end_date,
    format_period_for_api,
    validate_period,
    validate_renewal,
)
from ledger.currency_conversion import normalize_currency
from ledger.models import Budget


class BudgetPayload(BaseModel):
    name: str
    currency: str
    target_amount: Decimal
    period: str
    repeat: bool = False
    start_date: date
    end_date: date
    categories: list[int] = []
    comment: str | None = None

    @classmethod
    def validate_payload(cls, payload: "BudgetPayload") -> "BudgetPayload":
        payload.period = validate_period(payload.period)
        validate_renewal(payload.period, payload.repeat)
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Budget name required.")
        payload.currency = normalize_currency(payload.currency)
        if payload.target_amount <= 0:
            raise ValueError("Budget target amount must be greater than zero.")
        if payload.start_date > payload.end_date:
            raise ValueError("start_date must be on or before end_date.")
        payload.comment = (payload.comment or "").strip() or None
        return payload


class BudgetUpdatePayload(BudgetPayload):
    id: int


class BudgetResponse(BaseModel):
    id: int
    name: str
    currency: str
    target_amount: Decimal
    collected_amount: Decimal
    period: str
    repeat: bool
    start_date: date
    end_date: date
    included_categories: list[int]
    comment: str | None = None
    is_archived: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_budget(cls, budget: Budget) -> "BudgetResponse":
        return cls(
            id=budget.id,
            name=budget.name,
            currency=budget.currency,
            target_amount=budget.target_amount,
            collected_amount=budget.collected_amount,
            period=format_period_for_api(budget.period),
            repeat=budget.repeat,
            start_date=budget.start_date,
            end_date=decode_end_date(budget.end_date),
            included_categories=sorted(budget.included_categories),
            comment=budget.comment,
            is_archived=budget.is_archived,
            created_at=budget.created_at,
            updated_at=budget.updated_at,
        )
