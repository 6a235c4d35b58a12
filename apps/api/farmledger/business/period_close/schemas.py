from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class AccountActivityRead(BaseModel):
    account_id: UUID
    account_code: str
    account_type: Literal["INCOME", "EXPENSE"]
    period_debit_total: Decimal
    period_credit_total: Decimal
    net_amount: Decimal


class PeriodClosePreview(BaseModel):
    tenant_id: str
    crop_cycle_id: UUID
    from_date: date
    to_date: date
    total_income: Decimal
    total_expense: Decimal
    net_profit: Decimal
    accounts: list[AccountActivityRead] = Field(default_factory=list)


class PeriodCloseRunRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    crop_cycle_id: UUID
    posting_group_id: UUID
    status: str
    from_date: date
    to_date: date
    net_profit: Decimal
    snapshot_json: dict[str, Any]
    closed_at: datetime
    closed_by: str | None
