from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


AccountType = Literal["ASSET", "LIABILITY", "EQUITY", "INCOME", "EXPENSE"]
AllocationScope = Literal["SHARED", "HARI_ONLY", "LANDLORD_ONLY", "PARTY_ONLY"]
CropCycleStatus = Literal["OPEN", "CLOSED"]


class AccountCreate(BaseModel):
    tenant_id: str = Field(min_length=1)
    code: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1)
    type: AccountType
    is_active: bool = True


class AccountRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    code: str
    name: str
    type: str
    is_system: bool
    is_active: bool
    created_at: datetime


class CropCycleCreate(BaseModel):
    tenant_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    start_date: date
    end_date: date | None = None


class CropCycleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    status: CropCycleStatus
    start_date: date
    end_date: date | None
    closed_at: datetime | None
    closed_by: str | None


class LedgerEntryInput(BaseModel):
    account_id: UUID
    debit_amount: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    credit_amount: Decimal = Field(default=Decimal("0"), ge=Decimal("0"))
    memo: str | None = None


class AllocationInput(BaseModel):
    allocation_type: str = Field(min_length=1)
    allocation_scope: AllocationScope | None = None
    project_id: UUID | None = None
    party_id: UUID | None = None
    machine_id: UUID | None = None
    amount: Decimal | None = None
    quantity: Decimal | None = None
    unit: str | None = None
    rule_snapshot: dict[str, Any] | None = None


class PostingRequest(BaseModel):
    tenant_id: str = Field(min_length=1)
    source_type: str = Field(min_length=1)
    source_id: str = Field(min_length=1)
    crop_cycle_id: UUID | None = None
    posting_date: date
    entries: list[LedgerEntryInput] = Field(default_factory=list)
    allocations: list[AllocationInput] = Field(default_factory=list)
    idempotency_key: str | None = None
    reason: str | None = None


class LedgerEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    posting_group_id: UUID
    tenant_id: str
    line_no: int
    account_id: UUID
    debit_amount: Decimal
    credit_amount: Decimal
    memo: str | None


class AllocationRowRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    posting_group_id: UUID
    tenant_id: str
    line_no: int
    project_id: UUID | None
    party_id: UUID | None
    machine_id: UUID | None
    allocation_type: str
    allocation_scope: str | None
    amount: Decimal | None
    quantity: Decimal | None
    unit: str | None
    rule_snapshot: dict[str, Any] | None


class PostingGroupRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    crop_cycle_id: UUID | None
    source_type: str
    source_id: str
    posting_date: date
    idempotency_key: str | None
    reversal_of_posting_group_id: UUID | None
    reason: str | None
    created_by: str | None
    created_at: datetime
    entries: list[LedgerEntryRead] = Field(default_factory=list)
    allocation_rows: list[AllocationRowRead] = Field(default_factory=list)
