from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


ShareRuleAppliesTo = Literal["CROP_CYCLE", "PROJECT", "SALE"]
ShareRuleBasis = Literal["MARGIN", "REVENUE"]
ShareRuleRole = Literal["LANDLORD", "HARI", "KAMDAR"]
SettlementStatus = Literal["DRAFT", "POSTED", "REVERSED"]


class ShareRuleLineInput(BaseModel):
    party_id: UUID
    role: ShareRuleRole
    percentage: Decimal = Field(ge=Decimal("0"), le=Decimal("100"))


class ShareRuleCreate(BaseModel):
    tenant_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    applies_to: ShareRuleAppliesTo
    basis: ShareRuleBasis = "MARGIN"
    kamdari_order: str = "BEFORE_SPLIT"
    effective_from: date
    effective_to: date | None = None
    is_active: bool = True
    lines: list[ShareRuleLineInput] = Field(min_length=1)


class ShareRuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    basis: ShareRuleBasis | None = None
    kamdari_order: str | None = None
    effective_from: date | None = None
    effective_to: date | None = None
    is_active: bool | None = None
    lines: list[ShareRuleLineInput] | None = None


class ShareRuleLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    party_id: UUID
    role: ShareRuleRole
    percentage: Decimal


class ShareRuleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    name: str
    applies_to: ShareRuleAppliesTo
    basis: ShareRuleBasis
    kamdari_order: str
    effective_from: date
    effective_to: date | None
    is_active: bool
    version: int
    lines: list[ShareRuleLineRead] = Field(default_factory=list)


class SettlementComputeRequest(BaseModel):
    project_id: UUID
    share_rule_id: UUID
    from_date: date
    to_date: date


class SettlementLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    party_id: UUID
    role: ShareRuleRole
    percentage: Decimal
    gross_amount: Decimal
    deductions: Decimal
    amount: Decimal


class SettlementOffsetRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    party_id: UUID
    posting_group_id: UUID
    posting_date: date
    offset_amount: Decimal


class SettlementRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    settlement_no: str
    status: SettlementStatus
    project_id: UUID
    share_rule_id: UUID
    crop_cycle_id: UUID
    from_date: date
    to_date: date
    basis: ShareRuleBasis
    pool_revenue: Decimal
    shared_costs: Decimal
    pool_profit: Decimal
    basis_amount: Decimal
    kamdari_amount: Decimal
    distributable: Decimal
    hari_only_deductions: Decimal
    rule_snapshot: dict[str, Any]
    posting_date: date | None
    posting_group_id: UUID | None
    reversal_posting_group_id: UUID | None
    posted_at: datetime | None
    reversed_at: datetime | None
    lines: list[SettlementLineRead] = Field(default_factory=list)
    offsets: list[SettlementOffsetRead] = Field(default_factory=list)


class SettlementOffsetPreview(BaseModel):
    settlement_id: UUID
    party_id: UUID | None
    posting_date: date
    hari_payable: Decimal
    outstanding_advance: Decimal
    suggested_offset: Decimal
    max_offset: Decimal
