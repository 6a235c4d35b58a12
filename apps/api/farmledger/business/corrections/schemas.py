from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


CorrectionKind = Literal["SETTLEMENT_ACCOUNT_FIX", "EXPENSE_RECLASS", "PARTY_CONTROL_CONSOLIDATION"]
ReclassTargetScope = Literal["HARI_ONLY", "LANDLORD_ONLY", "PARTY_ONLY"]


class AccountingCorrectionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    kind: CorrectionKind
    reason: str
    original_posting_group_id: UUID | None
    reversal_posting_group_id: UUID | None
    corrected_posting_group_id: UUID | None
    operational_transaction_id: UUID | None
    details: dict[str, Any] | None
    created_by: str | None
    created_at: datetime


class CorrectionFailure(BaseModel):
    posting_group_id: UUID
    code: str
    error: str


class CorrectionBatchResult(BaseModel):
    dry_run: bool = False
    candidates: list[UUID] = Field(default_factory=list)
    corrections: list[AccountingCorrectionRead] = Field(default_factory=list)
    skipped: list[UUID] = Field(default_factory=list)
    failures: list[CorrectionFailure] = Field(default_factory=list)
