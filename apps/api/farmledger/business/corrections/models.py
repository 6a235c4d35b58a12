from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, JSON, String, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from farmledger.core.database import Base
from farmledger.platform.ledger.guards import register_immutable_model
from farmledger.platform.ledger.models import utcnow


class AccountingCorrection(Base):
    __tablename__ = "accounting_correction"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    original_posting_group_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("posting_group.id", ondelete="RESTRICT"),
        nullable=True,
    )
    reversal_posting_group_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("posting_group.id", ondelete="RESTRICT"),
        nullable=True,
    )
    corrected_posting_group_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("posting_group.id", ondelete="RESTRICT"),
        nullable=True,
    )
    operational_transaction_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(
            "kind IN ('SETTLEMENT_ACCOUNT_FIX', 'EXPENSE_RECLASS', 'PARTY_CONTROL_CONSOLIDATION')",
            name="ck_accounting_correction_kind",
        ),
        Index(
            "uq_accounting_correction_original",
            "tenant_id",
            "original_posting_group_id",
            unique=True,
            sqlite_where=text("original_posting_group_id IS NOT NULL AND operational_transaction_id IS NULL"),
            postgresql_where=text("original_posting_group_id IS NOT NULL AND operational_transaction_id IS NULL"),
        ),
        Index(
            "uq_accounting_correction_operational",
            "tenant_id",
            "operational_transaction_id",
            unique=True,
            sqlite_where=text("operational_transaction_id IS NOT NULL"),
            postgresql_where=text("operational_transaction_id IS NOT NULL"),
        ),
        Index(
            "uq_accounting_correction_reason",
            "tenant_id",
            "reason",
            unique=True,
            sqlite_where=text("original_posting_group_id IS NULL AND operational_transaction_id IS NULL"),
            postgresql_where=text("original_posting_group_id IS NULL AND operational_transaction_id IS NULL"),
        ),
    )


register_immutable_model(AccountingCorrection)
