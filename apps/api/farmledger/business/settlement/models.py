from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from farmledger.core.database import Base
from farmledger.platform.ledger.guards import register_immutable_model
from farmledger.platform.ledger.models import utcnow
from farmledger.platform.ledger.reversal import ReversibleDocumentMixin


class ShareRule(Base):
    __tablename__ = "share_rule"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applies_to: Mapped[str] = mapped_column(String(16), nullable=False)
    basis: Mapped[str] = mapped_column(String(16), nullable=False, default="MARGIN", server_default="MARGIN")
    kamdari_order: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="BEFORE_SPLIT",
        server_default="BEFORE_SPLIT",
    )
    effective_from: Mapped[date] = mapped_column(Date(), nullable=False)
    effective_to: Mapped[date | None] = mapped_column(Date(), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    lines: Mapped[list[ShareRuleLine]] = relationship(
        "ShareRuleLine",
        back_populates="share_rule",
        cascade="all, delete-orphan",
        order_by="ShareRuleLine.line_no",
    )

    __table_args__ = (
        CheckConstraint("applies_to IN ('CROP_CYCLE', 'PROJECT', 'SALE')", name="ck_share_rule_applies_to"),
        CheckConstraint("basis IN ('MARGIN', 'REVENUE')", name="ck_share_rule_basis"),
        CheckConstraint("effective_to IS NULL OR effective_to >= effective_from", name="ck_share_rule_dates"),
        UniqueConstraint("tenant_id", "applies_to", "version", name="uq_share_rule_version"),
        Index("ix_share_rule_tenant_scope", "tenant_id", "applies_to", "is_active"),
    )


class ShareRuleLine(Base):
    __tablename__ = "share_rule_line"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    share_rule_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("share_rule.id", ondelete="CASCADE"),
        nullable=False,
    )
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    party_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("party.id", ondelete="RESTRICT"), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)

    share_rule: Mapped[ShareRule] = relationship("ShareRule", back_populates="lines")

    __table_args__ = (
        CheckConstraint("percentage >= 0 AND percentage <= 100", name="ck_share_rule_line_percentage"),
        CheckConstraint("role IN ('LANDLORD', 'HARI', 'KAMDAR')", name="ck_share_rule_line_role"),
        Index("ix_share_rule_line_rule", "share_rule_id"),
    )


class Settlement(ReversibleDocumentMixin, Base):
    __tablename__ = "settlement"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    settlement_no: Mapped[str] = mapped_column(String(32), nullable=False)
    project_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("project.id", ondelete="RESTRICT"), nullable=False)
    share_rule_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("share_rule.id", ondelete="RESTRICT"),
        nullable=False,
    )
    crop_cycle_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crop_cycle.id", ondelete="RESTRICT"),
        nullable=False,
    )
    from_date: Mapped[date] = mapped_column(Date(), nullable=False)
    to_date: Mapped[date] = mapped_column(Date(), nullable=False)
    basis: Mapped[str] = mapped_column(String(16), nullable=False)
    pool_revenue: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    shared_costs: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    pool_profit: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    basis_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    kamdari_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    distributable: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    hari_only_deductions: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    rule_snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    posting_date: Mapped[date | None] = mapped_column(Date(), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    lines: Mapped[list[SettlementLine]] = relationship(
        "SettlementLine",
        back_populates="settlement",
        cascade="all, delete-orphan",
        order_by="SettlementLine.line_no",
    )
    offsets: Mapped[list[SettlementOffset]] = relationship(
        "SettlementOffset",
        back_populates="settlement",
        order_by="SettlementOffset.created_at",
    )

    __table_args__ = (
        CheckConstraint("status IN ('DRAFT', 'POSTED', 'REVERSED')", name="ck_settlement_status"),
        CheckConstraint("status = 'DRAFT' OR posting_group_id IS NOT NULL", name="ck_settlement_posted_has_group"),
        CheckConstraint("from_date <= to_date", name="ck_settlement_window"),
        UniqueConstraint("tenant_id", "settlement_no", name="uq_settlement_no"),
        Index("ix_settlement_tenant_status", "tenant_id", "status"),
        Index("ix_settlement_project", "project_id"),
    )


class SettlementLine(Base):
    __tablename__ = "settlement_line"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    settlement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("settlement.id", ondelete="CASCADE"),
        nullable=False,
    )
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    party_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("party.id", ondelete="RESTRICT"), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    gross_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    deductions: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False, default=Decimal("0"), server_default="0")
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    settlement: Mapped[Settlement] = relationship("Settlement", back_populates="lines")

    __table_args__ = (
        CheckConstraint("percentage >= 0 AND percentage <= 100", name="ck_settlement_line_percentage"),
        Index("ix_settlement_line_settlement", "settlement_id"),
    )


class SettlementOffset(Base):
    """Hari advance recovered out of a posted settlement's payable."""

    __tablename__ = "settlement_offset"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    settlement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("settlement.id", ondelete="RESTRICT"),
        nullable=False,
    )
    party_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("party.id", ondelete="RESTRICT"), nullable=False)
    posting_group_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("posting_group.id", ondelete="RESTRICT"),
        nullable=False,
    )
    posting_date: Mapped[date] = mapped_column(Date(), nullable=False)
    offset_amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    settlement: Mapped[Settlement] = relationship("Settlement", back_populates="offsets")

    __table_args__ = (
        CheckConstraint("offset_amount > 0", name="ck_settlement_offset_amount"),
        UniqueConstraint("settlement_id", name="uq_settlement_offset_settlement"),
        Index("ix_settlement_offset_party", "tenant_id", "party_id"),
    )


register_immutable_model(SettlementOffset)
