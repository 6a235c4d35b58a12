from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, JSON, Numeric, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from farmledger.core.database import Base
from farmledger.platform.ledger.guards import register_immutable_model
from farmledger.platform.ledger.models import utcnow


class PeriodCloseRun(Base):
    __tablename__ = "period_close_run"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(128), nullable=False)
    crop_cycle_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("crop_cycle.id", ondelete="RESTRICT"),
        nullable=False,
    )
    posting_group_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("posting_group.id", ondelete="RESTRICT"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="COMPLETED", server_default="COMPLETED")
    from_date: Mapped[date] = mapped_column(Date(), nullable=False)
    to_date: Mapped[date] = mapped_column(Date(), nullable=False)
    net_profit: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    snapshot_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    closed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    closed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "crop_cycle_id", name="uq_period_close_run_cycle"),
        CheckConstraint("status IN ('COMPLETED')", name="ck_period_close_run_status"),
    )


register_immutable_model(PeriodCloseRun)
