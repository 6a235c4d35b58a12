from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.errors import NotFoundError, PeriodClosedError, ValidationError
from farmledger.platform.ledger.models import CropCycle, utcnow
from farmledger.platform.ledger.repository import CropCycleRepository
from farmledger.platform.ledger.schemas import CropCycleCreate, CropCycleRead


logger = logging.getLogger("farmledger.ledger.periods")


@dataclass(slots=True, eq=False)
class CropCycleService:
    repository: CropCycleRepository = CropCycleRepository()

    def create(self, session: Session, ctx: ActorContext, dto: CropCycleCreate) -> CropCycleRead:
        self.repository.validate_write_scope(dto.tenant_id, ctx)
        if dto.end_date is not None and dto.end_date < dto.start_date:
            raise ValidationError(f"crop cycle {dto.name} ends before it starts")
        cycle = CropCycle(id=uuid.uuid4(), status="OPEN", **dto.model_dump(mode="python"))
        session.add(cycle)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ValidationError(f"crop cycle {dto.name} could not be stored")
        session.refresh(cycle)
        return CropCycleRead.model_validate(cycle)

    def get(self, session: Session, ctx: ActorContext, crop_cycle_id: uuid.UUID) -> CropCycleRead:
        return CropCycleRead.model_validate(self.load(session, ctx, crop_cycle_id))

    def load(self, session: Session, ctx: ActorContext, crop_cycle_id: uuid.UUID) -> CropCycle:
        cycle = self.repository.get(session, ctx, crop_cycle_id)
        if cycle is None:
            raise NotFoundError(f"crop cycle {crop_cycle_id} not found")
        return cycle

    def list_crop_cycles(self, session: Session, ctx: ActorContext, *, tenant_id: str) -> list[CropCycleRead]:
        ctx.require_tenant(tenant_id)
        rows = session.scalars(
            select(CropCycle).where(CropCycle.tenant_id == tenant_id).order_by(CropCycle.start_date.asc())
        ).all()
        return [CropCycleRead.model_validate(row) for row in rows]

    def mark_closed(self, cycle: CropCycle, ctx: ActorContext) -> None:
        if cycle.status == "CLOSED":
            raise PeriodClosedError(f"crop cycle {cycle.name} is already closed")
        cycle.status = "CLOSED"
        cycle.closed_at = utcnow()
        cycle.closed_by = ctx.user_id

    def close_manually(self, session: Session, ctx: ActorContext, crop_cycle_id: uuid.UUID) -> CropCycleRead:
        """Lock a cycle against further postings without a close run."""
        cycle = self.load(session, ctx, crop_cycle_id)
        self.mark_closed(cycle, ctx)
        session.commit()
        logger.info(
            "crop_cycle.closed",
            extra={"tenant_id": cycle.tenant_id, "crop_cycle_id": str(cycle.id), "reason": "manual"},
        )
        return CropCycleRead.model_validate(cycle)


crop_cycle_service = CropCycleService()
