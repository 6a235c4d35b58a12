from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date

from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from farmledger.core.config import get_settings
from farmledger.metrics import observe_duplicate_absorbed, observe_posting_failure, observe_posting_group_posted
from farmledger.otel import get_tracer, ledger_span
from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.allocation import AllocationEngine, allocation_engine
from farmledger.platform.ledger.errors import (
    AccountingError,
    NotFoundError,
    PeriodClosedError,
    TenantMismatchError,
    ValidationError,
)
from farmledger.platform.ledger.models import CropCycle, PostingGroup
from farmledger.platform.ledger.registry import source_types
from farmledger.platform.ledger.repository import CropCycleRepository, PostingGroupRepository
from farmledger.platform.ledger.schemas import PostingGroupRead, PostingRequest
from farmledger.platform.ledger.writer import LedgerEntryWriter, ledger_entry_writer


logger = logging.getLogger("farmledger.ledger.posting")
tracer = get_tracer("farmledger.ledger")


@dataclass(slots=True, eq=False)
class PostingService:
    group_repository: PostingGroupRepository = PostingGroupRepository()
    cycle_repository: CropCycleRepository = CropCycleRepository()
    writer: LedgerEntryWriter = ledger_entry_writer
    allocations: AllocationEngine = allocation_engine

    def stage(
        self,
        session: Session,
        ctx: ActorContext,
        request: PostingRequest,
        *,
        reversal_of_posting_group_id: uuid.UUID | None = None,
        allow_negative_allocations: bool = False,
        allow_empty_entries: bool = False,
    ) -> PostingGroup:
        """Validate a posting and add its group, entries and allocation rows to the session.

        Nothing is committed; callers composing several postings into one
        transaction commit once at the end.
        """
        ctx.require_tenant(request.tenant_id)
        source_types.validate(request.source_type)
        if not request.entries and not allow_empty_entries:
            raise ValidationError("a posting needs at least two ledger entries")
        self.writer.check_batch_balanced(request.entries)
        if request.crop_cycle_id is not None:
            self.check_crop_cycle(session, request.tenant_id, request.crop_cycle_id, request.posting_date)

        group = PostingGroup(
            id=uuid.uuid4(),
            tenant_id=request.tenant_id,
            crop_cycle_id=request.crop_cycle_id,
            source_type=request.source_type,
            source_id=request.source_id,
            posting_date=request.posting_date,
            idempotency_key=request.idempotency_key,
            reversal_of_posting_group_id=reversal_of_posting_group_id,
            reason=request.reason,
            created_by=ctx.user_id,
        )
        self.group_repository.add(session, group)
        self.writer.append_many(session, group, request.entries)
        self.allocations.build_rows(session, group, request.allocations, allow_negative=allow_negative_allocations)
        return group

    def check_crop_cycle(self, session: Session, tenant_id: str, crop_cycle_id: uuid.UUID, posting_date: date) -> CropCycle:
        cycle = session.get(CropCycle, crop_cycle_id)
        if cycle is None:
            raise NotFoundError(f"crop cycle {crop_cycle_id} not found")
        if cycle.tenant_id != tenant_id:
            raise TenantMismatchError("crop cycle belongs to another tenant")
        if cycle.status == "CLOSED":
            raise PeriodClosedError(f"crop cycle {cycle.name} is closed")
        if get_settings().enforce_cycle_date_range:
            if posting_date < cycle.start_date or (cycle.end_date is not None and posting_date > cycle.end_date):
                raise ValidationError(f"posting date {posting_date} is outside crop cycle {cycle.name}")
        return cycle

    def find_existing(self, session: Session, request: PostingRequest) -> PostingGroup | None:
        group = self.group_repository.get_by_source(session, request.tenant_id, request.source_type, request.source_id)
        if group is None and request.idempotency_key is not None:
            group = self.group_repository.get_by_idempotency_key(session, request.tenant_id, request.idempotency_key)
        return group

    def post(self, session: Session, ctx: ActorContext, request: PostingRequest) -> PostingGroupRead:
        with ledger_span(
            tracer,
            "ledger.post",
            ctx,
            tenant_id=request.tenant_id,
            source_type=request.source_type,
            source_id=request.source_id,
        ) as span:
            ctx.require_tenant(request.tenant_id)
            existing = self.find_existing(session, request)
            if existing is not None:
                return self._absorb_duplicate(session, ctx, existing)

            try:
                group = self.stage(session, ctx, request)
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self.find_existing(session, request)
                if existing is None:
                    observe_posting_failure("integrity_error")
                    logger.warning("posting.rejected", extra=self._log_fields(request, reason="integrity_error"))
                    raise ValidationError("posting violates a storage constraint")
                return self._absorb_duplicate(session, ctx, existing)
            except AccountingError as exc:
                session.rollback()
                observe_posting_failure(exc.code)
                logger.warning("posting.rejected", extra=self._log_fields(request, reason=exc.code, error=exc.message))
                raise

            span.set_attribute("posting_group_id", str(group.id))
            observe_posting_group_posted(request.source_type, len(request.entries))
            logger.info(
                "posting.created",
                extra={**self._log_fields(request), "posting_group_id": str(group.id)},
            )
            return self.get_posting_group(session, ctx, group.id)

    def get_posting_group(self, session: Session, ctx: ActorContext, posting_group_id: uuid.UUID) -> PostingGroupRead:
        group = session.scalar(
            self.group_repository.apply_scope_query(
                select(PostingGroup)
                .where(PostingGroup.id == posting_group_id)
                .options(selectinload(PostingGroup.entries), selectinload(PostingGroup.allocation_rows)),
                ctx,
            )
        )
        if group is None:
            raise NotFoundError(f"posting group {posting_group_id} not found")
        return PostingGroupRead.model_validate(group)

    def list_posting_groups(
        self,
        session: Session,
        ctx: ActorContext,
        *,
        tenant_id: str,
        source_type: str | None = None,
        source_id: str | None = None,
        crop_cycle_id: uuid.UUID | None = None,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> list[PostingGroupRead]:
        ctx.require_tenant(tenant_id)
        stmt: Select[tuple[PostingGroup]] = (
            select(PostingGroup)
            .where(PostingGroup.tenant_id == tenant_id)
            .options(selectinload(PostingGroup.entries), selectinload(PostingGroup.allocation_rows))
        )
        if source_type is not None:
            stmt = stmt.where(PostingGroup.source_type == source_type)
        if source_id is not None:
            stmt = stmt.where(PostingGroup.source_id == source_id)
        if crop_cycle_id is not None:
            stmt = stmt.where(PostingGroup.crop_cycle_id == crop_cycle_id)
        if from_date is not None:
            stmt = stmt.where(PostingGroup.posting_date >= from_date)
        if to_date is not None:
            stmt = stmt.where(PostingGroup.posting_date <= to_date)

        rows = session.scalars(stmt.order_by(PostingGroup.posting_date.asc(), PostingGroup.created_at.asc())).all()
        return [PostingGroupRead.model_validate(row) for row in rows]

    def _absorb_duplicate(self, session: Session, ctx: ActorContext, existing: PostingGroup) -> PostingGroupRead:
        observe_duplicate_absorbed()
        logger.info(
            "posting.duplicate_absorbed",
            extra={
                "tenant_id": existing.tenant_id,
                "posting_group_id": str(existing.id),
                "source_type": existing.source_type,
                "source_id": existing.source_id,
            },
        )
        return self.get_posting_group(session, ctx, existing.id)

    @staticmethod
    def _log_fields(request: PostingRequest, **extra: str) -> dict[str, str | None]:
        fields: dict[str, str | None] = {
            "tenant_id": request.tenant_id,
            "source_type": request.source_type,
            "source_id": request.source_id,
            "crop_cycle_id": str(request.crop_cycle_id) if request.crop_cycle_id else None,
        }
        fields.update(extra)
        return fields


posting_service = PostingService()
