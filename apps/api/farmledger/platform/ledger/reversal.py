from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import DateTime, ForeignKey, String, Uuid, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, declared_attr, mapped_column, selectinload

from farmledger.metrics import observe_posting_failure, observe_posting_group_posted, observe_reversal
from farmledger.otel import get_tracer, ledger_span
from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.errors import AccountingError, DoubleReversalError, NotFoundError, ValidationError
from farmledger.platform.ledger.models import PostingGroup, utcnow
from farmledger.platform.ledger.registry import REVERSAL_SUFFIX
from farmledger.platform.ledger.repository import PostingGroupRepository
from farmledger.platform.ledger.schemas import AllocationInput, LedgerEntryInput, PostingGroupRead, PostingRequest
from farmledger.platform.ledger.service import PostingService, posting_service


logger = logging.getLogger("farmledger.ledger.reversal")
tracer = get_tracer("farmledger.ledger")


class ReversibleDocumentMixin:
    """Lifecycle columns for domain documents that post to the ledger.

    ``DRAFT`` documents have no posting group, ``POSTED`` ones reference the group
    they created, and ``REVERSED`` ones also reference the reversing group.
    """

    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DRAFT", server_default="DRAFT")
    posted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    posted_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reversed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reversed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    @declared_attr
    def posting_group_id(cls) -> Mapped[uuid.UUID | None]:
        return mapped_column(Uuid(as_uuid=True), ForeignKey("posting_group.id", ondelete="RESTRICT"), nullable=True)

    @declared_attr
    def reversal_posting_group_id(cls) -> Mapped[uuid.UUID | None]:
        return mapped_column(Uuid(as_uuid=True), ForeignKey("posting_group.id", ondelete="RESTRICT"), nullable=True)


@dataclass(slots=True, eq=False)
class ReversalService:
    posting: PostingService = posting_service
    group_repository: PostingGroupRepository = PostingGroupRepository()

    def stage(
        self,
        session: Session,
        ctx: ActorContext,
        posting_group_id: uuid.UUID,
        posting_date: date,
        reason: str | None = None,
        *,
        source_type: str | None = None,
    ) -> PostingGroup:
        """Add the mirror image of a posting group to the session without committing."""
        original = session.scalar(
            select(PostingGroup)
            .where(PostingGroup.id == posting_group_id)
            .options(selectinload(PostingGroup.entries), selectinload(PostingGroup.allocation_rows))
        )
        if original is None:
            raise NotFoundError(f"posting group {posting_group_id} not found")
        ctx.require_tenant(original.tenant_id)
        if original.reversal_of_posting_group_id is not None:
            raise ValidationError("a reversal posting group cannot itself be reversed")
        if self.group_repository.get_reversal_of(session, original.tenant_id, original.id) is not None:
            raise DoubleReversalError(f"posting group {original.id} is already reversed")

        reversal_note = {"reversal_of": str(original.id), "reversal_reason": reason}
        request = PostingRequest(
            tenant_id=original.tenant_id,
            source_type=source_type or f"{original.source_type}{REVERSAL_SUFFIX}",
            source_id=str(original.id),
            crop_cycle_id=original.crop_cycle_id,
            posting_date=posting_date,
            reason=reason,
            entries=[
                LedgerEntryInput(
                    account_id=entry.account_id,
                    debit_amount=entry.credit_amount,
                    credit_amount=entry.debit_amount,
                    memo=entry.memo,
                )
                for entry in original.entries
            ],
            allocations=[
                AllocationInput(
                    allocation_type=row.allocation_type,
                    allocation_scope=row.allocation_scope,
                    project_id=row.project_id,
                    party_id=row.party_id,
                    machine_id=row.machine_id,
                    amount=row.amount,
                    quantity=row.quantity,
                    unit=row.unit,
                    rule_snapshot={**(row.rule_snapshot or {}), **reversal_note},
                )
                for row in original.allocation_rows
            ],
        )
        return self.posting.stage(
            session,
            ctx,
            request,
            reversal_of_posting_group_id=original.id,
            allow_negative_allocations=True,
        )

    def reverse(
        self,
        session: Session,
        ctx: ActorContext,
        posting_group_id: uuid.UUID,
        posting_date: date,
        reason: str | None = None,
    ) -> PostingGroupRead:
        with ledger_span(tracer, "ledger.reverse", ctx, posting_group_id=posting_group_id):
            try:
                group = self.stage(session, ctx, posting_group_id, posting_date, reason)
                session.commit()
            except IntegrityError:
                session.rollback()
                original = session.get(PostingGroup, posting_group_id)
                if original is not None and self.group_repository.get_reversal_of(
                    session, original.tenant_id, original.id
                ) is not None:
                    observe_posting_failure(DoubleReversalError.code)
                    raise DoubleReversalError(f"posting group {posting_group_id} is already reversed")
                observe_posting_failure("integrity_error")
                raise ValidationError("reversal violates a storage constraint")
            except AccountingError as exc:
                session.rollback()
                observe_posting_failure(exc.code)
                logger.warning(
                    "posting.rejected",
                    extra={"posting_group_id": str(posting_group_id), "reason": exc.code, "error": exc.message},
                )
                raise

            observe_reversal()
            observe_posting_group_posted(group.source_type, len(group.entries))
            logger.info(
                "posting.reversed",
                extra={
                    "tenant_id": group.tenant_id,
                    "posting_group_id": str(group.id),
                    "source_type": group.source_type,
                    "source_id": group.source_id,
                    "reason": reason,
                },
            )
            return self.posting.get_posting_group(session, ctx, group.id)

    def reverse_document(
        self,
        session: Session,
        ctx: ActorContext,
        document: ReversibleDocumentMixin,
        posting_date: date,
        reason: str | None = None,
    ) -> PostingGroup:
        """Reverse a posted document's group and stamp the document in the same transaction."""
        if document.status != "POSTED" or document.posting_group_id is None:
            raise ValidationError(f"only POSTED documents can be reversed (status={document.status})")
        group = self.stage(session, ctx, document.posting_group_id, posting_date, reason)
        document.status = "REVERSED"
        document.reversal_posting_group_id = group.id
        document.reversed_at = utcnow()
        document.reversed_by = ctx.user_id
        return group


reversal_service = ReversalService()
