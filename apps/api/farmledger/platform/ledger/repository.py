from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, aliased
from sqlalchemy.sql import Select

from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.models import Account, AllocationRow, CropCycle, LedgerEntry, PostingGroup


class TenantScopedRepository:
    model: Any = None

    def apply_scope_query(self, query: Select[Any], ctx: ActorContext) -> Select[Any]:
        if ctx.tenant_id is None:
            return query
        return query.where(self.model.tenant_id == ctx.tenant_id)

    def validate_write_scope(self, tenant_id: str, ctx: ActorContext) -> None:
        ctx.require_tenant(tenant_id)

    def get(self, session: Session, ctx: ActorContext, row_id: uuid.UUID) -> Any | None:
        row = session.get(self.model, row_id)
        if row is not None:
            ctx.require_tenant(row.tenant_id)
        return row


class InsertOnlyRepository(TenantScopedRepository):
    """Exposes no update or delete path; rows are only ever added."""

    def add(self, session: Session, row: Any) -> Any:
        session.add(row)
        return row


class AccountRepository(TenantScopedRepository):
    model = Account

    def get_by_code(self, session: Session, tenant_id: str, code: str) -> Account | None:
        return session.scalar(select(Account).where(Account.tenant_id == tenant_id, Account.code == code))


class CropCycleRepository(TenantScopedRepository):
    model = CropCycle


class PostingGroupRepository(InsertOnlyRepository):
    model = PostingGroup

    def get_by_source(self, session: Session, tenant_id: str, source_type: str, source_id: str) -> PostingGroup | None:
        return session.scalar(
            select(PostingGroup).where(
                PostingGroup.tenant_id == tenant_id,
                PostingGroup.source_type == source_type,
                PostingGroup.source_id == source_id,
            )
        )

    def get_by_idempotency_key(self, session: Session, tenant_id: str, idempotency_key: str) -> PostingGroup | None:
        return session.scalar(
            select(PostingGroup).where(
                PostingGroup.tenant_id == tenant_id,
                PostingGroup.idempotency_key == idempotency_key,
            )
        )

    def get_reversal_of(self, session: Session, tenant_id: str, posting_group_id: uuid.UUID) -> PostingGroup | None:
        return session.scalar(
            select(PostingGroup).where(
                PostingGroup.tenant_id == tenant_id,
                PostingGroup.reversal_of_posting_group_id == posting_group_id,
            )
        )


class LedgerEntryRepository(InsertOnlyRepository):
    model = LedgerEntry


class AllocationRowRepository(InsertOnlyRepository):
    model = AllocationRow


def exclude_reversals(query: Select[Any]) -> Select[Any]:
    """Drop reversal groups and groups that have been reversed from a reporting query.

    The query must already select from or join ``PostingGroup``.
    """
    reversal = aliased(PostingGroup)
    has_reversal = (
        select(reversal.id)
        .where(reversal.reversal_of_posting_group_id == PostingGroup.id)
        .exists()
    )
    return query.where(PostingGroup.reversal_of_posting_group_id.is_(None), ~has_reversal)
