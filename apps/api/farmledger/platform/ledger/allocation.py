from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from farmledger.platform.ledger.errors import ValidationError
from farmledger.platform.ledger.models import AllocationRow, PostingGroup
from farmledger.platform.ledger.registry import allocation_types, validate_allocation_scope
from farmledger.platform.ledger.repository import AllocationRowRepository, exclude_reversals
from farmledger.platform.ledger.schemas import AllocationInput


@dataclass(slots=True, eq=False)
class AllocationEngine:
    """Writes attribution rows beside a posting group and sums them for settlement.

    ``SHARED`` rows feed the crop-cycle pool; single-party scopes bypass the split.
    """

    repository: AllocationRowRepository = AllocationRowRepository()

    def build_rows(
        self,
        session: Session,
        group: PostingGroup,
        allocations: Sequence[AllocationInput],
        *,
        allow_negative: bool = False,
    ) -> list[AllocationRow]:
        rows: list[AllocationRow] = []
        for index, allocation in enumerate(allocations, start=1):
            allocation_types.validate(allocation.allocation_type)
            validate_allocation_scope(allocation.allocation_scope)
            amount = self._q(allocation.amount) if allocation.amount is not None else None
            if amount is not None and amount < 0 and not allow_negative:
                raise ValidationError("negative allocation amounts are reserved for reclassification corrections")

            row = AllocationRow(
                id=uuid.uuid4(),
                tenant_id=group.tenant_id,
                posting_group_id=group.id,
                line_no=index,
                project_id=allocation.project_id,
                party_id=allocation.party_id,
                machine_id=allocation.machine_id,
                allocation_type=allocation.allocation_type,
                allocation_scope=allocation.allocation_scope,
                amount=amount,
                quantity=allocation.quantity,
                unit=allocation.unit,
                rule_snapshot=allocation.rule_snapshot,
            )
            rows.append(self.repository.add(session, row))
        return rows

    def sum_amounts(
        self,
        session: Session,
        *,
        tenant_id: str,
        project_id: uuid.UUID | None = None,
        crop_cycle_id: uuid.UUID | None = None,
        allocation_type: str | None = None,
        allocation_scope: str | None = None,
        from_date: date | None = None,
        to_date: date | None = None,
    ) -> Decimal:
        stmt = (
            select(func.coalesce(func.sum(AllocationRow.amount), 0))
            .select_from(AllocationRow)
            .join(PostingGroup, PostingGroup.id == AllocationRow.posting_group_id)
            .where(AllocationRow.tenant_id == tenant_id)
        )
        if project_id is not None:
            stmt = stmt.where(AllocationRow.project_id == project_id)
        if crop_cycle_id is not None:
            stmt = stmt.where(PostingGroup.crop_cycle_id == crop_cycle_id)
        if allocation_type is not None:
            stmt = stmt.where(AllocationRow.allocation_type == allocation_type)
        if allocation_scope is not None:
            stmt = stmt.where(AllocationRow.allocation_scope == allocation_scope)
        if from_date is not None:
            stmt = stmt.where(PostingGroup.posting_date >= from_date)
        if to_date is not None:
            stmt = stmt.where(PostingGroup.posting_date <= to_date)
        total = session.scalar(exclude_reversals(stmt))
        return self._q(Decimal(str(total or 0)))

    @staticmethod
    def _q(value: Decimal) -> Decimal:
        return Decimal(value).quantize(Decimal("0.01"))


allocation_engine = AllocationEngine()
