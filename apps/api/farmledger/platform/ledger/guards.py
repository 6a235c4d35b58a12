"""Session-level invariants for accounting rows.

These listeners sit beneath the services: posted rows cannot be updated or
deleted through the ORM, lines only attach to posting groups created in the
same transaction, cross-tenant references and postings into closed crop cycles
are refused at flush, and every posting group touched by a transaction must
balance before the transaction commits.
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Any, Callable

from sqlalchemy import event, func, inspect, select
from sqlalchemy.orm import ORMExecuteState, Session

from farmledger.platform.ledger.errors import (
    ImmutabilityViolation,
    NotFoundError,
    PeriodClosedError,
    TenantMismatchError,
    UnbalancedPostingError,
    ValidationError,
)
from farmledger.platform.ledger.models import Account, AllocationRow, CropCycle, LedgerEntry, PostingGroup


logger = logging.getLogger("farmledger.ledger.guards")

PENDING_GROUPS_KEY = "farmledger.pending_posting_groups"

_immutable_models: list[type] = [PostingGroup, LedgerEntry, AllocationRow]
_flush_checks: list[Callable[[Session], None]] = []


def register_immutable_model(model: type) -> None:
    if model not in _immutable_models:
        _immutable_models.append(model)


def register_flush_check(check: Callable[[Session], None]) -> None:
    if check not in _flush_checks:
        _flush_checks.append(check)


def is_immutable(obj: Any) -> bool:
    return isinstance(obj, tuple(_immutable_models))


def pending_posting_groups(session: Session) -> set[uuid.UUID]:
    return session.info.setdefault(PENDING_GROUPS_KEY, set())


def _lookup(session: Session, new_objects: dict[tuple[type, Any], Any], model: type, row_id: Any) -> Any:
    found = new_objects.get((model, row_id))
    if found is not None:
        return found
    return session.get(model, row_id)


def _check_posting_group(session: Session, group: PostingGroup, new_objects: dict[tuple[type, Any], Any]) -> None:
    if group.crop_cycle_id is None:
        return
    cycle = _lookup(session, new_objects, CropCycle, group.crop_cycle_id)
    if cycle is None:
        raise NotFoundError(f"crop cycle {group.crop_cycle_id} not found")
    if cycle.tenant_id != group.tenant_id:
        raise TenantMismatchError("posting group and crop cycle belong to different tenants")
    if cycle.status == "CLOSED":
        raise PeriodClosedError(f"crop cycle {cycle.id} is closed")


def _check_line(
    session: Session,
    line: LedgerEntry | AllocationRow,
    pending: set[uuid.UUID],
    new_objects: dict[tuple[type, Any], Any],
) -> None:
    kind = "ledger entry" if isinstance(line, LedgerEntry) else "allocation row"
    if line.posting_group_id not in pending:
        raise ImmutabilityViolation(f"{kind} must be written in the transaction that created its posting group")

    group = _lookup(session, new_objects, PostingGroup, line.posting_group_id)
    if group is None:
        raise NotFoundError(f"posting group {line.posting_group_id} not found")
    if group.tenant_id != line.tenant_id:
        raise TenantMismatchError(f"{kind} tenant differs from its posting group")

    if isinstance(line, LedgerEntry):
        debit = Decimal(line.debit_amount or 0)
        credit = Decimal(line.credit_amount or 0)
        if (debit > 0) == (credit > 0) or debit < 0 or credit < 0:
            raise ValidationError("ledger entry must carry exactly one positive side")
        account = _lookup(session, new_objects, Account, line.account_id)
        if account is None:
            raise NotFoundError(f"account {line.account_id} not found")
        if account.tenant_id != line.tenant_id:
            raise TenantMismatchError("ledger entry references an account of another tenant")


def _check_crop_cycle_transition(cycle: CropCycle) -> None:
    history = inspect(cycle).attrs.status.history
    if "CLOSED" in (history.deleted or ()):
        raise ImmutabilityViolation(f"crop cycle {cycle.id} is closed and cannot be reopened")


@event.listens_for(Session, "before_flush")
def _guard_before_flush(session: Session, flush_context: Any, instances: Any) -> None:
    for obj in session.deleted:
        if is_immutable(obj) or isinstance(obj, CropCycle):
            raise ImmutabilityViolation(f"{type(obj).__name__} rows cannot be deleted")

    for obj in session.dirty:
        if isinstance(obj, CropCycle):
            _check_crop_cycle_transition(obj)
        elif is_immutable(obj) and session.is_modified(obj, include_collections=False):
            raise ImmutabilityViolation(f"{type(obj).__name__} rows cannot be updated")

    with session.no_autoflush:
        new_objects: dict[tuple[type, Any], Any] = {}
        for obj in session.new:
            if isinstance(obj, PostingGroup) and obj.id is None:
                obj.id = uuid.uuid4()
            row_id = getattr(obj, "id", None)
            if row_id is not None:
                new_objects[(type(obj), row_id)] = obj

        pending = pending_posting_groups(session)
        for obj in session.new:
            if isinstance(obj, PostingGroup):
                _check_posting_group(session, obj, new_objects)
                pending.add(obj.id)

        for obj in session.new:
            if isinstance(obj, (LedgerEntry, AllocationRow)):
                _check_line(session, obj, pending, new_objects)

        for check in _flush_checks:
            check(session)


@event.listens_for(Session, "do_orm_execute")
def _guard_bulk_statements(orm_execute_state: ORMExecuteState) -> None:
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    for mapper in orm_execute_state.all_mappers:
        if mapper.class_ in _immutable_models:
            raise ImmutabilityViolation(f"bulk update/delete of {mapper.class_.__name__} is not allowed")


@event.listens_for(Session, "before_commit")
def _guard_balance_before_commit(session: Session) -> None:
    session.flush()
    pending = session.info.get(PENDING_GROUPS_KEY)
    if not pending:
        return
    rows = session.execute(
        select(
            LedgerEntry.posting_group_id,
            func.coalesce(func.sum(LedgerEntry.debit_amount), 0),
            func.coalesce(func.sum(LedgerEntry.credit_amount), 0),
        )
        .where(LedgerEntry.posting_group_id.in_(list(pending)))
        .group_by(LedgerEntry.posting_group_id)
    ).all()
    for posting_group_id, debit_total, credit_total in rows:
        debit = Decimal(str(debit_total)).quantize(Decimal("0.01"))
        credit = Decimal(str(credit_total)).quantize(Decimal("0.01"))
        if debit != credit:
            logger.warning(
                "posting.unbalanced",
                extra={"posting_group_id": str(posting_group_id), "reason": f"debit={debit} credit={credit}"},
            )
            raise UnbalancedPostingError(
                f"posting group {posting_group_id} is unbalanced: debit {debit} != credit {credit}"
            )


@event.listens_for(Session, "after_commit")
def _clear_pending_after_commit(session: Session) -> None:
    session.info.pop(PENDING_GROUPS_KEY, None)


@event.listens_for(Session, "after_rollback")
def _clear_pending_after_rollback(session: Session) -> None:
    session.info.pop(PENDING_GROUPS_KEY, None)
