from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from farmledger.business.corrections.models import AccountingCorrection
from farmledger.business.corrections.schemas import (
    AccountingCorrectionRead,
    CorrectionBatchResult,
    CorrectionFailure,
)
from farmledger.core.config import get_settings
from farmledger.metrics import observe_correction
from farmledger.otel import get_tracer, ledger_span
from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.accounts import PARTY_ROLES, AccountService, account_service
from farmledger.platform.ledger.errors import AccountingError, NotFoundError, ValidationError
from farmledger.platform.ledger.models import Account, AllocationRow, LedgerEntry, PostingGroup
from farmledger.platform.ledger.repository import exclude_reversals
from farmledger.platform.ledger.reversal import ReversalService, reversal_service
from farmledger.platform.ledger.schemas import AllocationInput, LedgerEntryInput, PostingRequest
from farmledger.platform.ledger.service import PostingService, posting_service


logger = logging.getLogger("farmledger.corrections")
tracer = get_tracer("farmledger.corrections")

CORRECTION_SOURCE_TYPE = "ACCOUNTING_CORRECTION"
CORRECTION_REVERSAL_SOURCE_TYPE = "ACCOUNTING_CORRECTION_REVERSAL"

SETTLEMENT_ACCOUNT_FIX = "SETTLEMENT_ACCOUNT_FIX"
EXPENSE_RECLASS = "EXPENSE_RECLASS"
PARTY_CONTROL_CONSOLIDATION = "PARTY_CONTROL_CONSOLIDATION"

REASON_PROFIT_DISTRIBUTION = "OPERATIONAL_PG_CONTAINS_PROFIT_DISTRIBUTION"
REASON_PARTY_ONLY_RECLASS = "PARTY_ONLY_EXPENSE_RECLASS"

MISPOSTED_ACCOUNT_CODES = ("PROFIT_DISTRIBUTION", "PROFIT_DISTRIBUTION_CLEARING")
LEGACY_PARTY_PREFIXES = ("PAYABLE_", "ADVANCE_", "DUE_FROM_")
RECLASS_TARGET_SCOPES = ("HARI_ONLY", "LANDLORD_ONLY", "PARTY_ONLY")


@dataclass(slots=True, eq=False)
class AccountingCorrectionService:
    posting: PostingService = posting_service
    reversals: ReversalService = reversal_service
    accounts: AccountService = account_service

    def find_candidates(
        self,
        session: Session,
        ctx: ActorContext,
        *,
        tenant_id: str | None = None,
        only_posting_group_id: uuid.UUID | None = None,
        limit: int | None = None,
    ) -> list[uuid.UUID]:
        """Operational posting groups that carry settlement accounts and have not been corrected."""
        tenant_id = tenant_id or ctx.tenant_id
        if tenant_id is not None:
            ctx.require_tenant(tenant_id)

        mixes_settlement_accounts = (
            select(LedgerEntry.id)
            .join(Account, Account.id == LedgerEntry.account_id)
            .where(LedgerEntry.posting_group_id == PostingGroup.id, Account.code.in_(MISPOSTED_ACCOUNT_CODES))
            .exists()
        )
        already_corrected = (
            select(AccountingCorrection.id)
            .where(
                AccountingCorrection.tenant_id == PostingGroup.tenant_id,
                AccountingCorrection.original_posting_group_id == PostingGroup.id,
                AccountingCorrection.kind == SETTLEMENT_ACCOUNT_FIX,
            )
            .exists()
        )
        stmt = select(PostingGroup.id).where(
            PostingGroup.source_type.in_(get_settings().correctable_source_types),
            mixes_settlement_accounts,
            ~already_corrected,
        )
        stmt = exclude_reversals(stmt)
        if tenant_id is not None:
            stmt = stmt.where(PostingGroup.tenant_id == tenant_id)
        if only_posting_group_id is not None:
            stmt = stmt.where(PostingGroup.id == only_posting_group_id)
        stmt = stmt.order_by(PostingGroup.posting_date.asc(), PostingGroup.created_at.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(session.scalars(stmt).all())

    def run_correction_batch(
        self,
        session: Session,
        ctx: ActorContext,
        *,
        tenant_id: str | None = None,
        only_posting_group_id: uuid.UUID | None = None,
        limit: int | None = None,
        dry_run: bool = False,
    ) -> CorrectionBatchResult:
        """Reverse and repost every candidate group, one transaction per group.

        A failing group is rolled back and reported; the batch carries on.
        """
        with ledger_span(tracer, "corrections.batch", ctx) as span:
            candidates = self.find_candidates(
                session,
                ctx,
                tenant_id=tenant_id,
                only_posting_group_id=only_posting_group_id,
                limit=limit if limit is not None else get_settings().correction_batch_limit,
            )
            span.set_attribute("candidate_count", len(candidates))
            result = CorrectionBatchResult(dry_run=dry_run, candidates=candidates)
            if dry_run:
                return result

            for posting_group_id in candidates:
                try:
                    correction = self._fix_settlement_accounts(session, ctx, posting_group_id)
                    correction_id = correction.id
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    if self._existing_fix(session, posting_group_id) is not None:
                        result.skipped.append(posting_group_id)
                        continue
                    self._record_failure(result, posting_group_id, "integrity_error", "storage constraint violated")
                    continue
                except AccountingError as exc:
                    session.rollback()
                    self._record_failure(result, posting_group_id, exc.code, exc.message)
                    continue

                applied = AccountingCorrectionRead.model_validate(session.get(AccountingCorrection, correction_id))
                result.corrections.append(applied)
                self._record_applied(applied)

            span.set_attribute("corrected_count", len(result.corrections))
            return result

    def reclassify_party_only_expense(
        self,
        session: Session,
        ctx: ActorContext,
        *,
        tenant_id: str,
        posting_group_id: uuid.UUID,
        target_scope: str,
        operational_transaction_id: uuid.UUID | None = None,
        posting_date: date | None = None,
    ) -> AccountingCorrectionRead:
        ctx.require_tenant(tenant_id)
        if target_scope not in RECLASS_TARGET_SCOPES:
            raise ValidationError(f"target_scope must be one of {', '.join(RECLASS_TARGET_SCOPES)}")
        operational_id = operational_transaction_id or posting_group_id

        existing = self._existing_reclass(session, tenant_id, operational_id)
        if existing is not None:
            return AccountingCorrectionRead.model_validate(existing)

        try:
            correction = self._stage_reclass(
                session, ctx, tenant_id, posting_group_id, target_scope, operational_id, posting_date
            )
            correction_id = correction.id
            session.commit()
        except IntegrityError:
            session.rollback()
            existing = self._existing_reclass(session, tenant_id, operational_id)
            if existing is None:
                observe_correction(EXPENSE_RECLASS, "failed")
                raise ValidationError("reclassification violates a storage constraint")
            return AccountingCorrectionRead.model_validate(existing)
        except AccountingError as exc:
            session.rollback()
            observe_correction(EXPENSE_RECLASS, "failed")
            logger.warning(
                "correction.failed",
                extra={"tenant_id": tenant_id, "posting_group_id": str(posting_group_id), "reason": exc.code, "error": exc.message},
            )
            raise

        applied = AccountingCorrectionRead.model_validate(session.get(AccountingCorrection, correction_id))
        self._record_applied(applied)
        return applied

    def consolidate_party_controls(
        self,
        session: Session,
        ctx: ActorContext,
        *,
        tenant_id: str,
        posting_date: date,
    ) -> AccountingCorrectionRead | None:
        """Move legacy per-party account balances into the party control accounts.

        Returns ``None`` when no legacy account carries a balance.
        """
        ctx.require_tenant(tenant_id)
        existing = self._existing_consolidation(session, tenant_id)
        if existing is not None:
            return AccountingCorrectionRead.model_validate(existing)

        with ledger_span(tracer, "corrections.consolidate_party_controls", ctx):
            try:
                correction = self._stage_consolidation(session, ctx, tenant_id, posting_date)
                if correction is None:
                    session.rollback()
                    return None
                correction_id = correction.id
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self._existing_consolidation(session, tenant_id)
                if existing is None:
                    observe_correction(PARTY_CONTROL_CONSOLIDATION, "failed")
                    raise ValidationError("party control consolidation violates a storage constraint")
                return AccountingCorrectionRead.model_validate(existing)
            except AccountingError:
                session.rollback()
                observe_correction(PARTY_CONTROL_CONSOLIDATION, "failed")
                raise

        applied = AccountingCorrectionRead.model_validate(session.get(AccountingCorrection, correction_id))
        self._record_applied(applied)
        return applied

    def list_corrections(self, session: Session, ctx: ActorContext, *, tenant_id: str) -> list[AccountingCorrectionRead]:
        ctx.require_tenant(tenant_id)
        rows = session.scalars(
            select(AccountingCorrection)
            .where(AccountingCorrection.tenant_id == tenant_id)
            .order_by(AccountingCorrection.created_at.asc())
        ).all()
        return [AccountingCorrectionRead.model_validate(row) for row in rows]

    def _fix_settlement_accounts(self, session: Session, ctx: ActorContext, posting_group_id: uuid.UUID) -> AccountingCorrection:
        original = self._load_group(session, posting_group_id)
        amount = self._issue_value(original)
        if amount <= 0:
            raise ValidationError(
                f"posting group {original.id} has no INPUTS_EXPENSE debit or INVENTORY_INPUTS credit to repost"
            )

        reversal = self.reversals.stage(
            session,
            ctx,
            original.id,
            original.posting_date,
            REASON_PROFIT_DISTRIBUTION,
            source_type=CORRECTION_REVERSAL_SOURCE_TYPE,
        )
        inputs_expense = self.accounts.system_account(session, original.tenant_id, "INPUTS_EXPENSE")
        inventory = self.accounts.system_account(session, original.tenant_id, "INVENTORY_INPUTS")
        corrected = self.posting.stage(
            session,
            ctx,
            PostingRequest(
                tenant_id=original.tenant_id,
                source_type=CORRECTION_SOURCE_TYPE,
                source_id=str(original.id),
                crop_cycle_id=original.crop_cycle_id,
                posting_date=original.posting_date,
                idempotency_key=f"correction:{original.id}",
                reason=REASON_PROFIT_DISTRIBUTION,
                entries=[
                    LedgerEntryInput(account_id=inputs_expense.id, debit_amount=amount, memo="corrected inputs issue"),
                    LedgerEntryInput(account_id=inventory.id, credit_amount=amount, memo="corrected inputs issue"),
                ],
                allocations=[
                    self._copy_allocation(row, {"correction_of_pg": str(original.id), "correction_reason": REASON_PROFIT_DISTRIBUTION})
                    for row in original.allocation_rows
                ],
            ),
            allow_negative_allocations=True,
        )
        correction = AccountingCorrection(
            id=uuid.uuid4(),
            tenant_id=original.tenant_id,
            kind=SETTLEMENT_ACCOUNT_FIX,
            reason=REASON_PROFIT_DISTRIBUTION,
            original_posting_group_id=original.id,
            reversal_posting_group_id=reversal.id,
            corrected_posting_group_id=corrected.id,
            details={"amount": str(amount), "source_type": original.source_type},
            created_by=ctx.user_id,
        )
        session.add(correction)
        return correction

    def _stage_reclass(
        self,
        session: Session,
        ctx: ActorContext,
        tenant_id: str,
        posting_group_id: uuid.UUID,
        target_scope: str,
        operational_id: uuid.UUID,
        posting_date: date | None,
    ) -> AccountingCorrection:
        original = self._load_group(session, posting_group_id)
        if original.tenant_id != tenant_id:
            raise NotFoundError(f"posting group {posting_group_id} not found")
        if original.reversal_of_posting_group_id is not None:
            raise ValidationError(f"posting group {original.id} is a reversal and cannot be reclassified")
        if self.reversals.group_repository.get_reversal_of(session, tenant_id, original.id) is not None:
            raise ValidationError(f"posting group {original.id} has been reversed and cannot be reclassified")
        shared_rows = [
            row
            for row in original.allocation_rows
            if row.allocation_type == "POOL_SHARE" and row.allocation_scope == "SHARED" and row.amount
        ]
        amount = sum((Decimal(row.amount) for row in shared_rows), Decimal("0"))
        if amount == 0:
            raise ValidationError(f"posting group {original.id} has no shared pool allocation to reclassify")

        snapshot: dict[str, Any] = {
            "reclass_of_pg": str(original.id),
            "operational_transaction_id": str(operational_id),
            "target_scope": target_scope,
        }
        clearing = self.accounts.system_account(session, tenant_id, "EXPENSE_RECLASS_CLEARING")
        offset = self.accounts.system_account(session, tenant_id, "EXPENSE_RECLASS_OFFSET")
        corrected = self.posting.stage(
            session,
            ctx,
            PostingRequest(
                tenant_id=tenant_id,
                source_type=CORRECTION_SOURCE_TYPE,
                source_id=f"reclass:{operational_id}",
                crop_cycle_id=original.crop_cycle_id,
                posting_date=posting_date or original.posting_date,
                reason=REASON_PARTY_ONLY_RECLASS,
                entries=[
                    LedgerEntryInput(account_id=clearing.id, debit_amount=abs(amount), memo="party-only reclass"),
                    LedgerEntryInput(account_id=offset.id, credit_amount=abs(amount), memo="party-only reclass"),
                ],
                allocations=[
                    allocation
                    for row in shared_rows
                    for allocation in (
                        AllocationInput(
                            allocation_type="POOL_SHARE",
                            allocation_scope="SHARED",
                            project_id=row.project_id,
                            party_id=row.party_id,
                            amount=-Decimal(row.amount),
                            rule_snapshot=snapshot,
                        ),
                        AllocationInput(
                            allocation_type=target_scope,
                            allocation_scope=target_scope,
                            project_id=row.project_id,
                            party_id=row.party_id,
                            amount=Decimal(row.amount),
                            rule_snapshot=snapshot,
                        ),
                    )
                ],
            ),
            allow_negative_allocations=True,
        )
        correction = AccountingCorrection(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            kind=EXPENSE_RECLASS,
            reason=REASON_PARTY_ONLY_RECLASS,
            original_posting_group_id=original.id,
            corrected_posting_group_id=corrected.id,
            operational_transaction_id=operational_id,
            details={"amount": str(amount), "target_scope": target_scope},
            created_by=ctx.user_id,
        )
        session.add(correction)
        return correction

    def _stage_consolidation(
        self,
        session: Session,
        ctx: ActorContext,
        tenant_id: str,
        posting_date: date,
    ) -> AccountingCorrection | None:
        entries: list[LedgerEntryInput] = []
        moved: list[dict[str, str]] = []
        for role in PARTY_ROLES:
            role_total = Decimal("0")
            for prefix in LEGACY_PARTY_PREFIXES:
                legacy = self.accounts.repository.get_by_code(session, tenant_id, f"{prefix}{role}")
                if legacy is None:
                    continue
                balance = self.accounts.account_balance(session, ctx, legacy.id, as_of=posting_date)
                if balance == 0:
                    continue
                entries.append(self._leg(legacy.id, -balance, memo=f"consolidate {legacy.code}"))
                moved.append({"account": legacy.code, "balance": str(balance)})
                role_total += balance
            if role_total != 0:
                control = self.accounts.system_account(session, tenant_id, f"PARTY_CONTROL_{role}")
                entries.append(self._leg(control.id, role_total, memo=f"consolidate {role}"))

        if not entries:
            return None

        corrected = self.posting.stage(
            session,
            ctx,
            PostingRequest(
                tenant_id=tenant_id,
                source_type=CORRECTION_SOURCE_TYPE,
                source_id=PARTY_CONTROL_CONSOLIDATION,
                posting_date=posting_date,
                reason=PARTY_CONTROL_CONSOLIDATION,
                entries=entries,
            ),
        )
        correction = AccountingCorrection(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            kind=PARTY_CONTROL_CONSOLIDATION,
            reason=PARTY_CONTROL_CONSOLIDATION,
            corrected_posting_group_id=corrected.id,
            details={"moved": moved},
            created_by=ctx.user_id,
        )
        session.add(correction)
        return correction

    @staticmethod
    def _load_group(session: Session, posting_group_id: uuid.UUID) -> PostingGroup:
        group = session.scalar(
            select(PostingGroup)
            .where(PostingGroup.id == posting_group_id)
            .options(
                selectinload(PostingGroup.entries).selectinload(LedgerEntry.account),
                selectinload(PostingGroup.allocation_rows),
            )
        )
        if group is None:
            raise NotFoundError(f"posting group {posting_group_id} not found")
        return group

    @staticmethod
    def _issue_value(group: PostingGroup) -> Decimal:
        expense_debit = sum(
            (Decimal(entry.debit_amount) for entry in group.entries if entry.account.code == "INPUTS_EXPENSE"),
            Decimal("0"),
        )
        if expense_debit > 0:
            return expense_debit
        return sum(
            (Decimal(entry.credit_amount) for entry in group.entries if entry.account.code == "INVENTORY_INPUTS"),
            Decimal("0"),
        )

    @staticmethod
    def _copy_allocation(row: AllocationRow, note: dict[str, str]) -> AllocationInput:
        return AllocationInput(
            allocation_type=row.allocation_type,
            allocation_scope=row.allocation_scope,
            project_id=row.project_id,
            party_id=row.party_id,
            machine_id=row.machine_id,
            amount=row.amount,
            quantity=row.quantity,
            unit=row.unit,
            rule_snapshot={**(row.rule_snapshot or {}), **note},
        )

    @staticmethod
    def _leg(account_id: uuid.UUID, signed_amount: Decimal, *, memo: str) -> LedgerEntryInput:
        if signed_amount >= 0:
            return LedgerEntryInput(account_id=account_id, debit_amount=signed_amount, memo=memo)
        return LedgerEntryInput(account_id=account_id, credit_amount=-signed_amount, memo=memo)

    @staticmethod
    def _existing_fix(session: Session, posting_group_id: uuid.UUID) -> AccountingCorrection | None:
        return session.scalar(
            select(AccountingCorrection).where(
                AccountingCorrection.original_posting_group_id == posting_group_id,
                AccountingCorrection.kind == SETTLEMENT_ACCOUNT_FIX,
            )
        )

    @staticmethod
    def _existing_reclass(session: Session, tenant_id: str, operational_id: uuid.UUID) -> AccountingCorrection | None:
        return session.scalar(
            select(AccountingCorrection).where(
                AccountingCorrection.tenant_id == tenant_id,
                AccountingCorrection.operational_transaction_id == operational_id,
            )
        )

    @staticmethod
    def _existing_consolidation(session: Session, tenant_id: str) -> AccountingCorrection | None:
        return session.scalar(
            select(AccountingCorrection).where(
                AccountingCorrection.tenant_id == tenant_id,
                AccountingCorrection.reason == PARTY_CONTROL_CONSOLIDATION,
                AccountingCorrection.original_posting_group_id.is_(None),
                AccountingCorrection.operational_transaction_id.is_(None),
            )
        )

    @staticmethod
    def _record_applied(correction: AccountingCorrectionRead) -> None:
        observe_correction(correction.kind, "applied")
        logger.info(
            "correction.applied",
            extra={
                "tenant_id": correction.tenant_id,
                "posting_group_id": str(correction.corrected_posting_group_id),
                "reason": correction.reason,
                "status": correction.kind,
            },
        )

    @staticmethod
    def _record_failure(result: CorrectionBatchResult, posting_group_id: uuid.UUID, code: str, error: str) -> None:
        result.failures.append(CorrectionFailure(posting_group_id=posting_group_id, code=code, error=error))
        observe_correction(SETTLEMENT_ACCOUNT_FIX, "failed")
        logger.warning(
            "correction.failed",
            extra={"posting_group_id": str(posting_group_id), "reason": code, "error": error},
        )


accounting_correction_service = AccountingCorrectionService()
