from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from farmledger.business.period_close.calculator import PeriodCloseCalculator, period_close_calculator
from farmledger.business.period_close.models import PeriodCloseRun
from farmledger.business.period_close.schemas import PeriodClosePreview, PeriodCloseRunRead
from farmledger.metrics import observe_period_close, observe_posting_failure, observe_posting_group_posted
from farmledger.otel import get_tracer, ledger_span
from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.accounts import AccountService, account_service
from farmledger.platform.ledger.errors import AccountingError, PeriodClosedError, ValidationError
from farmledger.platform.ledger.models import CropCycle, utcnow
from farmledger.platform.ledger.periods import CropCycleService, crop_cycle_service
from farmledger.platform.ledger.schemas import AllocationInput, LedgerEntryInput, PostingRequest
from farmledger.platform.ledger.service import PostingService, posting_service


logger = logging.getLogger("farmledger.period_close")
tracer = get_tracer("farmledger.period_close")

PERIOD_CLOSE_SOURCE_TYPE = "PERIOD_CLOSE"


@dataclass(slots=True, eq=False)
class PeriodCloseService:
    calculator: PeriodCloseCalculator = period_close_calculator
    cycles: CropCycleService = crop_cycle_service
    posting: PostingService = posting_service
    accounts: AccountService = account_service

    def preview_close(
        self,
        session: Session,
        ctx: ActorContext,
        crop_cycle_id: uuid.UUID,
        *,
        as_of: date | None = None,
    ) -> PeriodClosePreview:
        cycle = self.cycles.load(session, ctx, crop_cycle_id)
        from_date, to_date = self.close_window(cycle, as_of)
        return self.calculator.preview(
            session,
            tenant_id=cycle.tenant_id,
            crop_cycle_id=cycle.id,
            from_date=from_date,
            to_date=to_date,
        )

    def close(
        self,
        session: Session,
        ctx: ActorContext,
        crop_cycle_id: uuid.UUID,
        *,
        as_of: date | None = None,
    ) -> PeriodCloseRunRead:
        with ledger_span(tracer, "period_close.close", ctx, crop_cycle_id=crop_cycle_id):
            cycle = self.cycles.load(session, ctx, crop_cycle_id)
            tenant_id = cycle.tenant_id

            existing = self.get_run(session, tenant_id, cycle.id)
            if existing is not None:
                return PeriodCloseRunRead.model_validate(existing)
            if cycle.status == "CLOSED":
                raise PeriodClosedError(f"crop cycle {cycle.name} was closed without a close run")

            try:
                run = self._stage_close(session, ctx, cycle, as_of)
                run_id = run.id
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self.get_run(session, tenant_id, crop_cycle_id)
                if existing is None:
                    observe_posting_failure("integrity_error")
                    raise ValidationError("period close violates a storage constraint")
                return PeriodCloseRunRead.model_validate(existing)
            except AccountingError as exc:
                session.rollback()
                observe_posting_failure(exc.code)
                logger.warning(
                    "posting.rejected",
                    extra={"tenant_id": tenant_id, "crop_cycle_id": str(crop_cycle_id), "reason": exc.code, "error": exc.message},
                )
                raise

            run = session.get(PeriodCloseRun, run_id)
            observe_period_close()
            observe_posting_group_posted(PERIOD_CLOSE_SOURCE_TYPE, int(run.snapshot_json.get("entry_count", 0)))
            logger.info(
                "period_close.completed",
                extra={
                    "tenant_id": tenant_id,
                    "crop_cycle_id": str(crop_cycle_id),
                    "posting_group_id": str(run.posting_group_id),
                    "status": run.status,
                },
            )
            return PeriodCloseRunRead.model_validate(run)

    def get_run(self, session: Session, tenant_id: str, crop_cycle_id: uuid.UUID) -> PeriodCloseRun | None:
        return session.scalar(
            select(PeriodCloseRun).where(
                PeriodCloseRun.tenant_id == tenant_id,
                PeriodCloseRun.crop_cycle_id == crop_cycle_id,
            )
        )

    def close_window(self, cycle: CropCycle, as_of: date | None) -> tuple[date, date]:
        to_date = as_of or cycle.end_date or date.today()
        if to_date < cycle.start_date:
            raise ValidationError(f"close date {to_date} is before the start of crop cycle {cycle.name}")
        if cycle.end_date is not None and to_date > cycle.end_date:
            raise ValidationError(f"close date {to_date} is after the end of crop cycle {cycle.name}")
        return cycle.start_date, to_date

    def _stage_close(self, session: Session, ctx: ActorContext, cycle: CropCycle, as_of: date | None) -> PeriodCloseRun:
        from_date, to_date = self.close_window(cycle, as_of)
        preview = self.calculator.preview(
            session,
            tenant_id=cycle.tenant_id,
            crop_cycle_id=cycle.id,
            from_date=from_date,
            to_date=to_date,
        )
        current_earnings = self.accounts.system_account(session, cycle.tenant_id, "CURRENT_EARNINGS")
        retained_earnings = self.accounts.system_account(session, cycle.tenant_id, "RETAINED_EARNINGS")

        entries: list[LedgerEntryInput] = []
        for row in preview.accounts:
            # closing leg is the opposite of the account's normal balance side
            signed = row.net_amount if row.account_type == "INCOME" else -row.net_amount
            entries.append(self._leg(row.account_id, signed, memo=f"close {row.account_code}"))

        net_profit = preview.net_profit
        if net_profit != 0:
            entries.append(self._leg(current_earnings.id, -net_profit, memo="current earnings"))
            entries.append(self._leg(current_earnings.id, net_profit, memo="current earnings"))
            entries.append(self._leg(retained_earnings.id, -net_profit, memo="retained earnings"))

        counts = {
            "income": sum(1 for row in preview.accounts if row.account_type == "INCOME"),
            "expense": sum(1 for row in preview.accounts if row.account_type == "EXPENSE"),
        }
        snapshot = {
            "crop_cycle_id": str(cycle.id),
            "from_date": from_date.isoformat(),
            "to_date": to_date.isoformat(),
            "total_income": str(preview.total_income),
            "total_expense": str(preview.total_expense),
            "net_profit": str(net_profit),
            "accounts_closed": counts,
            "accounts": [
                {"account_id": str(row.account_id), "code": row.account_code, "net_amount": str(row.net_amount)}
                for row in preview.accounts
            ],
            "current_earnings_account_id": str(current_earnings.id),
            "retained_earnings_account_id": str(retained_earnings.id),
            "entry_count": len(entries),
        }

        run_id = uuid.uuid4()
        group = self.posting.stage(
            session,
            ctx,
            PostingRequest(
                tenant_id=cycle.tenant_id,
                source_type=PERIOD_CLOSE_SOURCE_TYPE,
                source_id=str(run_id),
                crop_cycle_id=cycle.id,
                posting_date=to_date,
                idempotency_key=f"period_close:{cycle.id}",
                entries=entries,
                allocations=[
                    AllocationInput(
                        allocation_type="PERIOD_CLOSE",
                        allocation_scope=None,
                        amount=net_profit,
                        rule_snapshot=snapshot,
                    )
                ],
            ),
            allow_empty_entries=True,
            allow_negative_allocations=True,
        )
        run = PeriodCloseRun(
            id=run_id,
            tenant_id=cycle.tenant_id,
            crop_cycle_id=cycle.id,
            posting_group_id=group.id,
            status="COMPLETED",
            from_date=from_date,
            to_date=to_date,
            net_profit=net_profit,
            snapshot_json=snapshot,
            closed_at=utcnow(),
            closed_by=ctx.user_id,
        )
        session.add(run)
        # the group must reach the database while the cycle is still OPEN
        session.flush()
        self.cycles.mark_closed(cycle, ctx)
        return run

    @staticmethod
    def _leg(account_id: uuid.UUID, signed_amount: Decimal, *, memo: str) -> LedgerEntryInput:
        if signed_amount >= 0:
            return LedgerEntryInput(account_id=account_id, debit_amount=signed_amount, memo=memo)
        return LedgerEntryInput(account_id=account_id, credit_amount=-signed_amount, memo=memo)


period_close_service = PeriodCloseService()
