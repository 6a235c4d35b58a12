from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from farmledger.business.projects.models import Project
from farmledger.business.settlement.kamdari import get_strategy
from farmledger.business.settlement.models import Settlement, SettlementLine, SettlementOffset, ShareRule
from farmledger.business.settlement.schemas import SettlementComputeRequest, SettlementOffsetPreview, SettlementRead
from farmledger.business.settlement.share_rules import ShareRuleService, share_rule_service
from farmledger.metrics import observe_posting_failure, observe_posting_group_posted, observe_reversal, observe_settlement_posted
from farmledger.otel import get_tracer, ledger_span
from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.accounts import AccountService, account_service
from farmledger.platform.ledger.allocation import AllocationEngine, allocation_engine
from farmledger.platform.ledger.errors import AccountingError, NotFoundError, TenantMismatchError, ValidationError
from farmledger.platform.ledger.models import utcnow
from farmledger.platform.ledger.reversal import ReversalService, reversal_service
from farmledger.platform.ledger.schemas import AllocationInput, LedgerEntryInput, PostingGroupRead, PostingRequest
from farmledger.platform.ledger.service import PostingService, posting_service


logger = logging.getLogger("farmledger.settlement")
tracer = get_tracer("farmledger.settlement")

SETTLEMENT_SOURCE_TYPE = "SETTLEMENT"


@dataclass(slots=True)
class SettlementCalculation:
    pool_revenue: Decimal
    shared_costs: Decimal
    pool_profit: Decimal
    basis_amount: Decimal
    kamdari_amount: Decimal
    distributable: Decimal
    hari_only_deductions: Decimal
    lines: list[dict[str, Any]]


@dataclass(slots=True, eq=False)
class SettlementService:
    share_rules: ShareRuleService = share_rule_service
    allocations: AllocationEngine = allocation_engine
    posting: PostingService = posting_service
    reversals: ReversalService = reversal_service
    accounts: AccountService = account_service

    def compute_settlement(self, session: Session, ctx: ActorContext, request: SettlementComputeRequest) -> SettlementRead:
        project = self._load_project(session, ctx, request.project_id)
        rule = self._load_rule(session, ctx, request.share_rule_id, project.tenant_id)
        if request.from_date > request.to_date:
            raise ValidationError("from_date must not be after to_date")

        calculation = self.calculate(session, project, rule, request.from_date, request.to_date)
        settlement = Settlement(
            id=uuid.uuid4(),
            tenant_id=project.tenant_id,
            settlement_no=self._next_number(session, project.tenant_id),
            status="DRAFT",
            project_id=project.id,
            share_rule_id=rule.id,
            crop_cycle_id=project.crop_cycle_id,
            from_date=request.from_date,
            to_date=request.to_date,
            basis=rule.basis,
            rule_snapshot=self._rule_snapshot(rule),
            created_by=ctx.user_id,
        )
        self._apply_calculation(settlement, calculation)
        session.add(settlement)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ValidationError("settlement number already allocated; retry")

        logger.info(
            "settlement.computed",
            extra={
                "tenant_id": settlement.tenant_id,
                "settlement_id": str(settlement.id),
                "crop_cycle_id": str(settlement.crop_cycle_id),
                "status": settlement.status,
            },
        )
        return self.get_settlement(session, ctx, settlement.id)

    def recompute_settlement(self, session: Session, ctx: ActorContext, settlement_id: uuid.UUID) -> SettlementRead:
        settlement = self._load_settlement(session, ctx, settlement_id)
        if settlement.status != "DRAFT":
            raise ValidationError(f"only DRAFT settlements can be recomputed (status={settlement.status})")
        project = self._load_project(session, ctx, settlement.project_id)
        rule = self._load_rule(session, ctx, settlement.share_rule_id, settlement.tenant_id)

        calculation = self.calculate(session, project, rule, settlement.from_date, settlement.to_date)
        settlement.basis = rule.basis
        settlement.rule_snapshot = self._rule_snapshot(rule)
        self._apply_calculation(settlement, calculation)
        session.commit()

        logger.info(
            "settlement.computed",
            extra={"tenant_id": settlement.tenant_id, "settlement_id": str(settlement.id), "status": "recomputed"},
        )
        return self.get_settlement(session, ctx, settlement.id)

    def calculate(
        self,
        session: Session,
        project: Project,
        rule: ShareRule,
        from_date: date,
        to_date: date,
    ) -> SettlementCalculation:
        """Pool arithmetic for one project window under one share rule."""
        window = {
            "tenant_id": project.tenant_id,
            "project_id": project.id,
            "from_date": from_date,
            "to_date": to_date,
        }
        pool_revenue = self.allocations.sum_amounts(
            session, allocation_type="POOL_REVENUE", allocation_scope="SHARED", **window
        )
        shared_costs = self.allocations.sum_amounts(
            session, allocation_type="POOL_SHARE", allocation_scope="SHARED", **window
        )
        hari_only_deductions = self.allocations.sum_amounts(session, allocation_scope="HARI_ONLY", **window)
        pool_profit = pool_revenue - shared_costs
        basis_amount = pool_profit if rule.basis == "MARGIN" else pool_revenue

        kamdar_line = next((line for line in rule.lines if line.role == "KAMDAR"), None)
        kamdari_pct = Decimal(kamdar_line.percentage) if kamdar_line is not None else Decimal("0")
        split = get_strategy(rule.kamdari_order)(basis_amount, kamdari_pct)

        lines: list[dict[str, Any]] = []
        split_lines = [line for line in rule.lines if line.role != "KAMDAR"]
        allocated = Decimal("0")
        for line in split_lines:
            gross = self._q(split.distributable * Decimal(line.percentage) / Decimal("100"))
            allocated += gross
            lines.append({"party_id": line.party_id, "role": line.role, "percentage": line.percentage, "gross": gross})
        if lines:
            remainder_line = next((item for item in lines if item["role"] == "HARI"), lines[-1])
            remainder_line["gross"] += split.distributable - allocated

        result_lines: list[dict[str, Any]] = []
        if kamdar_line is not None:
            result_lines.append(
                {
                    "party_id": kamdar_line.party_id,
                    "role": "KAMDAR",
                    "percentage": kamdar_line.percentage,
                    "gross_amount": split.kamdari_amount,
                    "deductions": Decimal("0"),
                    "amount": split.kamdari_amount,
                }
            )
        for item in lines:
            deductions = hari_only_deductions if item["role"] == "HARI" else Decimal("0")
            result_lines.append(
                {
                    "party_id": item["party_id"],
                    "role": item["role"],
                    "percentage": item["percentage"],
                    "gross_amount": item["gross"],
                    "deductions": deductions,
                    "amount": item["gross"] - deductions,
                }
            )

        return SettlementCalculation(
            pool_revenue=pool_revenue,
            shared_costs=shared_costs,
            pool_profit=pool_profit,
            basis_amount=basis_amount,
            kamdari_amount=split.kamdari_amount,
            distributable=split.distributable,
            hari_only_deductions=hari_only_deductions,
            lines=result_lines,
        )

    def post_settlement(
        self,
        session: Session,
        ctx: ActorContext,
        settlement_id: uuid.UUID,
        posting_date: date,
        advance_offset_amount: Decimal | None = None,
    ) -> PostingGroupRead:
        """Post a DRAFT settlement, optionally recovering part of the Hari advance from its payable.

        Retrying a posted settlement returns its existing posting group unchanged.
        """
        with ledger_span(tracer, "settlement.post", ctx, settlement_id=settlement_id):
            settlement = self._load_settlement(session, ctx, settlement_id)
            if settlement.status == "POSTED" and settlement.posting_group_id is not None:
                return self.posting.get_posting_group(session, ctx, settlement.posting_group_id)
            if settlement.status != "DRAFT":
                raise ValidationError(f"settlement {settlement.settlement_no} is {settlement.status}")

            tenant_id = settlement.tenant_id
            offset_amount = Decimal("0")
            try:
                if advance_offset_amount is not None:
                    offset_amount = self._checked_offset(session, ctx, settlement, posting_date, advance_offset_amount)
                request = self._posting_request(session, settlement, posting_date, offset_amount)
                group = self.posting.stage(session, ctx, request, allow_negative_allocations=True)
                settlement.status = "POSTED"
                settlement.posting_group_id = group.id
                settlement.posting_date = posting_date
                settlement.posted_at = utcnow()
                settlement.posted_by = ctx.user_id
                if offset_amount > 0:
                    session.add(
                        SettlementOffset(
                            id=uuid.uuid4(),
                            tenant_id=tenant_id,
                            settlement_id=settlement.id,
                            party_id=self._hari_party_id(settlement),
                            posting_group_id=group.id,
                            posting_date=posting_date,
                            offset_amount=offset_amount,
                        )
                    )
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self.posting.group_repository.get_by_source(
                    session, tenant_id, SETTLEMENT_SOURCE_TYPE, str(settlement_id)
                )
                if existing is None:
                    observe_posting_failure("integrity_error")
                    raise ValidationError("settlement posting violates a storage constraint")
                return self.posting.get_posting_group(session, ctx, existing.id)
            except AccountingError as exc:
                session.rollback()
                observe_posting_failure(exc.code)
                logger.warning(
                    "posting.rejected",
                    extra={"tenant_id": tenant_id, "settlement_id": str(settlement_id), "reason": exc.code, "error": exc.message},
                )
                raise

            observe_settlement_posted()
            observe_posting_group_posted(SETTLEMENT_SOURCE_TYPE, len(request.entries))
            logger.info(
                "settlement.posted",
                extra={
                    "tenant_id": tenant_id,
                    "settlement_id": str(settlement_id),
                    "posting_group_id": str(group.id),
                    "advance_offset": str(offset_amount),
                    "status": "POSTED",
                },
            )
            return self.posting.get_posting_group(session, ctx, group.id)

    def offset_preview(
        self,
        session: Session,
        ctx: ActorContext,
        settlement_id: uuid.UUID,
        posting_date: date,
    ) -> SettlementOffsetPreview:
        """How much of the Hari advance could be recovered if the settlement posted on ``posting_date``."""
        settlement = self._load_settlement(session, ctx, settlement_id)
        payable, outstanding = self._offset_capacity(session, ctx, settlement, posting_date)
        cap = min(payable, outstanding)
        return SettlementOffsetPreview(
            settlement_id=settlement.id,
            party_id=self._hari_party_id(settlement),
            posting_date=posting_date,
            hari_payable=payable,
            outstanding_advance=outstanding,
            suggested_offset=cap,
            max_offset=cap,
        )

    def _offset_capacity(
        self,
        session: Session,
        ctx: ActorContext,
        settlement: Settlement,
        posting_date: date,
    ) -> tuple[Decimal, Decimal]:
        payable = self._q(sum((Decimal(line.amount) for line in settlement.lines if line.role == "HARI"), Decimal("0")))
        advance = self.accounts.repository.get_by_code(session, settlement.tenant_id, "ADVANCE_HARI")
        outstanding = Decimal("0.00")
        if advance is not None:
            outstanding = self.accounts.account_balance(session, ctx, advance.id, as_of=posting_date)
        return max(payable, Decimal("0.00")), max(outstanding, Decimal("0.00"))

    def _checked_offset(
        self,
        session: Session,
        ctx: ActorContext,
        settlement: Settlement,
        posting_date: date,
        requested: Decimal,
    ) -> Decimal:
        amount = self._q(requested)
        if amount <= 0:
            raise ValidationError("advance offset amount must be greater than zero")
        if self._hari_party_id(settlement) is None:
            raise ValidationError(f"settlement {settlement.settlement_no} has no Hari line to offset against")
        payable, outstanding = self._offset_capacity(session, ctx, settlement, posting_date)
        allowed = min(payable, outstanding)
        if amount > allowed:
            raise ValidationError(
                f"advance offset {amount} exceeds the allowed maximum {allowed} "
                f"(hari payable {payable}, outstanding advance {outstanding})"
            )
        return amount

    @staticmethod
    def _hari_party_id(settlement: Settlement) -> uuid.UUID | None:
        return next((line.party_id for line in settlement.lines if line.role == "HARI"), None)

    def reverse_settlement(
        self,
        session: Session,
        ctx: ActorContext,
        settlement_id: uuid.UUID,
        posting_date: date,
        reason: str | None = None,
    ) -> PostingGroupRead:
        with ledger_span(tracer, "settlement.reverse", ctx, settlement_id=settlement_id):
            settlement = self._load_settlement(session, ctx, settlement_id)
            tenant_id = settlement.tenant_id
            try:
                group = self.reversals.reverse_document(session, ctx, settlement, posting_date, reason)
                group_id = group.id
                session.commit()
            except IntegrityError:
                session.rollback()
                observe_posting_failure("integrity_error")
                raise ValidationError("settlement reversal violates a storage constraint")
            except AccountingError as exc:
                session.rollback()
                observe_posting_failure(exc.code)
                raise

            observe_reversal()
            logger.info(
                "settlement.reversed",
                extra={
                    "tenant_id": tenant_id,
                    "settlement_id": str(settlement_id),
                    "posting_group_id": str(group_id),
                    "reason": reason,
                    "status": "REVERSED",
                },
            )
            return self.posting.get_posting_group(session, ctx, group_id)

    def get_settlement(self, session: Session, ctx: ActorContext, settlement_id: uuid.UUID) -> SettlementRead:
        return SettlementRead.model_validate(self._load_settlement(session, ctx, settlement_id))

    def list_settlements(
        self,
        session: Session,
        ctx: ActorContext,
        *,
        tenant_id: str,
        project_id: uuid.UUID | None = None,
        status: str | None = None,
    ) -> list[SettlementRead]:
        ctx.require_tenant(tenant_id)
        stmt: Select[tuple[Settlement]] = (
            select(Settlement).where(Settlement.tenant_id == tenant_id).options(selectinload(Settlement.lines))
        )
        if project_id is not None:
            stmt = stmt.where(Settlement.project_id == project_id)
        if status is not None:
            stmt = stmt.where(Settlement.status == status)
        rows = session.scalars(stmt.order_by(Settlement.settlement_no.asc())).all()
        return [SettlementRead.model_validate(row) for row in rows]

    def _posting_request(
        self,
        session: Session,
        settlement: Settlement,
        posting_date: date,
        offset_amount: Decimal = Decimal("0"),
    ) -> PostingRequest:
        tenant_id = settlement.tenant_id
        clearing = self.accounts.system_account(session, tenant_id, "PROFIT_DISTRIBUTION_CLEARING")
        distribution = self.accounts.system_account(session, tenant_id, "PROFIT_DISTRIBUTION")

        entries: list[LedgerEntryInput] = []
        allocations: list[AllocationInput] = []
        total = Decimal("0")
        for line in settlement.lines:
            amount = self._q(line.amount)
            if amount == 0:
                continue
            total += amount
            control = self.accounts.system_account(session, tenant_id, f"PARTY_CONTROL_{line.role}")
            entries.append(self._leg(clearing.id, amount, memo=f"{line.role} share"))
            entries.append(self._leg(control.id, -amount, memo=f"{line.role} share"))
            allocations.append(
                AllocationInput(
                    allocation_type="KAMDARI" if line.role == "KAMDAR" else "PROFIT_SHARE",
                    allocation_scope=None,
                    project_id=settlement.project_id,
                    party_id=line.party_id,
                    amount=amount,
                    rule_snapshot={
                        **settlement.rule_snapshot,
                        "settlement_id": str(settlement.id),
                        "role": line.role,
                        "percentage": str(line.percentage),
                    },
                )
            )

        if not entries:
            raise ValidationError(f"settlement {settlement.settlement_no} has nothing to distribute")
        if total != 0:
            entries.insert(0, self._leg(distribution.id, total, memo="profit distribution"))
            entries.insert(1, self._leg(clearing.id, -total, memo="profit distribution"))

        if offset_amount > 0:
            hari_control = self.accounts.system_account(session, tenant_id, "PARTY_CONTROL_HARI")
            advance = self.accounts.system_account(session, tenant_id, "ADVANCE_HARI")
            entries.append(self._leg(hari_control.id, offset_amount, memo="advance offset"))
            entries.append(self._leg(advance.id, -offset_amount, memo="advance offset"))
            for offset_type in ("REDUCE_PAYABLE", "REDUCE_ADVANCE"):
                allocations.append(
                    AllocationInput(
                        allocation_type="ADVANCE_OFFSET",
                        allocation_scope=None,
                        project_id=settlement.project_id,
                        party_id=self._hari_party_id(settlement),
                        amount=offset_amount,
                        rule_snapshot={"settlement_id": str(settlement.id), "offset_type": offset_type},
                    )
                )

        return PostingRequest(
            tenant_id=tenant_id,
            source_type=SETTLEMENT_SOURCE_TYPE,
            source_id=str(settlement.id),
            crop_cycle_id=settlement.crop_cycle_id,
            posting_date=posting_date,
            idempotency_key=f"settlement:{settlement.id}",
            entries=entries,
            allocations=allocations,
        )

    @staticmethod
    def _leg(account_id: uuid.UUID, signed_amount: Decimal, *, memo: str) -> LedgerEntryInput:
        """Positive amounts debit the account, negative amounts credit it."""
        if signed_amount >= 0:
            return LedgerEntryInput(account_id=account_id, debit_amount=signed_amount, memo=memo)
        return LedgerEntryInput(account_id=account_id, credit_amount=-signed_amount, memo=memo)

    def _apply_calculation(self, settlement: Settlement, calculation: SettlementCalculation) -> None:
        settlement.pool_revenue = calculation.pool_revenue
        settlement.shared_costs = calculation.shared_costs
        settlement.pool_profit = calculation.pool_profit
        settlement.basis_amount = calculation.basis_amount
        settlement.kamdari_amount = calculation.kamdari_amount
        settlement.distributable = calculation.distributable
        settlement.hari_only_deductions = calculation.hari_only_deductions
        settlement.lines = [
            SettlementLine(id=uuid.uuid4(), line_no=index, **line)
            for index, line in enumerate(calculation.lines, start=1)
        ]

    def _load_settlement(self, session: Session, ctx: ActorContext, settlement_id: uuid.UUID) -> Settlement:
        settlement = session.scalar(
            select(Settlement).where(Settlement.id == settlement_id).options(selectinload(Settlement.lines))
        )
        if settlement is None:
            raise NotFoundError(f"settlement {settlement_id} not found")
        ctx.require_tenant(settlement.tenant_id)
        return settlement

    @staticmethod
    def _load_project(session: Session, ctx: ActorContext, project_id: uuid.UUID) -> Project:
        project = session.get(Project, project_id)
        if project is None:
            raise NotFoundError(f"project {project_id} not found")
        ctx.require_tenant(project.tenant_id)
        return project

    def _load_rule(self, session: Session, ctx: ActorContext, share_rule_id: uuid.UUID, tenant_id: str) -> ShareRule:
        rule = self.share_rules.load(session, ctx, share_rule_id)
        if rule.tenant_id != tenant_id:
            raise TenantMismatchError("share rule belongs to another tenant")
        if not rule.is_active:
            raise ValidationError(f"share rule {rule.name} is inactive")
        return rule

    @staticmethod
    def _rule_snapshot(rule: ShareRule) -> dict[str, Any]:
        return {
            "share_rule_id": str(rule.id),
            "name": rule.name,
            "version": rule.version,
            "applies_to": rule.applies_to,
            "basis": rule.basis,
            "kamdari_order": rule.kamdari_order,
            "effective_from": rule.effective_from.isoformat(),
            "effective_to": rule.effective_to.isoformat() if rule.effective_to else None,
            "lines": [
                {"party_id": str(line.party_id), "role": line.role, "percentage": str(line.percentage)}
                for line in rule.lines
            ],
        }

    @staticmethod
    def _next_number(session: Session, tenant_id: str) -> str:
        last = session.scalar(select(func.max(Settlement.settlement_no)).where(Settlement.tenant_id == tenant_id))
        counter = int(last.removeprefix("STL-")) if last else 0
        return f"STL-{counter + 1:06d}"

    @staticmethod
    def _q(value: Decimal) -> Decimal:
        return Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


settlement_service = SettlementService()
