from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Sequence

from sqlalchemy import Select, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from farmledger.business.projects.models import Party
from farmledger.business.settlement.kamdari import get_strategy
from farmledger.business.settlement.models import Settlement, ShareRule, ShareRuleLine
from farmledger.business.settlement.schemas import ShareRuleCreate, ShareRuleLineInput, ShareRuleRead, ShareRuleUpdate
from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.errors import NotFoundError, TenantMismatchError, ValidationError
from farmledger.platform.ledger.repository import TenantScopedRepository


logger = logging.getLogger("farmledger.settlement.share_rules")

RESOLUTION_ORDER = ("SALE", "PROJECT", "CROP_CYCLE")


class ShareRuleRepository(TenantScopedRepository):
    model = ShareRule


@dataclass(slots=True, eq=False)
class ShareRuleService:
    repository: ShareRuleRepository = ShareRuleRepository()

    def create(self, session: Session, ctx: ActorContext, dto: ShareRuleCreate) -> ShareRuleRead:
        self.repository.validate_write_scope(dto.tenant_id, ctx)
        self.validate_lines(session, dto.tenant_id, dto.lines)
        get_strategy(dto.kamdari_order)
        self._validate_period(dto.effective_from, dto.effective_to)
        if dto.is_active:
            self.validate_no_overlap(session, dto.tenant_id, dto.applies_to, dto.effective_from, dto.effective_to)

        max_version = session.scalar(
            select(func.max(ShareRule.version)).where(
                ShareRule.tenant_id == dto.tenant_id,
                ShareRule.applies_to == dto.applies_to,
            )
        )
        rule = ShareRule(
            id=uuid.uuid4(),
            tenant_id=dto.tenant_id,
            name=dto.name,
            applies_to=dto.applies_to,
            basis=dto.basis,
            kamdari_order=dto.kamdari_order,
            effective_from=dto.effective_from,
            effective_to=dto.effective_to,
            is_active=dto.is_active,
            version=(max_version or 0) + 1,
        )
        rule.lines = self._build_lines(dto.lines)
        session.add(rule)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ValidationError("a share rule with this version already exists; retry")

        logger.info("share_rule.created", extra={"tenant_id": rule.tenant_id, "status": f"version={rule.version}"})
        return self.get(session, ctx, rule.id)

    def update(self, session: Session, ctx: ActorContext, share_rule_id: uuid.UUID, dto: ShareRuleUpdate) -> ShareRuleRead:
        rule = self.load(session, ctx, share_rule_id)
        if self.is_referenced_by_posted_settlement(session, rule.id):
            raise ValidationError("share rule is used by a posted settlement and cannot be changed")

        if dto.lines is not None:
            self.validate_lines(session, rule.tenant_id, dto.lines)
        if dto.kamdari_order is not None:
            get_strategy(dto.kamdari_order)
        effective_from = dto.effective_from or rule.effective_from
        effective_to = dto.effective_to if "effective_to" in dto.model_fields_set else rule.effective_to
        is_active = rule.is_active if dto.is_active is None else dto.is_active
        self._validate_period(effective_from, effective_to)
        if is_active:
            self.validate_no_overlap(
                session,
                rule.tenant_id,
                rule.applies_to,
                effective_from,
                effective_to,
                exclude_id=rule.id,
            )

        if dto.name is not None:
            rule.name = dto.name
        if dto.basis is not None:
            rule.basis = dto.basis
        if dto.kamdari_order is not None:
            rule.kamdari_order = dto.kamdari_order
        rule.effective_from = effective_from
        rule.effective_to = effective_to
        rule.is_active = is_active
        if dto.lines is not None:
            rule.lines = self._build_lines(dto.lines)
        session.commit()

        logger.info("share_rule.updated", extra={"tenant_id": rule.tenant_id, "status": f"version={rule.version}"})
        return self.get(session, ctx, rule.id)

    def get(self, session: Session, ctx: ActorContext, share_rule_id: uuid.UUID) -> ShareRuleRead:
        return ShareRuleRead.model_validate(self.load(session, ctx, share_rule_id))

    def load(self, session: Session, ctx: ActorContext, share_rule_id: uuid.UUID) -> ShareRule:
        rule = session.scalar(
            self.repository.apply_scope_query(
                select(ShareRule).where(ShareRule.id == share_rule_id).options(selectinload(ShareRule.lines)),
                ctx,
            )
        )
        if rule is None:
            raise NotFoundError(f"share rule {share_rule_id} not found")
        return rule

    def list_rules(
        self,
        session: Session,
        ctx: ActorContext,
        *,
        tenant_id: str,
        applies_to: str | None = None,
        is_active: bool | None = None,
    ) -> list[ShareRuleRead]:
        ctx.require_tenant(tenant_id)
        stmt: Select[tuple[ShareRule]] = (
            select(ShareRule).where(ShareRule.tenant_id == tenant_id).options(selectinload(ShareRule.lines))
        )
        if applies_to is not None:
            stmt = stmt.where(ShareRule.applies_to == applies_to)
        if is_active is not None:
            stmt = stmt.where(ShareRule.is_active == is_active)
        rows = session.scalars(stmt.order_by(ShareRule.version.desc())).all()
        return [ShareRuleRead.model_validate(row) for row in rows]

    def resolve_rule(self, session: Session, ctx: ActorContext, *, tenant_id: str, on_date: date) -> ShareRuleRead | None:
        """Most specific active rule in force on ``on_date``, newest version first."""
        ctx.require_tenant(tenant_id)
        for applies_to in RESOLUTION_ORDER:
            rule = session.scalar(
                select(ShareRule)
                .where(
                    ShareRule.tenant_id == tenant_id,
                    ShareRule.applies_to == applies_to,
                    ShareRule.is_active.is_(True),
                    ShareRule.effective_from <= on_date,
                    or_(ShareRule.effective_to.is_(None), ShareRule.effective_to >= on_date),
                )
                .options(selectinload(ShareRule.lines))
                .order_by(ShareRule.version.desc())
                .limit(1)
            )
            if rule is not None:
                return ShareRuleRead.model_validate(rule)
        return None

    def validate_lines(self, session: Session, tenant_id: str, lines: Sequence[ShareRuleLineInput]) -> None:
        roles = [line.role for line in lines]
        if roles.count("KAMDAR") > 1:
            raise ValidationError("a share rule may have at most one KAMDAR line")
        if roles.count("HARI") > 1:
            raise ValidationError("a share rule may have at most one HARI line")

        split_total = sum((Decimal(line.percentage) for line in lines if line.role != "KAMDAR"), Decimal("0"))
        if split_total.quantize(Decimal("0.01")) != Decimal("100.00"):
            raise ValidationError(f"landlord and hari percentages must sum to 100 (got {split_total})")

        for line in lines:
            party = session.get(Party, line.party_id)
            if party is None:
                raise NotFoundError(f"party {line.party_id} not found")
            if party.tenant_id != tenant_id:
                raise TenantMismatchError("share rule line party belongs to another tenant")

    def validate_no_overlap(
        self,
        session: Session,
        tenant_id: str,
        applies_to: str,
        effective_from: date,
        effective_to: date | None,
        *,
        exclude_id: uuid.UUID | None = None,
    ) -> None:
        stmt = select(ShareRule.id).where(
            ShareRule.tenant_id == tenant_id,
            ShareRule.applies_to == applies_to,
            ShareRule.is_active.is_(True),
            or_(ShareRule.effective_to.is_(None), ShareRule.effective_to >= effective_from),
        )
        if effective_to is not None:
            stmt = stmt.where(ShareRule.effective_from <= effective_to)
        if exclude_id is not None:
            stmt = stmt.where(ShareRule.id != exclude_id)
        if session.scalar(stmt.limit(1)) is not None:
            raise ValidationError(f"an active {applies_to} share rule already covers this period")

    @staticmethod
    def is_referenced_by_posted_settlement(session: Session, share_rule_id: uuid.UUID) -> bool:
        found = session.scalar(
            select(Settlement.id)
            .where(Settlement.share_rule_id == share_rule_id, Settlement.status.in_(("POSTED", "REVERSED")))
            .limit(1)
        )
        return found is not None

    @staticmethod
    def _validate_period(effective_from: date, effective_to: date | None) -> None:
        if effective_to is not None and effective_to < effective_from:
            raise ValidationError("effective_to must not be before effective_from")

    @staticmethod
    def _build_lines(lines: Sequence[ShareRuleLineInput]) -> list[ShareRuleLine]:
        return [
            ShareRuleLine(
                id=uuid.uuid4(),
                line_no=index,
                party_id=line.party_id,
                role=line.role,
                percentage=Decimal(line.percentage).quantize(Decimal("0.01")),
            )
            for index, line in enumerate(lines, start=1)
        ]


share_rule_service = ShareRuleService()
