from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from farmledger.business.period_close.schemas import AccountActivityRead, PeriodClosePreview
from farmledger.core.config import get_settings
from farmledger.platform.ledger.models import Account, LedgerEntry, PostingGroup
from farmledger.platform.ledger.repository import exclude_reversals


@dataclass(slots=True, eq=False)
class PeriodCloseCalculator:
    """Per-account income and expense activity for one crop cycle window.

    Reversal pairs are excluded. Accounts whose net activity is below the
    rounding threshold are left open.
    """

    def account_activity(
        self,
        session: Session,
        *,
        tenant_id: str,
        crop_cycle_id: uuid.UUID,
        from_date: date,
        to_date: date,
    ) -> list[AccountActivityRead]:
        stmt = (
            select(
                Account.id,
                Account.code,
                Account.type,
                func.coalesce(func.sum(LedgerEntry.debit_amount), 0),
                func.coalesce(func.sum(LedgerEntry.credit_amount), 0),
            )
            .select_from(LedgerEntry)
            .join(PostingGroup, PostingGroup.id == LedgerEntry.posting_group_id)
            .join(Account, Account.id == LedgerEntry.account_id)
            .where(
                LedgerEntry.tenant_id == tenant_id,
                PostingGroup.crop_cycle_id == crop_cycle_id,
                PostingGroup.posting_date >= from_date,
                PostingGroup.posting_date <= to_date,
                Account.type.in_(("INCOME", "EXPENSE")),
            )
            .group_by(Account.id, Account.code, Account.type)
            .order_by(Account.code.asc())
        )
        threshold = Decimal(get_settings().period_close_rounding_threshold)

        activity: list[AccountActivityRead] = []
        for account_id, code, account_type, debit_total, credit_total in session.execute(exclude_reversals(stmt)).all():
            debit = self._q(debit_total)
            credit = self._q(credit_total)
            net_amount = credit - debit if account_type == "INCOME" else debit - credit
            if abs(net_amount) < threshold:
                continue
            activity.append(
                AccountActivityRead(
                    account_id=account_id,
                    account_code=code,
                    account_type=account_type,
                    period_debit_total=debit,
                    period_credit_total=credit,
                    net_amount=net_amount,
                )
            )
        return activity

    def preview(
        self,
        session: Session,
        *,
        tenant_id: str,
        crop_cycle_id: uuid.UUID,
        from_date: date,
        to_date: date,
    ) -> PeriodClosePreview:
        accounts = self.account_activity(
            session,
            tenant_id=tenant_id,
            crop_cycle_id=crop_cycle_id,
            from_date=from_date,
            to_date=to_date,
        )
        total_income = sum((row.net_amount for row in accounts if row.account_type == "INCOME"), Decimal("0"))
        total_expense = sum((row.net_amount for row in accounts if row.account_type == "EXPENSE"), Decimal("0"))
        return PeriodClosePreview(
            tenant_id=tenant_id,
            crop_cycle_id=crop_cycle_id,
            from_date=from_date,
            to_date=to_date,
            total_income=total_income,
            total_expense=total_expense,
            net_profit=total_income - total_expense,
            accounts=accounts,
        )

    @staticmethod
    def _q(value: object) -> Decimal:
        return Decimal(str(value)).quantize(Decimal("0.01"))


period_close_calculator = PeriodCloseCalculator()
