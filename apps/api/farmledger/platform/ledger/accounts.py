from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import Select, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.errors import NotFoundError, ValidationError
from farmledger.platform.ledger.models import Account, LedgerEntry, PostingGroup
from farmledger.platform.ledger.repository import AccountRepository
from farmledger.platform.ledger.schemas import AccountCreate, AccountRead


logger = logging.getLogger("farmledger.ledger.accounts")

PARTY_ROLES = ("HARI", "LANDLORD", "KAMDAR")

SYSTEM_ACCOUNTS: tuple[tuple[str, str, str], ...] = (
    ("CASH", "Cash", "ASSET"),
    ("BANK", "Bank", "ASSET"),
    ("INVENTORY_INPUTS", "Inventory - Inputs", "ASSET"),
    ("PROJECT_REVENUE", "Project Revenue", "INCOME"),
    ("EXP_SHARED", "Shared Project Expenses", "EXPENSE"),
    ("EXP_HARI_ONLY", "Hari-only Expenses", "EXPENSE"),
    ("EXP_LANDLORD_ONLY", "Landlord-only Expenses", "EXPENSE"),
    ("EXP_FARM_OVERHEAD", "Farm Overhead", "EXPENSE"),
    ("INPUTS_EXPENSE", "Inputs Expense", "EXPENSE"),
    ("EXPENSE_RECLASS_CLEARING", "Expense Reclassification Clearing", "EXPENSE"),
    ("EXPENSE_RECLASS_OFFSET", "Expense Reclassification Offset", "EXPENSE"),
    ("PARTY_CONTROL_HARI", "Party Control - Hari", "LIABILITY"),
    ("PARTY_CONTROL_LANDLORD", "Party Control - Landlord", "LIABILITY"),
    ("PARTY_CONTROL_KAMDAR", "Party Control - Kamdar", "LIABILITY"),
    ("PROFIT_DISTRIBUTION", "Profit Distribution", "EQUITY"),
    ("PROFIT_DISTRIBUTION_CLEARING", "Profit Distribution Clearing", "EQUITY"),
    ("CURRENT_EARNINGS", "Current Earnings", "EQUITY"),
    ("RETAINED_EARNINGS", "Retained Earnings", "EQUITY"),
    ("PAYABLE_HARI", "Payable - Hari (legacy)", "LIABILITY"),
    ("PAYABLE_LANDLORD", "Payable - Landlord (legacy)", "LIABILITY"),
    ("PAYABLE_KAMDAR", "Payable - Kamdar (legacy)", "LIABILITY"),
    ("ADVANCE_HARI", "Advance - Hari (legacy)", "ASSET"),
    ("ADVANCE_LANDLORD", "Advance - Landlord (legacy)", "ASSET"),
    ("ADVANCE_KAMDAR", "Advance - Kamdar (legacy)", "ASSET"),
    ("DUE_FROM_HARI", "Due From - Hari (legacy)", "ASSET"),
    ("DUE_FROM_LANDLORD", "Due From - Landlord (legacy)", "ASSET"),
    ("DUE_FROM_KAMDAR", "Due From - Kamdar (legacy)", "ASSET"),
)

_SYSTEM_ACCOUNT_MAP = {code: (name, account_type) for code, name, account_type in SYSTEM_ACCOUNTS}


@dataclass(slots=True, eq=False)
class AccountService:
    repository: AccountRepository = AccountRepository()

    def ensure_system_accounts(self, session: Session, ctx: ActorContext, *, tenant_id: str) -> list[AccountRead]:
        ctx.require_tenant(tenant_id)
        created = self.stage_system_accounts(session, tenant_id)
        session.commit()
        if created:
            logger.info("accounts.seeded", extra={"tenant_id": tenant_id, "status": f"created={len(created)}"})
        return [AccountRead.model_validate(item) for item in created]

    def stage_system_accounts(self, session: Session, tenant_id: str) -> list[Account]:
        existing_codes = set(session.scalars(select(Account.code).where(Account.tenant_id == tenant_id)).all())
        created: list[Account] = []
        for code, name, account_type in SYSTEM_ACCOUNTS:
            if code in existing_codes:
                continue
            account = Account(
                id=uuid.uuid4(),
                tenant_id=tenant_id,
                code=code,
                name=name,
                type=account_type,
                is_system=True,
                is_active=True,
            )
            session.add(account)
            created.append(account)
        return created

    def system_account(self, session: Session, tenant_id: str, code: str) -> Account:
        """Return a system account, seeding it inside the current transaction if absent."""
        account = self.repository.get_by_code(session, tenant_id, code)
        if account is not None:
            return account
        if code not in _SYSTEM_ACCOUNT_MAP:
            raise NotFoundError(f"account {code} not found")
        name, account_type = _SYSTEM_ACCOUNT_MAP[code]
        account = Account(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            code=code,
            name=name,
            type=account_type,
            is_system=True,
            is_active=True,
        )
        session.add(account)
        session.flush()
        return account

    def create_account(self, session: Session, ctx: ActorContext, dto: AccountCreate) -> AccountRead:
        self.repository.validate_write_scope(dto.tenant_id, ctx)
        if dto.code in _SYSTEM_ACCOUNT_MAP:
            raise ValidationError(f"account code {dto.code} is reserved for system accounts")
        account = Account(id=uuid.uuid4(), is_system=False, **dto.model_dump(mode="python"))
        session.add(account)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ValidationError(f"account code {dto.code} already exists")
        session.refresh(account)
        return AccountRead.model_validate(account)

    def list_accounts(
        self,
        session: Session,
        ctx: ActorContext,
        *,
        tenant_id: str,
        account_type: str | None = None,
    ) -> list[AccountRead]:
        ctx.require_tenant(tenant_id)
        stmt: Select[tuple[Account]] = select(Account).where(Account.tenant_id == tenant_id)
        if account_type is not None:
            stmt = stmt.where(Account.type == account_type)
        rows = session.scalars(stmt.order_by(Account.code.asc())).all()
        return [AccountRead.model_validate(item) for item in rows]

    def get_by_code(self, session: Session, ctx: ActorContext, *, tenant_id: str, code: str) -> AccountRead:
        ctx.require_tenant(tenant_id)
        account = self.repository.get_by_code(session, tenant_id, code)
        if account is None:
            raise NotFoundError(f"account {code} not found")
        return AccountRead.model_validate(account)

    def delete_account(self, session: Session, ctx: ActorContext, account_id: uuid.UUID) -> None:
        account = self.repository.get(session, ctx, account_id)
        if account is None:
            raise NotFoundError(f"account {account_id} not found")
        if account.is_system:
            raise ValidationError(f"system account {account.code} cannot be deleted")
        used = session.scalar(select(func.count()).select_from(LedgerEntry).where(LedgerEntry.account_id == account.id))
        if used:
            raise ValidationError(f"account {account.code} has ledger entries and cannot be deleted")
        session.delete(account)
        session.commit()

    def account_balance(
        self,
        session: Session,
        ctx: ActorContext,
        account_id: uuid.UUID,
        *,
        as_of: date | None = None,
    ) -> Decimal:
        """Net debit-minus-credit balance of an account, optionally up to ``as_of``."""
        account = self.repository.get(session, ctx, account_id)
        if account is None:
            raise NotFoundError(f"account {account_id} not found")
        stmt = (
            select(
                func.coalesce(func.sum(LedgerEntry.debit_amount), 0),
                func.coalesce(func.sum(LedgerEntry.credit_amount), 0),
            )
            .join(PostingGroup, PostingGroup.id == LedgerEntry.posting_group_id)
            .where(LedgerEntry.tenant_id == account.tenant_id, LedgerEntry.account_id == account.id)
        )
        if as_of is not None:
            stmt = stmt.where(PostingGroup.posting_date <= as_of)
        debit_total, credit_total = session.execute(stmt).one()
        return (Decimal(str(debit_total)) - Decimal(str(credit_total))).quantize(Decimal("0.01"))


account_service = AccountService()
