from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Sequence

from sqlalchemy.orm import Session

from farmledger.platform.ledger.errors import NotFoundError, TenantMismatchError, UnbalancedPostingError, ValidationError
from farmledger.platform.ledger.models import Account, LedgerEntry, PostingGroup
from farmledger.platform.ledger.repository import LedgerEntryRepository
from farmledger.platform.ledger.schemas import LedgerEntryInput


@dataclass(slots=True, eq=False)
class LedgerEntryWriter:
    """Appends double-entry lines to a posting group staged in the current transaction.

    Balance is not checked per line; the commit-time guard checks the whole group.
    """

    repository: LedgerEntryRepository = LedgerEntryRepository()

    def append(
        self,
        session: Session,
        group: PostingGroup,
        account_id: uuid.UUID,
        debit: Decimal,
        credit: Decimal,
        *,
        line_no: int,
        memo: str | None = None,
    ) -> LedgerEntry:
        debit = self._q(debit)
        credit = self._q(credit)
        if debit < 0 or credit < 0:
            raise ValidationError("ledger amounts must not be negative")
        if (debit > 0) == (credit > 0):
            raise ValidationError("ledger entry must have exactly one of debit or credit")

        account = session.get(Account, account_id)
        if account is None:
            raise NotFoundError(f"account {account_id} not found")
        if account.tenant_id != group.tenant_id:
            raise TenantMismatchError("ledger entry account belongs to another tenant")
        if not account.is_active:
            raise ValidationError(f"account {account.code} is inactive")

        entry = LedgerEntry(
            id=uuid.uuid4(),
            tenant_id=group.tenant_id,
            posting_group_id=group.id,
            line_no=line_no,
            account_id=account_id,
            debit_amount=debit,
            credit_amount=credit,
            memo=memo,
        )
        return self.repository.add(session, entry)

    def append_many(self, session: Session, group: PostingGroup, lines: Sequence[LedgerEntryInput]) -> list[LedgerEntry]:
        return [
            self.append(
                session,
                group,
                line.account_id,
                line.debit_amount,
                line.credit_amount,
                line_no=index,
                memo=line.memo,
            )
            for index, line in enumerate(lines, start=1)
        ]

    @staticmethod
    def check_batch_balanced(lines: Sequence[LedgerEntryInput]) -> tuple[Decimal, Decimal]:
        debit_total = Decimal("0")
        credit_total = Decimal("0")
        for line in lines:
            debit = LedgerEntryWriter._q(line.debit_amount)
            credit = LedgerEntryWriter._q(line.credit_amount)
            if (debit > 0) == (credit > 0):
                raise ValidationError("ledger entry must have exactly one of debit or credit")
            debit_total += debit
            credit_total += credit
        if debit_total != credit_total:
            raise UnbalancedPostingError(f"posting is not balanced: debit {debit_total} != credit {credit_total}")
        return debit_total, credit_total

    @staticmethod
    def _q(value: Decimal) -> Decimal:
        return Decimal(value).quantize(Decimal("0.01"))


ledger_entry_writer = LedgerEntryWriter()
