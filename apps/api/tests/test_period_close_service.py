from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import farmledger.business.settlement.models  # noqa: F401
from farmledger.business.period_close.models import PeriodCloseRun
from farmledger.business.period_close.service import period_close_service
from farmledger.core.database import Base
from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.accounts import account_service
from farmledger.platform.ledger.errors import ImmutabilityViolation, PeriodClosedError, ValidationError
from farmledger.platform.ledger.models import PostingGroup
from farmledger.platform.ledger.periods import crop_cycle_service
from farmledger.platform.ledger.reversal import reversal_service
from farmledger.platform.ledger.schemas import CropCycleCreate, PostingRequest
from farmledger.platform.ledger.service import posting_service


TENANT = "tenant-a"
CTX = ActorContext(user_id="u1", tenant_id=TENANT)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


def _setup(session: Session) -> tuple[uuid.UUID, dict[str, uuid.UUID]]:
    account_service.ensure_system_accounts(session, CTX, tenant_id=TENANT)
    cycle = crop_cycle_service.create(
        session,
        CTX,
        CropCycleCreate(tenant_id=TENANT, name="Rabi 2026", start_date=date(2026, 1, 1), end_date=date(2026, 12, 31)),
    )
    accounts = {account.code: account.id for account in account_service.list_accounts(session, CTX, tenant_id=TENANT)}
    return cycle.id, accounts


def _post(
    session: Session,
    cycle_id: uuid.UUID,
    accounts: dict[str, uuid.UUID],
    source_id: str,
    debit: str,
    credit: str,
    amount: str,
    posting_date: str = "2026-04-15",
) -> uuid.UUID:
    posted = posting_service.post(
        session,
        CTX,
        PostingRequest.model_validate(
            {
                "tenant_id": TENANT,
                "source_type": "OPERATIONAL",
                "source_id": source_id,
                "crop_cycle_id": str(cycle_id),
                "posting_date": posting_date,
                "entries": [
                    {"account_id": str(accounts[debit]), "debit_amount": amount},
                    {"account_id": str(accounts[credit]), "credit_amount": amount},
                ],
            }
        ),
    )
    return posted.id


def _season(session: Session, cycle_id: uuid.UUID, accounts: dict[str, uuid.UUID]) -> None:
    _post(session, cycle_id, accounts, "harvest-1", "CASH", "PROJECT_REVENUE", "1000")
    _post(session, cycle_id, accounts, "fertilizer-1", "EXP_SHARED", "CASH", "400")


def _balance(session: Session, accounts: dict[str, uuid.UUID], code: str) -> Decimal:
    return account_service.account_balance(session, CTX, accounts[code])


def test_preview_reports_income_and_expense_without_posting(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    _season(db_session, cycle_id, accounts)

    preview = period_close_service.preview_close(db_session, CTX, cycle_id)

    assert preview.total_income == Decimal("1000.00")
    assert preview.total_expense == Decimal("400.00")
    assert preview.net_profit == Decimal("600.00")
    assert preview.to_date == date(2026, 12, 31)
    assert [(row.account_code, row.net_amount) for row in preview.accounts] == [
        ("EXP_SHARED", Decimal("400.00")),
        ("PROJECT_REVENUE", Decimal("1000.00")),
    ]
    assert db_session.scalar(select(func.count()).select_from(PostingGroup)) == 2
    assert crop_cycle_service.get(db_session, CTX, cycle_id).status == "OPEN"


def test_close_zeroes_pl_accounts_into_retained_earnings(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    _season(db_session, cycle_id, accounts)

    run = period_close_service.close(db_session, CTX, cycle_id)

    assert run.status == "COMPLETED"
    assert run.net_profit == Decimal("600.00")
    assert run.to_date == date(2026, 12, 31)
    assert run.snapshot_json["accounts_closed"] == {"income": 1, "expense": 1}
    assert run.snapshot_json["entry_count"] == 5
    assert _balance(db_session, accounts, "PROJECT_REVENUE") == Decimal("0.00")
    assert _balance(db_session, accounts, "EXP_SHARED") == Decimal("0.00")
    assert _balance(db_session, accounts, "CURRENT_EARNINGS") == Decimal("0.00")
    assert _balance(db_session, accounts, "RETAINED_EARNINGS") == Decimal("-600.00")

    group = posting_service.get_posting_group(db_session, CTX, run.posting_group_id)
    assert group.source_type == "PERIOD_CLOSE"
    assert group.idempotency_key == f"period_close:{cycle_id}"
    assert group.allocation_rows[0].allocation_type == "PERIOD_CLOSE"
    assert group.allocation_rows[0].amount == Decimal("600.00")

    cycle = crop_cycle_service.get(db_session, CTX, cycle_id)
    assert cycle.status == "CLOSED"
    assert cycle.closed_by == "u1"


def test_close_of_loss_season_keeps_the_sign(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    _post(db_session, cycle_id, accounts, "harvest-1", "CASH", "PROJECT_REVENUE", "300")
    _post(db_session, cycle_id, accounts, "fertilizer-1", "EXP_SHARED", "CASH", "500")

    run = period_close_service.close(db_session, CTX, cycle_id)

    assert run.net_profit == Decimal("-200.00")
    assert _balance(db_session, accounts, "RETAINED_EARNINGS") == Decimal("200.00")
    group = posting_service.get_posting_group(db_session, CTX, run.posting_group_id)
    assert group.allocation_rows[0].allocation_type == "PERIOD_CLOSE"
    assert group.allocation_rows[0].amount == Decimal("-200.00")


def test_close_is_idempotent(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    _season(db_session, cycle_id, accounts)

    first = period_close_service.close(db_session, CTX, cycle_id)
    second = period_close_service.close(db_session, CTX, cycle_id)

    assert first.id == second.id
    assert db_session.scalar(select(func.count()).select_from(PeriodCloseRun)) == 1
    assert _balance(db_session, accounts, "RETAINED_EARNINGS") == Decimal("-600.00")


def test_posting_after_close_is_rejected(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    _season(db_session, cycle_id, accounts)
    period_close_service.close(db_session, CTX, cycle_id)

    with pytest.raises(PeriodClosedError):
        _post(db_session, cycle_id, accounts, "late-sale", "CASH", "PROJECT_REVENUE", "5")


def test_reversed_postings_are_left_out_of_close(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    _season(db_session, cycle_id, accounts)
    mistake = _post(db_session, cycle_id, accounts, "wrong-expense", "EXP_LANDLORD_ONLY", "CASH", "100")
    reversal_service.reverse(db_session, CTX, mistake, date(2026, 4, 16), "typo")

    run = period_close_service.close(db_session, CTX, cycle_id)

    assert run.net_profit == Decimal("600.00")
    assert [item["code"] for item in run.snapshot_json["accounts"]] == ["EXP_SHARED", "PROJECT_REVENUE"]
    assert _balance(db_session, accounts, "EXP_LANDLORD_ONLY") == Decimal("0.00")


def test_close_honours_as_of_date(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    _season(db_session, cycle_id, accounts)
    _post(db_session, cycle_id, accounts, "harvest-2", "CASH", "PROJECT_REVENUE", "250", posting_date="2026-09-01")

    preview = period_close_service.preview_close(db_session, CTX, cycle_id, as_of=date(2026, 6, 30))
    run = period_close_service.close(db_session, CTX, cycle_id, as_of=date(2026, 6, 30))

    assert preview.net_profit == Decimal("600.00")
    assert run.to_date == date(2026, 6, 30)
    assert run.net_profit == Decimal("600.00")


def test_close_date_outside_cycle_is_rejected(db_session: Session) -> None:
    cycle_id, _ = _setup(db_session)

    with pytest.raises(ValidationError):
        period_close_service.close(db_session, CTX, cycle_id, as_of=date(2027, 1, 5))
    with pytest.raises(ValidationError):
        period_close_service.preview_close(db_session, CTX, cycle_id, as_of=date(2025, 12, 31))
    assert crop_cycle_service.get(db_session, CTX, cycle_id).status == "OPEN"


def test_close_of_empty_cycle_records_zero_profit(db_session: Session) -> None:
    cycle_id, _ = _setup(db_session)

    run = period_close_service.close(db_session, CTX, cycle_id)

    assert run.net_profit == Decimal("0.00")
    assert run.snapshot_json["entry_count"] == 0
    assert posting_service.get_posting_group(db_session, CTX, run.posting_group_id).entries == []


def test_manually_closed_cycle_cannot_run_close(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    _season(db_session, cycle_id, accounts)
    crop_cycle_service.close_manually(db_session, CTX, cycle_id)

    with pytest.raises(PeriodClosedError):
        period_close_service.close(db_session, CTX, cycle_id)
    with pytest.raises(PeriodClosedError):
        crop_cycle_service.close_manually(db_session, CTX, cycle_id)


def test_close_run_is_immutable(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    _season(db_session, cycle_id, accounts)
    closed = period_close_service.close(db_session, CTX, cycle_id)

    run = db_session.get(PeriodCloseRun, closed.id)
    assert run is not None
    run.net_profit = Decimal("1.00")
    with pytest.raises(ImmutabilityViolation):
        db_session.commit()
    db_session.rollback()
