from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import farmledger.business.settlement.models  # noqa: F401
from farmledger.business.corrections.service import accounting_correction_service
from farmledger.business.period_close.service import period_close_service
from farmledger.core.database import Base
from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.accounts import account_service
from farmledger.platform.ledger.errors import ValidationError
from farmledger.platform.ledger.periods import crop_cycle_service
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


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


def _setup(session: Session) -> tuple[uuid.UUID, dict[str, uuid.UUID]]:
    account_service.ensure_system_accounts(session, CTX, tenant_id=TENANT)
    cycle = crop_cycle_service.create(
        session,
        CTX,
        CropCycleCreate(tenant_id=TENANT, name="Kharif 2026", start_date=date(2026, 1, 1), end_date=date(2026, 12, 31)),
    )
    accounts = {account.code: account.id for account in account_service.list_accounts(session, CTX, tenant_id=TENANT)}
    return cycle.id, accounts


def _request(cycle_id: uuid.UUID, accounts: dict[str, uuid.UUID], source_id: str, credit_amount: str = "40") -> PostingRequest:
    return PostingRequest.model_validate(
        {
            "tenant_id": TENANT,
            "source_type": "SALE",
            "source_id": source_id,
            "crop_cycle_id": str(cycle_id),
            "posting_date": "2026-02-01",
            "entries": [
                {"account_id": str(accounts["CASH"]), "debit_amount": "40"},
                {"account_id": str(accounts["PROJECT_REVENUE"]), "credit_amount": credit_amount},
            ],
        }
    )


def test_posting_counters(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    posted_before = _sample("posting_groups_posted_count_total", {"source_type": "SALE"})
    entries_before = _sample("ledger_entries_posted_count_total")
    duplicates_before = _sample("posting_duplicates_absorbed_count_total")

    posting_service.post(db_session, CTX, _request(cycle_id, accounts, "sale-m1"))
    posting_service.post(db_session, CTX, _request(cycle_id, accounts, "sale-m1"))

    assert _sample("posting_groups_posted_count_total", {"source_type": "SALE"}) == posted_before + 1
    assert _sample("ledger_entries_posted_count_total") == entries_before + 2
    assert _sample("posting_duplicates_absorbed_count_total") == duplicates_before + 1


def test_failure_counter_is_labelled_by_reason(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    before = _sample("posting_failures_count_total", {"reason": "unbalanced_posting"})

    with pytest.raises(ValidationError):
        posting_service.post(db_session, CTX, _request(cycle_id, accounts, "sale-m2", credit_amount="39"))

    assert _sample("posting_failures_count_total", {"reason": "unbalanced_posting"}) == before + 1


def test_period_close_and_correction_counters(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    posting_service.post(db_session, CTX, _request(cycle_id, accounts, "sale-m3"))
    closes_before = _sample("period_close_runs_count_total")
    failed_before = _sample(
        "accounting_corrections_count_total", {"kind": "EXPENSE_RECLASS", "outcome": "failed"}
    )
    sale = posting_service.list_posting_groups(db_session, CTX, tenant_id=TENANT, source_id="sale-m3")[0]

    with pytest.raises(ValidationError):
        accounting_correction_service.reclassify_party_only_expense(
            db_session, CTX, tenant_id=TENANT, posting_group_id=sale.id, target_scope="HARI_ONLY"
        )
    period_close_service.close(db_session, CTX, cycle_id)

    assert _sample("period_close_runs_count_total") == closes_before + 1
    assert (
        _sample("accounting_corrections_count_total", {"kind": "EXPENSE_RECLASS", "outcome": "failed"})
        == failed_before + 1
    )
