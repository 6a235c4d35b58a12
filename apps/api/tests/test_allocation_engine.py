from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from farmledger.core.database import Base
from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.accounts import account_service
from farmledger.platform.ledger.allocation import allocation_engine
from farmledger.platform.ledger.errors import ValidationError
from farmledger.platform.ledger.periods import crop_cycle_service
from farmledger.platform.ledger.registry import (
    allocation_types,
    register_allocation_type,
    register_source_type,
    source_types,
    validate_allocation_scope,
)
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
        CropCycleCreate(tenant_id=TENANT, name="Kharif 2026", start_date=date(2026, 1, 1), end_date=date(2026, 12, 31)),
    )
    accounts = {account.code: account.id for account in account_service.list_accounts(session, CTX, tenant_id=TENANT)}
    return cycle.id, accounts


def _post(
    session: Session,
    cycle_id: uuid.UUID,
    accounts: dict[str, uuid.UUID],
    source_id: str,
    allocations: list[dict[str, object]],
    *,
    amount: str = "100",
    posting_date: str = "2026-03-01",
) -> None:
    posting_service.post(
        session,
        CTX,
        PostingRequest.model_validate(
            {
                "tenant_id": TENANT,
                "source_type": "EXPENSE",
                "source_id": source_id,
                "crop_cycle_id": str(cycle_id),
                "posting_date": posting_date,
                "entries": [
                    {"account_id": str(accounts["EXP_SHARED"]), "debit_amount": amount},
                    {"account_id": str(accounts["CASH"]), "credit_amount": amount},
                ],
                "allocations": allocations,
            }
        ),
    )


def test_sum_amounts_filters_by_project_scope_and_window(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    project_a = uuid.uuid4()
    project_b = uuid.uuid4()
    _post(
        db_session,
        cycle_id,
        accounts,
        "exp-1",
        [
            {"allocation_type": "POOL_SHARE", "allocation_scope": "SHARED", "project_id": str(project_a), "amount": "60"},
            {"allocation_type": "POOL_SHARE", "allocation_scope": "SHARED", "project_id": str(project_b), "amount": "40"},
        ],
    )
    _post(
        db_session,
        cycle_id,
        accounts,
        "exp-2",
        [{"allocation_type": "HARI_ONLY", "allocation_scope": "HARI_ONLY", "project_id": str(project_a), "amount": "25"}],
        amount="25",
    )
    _post(
        db_session,
        cycle_id,
        accounts,
        "exp-3",
        [{"allocation_type": "POOL_SHARE", "allocation_scope": "SHARED", "project_id": str(project_a), "amount": "10"}],
        amount="10",
        posting_date="2026-09-01",
    )

    shared_a = allocation_engine.sum_amounts(
        db_session,
        tenant_id=TENANT,
        project_id=project_a,
        allocation_type="POOL_SHARE",
        allocation_scope="SHARED",
        to_date=date(2026, 6, 30),
    )
    hari_only_a = allocation_engine.sum_amounts(db_session, tenant_id=TENANT, project_id=project_a, allocation_scope="HARI_ONLY")
    cycle_total = allocation_engine.sum_amounts(db_session, tenant_id=TENANT, crop_cycle_id=cycle_id)

    assert shared_a == Decimal("60.00")
    assert hari_only_a == Decimal("25.00")
    assert cycle_total == Decimal("135.00")


def test_sum_amounts_is_tenant_scoped(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    _post(db_session, cycle_id, accounts, "exp-1", [{"allocation_type": "POOL_SHARE", "allocation_scope": "SHARED", "amount": "100"}])

    assert allocation_engine.sum_amounts(db_session, tenant_id="tenant-b") == Decimal("0.00")


def test_unknown_allocation_type_is_rejected(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)

    with pytest.raises(ValidationError):
        _post(db_session, cycle_id, accounts, "exp-1", [{"allocation_type": "MYSTERY", "amount": "100"}])


def test_negative_allocation_is_rejected_for_ordinary_postings(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)

    with pytest.raises(ValidationError):
        _post(
            db_session,
            cycle_id,
            accounts,
            "exp-1",
            [{"allocation_type": "POOL_SHARE", "allocation_scope": "SHARED", "amount": "-100"}],
        )


def test_allocation_rows_carry_quantity_and_snapshot(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    machine_id = uuid.uuid4()
    _post(
        db_session,
        cycle_id,
        accounts,
        "usage-1",
        [
            {
                "allocation_type": "MACHINERY_USAGE",
                "allocation_scope": "SHARED",
                "machine_id": str(machine_id),
                "amount": "100",
                "quantity": "4.5",
                "unit": "HOURS",
                "rule_snapshot": {"rate_per_hour": "22.22"},
            }
        ],
    )

    group = posting_service.list_posting_groups(db_session, CTX, tenant_id=TENANT, source_id="usage-1")[0]
    row = group.allocation_rows[0]
    assert row.machine_id == machine_id
    assert row.quantity == Decimal("4.500")
    assert row.unit == "HOURS"
    assert row.rule_snapshot == {"rate_per_hour": "22.22"}


def test_registered_allocation_type_becomes_valid(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    code = register_allocation_type("irrigation_water")

    _post(db_session, cycle_id, accounts, "water-1", [{"allocation_type": code, "allocation_scope": "SHARED", "amount": "100"}])

    assert code == "IRRIGATION_WATER"
    assert allocation_types.is_registered("IRRIGATION_WATER")


def test_source_type_registry_accepts_reversal_suffix() -> None:
    register_source_type("CROP_INSURANCE")

    assert source_types.is_registered("SALE_REVERSAL")
    assert source_types.is_registered("CROP_INSURANCE_REVERSAL")
    assert not source_types.is_registered("BARTER_REVERSAL")
    assert not allocation_types.is_registered("POOL_SHARE_REVERSAL")


def test_registry_rejects_blank_code() -> None:
    with pytest.raises(ValidationError):
        register_source_type("   ")


def test_unknown_scope_is_rejected() -> None:
    assert validate_allocation_scope(None) is None
    assert validate_allocation_scope("LANDLORD_ONLY") == "LANDLORD_ONLY"
    with pytest.raises(ValidationError):
        validate_allocation_scope("EVERYONE")
