from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import farmledger.business.settlement.models  # noqa: F401
from farmledger.business.corrections.models import AccountingCorrection
from farmledger.business.corrections.service import accounting_correction_service
from farmledger.core.database import Base
from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.accounts import account_service
from farmledger.platform.ledger.allocation import allocation_engine
from farmledger.platform.ledger.errors import ImmutabilityViolation, ValidationError
from farmledger.platform.ledger.periods import crop_cycle_service
from farmledger.platform.ledger.reversal import reversal_service
from farmledger.platform.ledger.schemas import CropCycleCreate, PostingRequest
from farmledger.platform.ledger.service import posting_service


TENANT = "tenant-a"
CTX = ActorContext(user_id="u1", tenant_id=TENANT)
PROJECT_ID = uuid.UUID("00000000-0000-0000-0000-0000000000a1")
OTHER_PROJECT_ID = uuid.UUID("00000000-0000-0000-0000-0000000000a2")


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
    cycle_id: uuid.UUID | None,
    source_type: str,
    source_id: str,
    entries: list[tuple[uuid.UUID, str, str]],
    allocations: list[dict[str, object]] | None = None,
    posting_date: str = "2026-03-10",
) -> uuid.UUID:
    posted = posting_service.post(
        session,
        CTX,
        PostingRequest.model_validate(
            {
                "tenant_id": TENANT,
                "source_type": source_type,
                "source_id": source_id,
                "crop_cycle_id": str(cycle_id) if cycle_id else None,
                "posting_date": posting_date,
                "entries": [
                    {"account_id": str(account_id), "debit_amount": debit, "credit_amount": credit}
                    for account_id, debit, credit in entries
                ],
                "allocations": allocations or [],
            }
        ),
    )
    return posted.id


def _misposted_issue(session: Session, cycle_id: uuid.UUID, accounts: dict[str, uuid.UUID], source_id: str = "issue-1") -> uuid.UUID:
    return _post(
        session,
        cycle_id,
        "INVENTORY_ISSUE",
        source_id,
        [
            (accounts["INPUTS_EXPENSE"], "80", "0"),
            (accounts["INVENTORY_INPUTS"], "0", "80"),
            (accounts["PROFIT_DISTRIBUTION"], "80", "0"),
            (accounts["PROFIT_DISTRIBUTION_CLEARING"], "0", "80"),
        ],
        [{"allocation_type": "POOL_SHARE", "allocation_scope": "SHARED", "project_id": str(PROJECT_ID), "amount": "80"}],
    )


def _balance(session: Session, accounts: dict[str, uuid.UUID], code: str) -> Decimal:
    return account_service.account_balance(session, CTX, accounts[code])


def test_find_candidates_only_returns_misposted_issues(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    misposted = _misposted_issue(db_session, cycle_id, accounts)
    _post(
        db_session,
        cycle_id,
        "INVENTORY_ISSUE",
        "issue-clean",
        [(accounts["INPUTS_EXPENSE"], "20", "0"), (accounts["INVENTORY_INPUTS"], "0", "20")],
    )
    _post(
        db_session,
        cycle_id,
        "SETTLEMENT",
        "settlement-like",
        [(accounts["PROFIT_DISTRIBUTION"], "10", "0"), (accounts["PROFIT_DISTRIBUTION_CLEARING"], "0", "10")],
    )

    assert accounting_correction_service.find_candidates(db_session, CTX, tenant_id=TENANT) == [misposted]
    assert accounting_correction_service.find_candidates(db_session, ActorContext(user_id="u2", tenant_id="tenant-b")) == []


def test_dry_run_lists_candidates_without_posting(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    misposted = _misposted_issue(db_session, cycle_id, accounts)

    result = accounting_correction_service.run_correction_batch(db_session, CTX, tenant_id=TENANT, dry_run=True)

    assert result.dry_run is True
    assert result.candidates == [misposted]
    assert result.corrections == []
    assert accounting_correction_service.list_corrections(db_session, CTX, tenant_id=TENANT) == []
    assert _balance(db_session, accounts, "PROFIT_DISTRIBUTION") == Decimal("80.00")


def test_batch_reverses_and_reposts_to_inputs_accounts(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    misposted = _misposted_issue(db_session, cycle_id, accounts)

    result = accounting_correction_service.run_correction_batch(db_session, CTX, tenant_id=TENANT)

    assert result.failures == []
    assert len(result.corrections) == 1
    correction = result.corrections[0]
    assert correction.kind == "SETTLEMENT_ACCOUNT_FIX"
    assert correction.reason == "OPERATIONAL_PG_CONTAINS_PROFIT_DISTRIBUTION"
    assert correction.original_posting_group_id == misposted

    reversal = posting_service.get_posting_group(db_session, CTX, correction.reversal_posting_group_id)
    assert reversal.source_type == "ACCOUNTING_CORRECTION_REVERSAL"
    assert reversal.reversal_of_posting_group_id == misposted

    corrected = posting_service.get_posting_group(db_session, CTX, correction.corrected_posting_group_id)
    assert corrected.source_type == "ACCOUNTING_CORRECTION"
    assert corrected.idempotency_key == f"correction:{misposted}"
    assert len(corrected.entries) == 2
    assert corrected.allocation_rows[0].rule_snapshot == {
        "correction_of_pg": str(misposted),
        "correction_reason": "OPERATIONAL_PG_CONTAINS_PROFIT_DISTRIBUTION",
    }

    assert _balance(db_session, accounts, "PROFIT_DISTRIBUTION") == Decimal("0.00")
    assert _balance(db_session, accounts, "PROFIT_DISTRIBUTION_CLEARING") == Decimal("0.00")
    assert _balance(db_session, accounts, "INPUTS_EXPENSE") == Decimal("80.00")
    assert _balance(db_session, accounts, "INVENTORY_INPUTS") == Decimal("-80.00")
    assert allocation_engine.sum_amounts(
        db_session, tenant_id=TENANT, project_id=PROJECT_ID, allocation_type="POOL_SHARE"
    ) == Decimal("80.00")


def test_second_batch_finds_nothing(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    _misposted_issue(db_session, cycle_id, accounts)
    accounting_correction_service.run_correction_batch(db_session, CTX, tenant_id=TENANT)

    again = accounting_correction_service.run_correction_batch(db_session, CTX, tenant_id=TENANT)

    assert again.candidates == []
    assert again.corrections == []
    assert len(accounting_correction_service.list_corrections(db_session, CTX, tenant_id=TENANT)) == 1


def test_batch_records_failures_and_carries_on(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    broken = _post(
        db_session,
        cycle_id,
        "INVENTORY_ISSUE",
        "issue-broken",
        [(accounts["PROFIT_DISTRIBUTION"], "15", "0"), (accounts["PROFIT_DISTRIBUTION_CLEARING"], "0", "15")],
        posting_date="2026-03-01",
    )
    fixable = _misposted_issue(db_session, cycle_id, accounts)

    result = accounting_correction_service.run_correction_batch(db_session, CTX, tenant_id=TENANT)

    assert result.candidates == [broken, fixable]
    assert [failure.posting_group_id for failure in result.failures] == [broken]
    assert result.failures[0].code == "validation_error"
    assert [item.original_posting_group_id for item in result.corrections] == [fixable]


def test_batch_respects_limit_and_single_group(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    first = _misposted_issue(db_session, cycle_id, accounts, "issue-1")
    second = _misposted_issue(db_session, cycle_id, accounts, "issue-2")

    limited = accounting_correction_service.run_correction_batch(db_session, CTX, tenant_id=TENANT, limit=1, dry_run=True)
    only = accounting_correction_service.run_correction_batch(db_session, CTX, tenant_id=TENANT, only_posting_group_id=second)

    assert limited.candidates == [first]
    assert [item.original_posting_group_id for item in only.corrections] == [second]


def test_reclassify_moves_shared_pool_cost_to_party_scope(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    expense = _post(
        db_session,
        cycle_id,
        "EXPENSE",
        "tractor-repair",
        [(accounts["EXP_SHARED"], "120", "0"), (accounts["CASH"], "0", "120")],
        [{"allocation_type": "POOL_SHARE", "allocation_scope": "SHARED", "project_id": str(PROJECT_ID), "amount": "120"}],
    )

    correction = accounting_correction_service.reclassify_party_only_expense(
        db_session, CTX, tenant_id=TENANT, posting_group_id=expense, target_scope="HARI_ONLY"
    )

    assert correction.kind == "EXPENSE_RECLASS"
    assert correction.operational_transaction_id == expense
    assert allocation_engine.sum_amounts(
        db_session, tenant_id=TENANT, project_id=PROJECT_ID, allocation_type="POOL_SHARE", allocation_scope="SHARED"
    ) == Decimal("0.00")
    assert allocation_engine.sum_amounts(
        db_session, tenant_id=TENANT, project_id=PROJECT_ID, allocation_scope="HARI_ONLY"
    ) == Decimal("120.00")
    assert _balance(db_session, accounts, "EXPENSE_RECLASS_CLEARING") == Decimal("120.00")
    assert _balance(db_session, accounts, "EXPENSE_RECLASS_OFFSET") == Decimal("-120.00")
    assert _balance(db_session, accounts, "EXP_SHARED") == Decimal("120.00")


def test_reclassify_is_idempotent_per_operational_transaction(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    expense = _post(
        db_session,
        cycle_id,
        "EXPENSE",
        "tractor-repair",
        [(accounts["EXP_SHARED"], "120", "0"), (accounts["CASH"], "0", "120")],
        [{"allocation_type": "POOL_SHARE", "allocation_scope": "SHARED", "project_id": str(PROJECT_ID), "amount": "120"}],
    )
    operational_id = uuid.uuid4()

    first = accounting_correction_service.reclassify_party_only_expense(
        db_session,
        CTX,
        tenant_id=TENANT,
        posting_group_id=expense,
        target_scope="LANDLORD_ONLY",
        operational_transaction_id=operational_id,
    )
    second = accounting_correction_service.reclassify_party_only_expense(
        db_session,
        CTX,
        tenant_id=TENANT,
        posting_group_id=expense,
        target_scope="LANDLORD_ONLY",
        operational_transaction_id=operational_id,
    )

    assert first.id == second.id
    assert allocation_engine.sum_amounts(
        db_session, tenant_id=TENANT, project_id=PROJECT_ID, allocation_scope="LANDLORD_ONLY"
    ) == Decimal("120.00")


def test_reclassify_rejects_bad_scope_and_groups_without_shared_cost(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    sale = _post(
        db_session,
        cycle_id,
        "SALE",
        "sale-1",
        [(accounts["CASH"], "50", "0"), (accounts["PROJECT_REVENUE"], "0", "50")],
    )

    with pytest.raises(ValidationError):
        accounting_correction_service.reclassify_party_only_expense(
            db_session, CTX, tenant_id=TENANT, posting_group_id=sale, target_scope="SHARED"
        )
    with pytest.raises(ValidationError):
        accounting_correction_service.reclassify_party_only_expense(
            db_session, CTX, tenant_id=TENANT, posting_group_id=sale, target_scope="HARI_ONLY"
        )


def test_reclassify_refuses_reversed_groups_and_reversals(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    expense = _post(
        db_session,
        cycle_id,
        "EXPENSE",
        "tractor-repair",
        [(accounts["EXP_SHARED"], "120", "0"), (accounts["CASH"], "0", "120")],
        [{"allocation_type": "POOL_SHARE", "allocation_scope": "SHARED", "project_id": str(PROJECT_ID), "amount": "120"}],
    )
    reversal = reversal_service.reverse(db_session, CTX, expense, date(2026, 3, 11), "entered twice")

    with pytest.raises(ValidationError):
        accounting_correction_service.reclassify_party_only_expense(
            db_session, CTX, tenant_id=TENANT, posting_group_id=expense, target_scope="HARI_ONLY"
        )
    with pytest.raises(ValidationError):
        accounting_correction_service.reclassify_party_only_expense(
            db_session, CTX, tenant_id=TENANT, posting_group_id=reversal.id, target_scope="HARI_ONLY"
        )

    assert allocation_engine.sum_amounts(
        db_session, tenant_id=TENANT, project_id=PROJECT_ID, allocation_type="POOL_SHARE", allocation_scope="SHARED"
    ) == Decimal("0.00")
    assert allocation_engine.sum_amounts(
        db_session, tenant_id=TENANT, project_id=PROJECT_ID, allocation_scope="HARI_ONLY"
    ) == Decimal("0.00")
    assert accounting_correction_service.list_corrections(db_session, CTX, tenant_id=TENANT) == []


def test_reclassify_keeps_each_project_attribution(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    expense = _post(
        db_session,
        cycle_id,
        "EXPENSE",
        "diesel-split",
        [(accounts["EXP_SHARED"], "100", "0"), (accounts["CASH"], "0", "100")],
        [
            {"allocation_type": "POOL_SHARE", "allocation_scope": "SHARED", "project_id": str(PROJECT_ID), "amount": "70"},
            {"allocation_type": "POOL_SHARE", "allocation_scope": "SHARED", "project_id": str(OTHER_PROJECT_ID), "amount": "30"},
        ],
    )

    correction = accounting_correction_service.reclassify_party_only_expense(
        db_session, CTX, tenant_id=TENANT, posting_group_id=expense, target_scope="HARI_ONLY"
    )

    assert Decimal(correction.details["amount"]) == Decimal("100.00")
    for project_id, amount in ((PROJECT_ID, Decimal("70.00")), (OTHER_PROJECT_ID, Decimal("30.00"))):
        assert allocation_engine.sum_amounts(
            db_session, tenant_id=TENANT, project_id=project_id, allocation_type="POOL_SHARE", allocation_scope="SHARED"
        ) == Decimal("0.00")
        assert allocation_engine.sum_amounts(
            db_session, tenant_id=TENANT, project_id=project_id, allocation_scope="HARI_ONLY"
        ) == amount


def test_consolidation_moves_legacy_balances_into_party_control(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    _post(
        db_session,
        cycle_id,
        "ADVANCE",
        "old-payable",
        [(accounts["CASH"], "300", "0"), (accounts["PAYABLE_HARI"], "0", "300")],
    )
    _post(
        db_session,
        cycle_id,
        "ADVANCE",
        "old-advance",
        [(accounts["ADVANCE_HARI"], "100", "0"), (accounts["CASH"], "0", "100")],
    )

    correction = accounting_correction_service.consolidate_party_controls(
        db_session, CTX, tenant_id=TENANT, posting_date=date(2026, 6, 30)
    )

    assert correction is not None
    assert correction.kind == "PARTY_CONTROL_CONSOLIDATION"
    assert _balance(db_session, accounts, "PAYABLE_HARI") == Decimal("0.00")
    assert _balance(db_session, accounts, "ADVANCE_HARI") == Decimal("0.00")
    assert _balance(db_session, accounts, "PARTY_CONTROL_HARI") == Decimal("-200.00")

    again = accounting_correction_service.consolidate_party_controls(
        db_session, CTX, tenant_id=TENANT, posting_date=date(2026, 7, 31)
    )
    assert again is not None and again.id == correction.id


def test_consolidation_with_nothing_to_move_returns_none(db_session: Session) -> None:
    _setup(db_session)

    assert accounting_correction_service.consolidate_party_controls(
        db_session, CTX, tenant_id=TENANT, posting_date=date(2026, 6, 30)
    ) is None
    assert accounting_correction_service.list_corrections(db_session, CTX, tenant_id=TENANT) == []


def test_corrections_are_immutable(db_session: Session) -> None:
    cycle_id, accounts = _setup(db_session)
    _misposted_issue(db_session, cycle_id, accounts)
    result = accounting_correction_service.run_correction_batch(db_session, CTX, tenant_id=TENANT)

    row = db_session.get(AccountingCorrection, result.corrections[0].id)
    assert row is not None
    row.reason = "EDITED"
    with pytest.raises(ImmutabilityViolation):
        db_session.commit()
    db_session.rollback()
