from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date

import pytest
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import farmledger.business.settlement.models  # noqa: F401
from farmledger.business.corrections.service import accounting_correction_service
from farmledger.business.period_close.service import period_close_service
from farmledger.core.database import Base
from farmledger.otel import capture_spans
from farmledger.platform.context import ActorContext
from farmledger.platform.ledger.accounts import account_service
from farmledger.platform.ledger.errors import ValidationError
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


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = capture_spans("farmledger")
    exporter.clear()
    return exporter


def _setup(session: Session) -> tuple[uuid.UUID, dict[str, uuid.UUID]]:
    account_service.ensure_system_accounts(session, CTX, tenant_id=TENANT)
    cycle = crop_cycle_service.create(
        session,
        CTX,
        CropCycleCreate(tenant_id=TENANT, name="Kharif 2026", start_date=date(2026, 1, 1), end_date=date(2026, 12, 31)),
    )
    accounts = {account.code: account.id for account in account_service.list_accounts(session, CTX, tenant_id=TENANT)}
    return cycle.id, accounts


def _post_sale(session: Session, cycle_id: uuid.UUID, accounts: dict[str, uuid.UUID]) -> uuid.UUID:
    posted = posting_service.post(
        session,
        CTX,
        PostingRequest.model_validate(
            {
                "tenant_id": TENANT,
                "source_type": "SALE",
                "source_id": "sale-otel-1",
                "crop_cycle_id": str(cycle_id),
                "posting_date": "2026-02-01",
                "entries": [
                    {"account_id": str(accounts["CASH"]), "debit_amount": "75"},
                    {"account_id": str(accounts["PROJECT_REVENUE"]), "credit_amount": "75"},
                ],
            }
        ),
    )
    return posted.id


def test_post_span_carries_posting_attributes(db_session: Session, span_exporter: InMemorySpanExporter) -> None:
    cycle_id, accounts = _setup(db_session)

    group_id = _post_sale(db_session, cycle_id, accounts)

    spans = [span for span in span_exporter.get_finished_spans() if span.name == "ledger.post"]
    assert spans
    assert any(
        span.attributes.get("tenant_id") == TENANT
        and span.attributes.get("source_type") == "SALE"
        and span.attributes.get("posting_group_id") == str(group_id)
        for span in spans
    )


def test_reverse_and_close_spans(db_session: Session, span_exporter: InMemorySpanExporter) -> None:
    cycle_id, accounts = _setup(db_session)
    group_id = _post_sale(db_session, cycle_id, accounts)

    reversal_service.reverse(db_session, CTX, group_id, date(2026, 2, 2), "test")
    period_close_service.close(db_session, CTX, cycle_id)

    names = {span.name for span in span_exporter.get_finished_spans()}
    assert {"ledger.reverse", "period_close.close"} <= names
    close_spans = [span for span in span_exporter.get_finished_spans() if span.name == "period_close.close"]
    assert close_spans[0].attributes.get("crop_cycle_id") == str(cycle_id)


def test_correction_batch_span_counts_candidates(db_session: Session, span_exporter: InMemorySpanExporter) -> None:
    _setup(db_session)

    accounting_correction_service.run_correction_batch(db_session, CTX, tenant_id=TENANT)

    batch_spans = [span for span in span_exporter.get_finished_spans() if span.name == "corrections.batch"]
    assert batch_spans
    assert batch_spans[0].attributes.get("candidate_count") == 0
    assert batch_spans[0].attributes.get("corrected_count") == 0


def test_spans_carry_actor_and_failure_code(db_session: Session, span_exporter: InMemorySpanExporter) -> None:
    cycle_id, accounts = _setup(db_session)
    clerk = ActorContext(user_id="clerk", tenant_id=TENANT, correlation_id="req-42")

    with pytest.raises(ValidationError):
        posting_service.post(
            db_session,
            clerk,
            PostingRequest.model_validate(
                {
                    "tenant_id": TENANT,
                    "source_type": "SALE",
                    "source_id": "sale-unbalanced",
                    "crop_cycle_id": str(cycle_id),
                    "posting_date": "2026-02-01",
                    "entries": [
                        {"account_id": str(accounts["CASH"]), "debit_amount": "75"},
                        {"account_id": str(accounts["PROJECT_REVENUE"]), "credit_amount": "70"},
                    ],
                }
            ),
        )

    failed = [span for span in span_exporter.get_finished_spans() if span.name == "ledger.post"]
    assert failed
    assert failed[-1].attributes.get("actor") == "clerk"
    assert failed[-1].attributes.get("correlation_id") == "req-42"
    assert failed[-1].attributes.get("error_code") == "unbalanced_posting"
