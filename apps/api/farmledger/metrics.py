from __future__ import annotations

from prometheus_client import Counter


posting_groups_posted_count = Counter(
    "posting_groups_posted_count",
    "Total committed posting groups by source type",
    ["source_type"],
)

ledger_entries_posted_count = Counter(
    "ledger_entries_posted_count",
    "Total committed ledger entries",
)

posting_failures_count = Counter(
    "posting_failures_count",
    "Total rejected postings by reason",
    ["reason"],
)

posting_duplicates_absorbed_count = Counter(
    "posting_duplicates_absorbed_count",
    "Repeated postings for an existing source that returned the existing group",
)

posting_reversals_count = Counter(
    "posting_reversals_count",
    "Total committed reversal posting groups",
)

settlements_posted_count = Counter(
    "settlements_posted_count",
    "Total posted settlements",
)

period_close_runs_count = Counter(
    "period_close_runs_count",
    "Total completed crop cycle close runs",
)

accounting_corrections_count = Counter(
    "accounting_corrections_count",
    "Accounting corrections by kind and outcome",
    ["kind", "outcome"],
)


def observe_posting_group_posted(source_type: str, entry_count: int) -> None:
    posting_groups_posted_count.labels(source_type=source_type).inc()
    if entry_count > 0:
        ledger_entries_posted_count.inc(entry_count)


def observe_posting_failure(reason: str) -> None:
    posting_failures_count.labels(reason=reason).inc()


def observe_duplicate_absorbed() -> None:
    posting_duplicates_absorbed_count.inc()


def observe_reversal() -> None:
    posting_reversals_count.inc()


def observe_settlement_posted() -> None:
    settlements_posted_count.inc()


def observe_period_close() -> None:
    period_close_runs_count.inc()


def observe_correction(kind: str, outcome: str) -> None:
    accounting_corrections_count.labels(kind=kind, outcome=outcome).inc()
