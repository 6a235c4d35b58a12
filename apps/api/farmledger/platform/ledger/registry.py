from __future__ import annotations

from dataclasses import dataclass, field

from farmledger.platform.ledger.errors import ValidationError


REVERSAL_SUFFIX = "_REVERSAL"

ALLOCATION_SCOPES = ("SHARED", "HARI_ONLY", "LANDLORD_ONLY", "PARTY_ONLY")


@dataclass(slots=True)
class CategoryRegistry:
    """Additive set of category codes stored as plain strings.

    Codes are never removed, so rows written under an old code stay valid.
    """

    kind: str
    codes: set[str] = field(default_factory=set)
    allow_reversal_suffix: bool = False

    def register(self, code: str) -> str:
        normalized = code.strip().upper()
        if not normalized:
            raise ValidationError(f"{self.kind} code must not be empty")
        self.codes.add(normalized)
        return normalized

    def is_registered(self, code: str) -> bool:
        if code in self.codes:
            return True
        if self.allow_reversal_suffix and code.endswith(REVERSAL_SUFFIX):
            return code[: -len(REVERSAL_SUFFIX)] in self.codes
        return False

    def validate(self, code: str) -> str:
        if not self.is_registered(code):
            raise ValidationError(f"unknown {self.kind}: {code}")
        return code


source_types = CategoryRegistry(
    kind="source_type",
    codes={
        "OPERATIONAL",
        "EXPENSE",
        "SALE",
        "SALE_COGS",
        "PAYMENT",
        "ADVANCE",
        "LABOUR_PAYROLL",
        "MACHINERY_USAGE",
        "MACHINERY_SERVICE",
        "MAINTENANCE_JOB",
        "LEASE_ACCRUAL",
        "INVENTORY_ISSUE",
        "INVENTORY_GRN",
        "SETTLEMENT",
        "PERIOD_CLOSE",
        "ACCOUNTING_CORRECTION",
        "REVERSAL",
    },
    allow_reversal_suffix=True,
)

allocation_types = CategoryRegistry(
    kind="allocation_type",
    codes={
        "POOL_REVENUE",
        "POOL_SHARE",
        "HARI_ONLY",
        "LANDLORD_ONLY",
        "PARTY_ONLY",
        "KAMDARI",
        "PROFIT_SHARE",
        "ADVANCE",
        "SALE_REVENUE",
        "SALE_COGS",
        "MACHINERY_USAGE",
        "MACHINERY_SERVICE",
        "LEASE_RENT",
        "PERIOD_CLOSE",
        "ADVANCE_OFFSET",
        "ACCOUNTING_CORRECTION",
    },
)


def register_source_type(code: str) -> str:
    return source_types.register(code)


def register_allocation_type(code: str) -> str:
    return allocation_types.register(code)


def validate_allocation_scope(scope: str | None) -> str | None:
    if scope is not None and scope not in ALLOCATION_SCOPES:
        raise ValidationError(f"unknown allocation_scope: {scope}")
    return scope
