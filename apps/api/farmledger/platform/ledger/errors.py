from __future__ import annotations


class AccountingError(Exception):
    """Base class for every failure raised by the accounting core."""

    code = "accounting_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(AccountingError):
    code = "validation_error"


class NotFoundError(AccountingError):
    code = "not_found"


class PeriodClosedError(AccountingError):
    """Raised when a posting targets a CLOSED crop cycle."""

    code = "period_closed"


class UnbalancedPostingError(ValidationError):
    """Raised when a posting group's debits and credits differ."""

    code = "unbalanced_posting"


class TenantMismatchError(AccountingError):
    code = "tenant_mismatch"


class ImmutabilityViolation(AccountingError):
    """Raised on any attempt to update or delete a posted accounting record."""

    code = "immutability_violation"


class DoubleReversalError(AccountingError):
    code = "double_reversal"


class DuplicatePosting(AccountingError):
    """Idempotency collision. Absorbed by the posting service, never raised to callers."""

    code = "duplicate_posting"

    def __init__(self, message: str, existing_posting_group_id: object | None = None) -> None:
        self.existing_posting_group_id = existing_posting_group_id
        super().__init__(message)
