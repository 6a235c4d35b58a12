from __future__ import annotations

from dataclasses import dataclass

from farmledger.platform.ledger.errors import TenantMismatchError


@dataclass(slots=True)
class ActorContext:
    """Caller identity passed to every accounting service call."""

    user_id: str
    tenant_id: str | None = None
    correlation_id: str | None = None

    def require_tenant(self, tenant_id: str) -> None:
        if self.tenant_id is not None and self.tenant_id != tenant_id:
            raise TenantMismatchError(f"caller tenant {self.tenant_id} cannot act on tenant {tenant_id}")
