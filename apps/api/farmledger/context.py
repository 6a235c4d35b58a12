from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from farmledger.platform.context import ActorContext

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
tenant_id_var: ContextVar[str | None] = ContextVar("tenant_id", default=None)
actor_var: ContextVar[str | None] = ContextVar("actor", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


@contextmanager
def bind_actor(ctx: ActorContext) -> Iterator[str]:
    """Bind the caller's tenant, user and correlation id for logs and spans emitted inside the block."""
    correlation_id = ctx.correlation_id or get_correlation_id() or uuid.uuid4().hex
    tokens = (
        (correlation_id_var, correlation_id_var.set(correlation_id)),
        (tenant_id_var, tenant_id_var.set(ctx.tenant_id)),
        (actor_var, actor_var.set(ctx.user_id)),
    )
    try:
        yield correlation_id
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def current_actor() -> dict[str, str | None]:
    return {
        "correlation_id": correlation_id_var.get(),
        "tenant_id": tenant_id_var.get(),
        "actor": actor_var.get(),
    }
