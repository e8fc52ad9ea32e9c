"""Request context for async-safe multi-tenant operations.

Carries the tenant and the requesting operator through an operation using
contextvars, so log entries and guarded operations can be correlated without
threading the identifiers through every call.

Usage:
    from facturabot.core.context import create_context, request_context

    ctx = create_context(tenant_id=tenant_uuid, actor_id="telegram:12345")

    with request_context(ctx):
        await service.generate_invoice_safe(tenant_uuid, invoice_input)
"""

from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field
from uuid_utils.compat import uuid7

from facturabot.core.exceptions import ContextNotSetError


class ActorType(str, Enum):
    """Type of actor performing the operation."""

    HUMAN = "human"  # Operator via chat or API
    SERVICE = "service"  # Internal service call
    SYSTEM = "system"  # Scheduled job


class RequestContext(BaseModel):
    """Context for a single request/operation."""

    request_id: UUID = Field(default_factory=uuid7)
    tenant_id: UUID
    actor_id: str | None = None
    actor_type: ActorType = ActorType.HUMAN

    correlation_id: UUID = Field(default_factory=uuid7)
    initiated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    model_config = {"frozen": True}

    def to_log_dict(self) -> dict[str, Any]:
        """Convert context to a dictionary for structured logging."""
        return {
            "request_id": str(self.request_id),
            "tenant_id": str(self.tenant_id),
            "actor_id": self.actor_id,
            "actor_type": self.actor_type.value,
            "correlation_id": str(self.correlation_id),
        }


_request_context: ContextVar[RequestContext | None] = ContextVar("request_context", default=None)


def get_current_context() -> RequestContext:
    """Get the current request context.

    Raises:
        ContextNotSetError: If no context is set in the current execution context
    """
    ctx = _request_context.get()
    if ctx is None:
        raise ContextNotSetError(
            "No request context is set. Use request_context() context manager."
        )
    return ctx


def get_current_context_or_none() -> RequestContext | None:
    """Get the current request context, or None if not set."""
    return _request_context.get()


def set_context(ctx: RequestContext) -> Token[RequestContext | None]:
    """Set the request context and return a token for restoration.

    This is a low-level API. Prefer using the request_context() context manager.
    """
    return _request_context.set(ctx)


def reset_context(token: Token[RequestContext | None]) -> None:
    """Reset the context to its previous value using a token."""
    _request_context.reset(token)


@contextmanager
def request_context(ctx: RequestContext):
    """Context manager for setting request context.

    Works for both sync and async code because contextvars are
    propagated to tasks created inside the block.
    """
    token = set_context(ctx)
    try:
        yield ctx
    finally:
        reset_context(token)


def create_context(
    *,
    tenant_id: UUID,
    actor_id: str | None = None,
    actor_type: ActorType = ActorType.HUMAN,
    correlation_id: UUID | None = None,
) -> RequestContext:
    """Factory function to create a RequestContext with defaults."""
    return RequestContext(
        tenant_id=tenant_id,
        actor_id=actor_id,
        actor_type=actor_type,
        correlation_id=correlation_id or uuid7(),
    )
