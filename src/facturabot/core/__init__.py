"""Core services and utilities for facturabot."""

from .context import (
    ActorType,
    RequestContext,
    create_context,
    get_current_context,
    get_current_context_or_none,
    request_context,
    reset_context,
    set_context,
)
from .exceptions import (
    ContextNotSetError,
    ExternalCallFailedError,
    FolioAllocationError,
    InvoicingError,
    LockLostError,
    LockNotAcquiredError,
    PersistenceAfterExternalSuccessError,
    QueueFullError,
    QuotaDeniedError,
    UnsafeLockBackendError,
)
from .locks import (
    InMemoryLockBackend,
    LockHandle,
    LockKeys,
    LockService,
    RedisLockBackend,
    create_lock_service,
)

__all__ = [
    # Context
    "ActorType",
    "RequestContext",
    "create_context",
    "get_current_context",
    "get_current_context_or_none",
    "request_context",
    "reset_context",
    "set_context",
    # Exceptions
    "ContextNotSetError",
    "ExternalCallFailedError",
    "FolioAllocationError",
    "InvoicingError",
    "LockLostError",
    "LockNotAcquiredError",
    "PersistenceAfterExternalSuccessError",
    "QueueFullError",
    "QuotaDeniedError",
    "UnsafeLockBackendError",
    # Locks
    "InMemoryLockBackend",
    "LockHandle",
    "LockKeys",
    "LockService",
    "RedisLockBackend",
    "create_lock_service",
]
