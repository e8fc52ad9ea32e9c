"""Core exceptions for guarded invoicing operations.

Each error carries a ``user_message`` that a chat or API surface can show
as-is, and a ``retryable`` flag telling the caller whether restarting the
whole operation later can succeed.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import UUID

from facturabot.utils.exceptions import FacturaBotError

if TYPE_CHECKING:
    from facturabot.billing.quota import QuotaDecision


class ContextNotSetError(FacturaBotError):
    """Raised when attempting to access request context that is not set."""

    def __init__(self, message: str = "Request context is not set"):
        super().__init__(message)


class InvoicingError(FacturaBotError):
    """Base class for failures surfaced by invoice operations."""

    user_message: str = "The invoice could not be generated. Please try again."
    retryable: bool = False


class LockNotAcquiredError(InvoicingError):
    """Raised when a lock could not be obtained within the allowed attempts.

    Attributes:
        key: The lock key that was contended
        attempts: How many acquisition attempts were made
    """

    user_message = "Another operation is in progress for this account, try again."
    retryable = True

    def __init__(self, key: str, attempts: int):
        super().__init__(f"Could not acquire lock '{key}' after {attempts} attempts")
        self.key = key
        self.attempts = attempts

    def __str__(self) -> str:
        return f"LockNotAcquiredError: {self.args[0]}"


class LockLostError(InvoicingError):
    """Raised when a held lock expired before the protected work finished.

    Attributes:
        key: The lock key whose TTL ran out
    """

    user_message = "The operation took too long and was stopped, try again."
    retryable = True

    def __init__(self, key: str):
        super().__init__(f"Lock '{key}' expired before the operation finished")
        self.key = key


class UnsafeLockBackendError(FacturaBotError):
    """Raised when the in-process lock backend is selected for a multi-process deployment."""

    pass


class QuotaDeniedError(InvoicingError):
    """Raised when the tenant's subscription does not allow another invoice.

    Attributes:
        tenant_id: The tenant that was denied
        decision: The quota decision with the specific denial reason
    """

    def __init__(self, tenant_id: UUID | str, decision: QuotaDecision):
        super().__init__(decision.reason or "Invoice quota denied")
        self.tenant_id = tenant_id
        self.decision = decision

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return self.decision.reason or "Your subscription does not allow more invoices."

    def __str__(self) -> str:
        return f"QuotaDeniedError({self.tenant_id}): {self.args[0]}"


class FolioAllocationError(InvoicingError):
    """Raised when the folio counter could not be advanced.

    Attributes:
        tenant_id: The tenant whose counter failed
        series: The folio series
    """

    def __init__(self, message: str, tenant_id: UUID | str, series: str):
        super().__init__(message)
        self.tenant_id = tenant_id
        self.series = series

    def __str__(self) -> str:
        return f"FolioAllocationError({self.tenant_id}, {self.series}): {self.args[0]}"


class ExternalCallFailedError(InvoicingError):
    """Raised when the external invoicing API rejects or fails a request.

    Attributes:
        transient: Whether the failure is worth retrying (network, 5xx, 429)
        status_code: HTTP status returned by the API, if any
        details: Error payload returned by the API, if any
    """

    user_message = "The invoicing service could not create the invoice. Please try again."

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code
        self.details = details or {}

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.transient

    def __str__(self) -> str:
        return (
            f"ExternalCallFailedError: {self.args[0]} "
            f"(status={self.status_code}, transient={self.transient})"
        )


class QueueFullError(InvoicingError):
    """Raised when the outbound queue is at capacity (backpressure).

    Attributes:
        max_queue_size: The configured capacity that was reached
    """

    user_message = "The system is busy right now, try again shortly."
    retryable = True

    def __init__(self, max_queue_size: int):
        super().__init__(f"Outbound queue full ({max_queue_size} requests)")
        self.max_queue_size = max_queue_size


class QueueClearedError(InvoicingError):
    """Raised for pending requests dropped by an administrative queue clear."""

    retryable = True

    def __init__(self) -> None:
        super().__init__("Queue cleared by administrator")


class PersistenceAfterExternalSuccessError(InvoicingError):
    """Raised when an external invoice exists but could not be stored locally.

    This is a cross-system inconsistency that requires reconciliation, not an
    ordinary failed operation.

    Attributes:
        tenant_id: Tenant that owns the invoice
        external_invoice_id: Identifier assigned by the invoicing API
        series: Folio series
        folio_number: Folio that was sent to the invoicing API
    """

    user_message = (
        "The invoice was issued but could not be recorded. "
        "Support has been notified; do not issue it again."
    )

    def __init__(
        self,
        tenant_id: UUID | str,
        external_invoice_id: str,
        series: str,
        folio_number: int,
    ):
        super().__init__(
            f"Invoice {external_invoice_id} ({series}-{folio_number}) was created externally "
            f"for tenant {tenant_id} but could not be persisted"
        )
        self.tenant_id = tenant_id
        self.external_invoice_id = external_invoice_id
        self.series = series
        self.folio_number = folio_number


class UsageCounterError(InvoicingError):
    """Raised when no active or trial subscription exists to count an invoice against."""

    def __init__(self, tenant_id: UUID | str):
        super().__init__(f"No active or trial subscription to increment for tenant {tenant_id}")
        self.tenant_id = tenant_id


class InvoicePayloadError(InvoicingError):
    """Raised when an invoice request fails validation before being queued.

    Attributes:
        errors: Validation errors as reported by pydantic
    """

    user_message = "The invoice data is incomplete or invalid."

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


class PermissionDeniedError(InvoicingError):
    """Raised when the requester is not allowed to perform an action for a tenant."""

    user_message = "You do not have permission to perform this action."

    def __init__(self, user_id: str, tenant_id: UUID | str, action: str):
        super().__init__(f"User {user_id} may not perform '{action}' for tenant {tenant_id}")
        self.user_id = user_id
        self.tenant_id = tenant_id
        self.action = action


class TenantNotFoundError(FacturaBotError):
    """Raised when a tenant does not exist."""

    def __init__(self, tenant_id: UUID | str):
        super().__init__(f"Tenant not found: {tenant_id}")
        self.tenant_id = tenant_id


class SubscriptionNotFoundError(FacturaBotError):
    """Raised when a tenant has no subscription to operate on."""

    def __init__(self, tenant_id: UUID | str):
        super().__init__(f"No current subscription for tenant: {tenant_id}")
        self.tenant_id = tenant_id


class PlanNotFoundError(FacturaBotError):
    """Raised when a subscription plan does not exist or is inactive."""

    def __init__(self, plan_id: int):
        super().__init__(f"Subscription plan not found: {plan_id}")
        self.plan_id = plan_id
