"""Invoice generation, folio allocation and subscription quota enforcement."""

from facturabot.billing.external import (
    ExternalInvoice,
    HttpInvoicingClient,
    InvoicingClient,
)
from facturabot.billing.folio import BatchingFolioAllocator, FolioAllocator, FolioStrategy
from facturabot.billing.payload import (
    IncomeInvoiceInput,
    InvoiceItem,
    PaymentComplementInput,
    RelatedDocument,
    parse_invoice_input,
)
from facturabot.billing.queue import (
    OperationType,
    OutboundRequestQueue,
    QueueConfig,
    QueueMetrics,
)
from facturabot.billing.quota import QuotaDecision, QuotaDenial, QuotaGuard
from facturabot.billing.reconciliation import ReconciliationService, UsageResync
from facturabot.billing.safe_operations import (
    BatchItemResult,
    InvoiceOperation,
    InvoiceOperationState,
    PermissionChecker,
    SafeInvoiceService,
    create_safe_invoice_service,
)
from facturabot.billing.subscriptions import ExpirationResult, SubscriptionService
from facturabot.billing.usage import UsageCounter

__all__ = [
    # External API
    "ExternalInvoice",
    "HttpInvoicingClient",
    "InvoicingClient",
    # Folios
    "BatchingFolioAllocator",
    "FolioAllocator",
    "FolioStrategy",
    # Payloads
    "IncomeInvoiceInput",
    "InvoiceItem",
    "PaymentComplementInput",
    "RelatedDocument",
    "parse_invoice_input",
    # Queue
    "OperationType",
    "OutboundRequestQueue",
    "QueueConfig",
    "QueueMetrics",
    # Quota and usage
    "QuotaDecision",
    "QuotaDenial",
    "QuotaGuard",
    "UsageCounter",
    # Guarded operations
    "BatchItemResult",
    "InvoiceOperation",
    "InvoiceOperationState",
    "PermissionChecker",
    "SafeInvoiceService",
    "create_safe_invoice_service",
    # Lifecycle and reconciliation
    "ExpirationResult",
    "ReconciliationService",
    "SubscriptionService",
    "UsageResync",
]
