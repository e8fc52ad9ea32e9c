"""Boundary to the external invoicing API.

The invoicing API is consumed through the InvoicingClient protocol so the
guarded invoice operation can be exercised against a fake. HttpInvoicingClient
talks to a Facturapi-style REST API with one API key per tenant.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from facturabot.config.settings import get_settings
from facturabot.core.exceptions import ExternalCallFailedError
from facturabot.core.logging import get_logger, log_external_call

logger = get_logger(__name__)

ApiKeyResolver = Callable[[UUID], Awaitable[str]]


@dataclass
class ExternalInvoice:
    """An invoice as reported by the invoicing API."""

    external_id: str
    series: str
    folio_number: int
    total: Decimal
    status: str = "valid"
    customer_id: str | None = None
    created_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> ExternalInvoice:
        customer = data.get("customer")
        customer_id = customer.get("id") if isinstance(customer, dict) else customer
        created_at = data.get("created_at")
        return cls(
            external_id=data["id"],
            series=data.get("series") or "",
            folio_number=int(data["folio_number"]),
            total=Decimal(str(data.get("total", "0"))),
            status=data.get("status", "valid"),
            customer_id=customer_id,
            created_at=datetime.fromisoformat(created_at.replace("Z", "+00:00"))
            if created_at
            else None,
            raw=data,
        )


@runtime_checkable
class InvoicingClient(Protocol):
    """Operations the invoicing subsystem needs from the invoicing API."""

    async def create_invoice(self, tenant_id: UUID, payload: dict[str, Any]) -> ExternalInvoice:
        """Issue an invoice. Not idempotent."""
        ...

    async def list_invoices(
        self, tenant_id: UUID, since: datetime | None = None
    ) -> list[ExternalInvoice]:
        """Invoices issued for the tenant, optionally from a date on."""
        ...


def _is_retryable_read(error: BaseException) -> bool:
    if isinstance(error, ExternalCallFailedError):
        return error.transient
    return isinstance(error, httpx.TransportError)


class HttpInvoicingClient:
    """httpx client for a Facturapi-style invoicing API.

    Invoice creation is attempted exactly once per call; retries belong to the
    outbound queue. Listing is a read and retries transient failures itself.

    Args:
        key_resolver: Returns the tenant's API key
        base_url: API base URL (defaults to INVOICING_API_URL)
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    SERVICE = "invoicing_api"

    def __init__(
        self,
        key_resolver: ApiKeyResolver,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        page_size: int = 50,
    ):
        settings = get_settings()
        self._key_resolver = key_resolver
        self.base_url = (base_url or settings.INVOICING_API_URL).rstrip("/")
        self.timeout = timeout or settings.INVOICING_API_TIMEOUT_SECONDS
        self.page_size = page_size
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> HttpInvoicingClient:
        self._get_client()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        tenant_id: UUID,
        *,
        operation: str,
        **kwargs: Any,
    ) -> Any:
        api_key = await self._key_resolver(tenant_id)
        started = time.perf_counter()
        try:
            response = await self._get_client().request(
                method, path, headers={"Authorization": f"Bearer {api_key}"}, **kwargs
            )
        except httpx.TransportError as e:
            log_external_call(
                logger,
                self.SERVICE,
                operation,
                (time.perf_counter() - started) * 1000,
                success=False,
                tenant_id=str(tenant_id),
                error=str(e) or type(e).__name__,
            )
            raise

        duration_ms = (time.perf_counter() - started) * 1000
        log_external_call(
            logger,
            self.SERVICE,
            operation,
            duration_ms,
            success=response.is_success,
            tenant_id=str(tenant_id),
            status_code=response.status_code,
        )
        if response.is_success:
            return response.json()

        try:
            details = response.json()
        except ValueError:
            details = {"body": response.text[:500]}
        message = details.get("message") if isinstance(details, dict) else None
        transient = response.status_code == 429 or response.status_code >= 500
        raise ExternalCallFailedError(
            message or f"Invoicing API returned {response.status_code}",
            transient=transient,
            status_code=response.status_code,
            details=details if isinstance(details, dict) else {"body": details},
        )

    async def create_invoice(self, tenant_id: UUID, payload: dict[str, Any]) -> ExternalInvoice:
        """POST /v2/invoices.

        Raises:
            ExternalCallFailedError: On an error response (transient for 429/5xx)
            httpx.TransportError: On network failures
        """
        data = await self._request(
            "POST", "/v2/invoices", tenant_id, operation="create_invoice", json=payload
        )
        return ExternalInvoice.from_api(data)

    async def list_invoices(
        self, tenant_id: UUID, since: datetime | None = None
    ) -> list[ExternalInvoice]:
        """GET /v2/invoices, following pagination."""
        invoices: list[ExternalInvoice] = []
        page = 1
        while True:
            params: dict[str, Any] = {"page": page, "limit": self.page_size}
            if since is not None:
                params["date[gte]"] = since.isoformat()

            data: dict[str, Any] = {}
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(3),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
                retry=retry_if_exception(_is_retryable_read),
                reraise=True,
            ):
                with attempt:
                    data = await self._request(
                        "GET", "/v2/invoices", tenant_id, operation="list_invoices", params=params
                    )

            invoices.extend(ExternalInvoice.from_api(item) for item in data.get("data", []))
            if page >= int(data.get("total_pages", 1)):
                return invoices
            page += 1
