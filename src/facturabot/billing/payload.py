"""Invoice request payloads.

An invoice request is a tagged union on ``invoice_type``: an income invoice
("I") with line items, or a payment complement ("P") that settles previously
issued invoices. Each variant knows how to render itself for the external
invoicing API once a folio has been allocated.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from facturabot.core.exceptions import InvoicePayloadError

_CENTS = Decimal("0.01")


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


class InvoiceItem(BaseModel):
    """A line item of an income invoice."""

    product_key: str = Field(..., min_length=1, max_length=8, description="SAT product/service key")
    description: str = Field(..., min_length=1, max_length=1000)
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    price: Decimal = Field(..., ge=0, description="Unit price before taxes")
    unit_key: str = Field(default="E48", description="SAT unit key")
    unit_name: str = Field(default="SERVICIO")
    tax_rate: Decimal = Field(default=Decimal("0.16"), ge=0, le=1, description="Transferred VAT")
    withholding_rate: Decimal | None = Field(
        default=None, ge=0, le=1, description="Withheld VAT, if the customer requires it"
    )

    @property
    def subtotal(self) -> Decimal:
        return self.quantity * self.price

    @property
    def total(self) -> Decimal:
        rate = self.tax_rate - (self.withholding_rate or Decimal("0"))
        return self.subtotal * (Decimal("1") + rate)

    def to_external(self) -> dict[str, Any]:
        taxes: list[dict[str, Any]] = [
            {"type": "IVA", "rate": float(self.tax_rate), "factor": "Tasa"}
        ]
        if self.withholding_rate:
            taxes.append(
                {
                    "type": "IVA",
                    "rate": float(self.withholding_rate),
                    "factor": "Tasa",
                    "withholding": True,
                }
            )
        return {
            "quantity": float(self.quantity),
            "product": {
                "description": self.description,
                "product_key": self.product_key,
                "unit_key": self.unit_key,
                "unit_name": self.unit_name,
                "price": float(self.price),
                "tax_included": False,
                "taxes": taxes,
            },
        }


class _InvoiceInputBase(BaseModel):
    customer_id: str = Field(..., min_length=1, description="Customer id in the invoicing API")
    series: str = Field(default="A", min_length=1, max_length=5)
    priority: int = Field(default=0, ge=0, description="Outbound queue priority")


class IncomeInvoiceInput(_InvoiceInputBase):
    """A regular income invoice (CFDI type I)."""

    invoice_type: Literal["I"] = "I"
    items: list[InvoiceItem] = Field(..., min_length=1)
    payment_form: str = Field(default="99", description="SAT payment form")
    payment_method: Literal["PUE", "PPD"] = "PPD"
    use: str = Field(default="G03", description="SAT CFDI use")

    @property
    def total(self) -> Decimal:
        return _money(sum((item.total for item in self.items), Decimal("0")))

    def to_external_payload(self, folio: int) -> dict[str, Any]:
        return {
            "type": self.invoice_type,
            "customer": self.customer_id,
            "items": [item.to_external() for item in self.items],
            "use": self.use,
            "payment_form": self.payment_form,
            "payment_method": self.payment_method,
            "series": self.series,
            "folio_number": folio,
        }


class RelatedDocument(BaseModel):
    """An invoice settled (fully or partially) by a payment complement."""

    uuid: str = Field(..., min_length=1, description="Fiscal folio (UUID) of the paid invoice")
    amount: Decimal = Field(..., gt=0)
    installment: int = Field(default=1, ge=1)
    last_balance: Decimal = Field(..., gt=0)
    tax_rate: Decimal = Field(default=Decimal("0.16"), ge=0, le=1)

    def to_external(self) -> dict[str, Any]:
        base = self.amount / (Decimal("1") + self.tax_rate)
        return {
            "uuid": self.uuid,
            "amount": float(self.amount),
            "installment": self.installment,
            "last_balance": float(self.last_balance),
            "taxes": [
                {"base": float(_money(base)), "type": "IVA", "rate": float(self.tax_rate)}
            ],
        }


class PaymentComplementInput(_InvoiceInputBase):
    """A payment complement (CFDI type P) for previously issued invoices."""

    invoice_type: Literal["P"] = "P"
    payment_form: str = Field(default="03", description="SAT payment form")
    related_documents: list[RelatedDocument] = Field(..., min_length=1)

    @property
    def total(self) -> Decimal:
        return _money(sum((doc.amount for doc in self.related_documents), Decimal("0")))

    def to_external_payload(self, folio: int) -> dict[str, Any]:
        return {
            "type": self.invoice_type,
            "customer": self.customer_id,
            "complements": [
                {
                    "type": "pago",
                    "data": [
                        {
                            "payment_form": self.payment_form,
                            "related_documents": [
                                doc.to_external() for doc in self.related_documents
                            ],
                        }
                    ],
                }
            ],
            "series": self.series,
            "folio_number": folio,
        }


InvoiceInput = Annotated[
    IncomeInvoiceInput | PaymentComplementInput,
    Field(discriminator="invoice_type"),
]

_invoice_input_adapter: TypeAdapter[IncomeInvoiceInput | PaymentComplementInput] = TypeAdapter(
    InvoiceInput
)


def parse_invoice_input(
    data: IncomeInvoiceInput | PaymentComplementInput | dict[str, Any],
) -> IncomeInvoiceInput | PaymentComplementInput:
    """Validate a raw request (or re-validate a model) into an invoice input.

    Raises:
        InvoicePayloadError: With pydantic's error list when invalid
    """
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return _invoice_input_adapter.validate_python(data)
    except ValidationError as e:
        raise InvoicePayloadError(
            f"Invalid invoice request: {e.error_count()} error(s)",
            errors=e.errors(include_url=False),
        ) from e
