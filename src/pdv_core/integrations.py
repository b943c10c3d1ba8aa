"""Typed shapes for the external assistant services.

The price suggestion, invoice extraction, product image search and sales
insight services run outside this package. The core never calls them; these
types describe what goes in and out so that results can be handed to the
business layer (for example :func:`pdv_core.core_logic.ingest_invoice`).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Mapping, Optional, Protocol, Sequence


@dataclass(frozen=True)
class PriceSuggestionRequest:
    purchase_price: Decimal
    tax_rate: Decimal
    profit_margin: Decimal


@dataclass(frozen=True)
class PriceSuggestionResult:
    suggested_sales_price: Decimal


@dataclass(frozen=True)
class ExtractedProduct:
    name: str
    quantity: int
    purchase_price: Decimal
    barcode: Optional[str] = None


@dataclass(frozen=True)
class InvoiceExtraction:
    """Products read from a supplier invoice image."""

    products: tuple[ExtractedProduct, ...]
    supplier: Optional[str] = None
    invoice_date: Optional[str] = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "InvoiceExtraction":
        """Parse the JSON object returned by the extraction service.

        Keys follow the service's camelCase names (``purchasePrice``,
        ``invoiceDate``).

        Raises:
            KeyError: If a product entry lacks ``name``, ``quantity`` or
                ``purchasePrice``.
            ValueError: If a quantity or price is not numeric.
        """

        products = tuple(
            ExtractedProduct(
                name=str(entry["name"]).strip(),
                quantity=int(entry["quantity"]),
                purchase_price=Decimal(str(entry["purchasePrice"])),
                barcode=(str(entry["barcode"]) if entry.get("barcode") else None),
            )
            for entry in payload.get("products", [])
        )
        return cls(
            products=products,
            supplier=payload.get("supplier"),
            invoice_date=payload.get("invoiceDate"),
        )


@dataclass(frozen=True)
class ProductImageResult:
    image_url: str


@dataclass(frozen=True)
class SalesInsightsRequest:
    sales_data_json: str
    language: str = "pt-BR"


@dataclass(frozen=True)
class SalesInsights:
    summary: str
    highlights: Sequence[str] = field(default_factory=tuple)


class AssistantClient(Protocol):
    """Interface of the external assistant services."""

    def suggest_optimal_price(self, request: PriceSuggestionRequest) -> PriceSuggestionResult:
        ...

    def extract_invoice_data(self, image_data_uri: str) -> InvoiceExtraction:
        ...

    def find_product_image(self, product_name: str) -> ProductImageResult:
        ...

    def generate_sales_report_insights(self, request: SalesInsightsRequest) -> SalesInsights:
        ...


__all__ = [
    "AssistantClient",
    "ExtractedProduct",
    "InvoiceExtraction",
    "PriceSuggestionRequest",
    "PriceSuggestionResult",
    "ProductImageResult",
    "SalesInsights",
    "SalesInsightsRequest",
]
