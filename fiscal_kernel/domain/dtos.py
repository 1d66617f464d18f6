"""
DTOs -- immutable data crossing the engine boundary.

Responsibility:
    Request objects handed in by callers (SaleOrder, PurchaseOrder,
    CatalogItemRequest),
    and the Authority acknowledgement handed back.  Free of ORM and HTTP
    types; services convert at their edges.

Architecture position:
    Kernel > Domain -- pure, zero I/O.

Validation of request content (quantities, prices, required names) is done
by the services before any sequence number is allocated, so a malformed
request can be reported in full rather than failing on its first field.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any


class SubjectType(str, Enum):
    """What a submission record is about."""

    SALE = "sale"
    CATALOG_ITEM = "catalog_item"
    PURCHASE = "purchase"


class CatalogKind(str, Enum):
    """Which catalog table an item lives in."""

    PRODUCT = "product"
    INGREDIENT = "ingredient"


class DiscountType(str, Enum):
    AMOUNT = "amount"
    PERCENTAGE = "percentage"


@dataclass(frozen=True, slots=True)
class Customer:
    """Buyer details; all optional for walk-in sales."""

    tin: str | None = None
    name: str | None = None
    mobile: str | None = None


@dataclass(frozen=True, slots=True)
class SaleLineRequest:
    """One line of a sale as the POS rang it up."""

    item_code: str
    name: str
    quantity: Decimal
    unit_price: Decimal
    item_class_code: str | None = None
    unit_code: str | None = None
    tax_bracket: str | None = None  # None -> default bracket
    barcode: str | None = None


@dataclass(frozen=True, slots=True)
class SaleOrder:
    """
    A sale to be fiscalised.

    ``business_key`` identifies the sale in the caller's system (order id);
    it is the idempotency key: at most one successful submission per key.
    ``original_invoice_no`` is 0 for new sales and the invoice being
    reversed for refunds.
    """

    business_key: str
    lines: tuple[SaleLineRequest, ...]
    payment_method: str = "cash"
    discount: Decimal = Decimal("0")
    discount_type: DiscountType = DiscountType.AMOUNT
    customer: Customer = field(default_factory=Customer)
    original_invoice_no: int = 0
    remark: str | None = None
    cashier: str | None = None
    cashier_name: str | None = None  # display name; configured registrant name if absent

    def __post_init__(self) -> None:
        if not isinstance(self.lines, tuple):
            object.__setattr__(self, "lines", tuple(self.lines))

    @property
    def is_reversal(self) -> bool:
        return self.original_invoice_no != 0


@dataclass(frozen=True, slots=True)
class Supplier:
    tin: str
    name: str
    branch_id: str = "00"


@dataclass(frozen=True, slots=True)
class PurchaseOrder:
    """
    A supplier invoice to be reported as a purchase.

    Lines reuse SaleLineRequest: the same codes, quantities, unit prices and
    brackets, seen from the buying side.  The submission key is the
    supplier TIN plus the supplier's invoice number, so the same supplier
    invoice is reported at most once.
    """

    supplier: Supplier
    supplier_invoice_no: int
    lines: tuple[SaleLineRequest, ...]
    payment_method: str = "cash"
    discount: Decimal = Decimal("0")
    discount_type: DiscountType = DiscountType.AMOUNT
    remark: str | None = None
    registrant: str | None = None
    registrant_name: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.lines, tuple):
            object.__setattr__(self, "lines", tuple(self.lines))

    @property
    def business_key(self) -> str:
        return f"{self.supplier.tin}:{self.supplier_invoice_no}"


@dataclass(frozen=True, slots=True)
class CatalogItemRequest:
    """A catalog item to be registered with the Authority."""

    item_id: str
    name: str
    category: str | None
    unit: str | None
    cost: Decimal
    kind: CatalogKind = CatalogKind.PRODUCT
    registrant: str | None = None
    registrant_name: str | None = None


@dataclass(frozen=True, slots=True)
class AuthorityAcknowledgement:
    """
    Signed acknowledgement of an accepted sale.

    Opaque to the engine: stored verbatim, printed verbatim, and never
    modified once stored.
    """

    receipt_counter: int
    total_receipt_counter: int
    internal_data: str
    signature: str
    confirmed_at: str  # YYYYMMDDHHMMSS
    device_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "receipt_counter": self.receipt_counter,
            "total_receipt_counter": self.total_receipt_counter,
            "internal_data": self.internal_data,
            "signature": self.signature,
            "confirmed_at": self.confirmed_at,
            "device_id": self.device_id,
        }
