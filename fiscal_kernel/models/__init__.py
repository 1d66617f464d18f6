"""ORM models for the fiscal kernel."""

from fiscal_kernel.models.catalog import CatalogEntryMixin, CatalogItem, Ingredient
from fiscal_kernel.models.purchase_invoice import PurchaseInvoice
from fiscal_kernel.models.sales_invoice import SalesInvoice, SalesInvoiceLine
from fiscal_kernel.models.sequence_counter import SequenceCounter
from fiscal_kernel.models.submission_record import (
    ACKNOWLEDGEMENT_COLUMNS,
    VALID_TRANSITIONS,
    SubmissionRecord,
    SubmissionStatus,
)

__all__ = [
    "ACKNOWLEDGEMENT_COLUMNS",
    "VALID_TRANSITIONS",
    "CatalogEntryMixin",
    "CatalogItem",
    "Ingredient",
    "PurchaseInvoice",
    "SalesInvoice",
    "SalesInvoiceLine",
    "SequenceCounter",
    "SubmissionRecord",
    "SubmissionStatus",
]
