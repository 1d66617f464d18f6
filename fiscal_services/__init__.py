"""
fiscal_services -- orchestration over the kernel, engines and the Authority.

Public surface:
    FiscalEngine            caller-facing facade (OperationResult in, out)
    SaleSubmissionService   submit a sale
    PurchaseSubmissionService
                            report a supplier invoice as a purchase
    CatalogRegistrationService
                            register a product or ingredient
    SubmissionRetryService  replay errored submissions
    ReceiptService          receipt text, PDF and QR
    AuthorityClient         HTTP client for the Authority
"""

from fiscal_services.authority_client import AuthorityClient, AuthorityResponse
from fiscal_services.catalog_registration import CatalogRegistrationService
from fiscal_services.fiscal_engine import FiscalEngine
from fiscal_services.outcomes import (
    CatalogRegistrationOutcome,
    OperationResult,
    PurchaseSubmissionOutcome,
    ResultStatus,
    RetrySummary,
    SaleSubmissionOutcome,
    SubmissionOutcome,
)
from fiscal_services.purchase_submission import PurchaseSubmissionService
from fiscal_services.receipt_service import ReceiptService, RenderedReceipt
from fiscal_services.sale_submission import SaleSubmissionService
from fiscal_services.submission_retry import SubmissionRetryService

__all__ = [
    "AuthorityClient",
    "AuthorityResponse",
    "CatalogRegistrationOutcome",
    "CatalogRegistrationService",
    "FiscalEngine",
    "OperationResult",
    "PurchaseSubmissionOutcome",
    "PurchaseSubmissionService",
    "ReceiptService",
    "RenderedReceipt",
    "ResultStatus",
    "RetrySummary",
    "SaleSubmissionOutcome",
    "SaleSubmissionService",
    "SubmissionOutcome",
    "SubmissionRetryService",
]
