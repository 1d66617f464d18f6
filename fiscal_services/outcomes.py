"""
Result types returned by the submission services and the FiscalEngine facade.

Services return typed outcomes; the facade flattens them into
OperationResult, the structured {status, code, message, data} value the
POS layer consumes.  A business rejection is an outcome with status
``rejected``, never an exception.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from fiscal_kernel.domain.dtos import AuthorityAcknowledgement
from fiscal_kernel.models.submission_record import SubmissionStatus

if TYPE_CHECKING:
    from fiscal_services.receipt_service import RenderedReceipt


class ResultStatus(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"  # Authority answered with a non-"000" code
    FAILED = "failed"  # transport failure or engine error


@dataclass(frozen=True)
class SubmissionOutcome:
    """What happened to one attempt, common to every subject type."""

    business_key: str
    reference_no: str
    status: SubmissionStatus
    attempt_count: int
    result_code: str | None = None
    result_message: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == SubmissionStatus.SUCCESS


@dataclass(frozen=True)
class SaleSubmissionOutcome(SubmissionOutcome):
    invoice_no: int = 0
    total_amount: Decimal | None = None
    acknowledgement: AuthorityAcknowledgement | None = None
    receipt: RenderedReceipt | None = None
    stock_released: bool = False


@dataclass(frozen=True)
class CatalogRegistrationOutcome(SubmissionOutcome):
    item_code: str = ""
    item_class_code: str = ""
    tax_bracket: str = ""
    unit_code: str = ""


@dataclass(frozen=True)
class PurchaseSubmissionOutcome(SubmissionOutcome):
    purchase_no: int = 0
    supplier_tin: str = ""
    supplier_invoice_no: int = 0
    total_amount: Decimal | None = None


@dataclass(frozen=True)
class RetrySummary:
    """Totals from one retry_failed_submissions run."""

    retried_count: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    outcomes: tuple[SubmissionOutcome, ...] = ()


@dataclass(frozen=True)
class OperationResult:
    """Caller-facing result: machine-readable status and code, readable message."""

    status: ResultStatus
    code: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == ResultStatus.SUCCESS

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "code": self.code,
            "message": self.message,
            "data": self.data,
        }
