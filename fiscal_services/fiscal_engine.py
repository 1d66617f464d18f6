"""
fiscal_services.fiscal_engine -- caller-facing facade of the fiscal engine.

Responsibility:
    The operations the POS layer calls: register a catalog item, submit a
    sale, report a purchase, retry failed submissions, reprint a receipt.  Each
    returns an OperationResult; engine errors are converted, logged and
    returned, never swallowed.

Architecture position:
    Services -- outermost layer.  Wires the sale, purchase, catalog, retry
    and receipt services over one session factory, configuration, Authority
    client and clock.

Result statuses:
    success   the Authority accepted (or the read succeeded)
    rejected  the Authority answered with a non-"000" code, or did not
              answer; the record is in ERROR and can be retried
    failed    the operation raised a FiscalEngineError; ``code`` is the
              exception's code.  DATABASE_BUSY and SEQUENCE_CONTENDED
              also set ``data["retryable"]``
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from fiscal_config import get_active_config
from fiscal_config.schema import FiscalConfiguration
from fiscal_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    is_lock_timeout,
    session_scope,
)
from fiscal_kernel.db.immutability import register_immutability_listeners
from fiscal_kernel.domain.clock import Clock, SystemClock
from fiscal_kernel.domain.dtos import CatalogItemRequest, CatalogKind, PurchaseOrder, SaleOrder
from fiscal_kernel.exceptions import (
    AcknowledgementPersistenceError,
    AlreadySubmittedError,
    FiscalEngineError,
    SequenceContentionError,
    ValidationError,
)
from fiscal_kernel.logging_config import get_logger
from fiscal_services.authority_client import AuthorityClient
from fiscal_services.catalog_registration import CatalogRegistrationService
from fiscal_services.outcomes import (
    CatalogRegistrationOutcome,
    OperationResult,
    PurchaseSubmissionOutcome,
    ResultStatus,
    SaleSubmissionOutcome,
    SubmissionOutcome,
)
from fiscal_services.purchase_submission import PurchaseSubmissionService
from fiscal_services.receipt_service import ReceiptService, RenderedReceipt
from fiscal_services.sale_submission import SaleSubmissionService
from fiscal_services.submission_retry import SubmissionRetryService

logger = get_logger("services.fiscal_engine")

PERSISTENCE_FAILURE = "PERSISTENCE_FAILURE"
DATABASE_BUSY = "DATABASE_BUSY"


def _submission_data(outcome: SubmissionOutcome) -> dict[str, Any]:
    return {
        "reference_no": outcome.reference_no,
        "status": outcome.status.value,
        "attempt_count": outcome.attempt_count,
        "result_code": outcome.result_code,
        "result_message": outcome.result_message,
        "error_message": outcome.error_message,
    }


def _receipt_data(receipt: RenderedReceipt | None) -> dict[str, Any] | None:
    if receipt is None:
        return None
    return {"text": receipt.text, "pdf": receipt.pdf_bytes, "qr_payload": receipt.qr_payload}


class FiscalEngine:
    """
    Facade over the fiscal submission services.

    Usage:
        engine = FiscalEngine.create("postgresql://...")
        result = engine.submit_sale(order)
        if result.ok:
            send_to_printer(result.data["receipt"]["pdf"])
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: FiscalConfiguration,
        client: AuthorityClient,
        clock: Clock | None = None,
    ):
        register_immutability_listeners()
        clock = clock or SystemClock()
        self._factory = session_factory
        self._config = config
        self._receipts = ReceiptService(config)
        self._sales = SaleSubmissionService(
            session_factory, config, client, clock, receipt_service=self._receipts
        )
        self._catalog = CatalogRegistrationService(session_factory, config, client, clock)
        self._purchases = PurchaseSubmissionService(session_factory, config, client, clock)
        self._retry = SubmissionRetryService(
            session_factory, config, [self._sales, self._catalog, self._purchases]
        )

    @classmethod
    def create(
        cls,
        database_url: str,
        config: FiscalConfiguration | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Clock | None = None,
    ) -> FiscalEngine:
        """Initialise the database engine and client from configuration."""
        config = config or get_active_config()
        init_engine_from_url(database_url)
        create_tables()
        client = AuthorityClient.from_endpoint(config.authority, transport=transport)
        return cls(get_session_factory(), config, client, clock)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def register_catalog_item(
        self,
        item_id: str,
        name: str,
        category: str | None,
        unit: str | None,
        cost: Decimal | int | str,
        kind: CatalogKind | str = CatalogKind.PRODUCT,
        registrant: str | None = None,
        registrant_name: str | None = None,
    ) -> OperationResult:
        request = CatalogItemRequest(
            item_id=item_id,
            name=name,
            category=category,
            unit=unit,
            cost=cost,
            kind=kind,
            registrant=registrant,
            registrant_name=registrant_name,
        )
        try:
            outcome = self._catalog.register(request)
        except (FiscalEngineError, SQLAlchemyError) as exc:
            return self._failure("register_catalog_item", exc)
        return self._from_catalog(outcome)

    def submit_sale(self, order: SaleOrder) -> OperationResult:
        try:
            outcome = self._sales.submit(order)
        except (FiscalEngineError, SQLAlchemyError) as exc:
            return self._failure("submit_sale", exc)
        return self._from_sale(outcome)

    def submit_purchase(self, order: PurchaseOrder) -> OperationResult:
        try:
            outcome = self._purchases.submit(order)
        except (FiscalEngineError, SQLAlchemyError) as exc:
            return self._failure("submit_purchase", exc)
        return self._from_purchase(outcome)

    def retry_failed_submissions(self, limit: int | None = None) -> OperationResult:
        try:
            summary = self._retry.retry_failed(limit)
        except (FiscalEngineError, SQLAlchemyError) as exc:
            return self._failure("retry_failed_submissions", exc)
        return OperationResult(
            status=ResultStatus.SUCCESS,
            code="RETRY_COMPLETED",
            message=(
                f"Retried {summary.retried_count}: {summary.succeeded} accepted, "
                f"{summary.failed} failed, {summary.skipped} skipped"
            ),
            data={
                "retried_count": summary.retried_count,
                "succeeded": summary.succeeded,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "submissions": [
                    {"business_key": o.business_key, **_submission_data(o)}
                    for o in summary.outcomes
                ],
            },
        )

    def reprint_receipt(self, business_key: str) -> OperationResult:
        try:
            with session_scope(self._factory) as session:
                receipt = self._receipts.reprint(session, business_key)
        except (FiscalEngineError, SQLAlchemyError) as exc:
            return self._failure("reprint_receipt", exc)
        return OperationResult(
            status=ResultStatus.SUCCESS,
            code="RECEIPT_RENDERED",
            message=f"Receipt for {business_key}",
            data={"business_key": business_key, "receipt": _receipt_data(receipt)},
        )

    # ------------------------------------------------------------------
    # Result mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _outcome_status(outcome: SubmissionOutcome) -> tuple[ResultStatus, str, str]:
        if outcome.succeeded:
            message = outcome.result_message or "Accepted"
            return ResultStatus.SUCCESS, outcome.result_code or "000", message
        if outcome.result_code:
            return ResultStatus.REJECTED, outcome.result_code, outcome.error_message or ""
        return ResultStatus.REJECTED, "AUTHORITY_TRANSPORT_FAILURE", outcome.error_message or ""

    def _from_sale(self, outcome: SaleSubmissionOutcome) -> OperationResult:
        status, code, message = self._outcome_status(outcome)
        acknowledgement = outcome.acknowledgement
        return OperationResult(
            status=status,
            code=code,
            message=message,
            data={
                "business_key": outcome.business_key,
                "invoice_no": outcome.invoice_no,
                "total_amount": str(outcome.total_amount) if outcome.total_amount is not None else None,
                "submission": {
                    **_submission_data(outcome),
                    "acknowledgement": acknowledgement.as_dict() if acknowledgement else None,
                },
                "receipt": _receipt_data(outcome.receipt),
                "stock_released": outcome.stock_released,
            },
        )

    def _from_catalog(self, outcome: CatalogRegistrationOutcome) -> OperationResult:
        status, code, message = self._outcome_status(outcome)
        return OperationResult(
            status=status,
            code=code,
            message=message,
            data={
                "item_code": outcome.item_code,
                "item_class_code": outcome.item_class_code,
                "tax_bracket": outcome.tax_bracket,
                "unit_code": outcome.unit_code,
                "submission": _submission_data(outcome),
            },
        )

    def _from_purchase(self, outcome: PurchaseSubmissionOutcome) -> OperationResult:
        status, code, message = self._outcome_status(outcome)
        return OperationResult(
            status=status,
            code=code,
            message=message,
            data={
                "business_key": outcome.business_key,
                "purchase_no": outcome.purchase_no,
                "supplier_tin": outcome.supplier_tin,
                "supplier_invoice_no": outcome.supplier_invoice_no,
                "total_amount": str(outcome.total_amount) if outcome.total_amount is not None else None,
                "submission": _submission_data(outcome),
            },
        )

    @staticmethod
    def _failure(operation: str, exc: Exception) -> OperationResult:
        code = getattr(exc, "code", None) or PERSISTENCE_FAILURE
        data: dict[str, Any] = {}
        if isinstance(exc, ValidationError):
            data["field_errors"] = list(exc.field_errors)
        if isinstance(exc, AlreadySubmittedError):
            data["reference_no"] = exc.reference_no
        if isinstance(exc, AcknowledgementPersistenceError):
            data["reference_no"] = exc.reference_no
            data["acknowledgement"] = exc.acknowledgement
            data["cause"] = exc.cause
        if isinstance(exc, SQLAlchemyError):
            code = DATABASE_BUSY if is_lock_timeout(exc) else PERSISTENCE_FAILURE
        if code in (DATABASE_BUSY, SequenceContentionError.code):
            data["retryable"] = True

        log = logger.critical if isinstance(exc, AcknowledgementPersistenceError) else logger.warning
        log(
            "operation_failed",
            extra={"operation": operation, "error_code": code},
            exc_info=not isinstance(exc, ValidationError),
        )
        return OperationResult(
            status=ResultStatus.FAILED,
            code=code,
            message=str(exc),
            data=data,
        )
