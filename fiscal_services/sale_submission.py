"""
fiscal_services.sale_submission -- submit a sale to the Authority.

Responsibility:
    Validates a SaleOrder, reserves its invoice number, computes the
    bracket breakdown, sends saveTrnsSalesOsdc, and persists the outcome
    together with the SalesInvoice.  On acceptance it renders the receipt
    and posts the stock release.

Architecture position:
    Services -- orchestrates kernel services (allocator, recorder), pure
    engines (tax, receipt) and the Authority client.

Transaction boundaries:
    Tx1  ensure_submittable -> reserve invoice number -> compute breakdown
         -> build request -> open PENDING record.  Committed before the
         network call, so the invoice number is durable even if the
         process dies mid-call.
    --   saveTrnsSalesOsdc (no transaction open)
    Tx2  SalesInvoice + lines (first attempt only) and SUCCESS/ERROR.

Invariants enforced:
    - At most one SUCCESS per business key (AlreadySubmittedError).
    - An errored sale keeps its invoice number; re-submitting it replays
      the stored request instead of recomputing.
    - A business rejection is persisted and returned, never raised.
    - Σ line totals == invoice total and Σ bracket tax == total tax (from
      the tax engine); the stored invoice copies those amounts verbatim.

Failure modes:
    - InvalidSaleError: rejected before any number is reserved.  For a
      reversal this includes an original invoice that is unknown, not
      accepted, or itself a reversal.
    - LedgerUnreadableError: nothing is persisted.
    - AcknowledgementPersistenceError: accepted by the Authority but Tx2
      failed.  Carries the acknowledgement for manual reconciliation.

Audit relevance:
    Every step logs with business_key and invoice_no in the log context.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from fiscal_config.schema import FiscalConfiguration, PaymentMethodDef
from fiscal_engines.tax import TaxableLine, TaxBracketEngine, TaxBreakdown, validate_lines
from fiscal_kernel.db.engine import session_scope
from fiscal_kernel.db.types import round_money, to_decimal
from fiscal_kernel.domain.clock import Clock
from fiscal_kernel.domain.dtos import (
    AuthorityAcknowledgement,
    SaleLineRequest,
    SaleOrder,
    SubjectType,
)
from fiscal_kernel.exceptions import (
    AcknowledgementPersistenceError,
    AuthorityProtocolError,
    AuthorityTransportError,
    InvalidSaleError,
)
from fiscal_kernel.logging_config import LogContext, get_logger
from fiscal_kernel.models.catalog import CatalogItem, Ingredient
from fiscal_kernel.models.sales_invoice import SalesInvoice, SalesInvoiceLine
from fiscal_kernel.models.submission_record import SubmissionStatus
from fiscal_kernel.services.sequence_service import LedgerSequenceAllocator
from fiscal_kernel.services.submission_recorder import SubmissionRecorder
from fiscal_services._submission import Attempt, Reply, SubmissionFlow
from fiscal_services.authority_client import AuthorityClient, AuthorityResponse
from fiscal_services.outcomes import SaleSubmissionOutcome
from fiscal_services.payloads import (
    RECEIPT_TYPE_REFUND,
    RECEIPT_TYPE_SALE,
    build_sale_payload,
    build_stock_release_payload,
    resolve_payment_method,
)
from fiscal_services.receipt_service import ReceiptService, RenderedReceipt

logger = get_logger("services.sale_submission")


@dataclass(frozen=True)
class SaleDraft:
    """Everything computed in Tx1 that Tx2 writes as the SalesInvoice."""

    order: SaleOrder
    lines: tuple[SaleLineRequest, ...]
    breakdown: TaxBreakdown
    invoice_no: int
    payment: PaymentMethodDef
    moment: datetime
    receipt_type_code: str


def bracket_amounts_json(breakdown: TaxBreakdown) -> dict[str, dict[str, str]]:
    """Per-bracket amounts as stored on SalesInvoice.bracket_amounts."""
    return {
        b.bracket: {
            "rate": str(b.rate),
            "taxable": str(b.taxable_amount),
            "tax": str(b.tax_amount),
        }
        for b in breakdown.brackets
    }


class SaleSubmissionService(SubmissionFlow):
    """
    Fiscalises sales.

    Usage:
        service = SaleSubmissionService(factory, config, client, clock)
        outcome = service.submit(order)
        if outcome.succeeded:
            print(outcome.receipt.text)
    """

    subject_type = SubjectType.SALE

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: FiscalConfiguration,
        client: AuthorityClient,
        clock: Clock | None = None,
        tax_engine: TaxBracketEngine | None = None,
        receipt_service: ReceiptService | None = None,
    ):
        super().__init__(session_factory, config, client, clock)
        self._tax = tax_engine or TaxBracketEngine(
            config.tax_brackets, default_bracket=config.catalog.default_bracket
        )
        self._receipts = receipt_service or ReceiptService(config)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, order: SaleOrder) -> list[str]:
        """Every problem with ``order``; empty when it can be submitted."""
        problems: list[str] = []
        if not order.business_key or not str(order.business_key).strip():
            problems.append("business key is required")
        if order.original_invoice_no < 0:
            problems.append("original invoice number must not be negative")
        try:
            lines, discount = self._coerce(order)
        except (TypeError, ValueError) as exc:
            problems.append(str(exc))
            return problems
        problems.extend(validate_lines(lines, discount, order.discount_type))
        return problems

    @staticmethod
    def _coerce(order: SaleOrder) -> tuple[list[TaxableLine], Decimal]:
        lines = [
            TaxableLine(
                item_code=line.item_code,
                name=line.name,
                quantity=to_decimal(line.quantity, f"line {i} quantity"),
                unit_price=to_decimal(line.unit_price, f"line {i} unit price"),
                tax_bracket=line.tax_bracket,
            )
            for i, line in enumerate(order.lines, start=1)
        ]
        return lines, to_decimal(order.discount, "discount")

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------

    def submit(self, order: SaleOrder) -> SaleSubmissionOutcome:
        """
        Fiscalise ``order``.

        Raises:
            InvalidSaleError, AlreadySubmittedError, SubmissionInProgressError,
            LedgerUnreadableError, AcknowledgementPersistenceError.
        """
        problems = self.validate(order)
        if problems:
            logger.warning(
                "sale_rejected_invalid",
                extra={"business_key": order.business_key, "problems": problems},
            )
            raise InvalidSaleError(order.business_key, problems)

        with LogContext.bind(business_key=order.business_key, actor_id=order.cashier):
            draft: SaleDraft | None = None
            with session_scope(self._factory) as session:
                recorder = SubmissionRecorder(session, self._clock)
                existing = recorder.ensure_submittable(self.subject_type, order.business_key)
                if existing is not None:
                    record = recorder.reopen(existing)
                    logger.info(
                        "sale_replaying_stored_request",
                        extra={"reference_no": record.reference_no},
                    )
                else:
                    if order.is_reversal:
                        self._check_original_sale(session, recorder, order)
                    draft = self._draft(session, order)
                    payload = build_sale_payload(
                        self._config,
                        order,
                        draft.lines,
                        draft.breakdown,
                        draft.invoice_no,
                        draft.payment,
                        draft.moment,
                    )
                    record = recorder.open(
                        self.subject_type,
                        order.business_key,
                        str(draft.invoice_no),
                        payload,
                        actor=order.cashier,
                    )
                attempt = Attempt.from_record(record, first_attempt=existing is None)

            return self._complete(attempt, draft)

    def _check_original_sale(
        self,
        session: Session,
        recorder: SubmissionRecorder,
        order: SaleOrder,
    ) -> None:
        """A reversal must reference an invoice the Authority accepted."""
        number = order.original_invoice_no
        original = session.execute(
            select(SalesInvoice).where(SalesInvoice.invoice_no == number)
        ).scalar_one_or_none()
        if original is None:
            problem = f"original sale invoice {number} not found"
        elif not recorder.has_succeeded(self.subject_type, original.business_key):
            problem = f"original sale invoice {number} was not accepted by the Authority"
        elif original.receipt_type_code == RECEIPT_TYPE_REFUND:
            problem = f"original invoice {number} is itself a reversal"
        else:
            return
        logger.warning(
            "sale_rejected_invalid",
            extra={"business_key": order.business_key, "problems": [problem]},
        )
        raise InvalidSaleError(order.business_key, [problem])

    def _draft(self, session: Session, order: SaleOrder) -> SaleDraft:
        lines = self._resolve_lines(session, order.lines)
        taxable, discount = self._coerce(dataclasses.replace(order, lines=lines))
        breakdown = self._tax.compute_breakdown(
            taxable,
            order_discount=discount,
            discount_type=order.discount_type,
        )
        allocator = LedgerSequenceAllocator(
            session,
            item_code_prefix=self._config.item_code.prefix,
            counter_width=self._config.item_code.counter_width,
        )
        invoice_no = allocator.reserve_invoice_number()
        return SaleDraft(
            order=order,
            lines=lines,
            breakdown=breakdown,
            invoice_no=invoice_no,
            payment=resolve_payment_method(self._config, order.payment_method),
            moment=self._clock.now_in(self._config.submission.utc_offset_hours),
            receipt_type_code=RECEIPT_TYPE_REFUND if order.is_reversal else RECEIPT_TYPE_SALE,
        )

    def _resolve_lines(
        self,
        session: Session,
        lines: Sequence[SaleLineRequest],
    ) -> tuple[SaleLineRequest, ...]:
        """Fill class code, unit and bracket from the catalog where the POS left them out."""
        tables = self._config.catalog
        resolved = []
        for line in lines:
            entry = None
            if not (line.item_class_code and line.unit_code and line.tax_bracket):
                entry = self._catalog_entry(session, line.item_code)
            resolved.append(
                dataclasses.replace(
                    line,
                    quantity=to_decimal(line.quantity, "quantity"),
                    unit_price=to_decimal(line.unit_price, "unit price"),
                    item_class_code=line.item_class_code
                    or (entry.item_class_code if entry else tables.misc_class_code),
                    unit_code=line.unit_code
                    or (entry.unit_code if entry else tables.default_unit_code),
                    tax_bracket=line.tax_bracket or (entry.tax_bracket if entry else None),
                )
            )
        return tuple(resolved)

    @staticmethod
    def _catalog_entry(session: Session, item_code: str) -> CatalogItem | Ingredient | None:
        for model in (CatalogItem, Ingredient):
            entry = session.execute(
                select(model).where(model.item_code == item_code)
            ).scalar_one_or_none()
            if entry is not None:
                return entry
        return None

    # ------------------------------------------------------------------
    # Call and record
    # ------------------------------------------------------------------

    def _send(self, payload: dict[str, Any]) -> AuthorityResponse:
        return self._client.save_sale(payload)

    def _complete(self, attempt: Attempt, draft: SaleDraft | None) -> SaleSubmissionOutcome:
        with LogContext.bind(invoice_no=attempt.reference_no):
            reply = self._call(attempt)
            acknowledgement, problem = self._acknowledgement(reply)
            outcome = self._record(attempt, draft, reply, acknowledgement, problem)
            if acknowledgement is None:
                return outcome

            receipt = self._render_receipt(attempt.business_key, acknowledgement)
            stock_released = self._release_stock(attempt.payload)
            return dataclasses.replace(outcome, receipt=receipt, stock_released=stock_released)

    def _record(
        self,
        attempt: Attempt,
        draft: SaleDraft | None,
        reply: Reply,
        acknowledgement: AuthorityAcknowledgement | None,
        problem: str | None,
    ) -> SaleSubmissionOutcome:
        """Tx2: write the invoice (first attempt) and close the record."""
        response = reply.response
        try:
            with session_scope(self._factory) as session:
                recorder = SubmissionRecorder(session, self._clock)
                record = recorder.get_by_id(attempt.record_id, for_update=True)
                if draft is not None:
                    session.add(self._invoice(draft))
                if acknowledgement is not None:
                    recorder.record_success(
                        record,
                        response.result_code,
                        response.result_message,
                        response.result_date,
                        acknowledgement,
                    )
                else:
                    recorder.record_error(
                        record,
                        problem or reply.rejection_reason(),
                        result_code=response.result_code if response else None,
                        result_message=response.result_message if response else None,
                        result_date=response.result_date if response else None,
                    )
                return SaleSubmissionOutcome(
                    business_key=record.business_key,
                    reference_no=record.reference_no,
                    status=SubmissionStatus(record.status),
                    attempt_count=record.attempt_count,
                    result_code=record.result_code,
                    result_message=record.result_message,
                    error_message=record.error_message,
                    invoice_no=int(record.reference_no),
                    total_amount=round_money(Decimal(str(attempt.payload["totAmt"]))),
                    acknowledgement=acknowledgement,
                )
        except Exception as exc:
            if acknowledgement is None:
                raise
            logger.critical(
                "acknowledgement_not_persisted",
                extra={
                    "reference_no": attempt.reference_no,
                    "acknowledgement": acknowledgement.as_dict(),
                },
                exc_info=True,
            )
            raise AcknowledgementPersistenceError(
                self.subject_type.value,
                attempt.business_key,
                attempt.reference_no,
                acknowledgement.as_dict(),
                exc,
            ) from exc

    @staticmethod
    def _acknowledgement(reply: Reply) -> tuple[AuthorityAcknowledgement | None, str | None]:
        """The signed acknowledgement of an accepted reply, or why there is none."""
        if not reply.accepted:
            return None, None
        try:
            return reply.response.acknowledgement(), None
        except AuthorityProtocolError as exc:
            # Accepted but unsigned: nothing printable, so it stays retryable.
            logger.error(
                "authority_acknowledgement_incomplete",
                extra={"missing_fields": exc.missing_fields},
            )
            return None, str(exc)

    def _invoice(self, draft: SaleDraft) -> SalesInvoice:
        order = draft.order
        breakdown = draft.breakdown
        invoice = SalesInvoice(
            business_key=order.business_key,
            invoice_no=draft.invoice_no,
            original_invoice_no=order.original_invoice_no,
            receipt_type_code=draft.receipt_type_code,
            payment_method_code=draft.payment.code,
            customer_tin=order.customer.tin,
            customer_name=order.customer.name,
            customer_mobile=order.customer.mobile,
            discount_amount=breakdown.total_discount,
            total_before_discount=breakdown.total_before_discount,
            total_taxable=breakdown.total_taxable,
            total_tax=breakdown.total_tax,
            total_amount=breakdown.total_amount,
            bracket_amounts=bracket_amounts_json(breakdown),
            item_count=breakdown.item_count,
            sold_at=draft.moment,
            created_by=order.cashier,
        )
        for request, line in zip(draft.lines, breakdown.lines):
            invoice.lines.append(
                SalesInvoiceLine(
                    seq=line.seq,
                    item_code=line.item_code,
                    item_class_code=request.item_class_code,
                    name=line.name,
                    unit_code=request.unit_code,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    tax_bracket=line.tax_bracket,
                    original_amount=line.original_amount,
                    discount_rate=line.discount_rate,
                    discount_amount=line.discount_amount,
                    taxable_amount=line.taxable_amount,
                    tax_amount=line.tax_amount,
                    total_amount=line.total_amount,
                )
            )
        return invoice

    # ------------------------------------------------------------------
    # After acceptance
    # ------------------------------------------------------------------

    def _render_receipt(
        self,
        business_key: str,
        acknowledgement: AuthorityAcknowledgement,
    ) -> RenderedReceipt | None:
        """Best effort: the sale is already fiscalised; reprint_receipt can retry."""
        try:
            with session_scope(self._factory) as session:
                invoice = session.execute(
                    select(SalesInvoice).where(SalesInvoice.business_key == business_key)
                ).scalar_one_or_none()
                if invoice is None:
                    logger.error("receipt_invoice_missing")
                    return None
                return self._receipts.render_invoice(invoice, acknowledgement)
        except Exception:
            logger.exception("receipt_render_failed")
            return None

    def _release_stock(self, sale_payload: dict[str, Any]) -> bool:
        """Best effort insertStockIO; failures are logged, never raised."""
        if not self._config.submission.release_stock_on_sale:
            return False
        try:
            response = self._client.insert_stock_io(
                build_stock_release_payload(self._config, sale_payload)
            )
        except AuthorityTransportError as exc:
            logger.warning("stock_release_failed", extra={"reason": str(exc)})
            return False
        if not response.accepted:
            logger.warning(
                "stock_release_rejected",
                extra={
                    "result_code": response.result_code,
                    "result_message": response.result_message,
                },
            )
            return False
        logger.info("stock_released", extra={"item_count": len(sale_payload.get("itemList", []))})
        return True
