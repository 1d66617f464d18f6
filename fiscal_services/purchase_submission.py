"""
fiscal_services.purchase_submission -- report supplier invoices as purchases.

Responsibility:
    Validates a purchase, computes its bracket breakdown with the same tax
    engine as sales, reserves a purchase number, sends insertTrnsPurchase
    and stores the purchase once the Authority has answered.

Architecture position:
    Services -- orchestrates the tax engine (engines), the sequence
    allocator and submission recorder (kernel), and the Authority client.

Transaction boundaries:
    Tx1  ensure_submittable -> breakdown -> reserve purchase number -> open
         PENDING record.  Committed before the call.
    --   insertTrnsPurchase
    Tx2  PurchaseInvoice insert (first attempt) and SUCCESS/ERROR.

Invariants enforced:
    - One successful report per supplier invoice: the submission key is
      ``<supplier tin>:<supplier invoice no>``.
    - Purchase numbers live in their own namespace and are burned by
      rejections like invoice numbers.
    - A retry sends the stored request unchanged.

Failure modes:
    - InvalidPurchaseError before any reservation.
    - AlreadySubmittedError, SubmissionInProgressError for the same key.
    - LedgerUnreadableError, SequenceContentionError from the allocator.
    - AcknowledgementPersistenceError: accepted but Tx2 failed.  Carries the
      purchase and supplier numbers and the Authority result.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from fiscal_config.schema import FiscalConfiguration, PaymentMethodDef
from fiscal_engines.tax import TaxableLine, TaxBracketEngine, TaxBreakdown, validate_lines
from fiscal_kernel.db.engine import session_scope
from fiscal_kernel.db.types import round_money, to_decimal
from fiscal_kernel.domain.clock import Clock
from fiscal_kernel.domain.dtos import PurchaseOrder, SaleLineRequest, SubjectType
from fiscal_kernel.exceptions import AcknowledgementPersistenceError, InvalidPurchaseError
from fiscal_kernel.logging_config import LogContext, get_logger
from fiscal_kernel.models.purchase_invoice import PurchaseInvoice
from fiscal_kernel.models.submission_record import SubmissionStatus
from fiscal_kernel.services.sequence_service import LedgerSequenceAllocator
from fiscal_kernel.services.submission_recorder import SubmissionRecorder
from fiscal_services._submission import Attempt, Reply, SubmissionFlow
from fiscal_services.authority_client import AuthorityClient, AuthorityResponse
from fiscal_services.outcomes import PurchaseSubmissionOutcome
from fiscal_services.payloads import build_purchase_payload, resolve_payment_method
from fiscal_services.sale_submission import bracket_amounts_json

logger = get_logger("services.purchase_submission")


@dataclass(frozen=True)
class PurchaseDraft:
    order: PurchaseOrder
    breakdown: TaxBreakdown
    purchase_no: int
    payment: PaymentMethodDef
    moment: datetime


class PurchaseSubmissionService(SubmissionFlow):
    """
    Reports purchases.

    Usage:
        service = PurchaseSubmissionService(factory, config, client, clock)
        outcome = service.submit(PurchaseOrder(Supplier("P051234567X", "Unga Ltd"), 4471, lines))
        outcome.purchase_no   # 1
    """

    subject_type = SubjectType.PURCHASE

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: FiscalConfiguration,
        client: AuthorityClient,
        clock: Clock | None = None,
        tax_engine: TaxBracketEngine | None = None,
    ):
        super().__init__(session_factory, config, client, clock)
        self._tax = tax_engine or TaxBracketEngine(
            config.tax_brackets, default_bracket=config.catalog.default_bracket
        )

    def validate(self, order: PurchaseOrder) -> list[str]:
        problems: list[str] = []
        supplier = order.supplier
        if not supplier.tin or not supplier.tin.strip():
            problems.append("supplier TIN is required")
        if not supplier.name or not supplier.name.strip():
            problems.append("supplier name is required")
        if not isinstance(order.supplier_invoice_no, int) or order.supplier_invoice_no <= 0:
            problems.append("supplier invoice number must be a positive integer")
        try:
            lines, discount = self._coerce(order)
        except (TypeError, ValueError) as exc:
            problems.append(str(exc))
            return problems
        problems.extend(validate_lines(lines, discount, order.discount_type))
        return problems

    @staticmethod
    def _coerce(order: PurchaseOrder) -> tuple[list[TaxableLine], Decimal]:
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

    def submit(self, order: PurchaseOrder) -> PurchaseSubmissionOutcome:
        """
        Report ``order`` to the Authority.

        An errored purchase for the same supplier invoice is replayed with
        its stored request, so it keeps its purchase number.
        """
        problems = self.validate(order)
        key = order.business_key
        if problems:
            logger.warning(
                "purchase_rejected_invalid",
                extra={"business_key": key, "problems": problems},
            )
            raise InvalidPurchaseError(key, problems)

        with LogContext.bind(business_key=key, actor_id=order.registrant):
            draft: PurchaseDraft | None = None
            with session_scope(self._factory) as session:
                recorder = SubmissionRecorder(session, self._clock)
                existing = recorder.ensure_submittable(self.subject_type, key)
                if existing is not None:
                    record = recorder.reopen(existing)
                else:
                    draft = self._draft(session, order)
                    payload = build_purchase_payload(
                        self._config,
                        order,
                        self._lines(order),
                        draft.breakdown,
                        draft.purchase_no,
                        draft.payment,
                        draft.moment,
                    )
                    record = recorder.open(
                        self.subject_type,
                        key,
                        str(draft.purchase_no),
                        payload,
                        actor=order.registrant,
                    )
                attempt = Attempt.from_record(record, first_attempt=existing is None)

            return self._complete(attempt, draft)

    def _draft(self, session: Session, order: PurchaseOrder) -> PurchaseDraft:
        taxable, discount = self._coerce(order)
        breakdown = self._tax.compute_breakdown(
            taxable, order_discount=discount, discount_type=order.discount_type
        )
        allocator = LedgerSequenceAllocator(
            session,
            item_code_prefix=self._config.item_code.prefix,
            counter_width=self._config.item_code.counter_width,
        )
        return PurchaseDraft(
            order=order,
            breakdown=breakdown,
            purchase_no=allocator.reserve_purchase_number(),
            payment=resolve_payment_method(self._config, order.payment_method),
            moment=self._clock.now_in(self._config.submission.utc_offset_hours),
        )

    def _lines(self, order: PurchaseOrder) -> tuple[SaleLineRequest, ...]:
        """Configured class and unit codes where the supplier invoice gave none."""
        tables = self._config.catalog
        return tuple(
            dataclasses.replace(
                line,
                item_class_code=line.item_class_code or tables.misc_class_code,
                unit_code=line.unit_code or tables.default_unit_code,
            )
            for line in order.lines
        )

    def _send(self, payload: dict[str, Any]) -> AuthorityResponse:
        return self._client.save_purchase(payload)

    def _complete(self, attempt: Attempt, draft: PurchaseDraft | None) -> PurchaseSubmissionOutcome:
        with LogContext.bind(reference_no=attempt.reference_no):
            reply = self._call(attempt)
            outcome = self._record(attempt, draft, reply)
            logger.info(
                "purchase_submission_completed",
                extra={"status": outcome.status.value, "attempt": outcome.attempt_count},
            )
            return outcome

    def _record(
        self,
        attempt: Attempt,
        draft: PurchaseDraft | None,
        reply: Reply,
    ) -> PurchaseSubmissionOutcome:
        """Tx2: write the purchase (first attempt) and close the record."""
        payload = attempt.payload
        response = reply.response
        try:
            with session_scope(self._factory) as session:
                recorder = SubmissionRecorder(session, self._clock)
                record = recorder.get_by_id(attempt.record_id, for_update=True)
                if draft is not None:
                    session.add(self._purchase(draft, attempt.business_key))
                if reply.accepted:
                    recorder.record_success(
                        record, response.result_code, response.result_message, response.result_date
                    )
                else:
                    recorder.record_error(
                        record,
                        reply.rejection_reason(),
                        result_code=response.result_code if response else None,
                        result_message=response.result_message if response else None,
                        result_date=response.result_date if response else None,
                    )
                return PurchaseSubmissionOutcome(
                    business_key=record.business_key,
                    reference_no=record.reference_no,
                    status=SubmissionStatus(record.status),
                    attempt_count=record.attempt_count,
                    result_code=record.result_code,
                    result_message=record.result_message,
                    error_message=record.error_message,
                    purchase_no=int(record.reference_no),
                    supplier_tin=payload["spplrTin"],
                    supplier_invoice_no=payload["spplrInvcNo"],
                    total_amount=round_money(Decimal(str(payload["totAmt"]))),
                )
        except Exception as exc:
            if not reply.accepted:
                raise
            acknowledgement = {
                "invcNo": payload["invcNo"],
                "spplrTin": payload["spplrTin"],
                "spplrInvcNo": payload["spplrInvcNo"],
                "resultCd": response.result_code,
                "resultDt": response.result_date,
            }
            logger.critical(
                "acknowledgement_not_persisted",
                extra={"reference_no": attempt.reference_no, "acknowledgement": acknowledgement},
                exc_info=True,
            )
            raise AcknowledgementPersistenceError(
                self.subject_type.value,
                attempt.business_key,
                attempt.reference_no,
                acknowledgement,
                exc,
            ) from exc

    @staticmethod
    def _purchase(draft: PurchaseDraft, business_key: str) -> PurchaseInvoice:
        order = draft.order
        breakdown = draft.breakdown
        return PurchaseInvoice(
            business_key=business_key,
            purchase_no=draft.purchase_no,
            supplier_tin=order.supplier.tin,
            supplier_name=order.supplier.name,
            supplier_branch_id=order.supplier.branch_id,
            supplier_invoice_no=order.supplier_invoice_no,
            payment_method_code=draft.payment.code,
            total_taxable=breakdown.total_taxable,
            total_tax=breakdown.total_tax,
            total_amount=breakdown.total_amount,
            bracket_amounts=bracket_amounts_json(breakdown),
            item_count=breakdown.item_count,
            purchased_at=draft.moment,
            created_by=order.registrant,
        )
