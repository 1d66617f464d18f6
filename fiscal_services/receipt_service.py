"""
fiscal_services.receipt_service -- receipt text, PDF and QR for accepted sales.

Responsibility:
    Assembles a ReceiptDocument from a stored SalesInvoice and its signed
    acknowledgement, renders the fixed-width text with ReceiptLayout and
    draws it onto an 80 mm roll page with ReportLab, QR code included.

Architecture position:
    Services -- reads the ledger (reprints) and produces bytes.  The text
    layout itself is the pure engine in fiscal_engines.receipt.

Invariants enforced:
    - Receipts exist only for SUCCESS submissions (ReceiptNotAvailableError
      otherwise).
    - Amounts come from the stored invoice, never recomputed, so a reprint
      matches the original print.
    - The QR encodes ``<tin>+<receipt counter>+<signature>``.

Failure modes:
    - ReceiptNotAvailableError, SubmissionNotFoundError.
    - InvalidAuthorityTimestampError if the stored confirmation token is
      malformed.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from io import BytesIO

from reportlab.graphics import renderPDF
from reportlab.graphics.barcode.qr import QrCodeWidget
from reportlab.graphics.shapes import Drawing
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas
from sqlalchemy import select
from sqlalchemy.orm import Session

from fiscal_config.schema import FiscalConfiguration
from fiscal_engines.receipt import (
    ReceiptBracketRow,
    ReceiptDocument,
    ReceiptLayout,
    ReceiptLine,
)
from fiscal_kernel.domain.dtos import AuthorityAcknowledgement, SubjectType
from fiscal_kernel.exceptions import ReceiptNotAvailableError, SubmissionNotFoundError
from fiscal_kernel.logging_config import get_logger
from fiscal_kernel.models.sales_invoice import SalesInvoice
from fiscal_kernel.models.submission_record import SubmissionStatus
from fiscal_kernel.services.submission_recorder import SubmissionRecorder

logger = get_logger("services.receipt")

PAGE_WIDTH = 80 * mm
MARGIN = 4 * mm
FONT_NAME = "Courier"
FONT_SIZE = 7
LINE_HEIGHT = 8.5
QR_SIZE = 32 * mm


@dataclass(frozen=True)
class RenderedReceipt:
    text: str
    pdf_bytes: bytes
    qr_payload: str


class ReceiptService:
    """
    Renders receipts for accepted sales.

    Usage:
        service = ReceiptService(config)
        rendered = service.render_invoice(invoice, record.acknowledgement)
        rendered = service.reprint(session, "order-17")
    """

    def __init__(self, config: FiscalConfiguration, layout: ReceiptLayout | None = None):
        self._config = config
        self._layout = layout or ReceiptLayout()

    # ------------------------------------------------------------------
    # Document assembly
    # ------------------------------------------------------------------

    def payment_label(self, payment_code: str) -> str:
        for method in self._config.payment_methods:
            if method.code == payment_code:
                return method.label
        return payment_code

    def build_document(
        self,
        invoice: SalesInvoice,
        acknowledgement: AuthorityAcknowledgement,
    ) -> ReceiptDocument:
        business = self._config.business
        stored = invoice.bracket_amounts or {}
        rows = []
        for bracket in self._config.tax_brackets:
            amounts = stored.get(bracket.code, {})
            rows.append(
                ReceiptBracketRow(
                    code=bracket.code,
                    display=bracket.display,
                    taxable_amount=Decimal(amounts.get("taxable", "0")),
                    tax_amount=Decimal(amounts.get("tax", "0")),
                )
            )
        lines = tuple(
            ReceiptLine(
                name=line.name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                original_amount=line.original_amount,
                tax_bracket=line.tax_bracket,
                discount_rate=line.discount_rate,
                discount_amount=line.discount_amount,
            )
            for line in sorted(invoice.lines, key=lambda l: l.seq)
        )
        return ReceiptDocument(
            business_name=business.name,
            business_tin=business.tin,
            business_address=business.address,
            commercial_message=business.commercial_message,
            closing_message=business.closing_message,
            invoice_no=invoice.invoice_no,
            lines=lines,
            brackets=tuple(rows),
            total_before_discount=invoice.total_before_discount,
            total_discount=invoice.discount_amount,
            total_taxable=invoice.total_taxable,
            total_tax=invoice.total_tax,
            total_amount=invoice.total_amount,
            payment_label=self.payment_label(invoice.payment_method_code),
            acknowledgement=acknowledgement,
            buyer_tin=invoice.customer_tin,
        )

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def render(self, document: ReceiptDocument) -> RenderedReceipt:
        text = self._layout.render(document)
        qr_payload = document.qr_payload
        pdf_bytes = self.render_pdf(text, qr_payload)
        logger.info(
            "receipt_rendered",
            extra={
                "invoice_no": document.invoice_no,
                "receipt_counter": document.acknowledgement.receipt_counter,
                "line_count": document.item_count,
            },
        )
        return RenderedReceipt(text=text, pdf_bytes=pdf_bytes, qr_payload=qr_payload)

    def render_invoice(
        self,
        invoice: SalesInvoice,
        acknowledgement: AuthorityAcknowledgement,
    ) -> RenderedReceipt:
        return self.render(self.build_document(invoice, acknowledgement))

    def render_pdf(self, text: str, qr_payload: str) -> bytes:
        """One roll page: the text in Courier, then the QR code centred below it."""
        rows = text.splitlines()
        height = 2 * MARGIN + len(rows) * LINE_HEIGHT + QR_SIZE + LINE_HEIGHT

        buffer = BytesIO()
        pdf = canvas.Canvas(buffer, pagesize=(PAGE_WIDTH, height), invariant=1)
        pdf.setTitle("Tax Invoice")
        pdf.setFont(FONT_NAME, FONT_SIZE)

        y = height - MARGIN - FONT_SIZE
        for row in rows:
            pdf.drawString(MARGIN, y, row)
            y -= LINE_HEIGHT

        widget = QrCodeWidget(qr_payload)
        x1, y1, x2, y2 = widget.getBounds()
        drawing = Drawing(
            QR_SIZE,
            QR_SIZE,
            transform=[QR_SIZE / (x2 - x1), 0, 0, QR_SIZE / (y2 - y1), 0, 0],
        )
        drawing.add(widget)
        renderPDF.draw(drawing, pdf, (PAGE_WIDTH - QR_SIZE) / 2, MARGIN)

        pdf.showPage()
        pdf.save()
        return buffer.getvalue()

    # ------------------------------------------------------------------
    # Reprint
    # ------------------------------------------------------------------

    def reprint(self, session: Session, business_key: str) -> RenderedReceipt:
        """
        Re-render the receipt of an accepted sale from stored data.

        Raises:
            SubmissionNotFoundError: the sale was never submitted.
            ReceiptNotAvailableError: the sale is pending or errored.
        """
        record = SubmissionRecorder(session).get(SubjectType.SALE, business_key)
        if record is None:
            raise SubmissionNotFoundError(SubjectType.SALE.value, business_key)
        acknowledgement = record.acknowledgement
        if record.status != SubmissionStatus.SUCCESS or acknowledgement is None:
            raise ReceiptNotAvailableError(business_key, record.status)

        invoice = session.execute(
            select(SalesInvoice).where(SalesInvoice.business_key == business_key)
        ).scalar_one_or_none()
        if invoice is None:
            raise ReceiptNotAvailableError(business_key, record.status)

        logger.info("receipt_reprint_requested", extra={"business_key": business_key})
        return self.render_invoice(invoice, acknowledgement)
