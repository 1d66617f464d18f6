"""
Module: fiscal_engines.receipt
Responsibility:
    Render the Authority-mandated receipt as fixed-width text and re-read
    its summary rows.  The PDF and QR image are produced from this text by
    fiscal_services.receipt_service; this module stays free of I/O.

Architecture position:
    Engines -- pure formatting.  Input is a ReceiptDocument assembled by
    the services layer from a successful submission (fresh or stored).

Layout, top to bottom:
    header (business name, address, PIN), TAX INVOICE banner, commercial
    message, buyer PIN (if any), one block per line with its discount
    narration, totals, payment line, item count, A..E tax table, SCU
    information, TIS receipt number, closing message.

Invariants enforced:
    - Every amount has exactly two decimals and thousands separators.
    - Date and time come from slicing the 14-digit Authority token, never
      from a locale-aware parser.
    - The tax table always lists A, B, C, D, E in that order.
    - parse_receipt_summary(render(doc)) returns (doc.total_amount,
      doc.item_count).
"""

from __future__ import annotations

import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal

from fiscal_kernel.db.types import ZERO, round_money
from fiscal_kernel.domain.dtos import AuthorityAcknowledgement
from fiscal_kernel.domain.timestamps import parse_authority_timestamp

RECEIPT_WIDTH = 48
LABEL_WIDTH = 28
RATE_WIDTH = 10

TOTAL_BEFORE_DISCOUNT = "TOTAL BEFORE DISCOUNT"
TOTAL_DISCOUNT = "TOTAL DISCOUNT AWARDED"
SUB_TOTAL = "SUB TOTAL"
VAT = "VAT"
TOTAL = "TOTAL"
ITEMS_NUMBER = "ITEMS NUMBER"


def format_amount(value: Decimal) -> str:
    """``1234.5`` -> ``"1,234.50"``."""
    return f"{round_money(value):,.2f}"


def format_quantity(value: Decimal) -> str:
    """Quantities print without trailing zeros: 2, 1.5, 0.25."""
    normalized = value.normalize()
    if normalized == normalized.to_integral_value():
        return str(normalized.quantize(Decimal("1")))
    return format(normalized, "f")


def build_qr_payload(tin: str, receipt_counter: int, signature: str) -> str:
    """Verification string encoded in the receipt QR code."""
    return f"{tin}+{receipt_counter}+{signature}"


@dataclass(frozen=True, slots=True)
class ReceiptLine:
    name: str
    quantity: Decimal
    unit_price: Decimal
    original_amount: Decimal
    tax_bracket: str
    discount_rate: Decimal | None
    discount_amount: Decimal


@dataclass(frozen=True, slots=True)
class ReceiptBracketRow:
    code: str
    display: str  # "16%", "EX", ...
    taxable_amount: Decimal
    tax_amount: Decimal

    @property
    def label(self) -> str:
        return f"{self.code}-{self.display}"


@dataclass(frozen=True, slots=True)
class ReceiptDocument:
    """Everything printed on one receipt."""

    business_name: str
    business_tin: str
    business_address: str
    commercial_message: str
    closing_message: str
    invoice_no: int
    lines: tuple[ReceiptLine, ...]
    brackets: tuple[ReceiptBracketRow, ...]
    total_before_discount: Decimal
    total_discount: Decimal
    total_taxable: Decimal
    total_tax: Decimal
    total_amount: Decimal
    payment_label: str
    acknowledgement: AuthorityAcknowledgement
    buyer_tin: str | None = None

    @property
    def item_count(self) -> int:
        return len(self.lines)

    @property
    def qr_payload(self) -> str:
        return build_qr_payload(
            self.business_tin,
            self.acknowledgement.receipt_counter,
            self.acknowledgement.signature,
        )


class ReceiptLayout:
    """Fixed-width receipt renderer."""

    def __init__(self, width: int = RECEIPT_WIDTH, label_width: int = LABEL_WIDTH):
        if label_width >= width:
            raise ValueError("label_width must be smaller than width")
        self.width = width
        self.label_width = label_width

    def _row(self, label: str, value: str) -> str:
        label = label[: self.label_width].ljust(self.label_width)
        return label + value.rjust(self.width - self.label_width)

    def _center(self, text: str) -> list[str]:
        return [part.center(self.width).rstrip() for part in self._wrap(text)]

    def _wrap(self, text: str) -> list[str]:
        out: list[str] = []
        for paragraph in text.splitlines() or [""]:
            out.extend(textwrap.wrap(paragraph, self.width) or [""])
        return out

    def _rule(self, char: str = "-") -> str:
        return char * self.width

    def render(self, doc: ReceiptDocument) -> str:
        stamp = parse_authority_timestamp(doc.acknowledgement.confirmed_at)
        ack = doc.acknowledgement
        out: list[str] = []

        # Header
        out.extend(self._center(doc.business_name))
        if doc.business_address:
            out.extend(self._center(doc.business_address))
        out.extend(self._center(f"PIN: {doc.business_tin}"))
        out.append(self._rule("="))
        out.extend(self._center("TAX INVOICE"))
        out.append(self._rule("="))
        if doc.commercial_message:
            out.extend(self._center(doc.commercial_message))
        if doc.buyer_tin:
            out.append(self._row("Buyer PIN:", doc.buyer_tin))
        out.append(self._rule())

        # Items
        for line in doc.lines:
            out.extend(self._wrap(line.name))
            out.append(
                self._row(
                    f"{format_amount(line.unit_price)} x {format_quantity(line.quantity)}",
                    f"{format_amount(line.original_amount)} {line.tax_bracket}",
                )
            )
            if line.discount_amount > ZERO:
                rate = line.discount_rate if line.discount_rate is not None else ZERO
                out.append(
                    f"  Discount: {format_amount(rate)}% ({format_amount(line.discount_amount)})"
                )
        out.append(self._rule())

        # Totals
        out.append(self._row(TOTAL_BEFORE_DISCOUNT, format_amount(doc.total_before_discount)))
        if doc.total_discount > ZERO:
            out.append(self._row(TOTAL_DISCOUNT, format_amount(doc.total_discount)))
        out.append(self._row(SUB_TOTAL, format_amount(doc.total_taxable)))
        out.append(self._row(VAT, format_amount(doc.total_tax)))
        out.append(self._row(TOTAL, format_amount(doc.total_amount)))
        out.append(self._rule())
        out.append(self._row(doc.payment_label, format_amount(doc.total_amount)))
        out.append(self._row(ITEMS_NUMBER, str(doc.item_count)))
        out.append(self._rule())

        # Tax table
        third = (self.width - RATE_WIDTH) // 2
        out.append("Rate".ljust(RATE_WIDTH) + "Taxable Amount".rjust(third) + "VAT".rjust(third))
        for row in doc.brackets:
            out.append(
                row.label[:RATE_WIDTH].ljust(RATE_WIDTH)
                + format_amount(row.taxable_amount).rjust(third)
                + format_amount(row.tax_amount).rjust(third)
            )
        out.append(self._rule())

        # SCU information
        out.extend(self._center("SCU INFORMATION"))
        out.append(self._row("Date:", stamp.display_date))
        out.append(self._row("Time:", stamp.display_time))
        out.append(self._row("SCU ID:", ack.device_id or ""))
        out.append(self._row("CU INVOICE NO.:", f"{ack.receipt_counter}/{doc.invoice_no}"))
        out.append("Internal Data:")
        out.extend(self._chunk(ack.internal_data))
        out.append("Receipt Signature:")
        out.extend(self._chunk(ack.signature))
        out.append(self._rule())

        out.extend(self._center("TIS INFORMATION"))
        out.append(self._row("RECEIPT NUMBER:", str(ack.total_receipt_counter)))
        out.append(self._rule())
        out.extend(self._center(doc.closing_message))
        return "\n".join(out) + "\n"

    def _chunk(self, blob: str) -> list[str]:
        # Opaque tokens have no spaces to wrap on; cut them at the width.
        blob = blob or ""
        return [blob[i : i + self.width] for i in range(0, len(blob), self.width)] or [""]


def _parse_amount(text: str) -> Decimal:
    return Decimal(text.strip().replace(",", ""))


def parse_receipt_summary(
    text: str,
    label_width: int = LABEL_WIDTH,
) -> tuple[Decimal, int]:
    """
    Read (grand total, item count) back from rendered receipt text.

    Scanning starts at the TOTAL BEFORE DISCOUNT row so item names that
    happen to read "TOTAL" cannot be mistaken for the summary.

    Raises:
        ValueError: if either summary row is missing.
    """
    lines: Sequence[str] = text.splitlines()
    start = next(
        (i for i, line in enumerate(lines) if line[:label_width].rstrip() == TOTAL_BEFORE_DISCOUNT),
        None,
    )
    if start is None:
        raise ValueError("receipt has no totals section")

    total: Decimal | None = None
    count: int | None = None
    for line in lines[start:]:
        label = line[:label_width].rstrip()
        if label == TOTAL and total is None:
            total = _parse_amount(line[label_width:])
        elif label == ITEMS_NUMBER and count is None:
            count = int(line[label_width:].strip())
    if total is None or count is None:
        raise ValueError("receipt is missing the TOTAL or ITEMS NUMBER row")
    return total, count
