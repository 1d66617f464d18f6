"""
Module: fiscal_kernel.models.sales_invoice
Responsibility: ORM persistence for fiscalised sales and their lines.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - invoice_no is unique and, once written, never changes.
    - business_key is unique: one invoice per caller order.
    - total_amount == sum(line.total_amount) and
      total_tax == sum of the five bracket tax amounts, both to the cent.
      The tax engine guarantees this; the rows store its output verbatim.
    - The invoice row is written only after the Authority has answered,
      whether the answer was acceptance or rejection.

Audit relevance:
    bracket_amounts keeps the per-bracket rate, taxable amount and tax
    amount exactly as submitted, so receipts and reports never recompute
    tax from current catalog data.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fiscal_kernel.db.base import Base, TrackedBase, UUIDString


class SalesInvoice(TrackedBase):
    """One fiscalised sale (or reversal)."""

    __tablename__ = "sales_invoices"

    business_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    invoice_no: Mapped[int] = mapped_column(nullable=False, unique=True)

    # 0 for a new sale, the reversed invoice for a refund
    original_invoice_no: Mapped[int] = mapped_column(nullable=False, default=0)

    receipt_type_code: Mapped[str] = mapped_column(String(1), nullable=False)

    payment_method_code: Mapped[str] = mapped_column(String(2), nullable=False)

    customer_tin: Mapped[str | None] = mapped_column(String(20), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    customer_mobile: Mapped[str | None] = mapped_column(String(20), nullable=True)

    discount_amount: Mapped[Decimal] = mapped_column(nullable=False)

    total_before_discount: Mapped[Decimal] = mapped_column(nullable=False)
    total_taxable: Mapped[Decimal] = mapped_column(nullable=False)
    total_tax: Mapped[Decimal] = mapped_column(nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)

    # {"A": {"rate": "0.00", "taxable": "44.00", "tax": "0.00"}, ...}
    bracket_amounts: Mapped[dict] = mapped_column(JSON, nullable=False)

    item_count: Mapped[int] = mapped_column(Integer, nullable=False)

    sold_at: Mapped[datetime] = mapped_column(nullable=False)

    lines: Mapped[list["SalesInvoiceLine"]] = relationship(
        back_populates="invoice",
        order_by="SalesInvoiceLine.seq",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<SalesInvoice {self.invoice_no} {self.business_key}>"


class SalesInvoiceLine(Base):
    """One priced, discounted and taxed line of an invoice."""

    __tablename__ = "sales_invoice_lines"

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("sales_invoices.id"), nullable=False,
    )

    seq: Mapped[int] = mapped_column(Integer, nullable=False)

    item_code: Mapped[str] = mapped_column(String(30), nullable=False)
    item_class_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    unit_code: Mapped[str] = mapped_column(String(5), nullable=False)

    quantity: Mapped[Decimal] = mapped_column(nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(nullable=False)
    tax_bracket: Mapped[str] = mapped_column(String(1), nullable=False)

    original_amount: Mapped[Decimal] = mapped_column(nullable=False)
    # Null when the line has no original amount to take a rate of
    discount_rate: Mapped[Decimal | None] = mapped_column(nullable=True)
    discount_amount: Mapped[Decimal] = mapped_column(nullable=False)
    taxable_amount: Mapped[Decimal] = mapped_column(nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)

    invoice: Mapped[SalesInvoice] = relationship(back_populates="lines")
