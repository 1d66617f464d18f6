"""
Module: fiscal_kernel.models.purchase_invoice
Responsibility: ORM persistence for supplier invoices reported as purchases.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - purchase_no is unique and, once written, never changes.
    - business_key (``<supplier tin>:<supplier invoice no>``) is unique, so
      one supplier invoice is reported once.
    - Lines are kept on the submission record's stored request; this row
      holds the totals the Authority was sent.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_kernel.db.base import TrackedBase


class PurchaseInvoice(TrackedBase):
    """One purchase reported to the Authority."""

    __tablename__ = "purchase_invoices"

    business_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    purchase_no: Mapped[int] = mapped_column(nullable=False, unique=True)

    supplier_tin: Mapped[str] = mapped_column(String(20), nullable=False)
    supplier_name: Mapped[str] = mapped_column(String(100), nullable=False)
    supplier_branch_id: Mapped[str] = mapped_column(String(5), nullable=False)
    supplier_invoice_no: Mapped[int] = mapped_column(nullable=False)

    payment_method_code: Mapped[str] = mapped_column(String(2), nullable=False)

    total_taxable: Mapped[Decimal] = mapped_column(nullable=False)
    total_tax: Mapped[Decimal] = mapped_column(nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)

    bracket_amounts: Mapped[dict] = mapped_column(JSON, nullable=False)

    item_count: Mapped[int] = mapped_column(Integer, nullable=False)

    purchased_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<PurchaseInvoice {self.purchase_no} {self.business_key}>"
