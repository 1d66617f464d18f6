"""
Module: fiscal_kernel.models.catalog
Responsibility: ORM persistence for catalog entries that carry
    Authority-issued codes.  Sellable products and kitchen ingredients are
    kept in separate tables; both hold item codes drawn from the same
    unit-scoped namespaces, so the sequence allocator scans both.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - external_id (the caller's id) is unique per table.
    - item_code is unique per table; the allocator keeps it unique across
      tables per unit namespace.
    - item_class_code and tax_bracket are written together by the
      registration flow, from the same configuration tables.
    - Rows are never deleted (db/immutability.py).
"""

from decimal import Decimal

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_kernel.db.base import TrackedBase


class CatalogEntryMixin:
    """Columns shared by every table that holds Authority item codes."""

    external_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    category: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Free text as entered ("kgs", "Bottle")
    unit: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Authority unit code ("KG", "NO")
    unit_code: Mapped[str] = mapped_column(String(5), nullable=False)

    cost: Mapped[Decimal] = mapped_column(nullable=False)

    item_code: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)

    item_class_code: Mapped[str] = mapped_column(String(10), nullable=False)

    tax_bracket: Mapped[str] = mapped_column(String(1), nullable=False)


class CatalogItem(CatalogEntryMixin, TrackedBase):
    """A sellable product or recipe."""

    __tablename__ = "catalog_items"

    def __repr__(self) -> str:
        return f"<CatalogItem {self.external_id} {self.item_code}>"


class Ingredient(CatalogEntryMixin, TrackedBase):
    """A stock ingredient registered for purchase and stock movements."""

    __tablename__ = "ingredients"

    def __repr__(self) -> str:
        return f"<Ingredient {self.external_id} {self.item_code}>"
