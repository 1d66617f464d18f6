"""
Module: fiscal_engines.catalog_codes
Responsibility:
    Map free-text catalog data onto the Authority's closed vocabularies:
    category -> item classification code, classification code -> tax
    bracket, free-text unit -> unit code.

Architecture position:
    Engines -- pure lookups over tables injected at construction.

Invariants enforced:
    - Lookups are case-insensitive and ignore surrounding/repeated
      whitespace.
    - Every lookup has a fallback: unknown category -> miscellaneous class
      code; unknown or blank unit -> default unit code; unknown class
      code -> default bracket (B).
    - ``normalize_unit`` is idempotent: a unit code normalizes to itself.
    - ``classify`` and ``tax_bracket_for`` read the same validated tables,
      so a category always lands on a class code with a known bracket.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fiscal_config.schema import CatalogTables


def _fold(text: str) -> str:
    return " ".join(text.split()).lower()


@dataclass(frozen=True, slots=True)
class CatalogCodes:
    """Authority codes derived for one catalog entry."""

    item_class_code: str
    tax_bracket: str
    unit_code: str


class CatalogCodeGenerator:
    """Table-driven classification of catalog entries."""

    def __init__(self, tables: CatalogTables):
        self._tables = tables

    @property
    def unit_codes(self) -> frozenset[str]:
        return self._tables.unit_codes

    def classify(self, category: str | None) -> str:
        """Category text -> class code; unknown -> miscellaneous."""
        if not category or not category.strip():
            return self._tables.misc_class_code
        return self._tables.category_class_codes.get(
            _fold(category), self._tables.misc_class_code
        )

    def tax_bracket_for(self, class_code: str | None) -> str:
        """Class code -> bracket letter; unknown -> default bracket."""
        if not class_code:
            return self._tables.default_bracket
        return self._tables.class_code_brackets.get(
            class_code.strip(), self._tables.default_bracket
        )

    def normalize_unit(self, unit: str | None) -> str:
        """Free-text unit -> unit code; unknown or blank -> default unit."""
        if not unit or not unit.strip():
            return self._tables.default_unit_code
        candidate = unit.strip().upper()
        if candidate in self._tables.unit_codes:
            return candidate
        return self._tables.unit_synonyms.get(_fold(unit), self._tables.default_unit_code)

    def is_known_unit(self, unit: str | None) -> bool:
        """True if ``unit`` resolves without falling back to the default."""
        if not unit or not unit.strip():
            return False
        return (
            unit.strip().upper() in self._tables.unit_codes
            or _fold(unit) in self._tables.unit_synonyms
        )

    def derive(self, category: str | None, unit: str | None) -> CatalogCodes:
        class_code = self.classify(category)
        return CatalogCodes(
            item_class_code=class_code,
            tax_bracket=self.tax_bracket_for(class_code),
            unit_code=self.normalize_unit(unit),
        )
