"""
Module: fiscal_engines
Responsibility:
    Package entrypoint that re-exports the pure calculation engines:
    pro-rata allocation, five-bracket tax, catalog code lookups and the
    fixed-width receipt layout.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import fiscal_kernel (domain, db.types, logging) and sibling
    engine modules.  MUST NOT import fiscal_services.

Invariants enforced:
    - Purity: engines never read the clock; timestamps arrive as inputs.
    - Decimal-only arithmetic for money.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Tax computation is traced via ``@traced_engine`` (FISCAL_ENGINE_TRACE).

Usage:
    from fiscal_engines.tax import TaxBracketEngine, TaxableLine
    from fiscal_engines.catalog_codes import CatalogCodeGenerator
    from fiscal_engines.receipt import ReceiptLayout, parse_receipt_summary
"""

from fiscal_engines.allocation import AllocationResult, ProRataAllocator
from fiscal_engines.catalog_codes import CatalogCodeGenerator, CatalogCodes
from fiscal_engines.receipt import (
    ReceiptBracketRow,
    ReceiptDocument,
    ReceiptLayout,
    ReceiptLine,
    build_qr_payload,
    format_amount,
    parse_receipt_summary,
)
from fiscal_engines.tax import (
    BracketAmounts,
    LineBreakdown,
    TaxableLine,
    TaxBracketEngine,
    TaxBreakdown,
    validate_lines,
)
from fiscal_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    "AllocationResult",
    "BracketAmounts",
    "CatalogCodeGenerator",
    "CatalogCodes",
    "LineBreakdown",
    "ProRataAllocator",
    "ReceiptBracketRow",
    "ReceiptDocument",
    "ReceiptLayout",
    "ReceiptLine",
    "TaxBracketEngine",
    "TaxBreakdown",
    "TaxableLine",
    "build_qr_payload",
    "compute_input_fingerprint",
    "format_amount",
    "parse_receipt_summary",
    "traced_engine",
    "validate_lines",
]
