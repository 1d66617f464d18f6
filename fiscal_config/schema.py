"""
FiscalConfiguration schema.

Human-authored lookup tables (brackets, classification codes, unit
vocabulary, payment methods) plus the Authority endpoint and business
identity.  The loader parses YAML into these frozen types; engines and
services receive them by constructor injection and never read YAML.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal

# ---------------------------------------------------------------------------
# Tax brackets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TaxBracketDef:
    """One of the five statutory VAT treatment classes."""

    code: str  # A..E
    rate: Decimal  # fraction, 0.16 for 16%
    label: str  # "Standard"
    display: str  # "16%" as printed in the receipt tax table


# ---------------------------------------------------------------------------
# Catalog vocabulary
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CatalogTables:
    """Static lookups behind the catalog code generator."""

    category_class_codes: Mapping[str, str]
    class_code_brackets: Mapping[str, str]
    unit_synonyms: Mapping[str, str]
    unit_codes: frozenset[str]
    misc_class_code: str
    default_unit_code: str = "U"
    default_bracket: str = "B"


@dataclass(frozen=True)
class ItemCodeFormat:
    """Layout of ``<country><type><packaging><unit><counter>`` item codes."""

    country: str = "KE"
    item_type: str = "2"
    packaging: str = "NT"
    counter_width: int = 7

    @property
    def prefix(self) -> str:
        return f"{self.country}{self.item_type}{self.packaging}"


# ---------------------------------------------------------------------------
# Authority and business
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuthorityEndpoint:
    """Where and as whom the engine talks to the Authority."""

    base_url: str
    tin: str
    branch_id: str = "00"
    cmc_key: str = field(default="", repr=False)
    device_id: str = ""
    timeout_seconds: float = 30.0


@dataclass(frozen=True)
class BusinessIdentity:
    """Seller details printed on every receipt."""

    name: str
    tin: str
    address: str = ""
    commercial_message: str = ""
    closing_message: str = "THANK YOU\nWE LOOK FORWARD TO SERVE YOU AGAIN"
    registrant_id: str = "admin"
    registrant_name: str = "admin"


@dataclass(frozen=True)
class PaymentMethodDef:
    code: str  # Authority pmtTyCd, "01".."07"
    label: str  # printed on the receipt
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class SubmissionPolicy:
    """Knobs for the submit/retry state machine."""

    max_attempts: int = 10
    release_stock_on_sale: bool = True
    utc_offset_hours: int = 3  # Authority timestamps are East Africa Time


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FiscalConfiguration:
    """Root of the fiscal configuration tree."""

    config_id: str
    version: int
    tax_brackets: tuple[TaxBracketDef, ...]
    catalog: CatalogTables
    item_code: ItemCodeFormat
    authority: AuthorityEndpoint
    business: BusinessIdentity
    payment_methods: tuple[PaymentMethodDef, ...]
    default_payment_code: str = "01"
    submission: SubmissionPolicy = field(default_factory=SubmissionPolicy)
    currency: str = "KES"
    checksum: str = ""

    def bracket(self, code: str) -> TaxBracketDef:
        for bracket in self.tax_brackets:
            if bracket.code == code:
                return bracket
        raise KeyError(f"Unknown tax bracket: {code}")
