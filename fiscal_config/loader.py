"""
Configuration Loader (``fiscal_config.loader``).

Responsibility
--------------
Loads the fiscal YAML file and parses it into typed
``fiscal_config.schema`` dataclass instances.  Runtime callers go through
``fiscal_config.get_active_config()``; tests call ``load_configuration``
directly with substituted tables.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass; every mapping is read-only.
* Category and synonym keys are case-folded and trimmed at parse time so
  lookups are case-insensitive.
* ``compute_checksum`` gives a deterministic SHA-256 identity for the
  tables, logged whenever configuration is activated.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Non-numeric rates  -> ``decimal.InvalidOperation`` propagates.
"""

from __future__ import annotations

import hashlib
import json
import os
from collections.abc import Mapping
from decimal import Decimal
from pathlib import Path
from types import MappingProxyType
from typing import Any

import yaml

from fiscal_config.schema import (
    AuthorityEndpoint,
    BusinessIdentity,
    CatalogTables,
    FiscalConfiguration,
    ItemCodeFormat,
    PaymentMethodDef,
    SubmissionPolicy,
    TaxBracketDef,
)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "fiscal.yaml"

# Environment variables that override the authority section.
ENV_OVERRIDES: dict[str, str] = {
    "FISCAL_AUTHORITY_URL": "base_url",
    "FISCAL_AUTHORITY_TIN": "tin",
    "FISCAL_AUTHORITY_BRANCH_ID": "branch_id",
    "FISCAL_AUTHORITY_CMC_KEY": "cmc_key",
    "FISCAL_AUTHORITY_DEVICE_ID": "device_id",
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _fold(key: Any) -> str:
    return " ".join(str(key).split()).lower()


def _code(value: Any) -> str:
    return str(value).strip().upper()


def parse_tax_bracket(data: dict[str, Any]) -> TaxBracketDef:
    return TaxBracketDef(
        code=_code(data["code"]),
        rate=Decimal(str(data["rate"])),
        label=str(data.get("label", data["code"])),
        display=str(data.get("display", data["code"])),
    )


def parse_catalog_tables(data: dict[str, Any]) -> CatalogTables:
    """
    Parse the catalog vocabulary.

    Class codes are kept as strings; YAML authors must quote them so that
    leading zeros survive.
    """
    return CatalogTables(
        category_class_codes=MappingProxyType({
            _fold(k): str(v).strip() for k, v in data.get("categories", {}).items()
        }),
        class_code_brackets=MappingProxyType({
            str(k).strip(): _code(v)
            for k, v in data.get("class_code_brackets", {}).items()
        }),
        unit_synonyms=MappingProxyType({
            _fold(k): _code(v) for k, v in data.get("unit_synonyms", {}).items()
        }),
        unit_codes=frozenset(_code(u) for u in data.get("unit_codes", [])),
        misc_class_code=str(data["misc_class_code"]).strip(),
        default_unit_code=_code(data.get("default_unit_code", "U")),
        default_bracket=_code(data.get("default_bracket", "B")),
    )


def parse_item_code_format(data: dict[str, Any]) -> ItemCodeFormat:
    return ItemCodeFormat(
        country=str(data.get("country", "KE")),
        item_type=str(data.get("item_type", "2")),
        packaging=str(data.get("packaging", "NT")),
        counter_width=int(data.get("counter_width", 7)),
    )


def parse_authority(
    data: dict[str, Any],
    environ: Mapping[str, str] | None = None,
) -> AuthorityEndpoint:
    """Parse the authority section, applying FISCAL_AUTHORITY_* overrides."""
    values = {k: data.get(k) for k in ("base_url", "tin", "branch_id", "cmc_key", "device_id")}
    for env_name, attr in ENV_OVERRIDES.items():
        if environ and environ.get(env_name):
            values[attr] = environ[env_name]
    return AuthorityEndpoint(
        base_url=str(values["base_url"]).rstrip("/"),
        tin=str(values["tin"]),
        branch_id=str(values["branch_id"] or "00"),
        cmc_key=str(values["cmc_key"] or ""),
        device_id=str(values["device_id"] or ""),
        timeout_seconds=float(data.get("timeout_seconds", 30)),
    )


def parse_business(data: dict[str, Any]) -> BusinessIdentity:
    return BusinessIdentity(
        name=str(data["name"]),
        tin=str(data["tin"]),
        address=str(data.get("address") or ""),
        commercial_message=str(data.get("commercial_message") or ""),
        closing_message=str(
            data.get("closing_message") or BusinessIdentity.closing_message
        ),
        registrant_id=str(data.get("registrant_id") or "admin"),
        registrant_name=str(data.get("registrant_name") or "admin"),
    )


def parse_payment_method(data: dict[str, Any]) -> PaymentMethodDef:
    return PaymentMethodDef(
        code=str(data["code"]),
        label=str(data["label"]),
        aliases=tuple(_fold(a) for a in data.get("aliases", [])),
    )


def parse_submission_policy(data: dict[str, Any]) -> SubmissionPolicy:
    return SubmissionPolicy(
        max_attempts=int(data.get("max_attempts", 10)),
        release_stock_on_sale=bool(data.get("release_stock_on_sale", True)),
        utc_offset_hours=int(data.get("utc_offset_hours", 3)),
    )


def parse_configuration(
    data: dict[str, Any],
    environ: Mapping[str, str] | None = None,
) -> FiscalConfiguration:
    """Parse a complete configuration document."""
    return FiscalConfiguration(
        config_id=str(data["config_id"]),
        version=int(data.get("version", 1)),
        tax_brackets=tuple(parse_tax_bracket(b) for b in data["tax_brackets"]),
        catalog=parse_catalog_tables(data["catalog"]),
        item_code=parse_item_code_format(data.get("item_code", {})),
        authority=parse_authority(data["authority"], environ),
        business=parse_business(data["business"]),
        payment_methods=tuple(
            parse_payment_method(p) for p in data.get("payment_methods", [])
        ),
        default_payment_code=str(data.get("default_payment_code", "01")),
        submission=parse_submission_policy(data.get("submission", {})),
        currency=str(data.get("currency", "KES")),
        checksum=compute_checksum(data),
    )


def load_configuration(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> FiscalConfiguration:
    """
    Load and parse a fiscal configuration file.

    Args:
        path: YAML file; defaults to the packaged ``defaults/fiscal.yaml``.
        environ: Environment for FISCAL_AUTHORITY_* overrides; defaults to
            ``os.environ``.  Pass ``{}`` to disable overrides.
    """
    data = load_yaml_file(path or DEFAULT_CONFIG_PATH)
    return parse_configuration(data, os.environ if environ is None else environ)


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Deterministic SHA-256 of the table content, excluding credentials.
    """
    redacted = dict(data)
    if "authority" in redacted:
        redacted["authority"] = {
            k: v for k, v in redacted["authority"].items() if k != "cmc_key"
        }
    canonical = json.dumps(redacted, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
