"""
Structural validation of a parsed FiscalConfiguration.

Collects every problem instead of stopping at the first, so one run shows
the YAML author everything that needs fixing.
"""

from __future__ import annotations

import re
from decimal import Decimal

from fiscal_config.schema import FiscalConfiguration
from fiscal_kernel.exceptions import ConfigurationError

REQUIRED_BRACKETS = ("A", "B", "C", "D", "E")

_CLASS_CODE = re.compile(r"[0-9]{8,10}")
_UNIT_CODE = re.compile(r"[0-9A-Z]{1,3}")


def collect_problems(config: FiscalConfiguration) -> list[str]:
    problems: list[str] = []

    codes = [b.code for b in config.tax_brackets]
    if tuple(codes) != REQUIRED_BRACKETS:
        problems.append(f"tax brackets must be exactly A..E in order, got {codes}")
    for bracket in config.tax_brackets:
        if not Decimal("0") <= bracket.rate <= Decimal("1"):
            problems.append(f"bracket {bracket.code} rate {bracket.rate} outside [0, 1]")

    catalog = config.catalog
    known_brackets = set(codes)

    if catalog.default_bracket not in known_brackets:
        problems.append(f"default bracket {catalog.default_bracket} is not defined")

    reachable = set(catalog.category_class_codes.values()) | {catalog.misc_class_code}
    for class_code in sorted(reachable | set(catalog.class_code_brackets)):
        if not _CLASS_CODE.fullmatch(class_code):
            problems.append(f"class code {class_code!r} is not 8-10 digits")
    for class_code in sorted(reachable):
        if class_code not in catalog.class_code_brackets:
            problems.append(f"class code {class_code} has no tax bracket")
    for class_code, bracket in sorted(catalog.class_code_brackets.items()):
        if bracket not in known_brackets:
            problems.append(f"class code {class_code} maps to unknown bracket {bracket}")

    if not catalog.unit_codes:
        problems.append("unit code list is empty")
    for unit in sorted(catalog.unit_codes):
        if not _UNIT_CODE.fullmatch(unit):
            problems.append(f"unit code {unit!r} is malformed")
    if catalog.default_unit_code not in catalog.unit_codes:
        problems.append(f"default unit {catalog.default_unit_code} is not a unit code")
    for synonym, unit in sorted(catalog.unit_synonyms.items()):
        if unit not in catalog.unit_codes:
            problems.append(f"unit synonym {synonym!r} maps to unknown unit {unit}")

    fmt = config.item_code
    if fmt.counter_width < 1:
        problems.append("item code counter width must be positive")

    payment_codes = [p.code for p in config.payment_methods]
    if len(payment_codes) != len(set(payment_codes)):
        problems.append("duplicate payment method codes")
    if config.default_payment_code not in payment_codes:
        problems.append(
            f"default payment code {config.default_payment_code} is not defined"
        )

    if not config.authority.base_url.startswith(("http://", "https://")):
        problems.append(f"authority base_url {config.authority.base_url!r} is not http(s)")
    if config.submission.max_attempts < 1:
        problems.append("submission max_attempts must be at least 1")

    return problems


def validate_configuration(config: FiscalConfiguration) -> FiscalConfiguration:
    """
    Validate a configuration, returning it unchanged when sound.

    Raises:
        ConfigurationError: listing every problem found.
    """
    problems = collect_problems(config)
    if problems:
        raise ConfigurationError(problems)
    return config
