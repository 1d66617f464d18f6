#!/usr/bin/env python3
"""
Operator commands for the fiscal engine.

Usage:
    python3 scripts/fiscal_ops.py check-config [--config PATH]
    python3 scripts/fiscal_ops.py retry [--limit N]
    python3 scripts/fiscal_ops.py reprint <business_key> [--pdf OUT.pdf]
    python3 scripts/fiscal_ops.py register-item <item_id> <name> --cost 30 [options]

Examples:
    # Replay every errored sale and catalog registration
    python3 scripts/fiscal_ops.py retry

    # Reprint a receipt to the terminal and save the PDF
    python3 scripts/fiscal_ops.py reprint order-17 --pdf order-17.pdf

The database URL comes from --db-url, then FISCAL_DATABASE_URL.  Authority
credentials come from the configuration file and the FISCAL_AUTHORITY_*
environment variables.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

# Project root on sys.path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DB_URL = os.environ.get("FISCAL_DATABASE_URL", "sqlite:///fiscal.db")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fiscal engine operator commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--db-url",
        default=DB_URL,
        help=f"Database URL (default: {DB_URL!r}).",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Fiscal configuration YAML (default: packaged defaults).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Print structured logs to stderr.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("check-config", help="Load and validate the configuration.")

    retry = sub.add_parser("retry", help="Replay errored submissions.")
    retry.add_argument("--limit", type=int, default=None, help="Replay at most N records.")

    reprint = sub.add_parser("reprint", help="Re-render the receipt of an accepted sale.")
    reprint.add_argument("business_key")
    reprint.add_argument("--pdf", type=Path, default=None, help="Write the PDF here.")

    register = sub.add_parser("register-item", help="Register a catalog item.")
    register.add_argument("item_id")
    register.add_argument("name")
    register.add_argument("--cost", required=True)
    register.add_argument("--category", default=None)
    register.add_argument("--unit", default=None)
    register.add_argument("--kind", choices=("product", "ingredient"), default="product")
    register.add_argument("--registrant", default=None, help="Registrant id.")
    register.add_argument("--registrant-name", default=None, help="Registrant display name.")
    return parser.parse_args(argv)


def _load_config(path: Path | None):
    from fiscal_config import load_configuration, validate_configuration

    return validate_configuration(load_configuration(path))


def _check_config(args: argparse.Namespace) -> int:
    from fiscal_kernel.exceptions import ConfigurationError

    try:
        config = _load_config(args.config)
    except ConfigurationError as exc:
        print("VALIDATION FAILED:")
        for problem in exc.problems:
            print(f"  ERROR: {problem}")
        return 1
    print(f"  config_id: {config.config_id}")
    print(f"  version:   {config.version}")
    print(f"  checksum:  {config.checksum[:16]}...")
    print(f"  brackets:  {', '.join(f'{b.code}={b.rate}' for b in config.tax_brackets)}")
    print(f"  units:     {len(config.catalog.unit_codes)}")
    print(f"  endpoint:  {config.authority.base_url}")
    return 0


def _print_result(result) -> None:
    data = dict(result.data)
    receipt = data.get("receipt")
    if isinstance(receipt, dict):
        data["receipt"] = {k: v for k, v in receipt.items() if k != "pdf"}
    print(json.dumps({**result.as_dict(), "data": data}, indent=2, default=str))


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    if not args.verbose:
        logging.disable(logging.CRITICAL)

    if args.command == "check-config":
        return _check_config(args)

    from fiscal_kernel.exceptions import ConfigurationError
    from fiscal_services import FiscalEngine

    try:
        config = _load_config(args.config)
        engine = FiscalEngine.create(args.db_url, config=config)
    except (ConfigurationError, OSError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    if args.command == "retry":
        result = engine.retry_failed_submissions(limit=args.limit)
        _print_result(result)
        return 0 if result.ok else 1

    if args.command == "reprint":
        result = engine.reprint_receipt(args.business_key)
        if not result.ok:
            _print_result(result)
            return 1
        receipt = result.data["receipt"]
        print(receipt["text"])
        if args.pdf is not None:
            args.pdf.write_bytes(receipt["pdf"])
            print(f"Wrote {args.pdf}")
        return 0

    result = engine.register_catalog_item(
        item_id=args.item_id,
        name=args.name,
        category=args.category,
        unit=args.unit,
        cost=args.cost,
        kind=args.kind,
        registrant=args.registrant,
        registrant_name=args.registrant_name,
    )
    _print_result(result)
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(main())
