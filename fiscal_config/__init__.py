"""
fiscal_config -- single public entrypoint for fiscal configuration.

Responsibility:
    ``get_active_config()`` loads the lookup tables once per process,
    validates them, and hands back an immutable ``FiscalConfiguration``.
    Engines and services receive it (or parts of it) by constructor
    injection; nothing else reads the YAML file.

Architecture position:
    Configuration -- sits above ``fiscal_kernel`` and below
    ``fiscal_services``.  The kernel never imports from this package.

Failure modes:
    - ``FileNotFoundError`` / ``yaml.YAMLError`` from the loader.
    - ``ConfigurationError`` when the tables are inconsistent.

Audit relevance:
    Every activation emits ``fiscal_config_activated`` with the config id,
    version and checksum.
"""

from __future__ import annotations

import threading
from pathlib import Path

from fiscal_config.loader import load_configuration
from fiscal_config.schema import FiscalConfiguration
from fiscal_config.validator import validate_configuration
from fiscal_kernel.logging_config import get_logger

__all__ = [
    "FiscalConfiguration",
    "get_active_config",
    "load_configuration",
    "reset_active_config",
    "validate_configuration",
]

_logger = get_logger("config")

_active: FiscalConfiguration | None = None
_lock = threading.Lock()


def get_active_config(path: Path | None = None) -> FiscalConfiguration:
    """Return the process-wide configuration, loading it on first use."""
    global _active
    with _lock:
        if _active is None:
            config = validate_configuration(load_configuration(path))
            _logger.info(
                "fiscal_config_activated",
                extra={
                    "config_id": config.config_id,
                    "config_version": config.version,
                    "checksum": config.checksum,
                    "category_count": len(config.catalog.category_class_codes),
                    "unit_code_count": len(config.catalog.unit_codes),
                },
            )
            _active = config
        return _active


def reset_active_config() -> None:
    """Forget the cached configuration. FOR TESTING ONLY."""
    global _active
    with _lock:
        _active = None
