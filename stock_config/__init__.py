"""
stock_config -- single public entrypoint for stock ledger configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files
    or environment variables directly.

Architecture position:
    Configuration -- YAML-driven settings.  This package sits above
    ``stock_kernel`` and below ``stock_services``.  The kernel never imports
    from ``stock_config``; services pass individual settings into kernel
    constructors.

Invariants enforced:
    - Single entrypoint: all runtime config flows through ``get_active_config()``.
    - Load-time validation: an invalid value fails here, not at first use.
    - Deterministic: the same merged document always has the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- the requested override file does not exist.
    - ``ValueError`` -- schema validation failures.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``STOCK_CONFIG_TRACE`` log entry with the version and checksum.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from stock_config.loader import load_yaml_file, merge, parse_config
from stock_config.schema import (
    DatabaseSettings,
    LedgerSettings,
    ReceiptFallback,
    ReconciliationSettings,
    StockLedgerConfig,
    TransferSettings,
    ValuationSettings,
)

_logger = logging.getLogger("stock_kernel.config")

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

CONFIG_ENV_VAR = "STOCK_LEDGER_CONFIG"


def get_active_config(
    path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> StockLedgerConfig:
    """The ONLY public configuration entrypoint.

    Merge order: packaged defaults, then the file at ``path`` (or named by
    the ``STOCK_LEDGER_CONFIG`` environment variable), then ``overrides``.

    Args:
        path: Optional YAML file overriding the defaults.
        overrides: Optional nested dict applied last (tests, one-off tools).

    Returns:
        StockLedgerConfig with its checksum set.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If the merged configuration is invalid.
    """
    data = load_yaml_file(DEFAULTS_PATH)

    source = path or os.environ.get(CONFIG_ENV_VAR)
    if source:
        data = merge(data, load_yaml_file(Path(source)))
    if overrides:
        data = merge(data, overrides)

    config = parse_config(data)

    _logger.info(
        "STOCK_CONFIG_TRACE",
        extra={
            "trace_type": "STOCK_CONFIG_TRACE",
            "config_version": config.version,
            "checksum": config.checksum,
            "source": str(source) if source else "defaults",
            "receipt_fallback": config.transfers.receipt_fallback.value,
            "negative_allowed_types": list(config.ledger.negative_allowed_types),
        },
    )
    return config


__all__ = [
    "CONFIG_ENV_VAR",
    "DatabaseSettings",
    "LedgerSettings",
    "ReceiptFallback",
    "ReconciliationSettings",
    "StockLedgerConfig",
    "TransferSettings",
    "ValuationSettings",
    "get_active_config",
]
