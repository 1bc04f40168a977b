"""
Configuration Loader (``stock_config.loader``).

Responsibility
--------------
Loads YAML fragments, merges them over the packaged defaults and parses the
result into ``stock_config.schema`` dataclasses.  The single public entry
point for runtime config is ``stock_config.get_active_config()``.

Invariants enforced
-------------------
* Every parse error raises ``ValueError`` naming the offending key; unknown
  keys are rejected rather than ignored.
* Every parsed object is a frozen dataclass from ``schema.py``.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the merged
  document for configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
"""

from __future__ import annotations

import copy
import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from stock_config.schema import (
    DatabaseSettings,
    LedgerSettings,
    ReceiptFallback,
    ReconciliationSettings,
    StockLedgerConfig,
    TransferSettings,
    ValuationSettings,
)

# Movement and cost method names, kept here so the config layer does not
# import the kernel.
_MOVEMENT_TYPES = frozenset(
    {
        "purchase",
        "purchase_return",
        "sale",
        "sale_void",
        "transfer_out",
        "transfer_in",
        "customer_return",
        "supplier_return",
        "adjustment",
        "opening_stock",
    }
)
_COST_METHODS = frozenset({"fifo", "lifo", "weighted_avg"})

_SECTIONS = ("ledger", "valuation", "transfers", "reconciliation", "database")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a single YAML file; an empty file is an empty dict."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return data


def merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` onto a copy of ``base``."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _check_keys(section: str, data: dict[str, Any], allowed: set[str]) -> None:
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"Unknown {section} setting(s): {', '.join(sorted(unknown))}")


def _decimal(section: str, key: str, value: Any) -> Decimal:
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"{section}.{key} must be a number, got {value!r}")
    if not result.is_finite() or result < 0:
        raise ValueError(f"{section}.{key} must be a non-negative number, got {value!r}")
    return result


def _positive_int(section: str, key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"{section}.{key} must be a positive integer, got {value!r}")
    return value


def _positive_float(section: str, key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise ValueError(f"{section}.{key} must be a non-negative number, got {value!r}")
    return float(value)


def parse_ledger(data: dict[str, Any]) -> LedgerSettings:
    _check_keys("ledger", data, {"negative_allowed_types", "verify_after_write"})
    types = tuple(data.get("negative_allowed_types") or ())
    unknown = [t for t in types if t not in _MOVEMENT_TYPES]
    if unknown:
        raise ValueError(f"ledger.negative_allowed_types: unknown movement type(s) {unknown}")
    return LedgerSettings(
        negative_allowed_types=types,
        verify_after_write=bool(data.get("verify_after_write", False)),
    )


def parse_valuation(data: dict[str, Any]) -> ValuationSettings:
    _check_keys("valuation", data, {"default_method", "methods"})
    methods = tuple(data.get("methods") or ("fifo", "lifo", "weighted_avg"))
    for method in methods:
        if method not in _COST_METHODS:
            raise ValueError(f"valuation.methods: unknown cost method {method!r}")
    default = data.get("default_method", "fifo")
    if default not in methods:
        raise ValueError(
            f"valuation.default_method {default!r} is not one of the maintained methods"
        )
    return ValuationSettings(default_method=default, methods=methods)


def parse_transfers(data: dict[str, Any]) -> TransferSettings:
    _check_keys(
        "transfers",
        data,
        {"receipt_fallback", "transaction_timeout_seconds", "max_attempts", "retry_backoff_seconds"},
    )
    fallback = data.get("receipt_fallback", ReceiptFallback.SENT_QUANTITY.value)
    try:
        fallback = ReceiptFallback(fallback)
    except ValueError:
        allowed = ", ".join(f.value for f in ReceiptFallback)
        raise ValueError(f"transfers.receipt_fallback must be one of: {allowed}")
    return TransferSettings(
        receipt_fallback=fallback,
        transaction_timeout_seconds=_positive_float(
            "transfers", "transaction_timeout_seconds", data.get("transaction_timeout_seconds", 60)
        ),
        max_attempts=_positive_int("transfers", "max_attempts", data.get("max_attempts", 3)),
        retry_backoff_seconds=_positive_float(
            "transfers", "retry_backoff_seconds", data.get("retry_backoff_seconds", 0.05)
        ),
    )


def parse_reconciliation(data: dict[str, Any]) -> ReconciliationSettings:
    _check_keys(
        "reconciliation",
        data,
        {
            "variance_percent_threshold",
            "variance_quantity_threshold",
            "variance_value_threshold",
            "high_activity_count",
            "activity_window_days",
        },
    )
    return ReconciliationSettings(
        variance_percent_threshold=_decimal(
            "reconciliation", "variance_percent_threshold", data.get("variance_percent_threshold", "5")
        ),
        variance_quantity_threshold=_decimal(
            "reconciliation", "variance_quantity_threshold", data.get("variance_quantity_threshold", "10")
        ),
        variance_value_threshold=_decimal(
            "reconciliation", "variance_value_threshold", data.get("variance_value_threshold", "1000")
        ),
        high_activity_count=_positive_int(
            "reconciliation", "high_activity_count", data.get("high_activity_count", 100)
        ),
        activity_window_days=_positive_int(
            "reconciliation", "activity_window_days", data.get("activity_window_days", 30)
        ),
    )


def parse_database(data: dict[str, Any]) -> DatabaseSettings:
    _check_keys("database", data, {"url", "echo", "pool_size", "max_overflow", "pool_timeout"})
    url = data.get("url")
    if not url or not isinstance(url, str):
        raise ValueError("database.url is required")
    return DatabaseSettings(
        url=url,
        echo=bool(data.get("echo", False)),
        pool_size=_positive_int("database", "pool_size", data.get("pool_size", 20)),
        max_overflow=int(data.get("max_overflow", 10)),
        pool_timeout=_positive_int("database", "pool_timeout", data.get("pool_timeout", 30)),
    )


def parse_config(data: dict[str, Any]) -> StockLedgerConfig:
    """Parse a merged configuration document."""
    _check_keys("top-level", data, {"version", *_SECTIONS})
    if "version" not in data:
        raise ValueError("Configuration is missing 'version'")
    for section in _SECTIONS:
        if data.get(section) is not None and not isinstance(data[section], dict):
            raise ValueError(f"{section} must be a mapping")
    return StockLedgerConfig(
        version=str(data["version"]),
        ledger=parse_ledger(data.get("ledger") or {}),
        valuation=parse_valuation(data.get("valuation") or {}),
        transfers=parse_transfers(data.get("transfers") or {}),
        reconciliation=parse_reconciliation(data.get("reconciliation") or {}),
        database=parse_database(data.get("database") or {"url": "sqlite:///:memory:"}),
        checksum=compute_checksum(data),
    )
