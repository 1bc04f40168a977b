"""
StockLedgerConfig schema.

Frozen dataclasses for every setting the ledger reads at runtime.  YAML
fragments are parsed into these types by the loader; nothing else in the
system reads configuration files or environment variables.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


class ReceiptFallback(str, Enum):
    """What a transfer completion does when an item has no received quantity."""

    SENT_QUANTITY = "sent_quantity"      # assume a full receipt, flag it
    REQUIRE_RECEIPT = "require_receipt"  # refuse to complete


@dataclass(frozen=True)
class LedgerSettings:
    # Movement types allowed to drive a balance negative without a per-call flag
    negative_allowed_types: tuple[str, ...] = ()
    # Recompute sum(deltas) after every write and abort on mismatch
    verify_after_write: bool = False


@dataclass(frozen=True)
class ValuationSettings:
    default_method: str = "fifo"
    # Methods the projection maintains for every stream
    methods: tuple[str, ...] = ("fifo", "lifo", "weighted_avg")


@dataclass(frozen=True)
class TransferSettings:
    receipt_fallback: ReceiptFallback = ReceiptFallback.SENT_QUANTITY
    transaction_timeout_seconds: float = 60.0
    max_attempts: int = 3
    retry_backoff_seconds: float = 0.05


@dataclass(frozen=True)
class ReconciliationSettings:
    variance_percent_threshold: Decimal = Decimal("5")
    variance_quantity_threshold: Decimal = Decimal("10")
    variance_value_threshold: Decimal = Decimal("1000")
    high_activity_count: int = 100
    activity_window_days: int = 30


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///:memory:"
    echo: bool = False
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 30


@dataclass(frozen=True)
class StockLedgerConfig:
    """The complete runtime configuration, identified by its checksum."""

    version: str
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    valuation: ValuationSettings = field(default_factory=ValuationSettings)
    transfers: TransferSettings = field(default_factory=TransferSettings)
    reconciliation: ReconciliationSettings = field(default_factory=ReconciliationSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    checksum: str = ""
