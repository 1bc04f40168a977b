"""
stock_engines.reconciliation.variance -- Classification of balance/ledger
mismatches for the operator report.

Responsibility:
    Decide, for one reconciled pair, whether the mismatch needs
    investigation, is small enough to be flagged auto-fixable, and whether
    the surrounding activity looks suspicious.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    Called by stock_services.reconciliation_service with numbers it read
    from the ledger.

Invariants enforced:
    - requires_investigation and auto_fixable are mutually exclusive for a
      non-zero variance.  A match is neither.
    - auto_fixable is a flag for the operator.  Nothing here applies a fix.
    - A broken running-balance chain always requires investigation.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from stock_engines.tracer import traced_engine
from stock_kernel.domain.dtos import VarianceType

ZERO = Decimal("0")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class VarianceThresholds:
    """Limits above which a variance needs a human."""

    percent: Decimal = Decimal("5")
    quantity: Decimal = Decimal("10")
    value: Decimal = Decimal("1000")
    high_activity_count: int = 100

    def __post_init__(self) -> None:
        if self.percent < 0 or self.quantity < 0 or self.value < 0:
            raise ValueError("Variance thresholds cannot be negative")
        if self.high_activity_count < 1:
            raise ValueError("high_activity_count must be at least 1")


@dataclass(frozen=True)
class VarianceClassification:
    variance: Decimal
    variance_type: VarianceType
    variance_percent: Decimal
    variance_value: Decimal | None
    requires_investigation: bool
    auto_fixable: bool
    suspicious: bool
    reasons: tuple[str, ...] = ()


@traced_engine(
    "reconciliation.variance",
    "1.0",
    fingerprint_fields=("balance", "ledger_sum", "unit_cost", "chain_break_count"),
)
def classify_variance(
    balance: Decimal,
    ledger_sum: Decimal,
    *,
    unit_cost: Decimal | None = None,
    movement_count: int = 0,
    recent_movement_count: int = 0,
    chain_break_count: int = 0,
    thresholds: VarianceThresholds = VarianceThresholds(),
) -> VarianceClassification:
    """
    Classify ``balance - ledger_sum``.

    The percentage is taken against the ledger sum; with a zero ledger sum
    it is reported as zero and the absolute thresholds decide.
    """
    variance = balance - ledger_sum
    if variance > 0:
        variance_type = VarianceType.OVERAGE
    elif variance < 0:
        variance_type = VarianceType.SHORTAGE
    else:
        variance_type = VarianceType.MATCH

    if ledger_sum != 0:
        percent = (abs(variance) / abs(ledger_sum) * HUNDRED).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
    else:
        percent = ZERO

    variance_value = variance * unit_cost if unit_cost is not None else None

    reasons: list[str] = []
    if percent > thresholds.percent:
        reasons.append(f"variance {percent}% exceeds {thresholds.percent}%")
    if abs(variance) > thresholds.quantity:
        reasons.append(f"variance of {abs(variance)} units exceeds {thresholds.quantity}")
    if variance_value is not None and abs(variance_value) > thresholds.value:
        reasons.append(f"variance value {abs(variance_value)} exceeds {thresholds.value}")
    if chain_break_count:
        reasons.append(f"running balance chain broken at {chain_break_count} movement(s)")

    requires_investigation = bool(reasons)
    auto_fixable = variance != 0 and not requires_investigation

    suspicious = False
    if movement_count == 0 and balance > 0:
        suspicious = True
        reasons.append("stock on hand without any movements")
    if recent_movement_count > thresholds.high_activity_count:
        suspicious = True
        reasons.append(f"{recent_movement_count} recent movements")
    if ledger_sum < 0:
        suspicious = True
        reasons.append("negative ledger sum")

    return VarianceClassification(
        variance=variance,
        variance_type=variance_type,
        variance_percent=percent,
        variance_value=variance_value,
        requires_investigation=requires_investigation,
        auto_fixable=auto_fixable,
        suspicious=suspicious,
        reasons=tuple(reasons),
    )
