"""
Module: stock_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines used by
    stock_services.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import stock_kernel domain values, DTOs and logging.
    MUST NOT import stock_services.

Invariants enforced:
    - Engines never read the clock.  Timestamps are passed in.
    - Decimal-only arithmetic for quantities and costs.
    - Identical inputs always produce identical outputs.

Audit relevance:
    Every engine invocation is traced via ``@traced_engine``
    (see ``stock_engines.tracer``), emitting STOCK_ENGINE_TRACE records.
"""

from stock_engines.reconciliation import (
    VarianceClassification,
    VarianceThresholds,
    classify_variance,
)
from stock_engines.valuation import (
    ConsumptionResult,
    CostLayer,
    CostMethod,
    LayerConsumption,
    average_unit_cost,
    consume,
    receive,
    total_quantity,
    total_value,
)

__all__ = [
    "ConsumptionResult",
    "CostLayer",
    "CostMethod",
    "LayerConsumption",
    "VarianceClassification",
    "VarianceThresholds",
    "average_unit_cost",
    "classify_variance",
    "consume",
    "receive",
    "total_quantity",
    "total_value",
]
