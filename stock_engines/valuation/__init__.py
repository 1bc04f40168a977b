"""
Valuation - Pure cost layer arithmetic for FIFO/LIFO/weighted-average costing.

Pure domain types only.  The stateful projection lives in
stock_services.valuation_service.
"""

from stock_engines.valuation.cost_layer import (
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
    "average_unit_cost",
    "consume",
    "receive",
    "total_quantity",
    "total_value",
]
