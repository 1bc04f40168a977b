"""ORM models for the stock kernel."""

from stock_kernel.models.balance import StockBalance
from stock_kernel.models.catalog import Business, Location, Product, ProductVariation
from stock_kernel.models.correction import InventoryCorrection
from stock_kernel.models.movement import StockMovement
from stock_kernel.models.reconciliation import ReconciliationFinding, ReconciliationRun
from stock_kernel.models.returns import (
    CustomerReturn,
    CustomerReturnItem,
    SupplierReturn,
    SupplierReturnItem,
)
from stock_kernel.models.serial import SerialMovement, SerialUnit
from stock_kernel.models.transfer import (
    Transfer,
    TransferEvent,
    TransferItem,
    TransferItemSerial,
)
from stock_kernel.models.valuation import CostLayerModel, ValuationState

__all__ = [
    "Business",
    "CostLayerModel",
    "CustomerReturn",
    "CustomerReturnItem",
    "InventoryCorrection",
    "Location",
    "Product",
    "ProductVariation",
    "ReconciliationFinding",
    "ReconciliationRun",
    "SerialMovement",
    "SerialUnit",
    "StockBalance",
    "StockMovement",
    "SupplierReturn",
    "SupplierReturnItem",
    "Transfer",
    "TransferEvent",
    "TransferItem",
    "TransferItemSerial",
    "ValuationState",
]
