"""
stock_services -- Orchestration over the stock kernel.

Transfers, returns, corrections, valuation and reconciliation, plus the
``StockLedger`` facade that runs each operation as one unit of work.
"""

from stock_services.correction_service import CorrectionService
from stock_services.reconciliation_service import ReconciliationService
from stock_services.return_service import CustomerReturnProcessor, SupplierReturnProcessor
from stock_services.stock_ledger import StockLedger, StockServices
from stock_services.transfer_service import TransferService
from stock_services.transfer_workflow import TRANSFER_WORKFLOW, TransferStatus
from stock_services.valuation_service import ValuationService

__all__ = [
    "CorrectionService",
    "CustomerReturnProcessor",
    "ReconciliationService",
    "StockLedger",
    "StockServices",
    "SupplierReturnProcessor",
    "TRANSFER_WORKFLOW",
    "TransferService",
    "TransferStatus",
    "ValuationService",
]
