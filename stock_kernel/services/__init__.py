"""Services for the stock kernel (write side)."""

from stock_kernel.services.balance_store import BalanceStore
from stock_kernel.services.movement_ledger import MovementLedger
from stock_kernel.services.serial_registry import SerialRegistry
from stock_kernel.services.transaction_runner import TransactionRunner

__all__ = [
    "BalanceStore",
    "MovementLedger",
    "SerialRegistry",
    "TransactionRunner",
]
