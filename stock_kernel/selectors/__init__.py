"""Selectors for the stock kernel (read side)."""

from stock_kernel.selectors.movement_selector import MovementSelector
from stock_kernel.selectors.serial_selector import SerialSelector

__all__ = [
    "MovementSelector",
    "SerialSelector",
]
