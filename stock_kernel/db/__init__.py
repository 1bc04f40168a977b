"""Database layer: engine, declarative bases and immutability enforcement."""

from stock_kernel.db.base import Base, IdType, TrackedBase
from stock_kernel.db.engine import Database

__all__ = [
    "Base",
    "Database",
    "IdType",
    "TrackedBase",
]
