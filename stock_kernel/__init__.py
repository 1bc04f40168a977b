"""
Stock Kernel

The inventory ledger core:
- Per (variation, location) balances, mutated through a single entry point
- Append-only movement ledger with running balances
- Idempotent, row-locked stock deltas
- Serialized unit lifecycle tracking
- Reconciliation of balances against the ledger
"""

__version__ = "0.1.0"
