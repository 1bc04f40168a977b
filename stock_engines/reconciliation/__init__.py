"""Reconciliation - pure variance classification."""

from stock_engines.reconciliation.variance import (
    VarianceClassification,
    VarianceThresholds,
    classify_variance,
)

__all__ = [
    "VarianceClassification",
    "VarianceThresholds",
    "classify_variance",
]
