"""Utility functions for ATAC-Refinery.

Provides statistical helpers and common utilities used across modules.
"""

from .stats import (
    CORRECTION_METHODS,
    apply_fdr_correction,
    column_correlation,
    sparse_row_stats,
)

__all__ = [
    "CORRECTION_METHODS",
    "apply_fdr_correction",
    "column_correlation",
    "sparse_row_stats",
]
