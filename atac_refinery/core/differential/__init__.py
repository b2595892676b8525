"""Differential accessibility testing.

Example Usage
-------------
>>> from atac_refinery.core.differential import DifferentialTester
>>> tester = DifferentialTester()
>>> result = tester.test(peaks, clusters.labels, target_group=0,
...                      covariate=peaks.total_counts())
>>> table, per_group = tester.find_all_markers(peaks, clusters.labels)
"""

__version__ = "1.0.0"

from .config import DifferentialConfig
from .engine import (
    DifferentialResult,
    DifferentialTester,
    FOLD_CHANGE_MODES,
    RESULT_COLUMNS,
)

__all__ = [
    "__version__",
    "DifferentialConfig",
    "DifferentialResult",
    "DifferentialTester",
    "FOLD_CHANGE_MODES",
    "RESULT_COLUMNS",
]
