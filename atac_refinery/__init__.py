"""ATAC-Refinery: Quantitative analysis of single-cell chromatin accessibility.

This package provides tools for:
- Cell quality control and informative peak selection
- TF-IDF normalization and LSI embedding
- Shared-nearest-neighbor graph clustering
- Gene activity scores from peak aggregation
- chromVAR-style motif deviation scoring
- Differential accessibility with covariate adjustment

Example usage:
    >>> from atac_refinery import AnalysisConfig, AnalysisSession
    >>> from atac_refinery.io import load_mtx
    >>>
    >>> session = AnalysisSession(AnalysisConfig.from_yaml("analysis.yaml"))
    >>> session.register("peaks", load_mtx("matrix.mtx", "peaks.bed", "barcodes.tsv"))
    >>> session.run()
    >>> markers = session.find_markers()
"""

__version__ = "1.0.0"

from .core.cancellation import CancellationToken
from .core.config import AnalysisConfig
from .core.errors import AnalysisError, AnomalyReport
from .core.matrix import CellMetadata, CountMatrix, MatrixKind
from .session import AnalysisSession

__all__ = [
    "__version__",
    "AnalysisConfig",
    "AnalysisError",
    "AnalysisSession",
    "AnomalyReport",
    "CancellationToken",
    "CellMetadata",
    "CountMatrix",
    "MatrixKind",
]
