"""Data model for accessibility matrices.

Provides the immutable sparse CountMatrix, per-cell metadata, genomic
intervals and gene annotations, and cell-level QC filtering.

Example Usage
-------------
>>> from atac_refinery.core.matrix import CountMatrix, CellQC, select_top_features
>>> matrix = CountMatrix(counts, peak_ids, barcodes)
>>> qc_result = CellQC().filter(matrix, metadata)
>>> peaks = select_top_features(qc_result.matrix, min_cell_fraction=0.01)
"""

__version__ = "1.0.0"

# Matrix store
from .store import (
    CellMetadata,
    CountMatrix,
    MatrixKind,
)

# Genomic annotation
from .annotation import (
    FeatureAnnotation,
    GenomicInterval,
    format_peak_id,
    parse_peak_id,
    peak_intervals,
)

# Quality control
from .config import QCConfig
from .qc import (
    CellQC,
    QCResult,
    REASON_COLUMNS,
    select_top_features,
)

__all__ = [
    # Version
    "__version__",
    # Store
    "CellMetadata",
    "CountMatrix",
    "MatrixKind",
    # Annotation
    "FeatureAnnotation",
    "GenomicInterval",
    "format_peak_id",
    "parse_peak_id",
    "peak_intervals",
    # QC
    "QCConfig",
    "CellQC",
    "QCResult",
    "REASON_COLUMNS",
    "select_top_features",
]
