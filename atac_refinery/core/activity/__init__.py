"""Gene activity scores from peak accessibility.

Example Usage
-------------
>>> from atac_refinery.core.activity import FeatureAggregator
>>> result = FeatureAggregator().aggregate(peaks, annotation, 2000, 0)
>>> result.empty_genes
"""

__version__ = "1.0.0"

from .config import ActivityConfig
from .intervals import IntervalIndex
from .engine import (
    AggregationResult,
    FeatureAggregator,
    annotate_closest_genes,
)

__all__ = [
    "__version__",
    "ActivityConfig",
    "IntervalIndex",
    "AggregationResult",
    "FeatureAggregator",
    "annotate_closest_genes",
]
