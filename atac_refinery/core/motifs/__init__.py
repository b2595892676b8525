"""Motif accessibility deviation scoring.

Example Usage
-------------
>>> from atac_refinery.core.motifs import MotifDeviationScorer, MotifConfig
>>> scorer = MotifDeviationScorer(MotifConfig(n_background_sets=50))
>>> result = scorer.score(peaks, motif_presence, gc_content)
>>> result.deviation.variability.sort_values("variability", ascending=False)
"""

__version__ = "1.0.0"

# Configuration classes
from .config import MotifConfig

# Background matching
from .background import (
    BackgroundPeaks,
    match_background_peaks,
    merge_small_bins,
    quantile_bins,
)

# Deviation scoring
from .deviation import (
    MotifDeviation,
    MotifDeviationResult,
    MotifDeviationScorer,
    compute_variability,
    presence_matrix,
)

__all__ = [
    # Version
    "__version__",
    # Config
    "MotifConfig",
    # Background
    "BackgroundPeaks",
    "match_background_peaks",
    "merge_small_bins",
    "quantile_bins",
    # Deviation
    "MotifDeviation",
    "MotifDeviationResult",
    "MotifDeviationScorer",
    "compute_variability",
    "presence_matrix",
]
