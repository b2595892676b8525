"""Configuration classes for cell QC and feature selection."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class QCConfig:
    """Configuration for cell-level quality control.

    Thresholds set to None are not applied. Cells with zero total counts
    are always removed.

    Attributes
    ----------
    min_peak_fragments : float, optional
        Minimum fragments in peak regions
    max_peak_fragments : float, optional
        Maximum fragments in peak regions
    min_fraction_in_peaks : float, optional
        Minimum fraction of fragments falling in peaks
    max_blacklist_ratio : float, optional
        Maximum ratio of blacklist-region fragments to peak fragments
    max_nucleosome_signal : float, optional
        Maximum nucleosome signal
    min_tss_enrichment : float, optional
        Minimum TSS enrichment score
    peak_fragments_col : str
        Metadata column with fragments in peak regions. Falls back to
        matrix column totals when absent.
    total_fragments_col : str
        Metadata column with total passed fragments
    blacklist_fragments_col : str
        Metadata column with fragments in blacklist regions
    nucleosome_signal_col : str
        Metadata column with nucleosome signal
    tss_enrichment_col : str
        Metadata column with TSS enrichment
    min_cell_fraction : float
        Feature selection: keep features present in at least this fraction
        of cells
    n_top_features : int, optional
        Feature selection: keep at most this many features by total counts
    """

    min_peak_fragments: Optional[float] = 3000
    max_peak_fragments: Optional[float] = 20000
    min_fraction_in_peaks: Optional[float] = 0.15
    max_blacklist_ratio: Optional[float] = 0.05
    max_nucleosome_signal: Optional[float] = 4.0
    min_tss_enrichment: Optional[float] = 2.0
    peak_fragments_col: str = "peak_region_fragments"
    total_fragments_col: str = "passed_filters"
    blacklist_fragments_col: str = "blacklist_region_fragments"
    nucleosome_signal_col: str = "nucleosome_signal"
    tss_enrichment_col: str = "tss_enrichment"
    min_cell_fraction: float = 0.0
    n_top_features: Optional[int] = None
