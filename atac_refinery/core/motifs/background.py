"""GC- and accessibility-matched background peaks.

Peaks are binned on a grid of GC-content quantiles by log-accessibility
quantiles. For every background iteration the peaks within each bin are
permuted among themselves, which assigns each peak a matched partner. A
motif's background set for that iteration is the set of partners of its
peaks: same size, same GC/abundance composition.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

import numpy as np

from ..errors import AnomalyReport, InsufficientBackgroundError


def quantile_bins(values: np.ndarray, n_bins: int) -> np.ndarray:
    """Assign each value to one of ``n_bins`` quantile bins (0-based)."""
    values = np.asarray(values, dtype=float)
    if n_bins < 1:
        raise ValueError(f"n_bins must be >= 1, got {n_bins}")
    if n_bins == 1 or values.size == 0:
        return np.zeros(values.size, dtype=np.int64)
    edges = np.quantile(values, np.linspace(0.0, 1.0, n_bins + 1)[1:-1])
    return np.searchsorted(edges, values, side="right").astype(np.int64)


@dataclass
class BackgroundPeaks:
    """Matched background partners for every peak.

    Attributes
    ----------
    partners : np.ndarray
        Partner peak per iteration, shape (n_iterations, n_peaks)
    bins : np.ndarray
        Grid bin per peak after merging
    merged_peaks : np.ndarray
        True for peaks whose own bin was too small and was merged
    report : AnomalyReport
        One InsufficientBackgroundError record per merged bin
    """

    partners: np.ndarray
    bins: np.ndarray
    merged_peaks: np.ndarray
    report: AnomalyReport = field(
        default_factory=lambda: AnomalyReport(stage="motif_deviations")
    )

    @property
    def n_iterations(self) -> int:
        return self.partners.shape[0]


def _grid_coords(bin_id: int, n_abundance_bins: int):
    return divmod(bin_id, n_abundance_bins)


def merge_small_bins(
    bins: np.ndarray,
    n_gc_bins: int,
    n_abundance_bins: int,
    min_bin_peaks: int,
) -> Dict[int, int]:
    """Map each inadequate non-empty bin to its nearest adequate bin.

    Distance is Manhattan distance on the (gc, abundance) grid; ties go
    to the lowest bin index.

    Raises
    ------
    InsufficientBackgroundError
        If no bin holds at least ``min_bin_peaks`` peaks
    """
    n_grid = n_gc_bins * n_abundance_bins
    counts = np.bincount(bins, minlength=n_grid)
    adequate = np.flatnonzero(counts >= min_bin_peaks)
    if adequate.size == 0:
        raise InsufficientBackgroundError(
            f"No GC/abundance bin holds at least {min_bin_peaks} peaks "
            f"({len(bins)} peaks over {n_grid} bins)",
            {"n_peaks": int(len(bins)), "min_bin_peaks": min_bin_peaks},
        )
    coords = np.array([_grid_coords(b, n_abundance_bins) for b in adequate])
    mapping: Dict[int, int] = {}
    for b in np.flatnonzero((counts > 0) & (counts < min_bin_peaks)):
        gc, ab = _grid_coords(int(b), n_abundance_bins)
        dist = np.abs(coords[:, 0] - gc) + np.abs(coords[:, 1] - ab)
        mapping[int(b)] = int(adequate[np.argmin(dist)])
    return mapping


def match_background_peaks(
    gc_content: np.ndarray,
    peak_totals: np.ndarray,
    n_iterations: int,
    n_gc_bins: int = 10,
    n_abundance_bins: int = 10,
    min_bin_peaks: int = 10,
    random_seed: int = 1337,
    logger: Optional[logging.Logger] = None,
) -> BackgroundPeaks:
    """Draw matched background partners for every peak.

    Parameters
    ----------
    gc_content : np.ndarray
        GC fraction per peak
    peak_totals : np.ndarray
        Total counts per peak
    n_iterations : int
        Number of background iterations
    n_gc_bins, n_abundance_bins : int
        Grid dimensions
    min_bin_peaks : int
        Minimum peaks per bin before merging
    random_seed : int
        Seed for the permutations

    Returns
    -------
    BackgroundPeaks
        Partner table and merge records
    """
    logger = logger or logging.getLogger(__name__)
    gc = np.asarray(gc_content, dtype=float)
    totals = np.asarray(peak_totals, dtype=float)
    gc_bin = quantile_bins(gc, n_gc_bins)
    ab_bin = quantile_bins(np.log1p(totals), n_abundance_bins)
    bins = gc_bin * n_abundance_bins + ab_bin

    report = AnomalyReport(stage="motif_deviations")
    mapping = merge_small_bins(bins, n_gc_bins, n_abundance_bins, min_bin_peaks)
    merged_peaks = np.zeros(bins.size, dtype=bool)
    for small, target in sorted(mapping.items()):
        members = bins == small
        merged_peaks |= members
        report.add(
            InsufficientBackgroundError(
                f"Bin {small} has {int(members.sum())} peak(s) (< {min_bin_peaks}); "
                f"merged into bin {target}",
                {"bin": small, "n_peaks": int(members.sum()), "merged_into": target},
            )
        )
    final_bins = bins.copy()
    for small, target in mapping.items():
        final_bins[bins == small] = target
    if mapping:
        logger.warning(
            "Merged %d undersized background bin(s) covering %d peak(s)",
            len(mapping),
            int(merged_peaks.sum()),
        )

    groups: List[np.ndarray] = [
        np.flatnonzero(final_bins == b) for b in np.unique(final_bins)
    ]
    rng = np.random.default_rng(random_seed)
    partners = np.empty((n_iterations, bins.size), dtype=np.int64)
    for it in range(n_iterations):
        for members in groups:
            partners[it, members] = rng.permutation(members)

    return BackgroundPeaks(
        partners=partners,
        bins=final_bins,
        merged_peaks=merged_peaks,
        report=report,
    )
