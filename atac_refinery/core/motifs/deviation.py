"""chromVAR-style motif accessibility deviations.

For a peak-by-cell count matrix X and a peak-by-motif presence matrix M:

    e_p      = peak total / grand total          (expected fraction)
    O        = M^T X                             (observed motif counts)
    E        = (M^T e) * N_c                     (expected motif counts)
    raw      = (O - E) / E

The same statistic is computed for every background iteration on the
motif's GC/abundance-matched partner peaks. The bias-corrected deviation
is raw - mean(background) and the z-score divides it by the background
standard deviation.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
import logging
import warnings

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import sparse
from scipy.stats import chi2

from ..cancellation import CancellationToken
from ..errors import (
    AnomalyReport,
    DegenerateCellError,
    MatrixValidationError,
    ZeroVarianceFeatureError,
)
from ..matrix.store import CountMatrix, MatrixKind
from ...utils.stats import apply_fdr_correction
from .background import BackgroundPeaks, match_background_peaks
from .config import MotifConfig


MotifPresence = Union[Mapping[str, Iterable[str]], pd.DataFrame]

# Background spread at or below this is treated as zero
SD_TOLERANCE = 1e-10


@dataclass
class MotifDeviation:
    """Motif-by-cell deviation scores.

    Attributes
    ----------
    deviations : pd.DataFrame
        Bias-corrected deviations (raw - mean background), motifs x cells
    z_scores : pd.DataFrame
        Deviation z-scores; NaN where the background has no spread
    raw_deviations : pd.DataFrame
        Uncorrected (O - E) / E
    variability : pd.DataFrame
        Per-motif variability with chi-square p-values
    skipped_motifs : List[str]
        Motifs excluded for zero expected accessibility
    fidelity_flags : pd.Series
        True for motifs with peaks in merged background bins
    source_fingerprint : str
        Fingerprint of the peak matrix
    """

    deviations: pd.DataFrame
    z_scores: pd.DataFrame
    raw_deviations: pd.DataFrame
    variability: pd.DataFrame
    skipped_motifs: List[str] = field(default_factory=list)
    fidelity_flags: pd.Series = field(default_factory=lambda: pd.Series(dtype=bool))
    source_fingerprint: str = ""

    @property
    def motif_ids(self) -> pd.Index:
        return self.deviations.index

    @property
    def cell_ids(self) -> pd.Index:
        return self.deviations.columns

    def as_matrix(self, values: str = "deviations") -> CountMatrix:
        """Motif-by-cell matrix of kind DEVIATION.

        ``values="z"`` uses z-scores and drops motifs with any NaN z-score.
        """
        if values == "deviations":
            frame = self.deviations
        elif values == "z":
            frame = self.z_scores.loc[~self.z_scores.isna().any(axis=1)]
        else:
            raise ValueError(f"Unknown values '{values}'; use 'deviations' or 'z'")
        return CountMatrix(
            sparse.csr_matrix(frame.to_numpy()),
            frame.index,
            frame.columns,
            MatrixKind.DEVIATION,
        )


@dataclass
class MotifDeviationResult:
    """Result from motif deviation scoring.

    Attributes
    ----------
    deviation : MotifDeviation
        Scores for every scored motif
    unknown_peaks : Dict[str, int]
        Per motif, number of listed peaks absent from the matrix
    report : AnomalyReport
        Degenerate cells, merged background bins, zero-spread motifs
    """

    deviation: MotifDeviation
    unknown_peaks: Dict[str, int] = field(default_factory=dict)
    report: AnomalyReport = field(
        default_factory=lambda: AnomalyReport(stage="motif_deviations")
    )

    def to_dict(self) -> Dict[str, Any]:
        dev = self.deviation
        return {
            "n_motifs": len(dev.motif_ids),
            "n_cells": len(dev.cell_ids),
            "n_skipped_motifs": len(dev.skipped_motifs),
            "n_flagged_motifs": int(dev.fidelity_flags.sum()),
            "n_unknown_peaks": int(sum(self.unknown_peaks.values())),
        }


def presence_matrix(
    presence: MotifPresence,
    feature_ids: pd.Index,
) -> Tuple[List[str], sparse.csc_matrix, Dict[str, int]]:
    """Peak-by-motif incidence aligned with ``feature_ids``.

    Parameters
    ----------
    presence : Mapping or pd.DataFrame
        Motif name to peak ids, or a peaks x motifs boolean table
    feature_ids : pd.Index
        Peak ids of the count matrix

    Returns
    -------
    tuple
        (motif ids, incidence of shape (n_peaks, n_motifs), unknown peak
        counts per motif)
    """
    if isinstance(presence, pd.DataFrame):
        table = presence.copy()
        table.index = table.index.astype(str)
        mapping = {
            str(motif): table.index[table[motif].astype(bool).to_numpy()].tolist()
            for motif in table.columns
        }
    else:
        mapping = {str(motif): list(peaks) for motif, peaks in presence.items()}

    motif_ids = list(mapping)
    rows: List[np.ndarray] = []
    cols: List[np.ndarray] = []
    unknown: Dict[str, int] = {}
    for j, motif in enumerate(motif_ids):
        peaks = pd.Index(pd.unique(np.asarray([str(p) for p in mapping[motif]], dtype=object)))
        positions = feature_ids.get_indexer(peaks)
        missing = int((positions < 0).sum())
        if missing:
            unknown[motif] = missing
        positions = positions[positions >= 0]
        rows.append(positions)
        cols.append(np.full(positions.size, j, dtype=np.int64))

    row_idx = np.concatenate(rows) if rows else np.empty(0, dtype=np.int64)
    col_idx = np.concatenate(cols) if cols else np.empty(0, dtype=np.int64)
    incidence = sparse.csc_matrix(
        (np.ones(row_idx.size), (row_idx, col_idx)),
        shape=(len(feature_ids), len(motif_ids)),
    )
    return motif_ids, incidence, unknown


def compute_variability(z_scores: pd.DataFrame) -> pd.DataFrame:
    """Per-motif variability across cells.

    Variability is the standard deviation of z-scores across cells. The
    p-value is the chi-square upper tail of (n - 1) * variance with n - 1
    degrees of freedom (variance 1 under the null), BH-adjusted.
    """
    values = z_scores.to_numpy(dtype=float)
    n = np.isfinite(values).sum(axis=1)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        var = np.nanvar(values, axis=1, ddof=1)
    var = np.where(n > 1, var, np.nan)
    dof = np.maximum(n - 1, 1)
    p_values = np.where(np.isfinite(var), chi2.sf(np.nan_to_num(var) * dof, dof), np.nan)
    table = pd.DataFrame(
        {
            "motif": z_scores.index,
            "variability": np.sqrt(var),
            "p_value": p_values,
            "adjusted_p_value": apply_fdr_correction(p_values, "fdr_bh"),
            "n_cells": n,
        }
    )
    return table


class MotifDeviationScorer:
    """Bias-corrected motif accessibility per cell.

    Parameters
    ----------
    config : MotifConfig, optional
        Scoring configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> scorer = MotifDeviationScorer(MotifConfig(n_background_sets=50))
    >>> result = scorer.score(peaks, {"CTCF": ctcf_peaks}, gc_content)
    >>> result.deviation.z_scores.loc["CTCF"]
    """

    def __init__(
        self,
        config: Optional[MotifConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or MotifConfig()
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _align_gc(gc_bias, matrix: CountMatrix) -> np.ndarray:
        if isinstance(gc_bias, pd.Series):
            series = gc_bias.copy()
            series.index = series.index.astype(str)
            missing = matrix.feature_ids.difference(series.index)
            if len(missing):
                raise MatrixValidationError(
                    f"GC content missing for {len(missing)} peak(s), e.g. {list(missing[:3])}"
                )
            gc = series.reindex(matrix.feature_ids).to_numpy(dtype=float)
        else:
            gc = np.asarray(gc_bias, dtype=float)
            if gc.shape != (matrix.n_features,):
                raise MatrixValidationError(
                    f"GC content has {gc.size} values for {matrix.n_features} peaks"
                )
        if not np.all(np.isfinite(gc)):
            raise MatrixValidationError("GC content contains non-finite values")
        return gc

    def score(
        self,
        peak_matrix: CountMatrix,
        motif_presence: MotifPresence,
        gc_bias: Union[Sequence[float], pd.Series],
        n_background_sets: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> MotifDeviationResult:
        """Compute motif deviations for every cell.

        Parameters
        ----------
        peak_matrix : CountMatrix
            Peak-by-cell counts
        motif_presence : Mapping or pd.DataFrame
            Motif name to peak ids, or a peaks x motifs boolean table
        gc_bias : sequence or pd.Series
            GC fraction per peak (Series indexed by peak id, or in matrix
            row order)
        n_background_sets : int, optional
            Background iterations. Defaults to config value.
        token : CancellationToken, optional
            Checked between motif chunks

        Returns
        -------
        MotifDeviationResult
            Deviation scores and anomaly report

        Raises
        ------
        InsufficientBackgroundError
            If no GC/abundance bin holds enough peaks
        CancelledError
            If cancellation is observed between chunks
        """
        cfg = self.config
        n_iter = n_background_sets if n_background_sets is not None else cfg.n_background_sets
        if n_iter < 2:
            raise ValueError(f"n_background_sets must be >= 2, got {n_iter}")
        if peak_matrix.kind != MatrixKind.COUNTS:
            raise MatrixValidationError(
                f"Motif deviations expect a counts matrix, got '{peak_matrix.kind.value}'"
            )
        gc = self._align_gc(gc_bias, peak_matrix)
        report = AnomalyReport(stage="motif_deviations")

        cell_totals = peak_matrix.total_counts()
        zero_cells = cell_totals.index[cell_totals.to_numpy() == 0].tolist()
        if zero_cells:
            report.add(DegenerateCellError(zero_cells))
            self.logger.warning("Excluding %d zero-total cell(s)", len(zero_cells))
            peak_matrix = peak_matrix.subset_cells(cell_totals.to_numpy() > 0)
            cell_totals = peak_matrix.total_counts()
        if peak_matrix.n_cells == 0:
            raise DegenerateCellError(zero_cells, "No cells with non-zero total counts")

        X = peak_matrix.X.astype(np.float64)
        N = cell_totals.to_numpy(dtype=float)
        peak_totals = np.asarray(X.sum(axis=1)).ravel()
        expected_fraction = peak_totals / peak_totals.sum()

        motif_ids, M, unknown = presence_matrix(motif_presence, peak_matrix.feature_ids)
        if unknown:
            self.logger.info(
                "Ignored %d motif peak(s) absent from the matrix across %d motif(s)",
                sum(unknown.values()),
                len(unknown),
            )
        motif_expected = np.asarray(M.T @ expected_fraction).ravel()
        valid = motif_expected > cfg.min_expected
        skipped = [m for m, ok in zip(motif_ids, valid) if not ok]
        if skipped:
            self.logger.warning(
                "Skipping %d motif(s) with zero expected accessibility", len(skipped)
            )

        background = match_background_peaks(
            gc,
            peak_totals,
            n_iter,
            n_gc_bins=cfg.n_gc_bins,
            n_abundance_bins=cfg.n_abundance_bins,
            min_bin_peaks=cfg.min_bin_peaks,
            random_seed=cfg.random_seed,
            logger=self.logger,
        )
        report.merge(background.report)

        valid_idx = np.flatnonzero(valid)
        kept_ids = [motif_ids[i] for i in valid_idx]
        n_valid, n_cells = len(valid_idx), peak_matrix.n_cells
        raw = np.empty((n_valid, n_cells))
        corrected = np.empty((n_valid, n_cells))
        z = np.empty((n_valid, n_cells))
        flat_spread = np.zeros(n_valid, dtype=np.int64)

        def _run_chunk(start: int, stop: int) -> None:
            if token is not None:
                token.raise_if_cancelled("motif_deviations")
            self._score_chunk(
                M[:, valid_idx[start:stop]],
                motif_expected[valid_idx[start:stop]],
                X,
                N,
                expected_fraction,
                background,
                out=(
                    raw[start:stop],
                    corrected[start:stop],
                    z[start:stop],
                    flat_spread[start:stop],
                ),
            )

        chunk = max(int(cfg.chunk_size), 1)
        bounds = [(s, min(s + chunk, n_valid)) for s in range(0, n_valid, chunk)]
        self.logger.info(
            "Scoring %d motif(s) x %d cell(s) with %d background set(s) in %d chunk(s)",
            n_valid,
            n_cells,
            n_iter,
            len(bounds),
        )
        Parallel(n_jobs=cfg.n_jobs, prefer="threads")(
            delayed(_run_chunk)(s, e) for s, e in bounds
        )

        for motif, n_flat in zip(kept_ids, flat_spread):
            if n_flat:
                report.add(
                    ZeroVarianceFeatureError(
                        motif, f"zero background spread in {int(n_flat)} cell(s)"
                    )
                )

        cells = peak_matrix.cell_ids
        z_frame = pd.DataFrame(z, index=kept_ids, columns=cells)
        merged_hits = np.asarray(M.T @ background.merged_peaks.astype(float)).ravel()
        deviation = MotifDeviation(
            deviations=pd.DataFrame(corrected, index=kept_ids, columns=cells),
            z_scores=z_frame,
            raw_deviations=pd.DataFrame(raw, index=kept_ids, columns=cells),
            variability=compute_variability(z_frame),
            skipped_motifs=skipped,
            fidelity_flags=pd.Series(
                merged_hits[valid_idx] > 0, index=kept_ids, name="fidelity_flag"
            ),
            source_fingerprint=peak_matrix.fingerprint,
        )
        return MotifDeviationResult(deviation=deviation, unknown_peaks=unknown, report=report)

    @staticmethod
    def _score_chunk(
        M_chunk: sparse.csc_matrix,
        motif_expected: np.ndarray,
        X: sparse.csr_matrix,
        N: np.ndarray,
        expected_fraction: np.ndarray,
        background: BackgroundPeaks,
        out: Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray],
    ) -> None:
        """Score one chunk of motifs, writing into the ``out`` slices."""
        raw_out, corrected_out, z_out, flat_out = out
        n_motifs = M_chunk.shape[1]
        n_iter = background.n_iterations

        observed = np.asarray((M_chunk.T @ X).todense())
        expected = motif_expected[:, None] * N[None, :]
        raw = (observed - expected) / expected

        # One weight row per (motif, iteration) pair
        rows: List[np.ndarray] = []
        cols: List[np.ndarray] = []
        for j in range(n_motifs):
            peaks = M_chunk.indices[M_chunk.indptr[j] : M_chunk.indptr[j + 1]]
            partners = background.partners[:, peaks]
            rows.append(np.repeat(j * n_iter + np.arange(n_iter), peaks.size))
            cols.append(partners.ravel())
        W = sparse.csr_matrix(
            (np.ones(sum(r.size for r in rows)), (np.concatenate(rows), np.concatenate(cols))),
            shape=(n_motifs * n_iter, X.shape[0]),
        )
        bg_observed = np.asarray((W @ X).todense())
        bg_fraction = W @ expected_fraction
        with np.errstate(invalid="ignore", divide="ignore"):
            bg_expected = bg_fraction[:, None] * N[None, :]
            bg_raw = np.where(bg_expected > 0, (bg_observed - bg_expected) / bg_expected, np.nan)
        bg_raw = bg_raw.reshape(n_motifs, n_iter, -1)

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            bg_mean = np.nanmean(bg_raw, axis=1)
            bg_sd = np.nanstd(bg_raw, axis=1, ddof=1)

        corrected = raw - bg_mean
        flat = ~(bg_sd > SD_TOLERANCE)
        with np.errstate(invalid="ignore", divide="ignore"):
            z = np.where(flat, np.nan, corrected / np.where(flat, 1.0, bg_sd))

        raw_out[:] = raw
        corrected_out[:] = corrected
        z_out[:] = z
        flat_out[:] = flat.sum(axis=1)
