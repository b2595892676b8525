"""Cell-level quality control and top-feature selection.

Cells are removed by threshold filters on fragment counts, fraction of
fragments in peaks, blacklist ratio, nucleosome signal and TSS enrichment.
Matrix and metadata are filtered in lock-step.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import logging

import numpy as np
import pandas as pd

from ..errors import AnomalyReport, DegenerateCellError
from .config import QCConfig
from .store import CellMetadata, CountMatrix


# Reason columns for tracking removal causes
REASON_COLUMNS = [
    "zero_counts",
    "low_peak_fragments",
    "high_peak_fragments",
    "low_fraction_in_peaks",
    "high_blacklist_ratio",
    "high_nucleosome_signal",
    "low_tss_enrichment",
]


@dataclass
class QCResult:
    """Result from QC filtering.

    Attributes
    ----------
    matrix : CountMatrix
        Filtered matrix
    metadata : CellMetadata
        Filtered metadata with derived QC columns
    cells_total : int
        Total cells before filtering
    cells_removed : int
        Number of cells removed
    reason_counts : Dict[str, int]
        Counts per removal reason
    removal_records : List[Dict]
        One record per removed cell
    report : AnomalyReport
        Degenerate (zero-count) cells
    """

    matrix: CountMatrix
    metadata: CellMetadata
    cells_total: int = 0
    cells_removed: int = 0
    reason_counts: Dict[str, int] = field(default_factory=dict)
    removal_records: List[Dict[str, Any]] = field(default_factory=list)
    report: AnomalyReport = field(default_factory=lambda: AnomalyReport(stage="qc"))

    @property
    def removal_fraction(self) -> float:
        return self.cells_removed / self.cells_total if self.cells_total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for reporting."""
        result = {
            "cells_total": self.cells_total,
            "cells_removed": self.cells_removed,
            "removal_fraction": round(self.removal_fraction, 4),
        }
        for reason in REASON_COLUMNS:
            result[f"removed_{reason}"] = self.reason_counts.get(reason, 0)
        return result


class CellQC:
    """Cell-level quality control filter.

    Parameters
    ----------
    config : QCConfig, optional
        QC configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> qc = CellQC(QCConfig(min_peak_fragments=1000))
    >>> result = qc.filter(matrix, metadata)
    >>> result.matrix.n_cells
    """

    def __init__(
        self,
        config: Optional[QCConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or QCConfig()
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _safe_ratio(numerator: pd.Series, denominator: pd.Series) -> pd.Series:
        """Compute ratio with NaN where the denominator is not positive."""
        num = pd.to_numeric(numerator, errors="coerce")
        den = pd.to_numeric(denominator, errors="coerce")
        ratio = pd.Series(np.nan, index=num.index, dtype=float)
        mask = den > 0
        ratio.loc[mask] = num.loc[mask] / den.loc[mask]
        return ratio

    def compute_qc_metrics(
        self, matrix: CountMatrix, metadata: Optional[CellMetadata] = None
    ) -> pd.DataFrame:
        """Derive per-cell QC columns.

        Returns a DataFrame indexed by cell id with ``total_counts``,
        ``peak_fragments`` and, where inputs allow, ``fraction_in_peaks``
        and ``blacklist_ratio``, plus any nucleosome/TSS columns present.
        """
        cfg = self.config
        frame = metadata.frame if metadata is not None else pd.DataFrame(index=matrix.cell_ids)
        qc = pd.DataFrame(index=matrix.cell_ids)
        qc["total_counts"] = matrix.total_counts()

        if cfg.peak_fragments_col in frame.columns:
            qc["peak_fragments"] = pd.to_numeric(
                frame[cfg.peak_fragments_col], errors="coerce"
            )
        else:
            qc["peak_fragments"] = qc["total_counts"].astype(float)

        if cfg.total_fragments_col in frame.columns:
            qc["fraction_in_peaks"] = self._safe_ratio(
                qc["peak_fragments"], frame[cfg.total_fragments_col]
            )
        if cfg.blacklist_fragments_col in frame.columns:
            qc["blacklist_ratio"] = self._safe_ratio(
                frame[cfg.blacklist_fragments_col], qc["peak_fragments"]
            )
        if cfg.nucleosome_signal_col in frame.columns:
            qc["nucleosome_signal"] = pd.to_numeric(
                frame[cfg.nucleosome_signal_col], errors="coerce"
            )
        if cfg.tss_enrichment_col in frame.columns:
            qc["tss_enrichment"] = pd.to_numeric(
                frame[cfg.tss_enrichment_col], errors="coerce"
            )
        return qc

    def _flag(self, qc: pd.DataFrame) -> pd.DataFrame:
        cfg = self.config
        reasons = pd.DataFrame(False, index=qc.index, columns=REASON_COLUMNS)
        reasons["zero_counts"] = qc["total_counts"] <= 0

        checks: List[Tuple[str, str, Optional[float], str]] = [
            ("low_peak_fragments", "peak_fragments", cfg.min_peak_fragments, "lt"),
            ("high_peak_fragments", "peak_fragments", cfg.max_peak_fragments, "gt"),
            ("low_fraction_in_peaks", "fraction_in_peaks", cfg.min_fraction_in_peaks, "lt"),
            ("high_blacklist_ratio", "blacklist_ratio", cfg.max_blacklist_ratio, "gt"),
            ("high_nucleosome_signal", "nucleosome_signal", cfg.max_nucleosome_signal, "gt"),
            ("low_tss_enrichment", "tss_enrichment", cfg.min_tss_enrichment, "lt"),
        ]
        for reason, column, threshold, op in checks:
            if threshold is None or column not in qc.columns:
                continue
            values = qc[column]
            if op == "lt":
                reasons[reason] = (values < threshold).fillna(False)
            else:
                reasons[reason] = (values > threshold).fillna(False)
        return reasons

    def filter(
        self, matrix: CountMatrix, metadata: Optional[CellMetadata] = None
    ) -> QCResult:
        """Filter cells based on QC criteria.

        Parameters
        ----------
        matrix : CountMatrix
            Peak-by-cell counts
        metadata : CellMetadata, optional
            Per-cell vendor QC fields

        Returns
        -------
        QCResult
            Filtered matrix/metadata and removal statistics
        """
        if metadata is None:
            metadata = CellMetadata(matrix.cell_ids)
        elif not metadata.aligned_with(matrix):
            metadata = metadata.subset(matrix.cell_ids)

        qc = self.compute_qc_metrics(matrix, metadata)
        reasons = self._flag(qc)
        flagged = reasons.any(axis=1)

        enriched = CellMetadata(matrix.cell_ids, metadata.frame)
        for column in qc.columns:
            enriched.add_column(column, qc[column])

        keep_ids = qc.index[~flagged.to_numpy()]
        result = QCResult(
            matrix=matrix.subset_cells(~flagged.to_numpy()),
            metadata=enriched.subset(keep_ids),
            cells_total=matrix.n_cells,
            cells_removed=int(flagged.sum()),
        )

        zero_ids = reasons.index[reasons["zero_counts"].to_numpy()].tolist()
        if zero_ids:
            result.report.add(DegenerateCellError(zero_ids))

        for cell_id, row in reasons.loc[flagged].iterrows():
            cell_reasons = [name for name in REASON_COLUMNS if bool(row[name])]
            result.removal_records.append(
                {"cell_id": cell_id, "reasons": ";".join(cell_reasons)}
            )
            for reason in cell_reasons:
                result.reason_counts[reason] = result.reason_counts.get(reason, 0) + 1

        self.logger.info(
            "QC removed %d / %d cells (%.1f%%)",
            result.cells_removed,
            result.cells_total,
            100.0 * result.removal_fraction,
        )
        for reason, count in sorted(result.reason_counts.items()):
            self.logger.debug("  %s: %d", reason, count)
        return result


def select_top_features(
    matrix: CountMatrix,
    min_cell_fraction: float = 0.0,
    n_top: Optional[int] = None,
    logger: Optional[logging.Logger] = None,
) -> CountMatrix:
    """Keep features present in at least ``min_cell_fraction`` of cells.

    Features never observed are always dropped. When ``n_top`` is given,
    the remaining features are ranked by total counts (ties by original
    order) and the top ``n_top`` are kept in their original order.
    """
    logger = logger or logging.getLogger(__name__)
    present = matrix.cells_per_feature().to_numpy()
    keep = present >= max(min_cell_fraction * matrix.n_cells, 1)

    if n_top is not None and keep.sum() > n_top:
        totals = matrix.feature_totals().to_numpy().astype(float)
        totals[~keep] = -np.inf
        order = np.argsort(-totals, kind="stable")[:n_top]
        keep = np.zeros_like(keep)
        keep[order] = True

    logger.info(
        "Selected %d / %d features (min_cell_fraction=%.3f, n_top=%s)",
        int(keep.sum()),
        matrix.n_features,
        min_cell_fraction,
        n_top,
    )
    return matrix.subset_features(keep)
