"""Gene activity from peak accessibility.

Each gene body is extended upstream and downstream (strand-aware) and all
peak counts overlapping the window are summed per cell. A peak that
overlaps several windows contributes to every one of them.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from ..errors import AnomalyReport, EmptyOverlapWarning, MatrixValidationError
from ..matrix.annotation import (
    FeatureAnnotation,
    GenomicInterval,
    format_peak_id,
    peak_intervals,
)
from ..matrix.store import CountMatrix, MatrixKind
from .config import ActivityConfig
from .intervals import IntervalIndex


@dataclass
class AggregationResult:
    """Result from gene activity aggregation.

    Attributes
    ----------
    matrix : CountMatrix
        Gene-by-cell activity (kind ACTIVITY)
    windows : pd.DataFrame
        Extended window per gene with its number of overlapping peaks
    peak_multiplicity : pd.Series
        Number of gene windows each peak overlaps
    report : AnomalyReport
        Genes without overlapping peaks
    """

    matrix: CountMatrix
    windows: pd.DataFrame
    peak_multiplicity: pd.Series
    report: AnomalyReport = field(
        default_factory=lambda: AnomalyReport(stage="gene_activity")
    )

    @property
    def empty_genes(self) -> List[str]:
        return [w.gene for w in self.report.by_type(EmptyOverlapWarning)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_genes": self.matrix.n_features,
            "n_cells": self.matrix.n_cells,
            "n_empty_genes": len(self.empty_genes),
            "n_peaks_used": int((self.peak_multiplicity > 0).sum()),
        }


def _unique_gene_ids(intervals: Sequence[GenomicInterval]) -> List[str]:
    """Gene symbols, made unique with ``.1``, ``.2`` suffixes where repeated."""
    seen: Dict[str, int] = {}
    ids = []
    for iv in intervals:
        name = iv.gene_name or format_peak_id(iv)
        n = seen.get(name, 0)
        ids.append(name if n == 0 else f"{name}.{n}")
        seen[name] = n + 1
    return ids


class FeatureAggregator:
    """Sum peak counts over extended gene windows.

    Parameters
    ----------
    config : ActivityConfig, optional
        Aggregation configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> aggregator = FeatureAggregator()
    >>> result = aggregator.aggregate(peaks, genes, upstream_extension=2000)
    >>> result.matrix.shape
    """

    def __init__(
        self,
        config: Optional[ActivityConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ActivityConfig()
        self.logger = logger or logging.getLogger(__name__)

    def aggregate(
        self,
        matrix: CountMatrix,
        annotation: FeatureAnnotation,
        upstream_extension: Optional[int] = None,
        downstream_extension: Optional[int] = None,
        collapse_transcripts: Optional[bool] = None,
    ) -> AggregationResult:
        """Build a gene-by-cell activity matrix.

        Parameters
        ----------
        matrix : CountMatrix
            Peak-by-cell counts with coordinate-encoded feature ids
        annotation : FeatureAnnotation
            Gene intervals
        upstream_extension : int, optional
            5' extension in bases. Defaults to config value.
        downstream_extension : int, optional
            3' extension in bases. Defaults to config value.
        collapse_transcripts : bool, optional
            Keep the longest interval per gene. Defaults to config value.

        Returns
        -------
        AggregationResult
            Activity matrix, windows and empty-overlap records

        Raises
        ------
        MatrixValidationError
            If the matrix is not a counts matrix or peak ids cannot be parsed
        """
        cfg = self.config
        upstream = upstream_extension if upstream_extension is not None else cfg.upstream_extension
        downstream = (
            downstream_extension if downstream_extension is not None else cfg.downstream_extension
        )
        collapse = (
            collapse_transcripts if collapse_transcripts is not None else cfg.collapse_transcripts
        )
        if upstream < 0 or downstream < 0:
            raise ValueError("Window extensions must be non-negative")
        if matrix.kind != MatrixKind.COUNTS:
            raise MatrixValidationError(
                f"Gene activity expects a counts matrix, got '{matrix.kind.value}'"
            )

        if collapse:
            annotation = annotation.collapse_to_longest()
        genes = list(annotation)
        gene_ids = _unique_gene_ids(genes)

        index = IntervalIndex(peak_intervals(matrix.feature_ids))
        report = AnomalyReport(stage="gene_activity")

        rows: List[np.ndarray] = []
        cols: List[np.ndarray] = []
        window_records = []
        for g, (gene, gene_id) in enumerate(zip(genes, gene_ids)):
            window = gene.extend(upstream, downstream)
            hits = index.overlapping(window)
            if hits.size == 0:
                report.add(EmptyOverlapWarning(gene_id))
            rows.append(np.full(hits.size, g, dtype=np.int64))
            cols.append(hits)
            window_records.append(
                {
                    "gene": gene_id,
                    "chrom": window.chrom,
                    "start": window.start,
                    "end": window.end,
                    "strand": window.strand,
                    "n_peaks": int(hits.size),
                }
            )

        row_idx = np.concatenate(rows) if rows else np.empty(0, dtype=np.int64)
        col_idx = np.concatenate(cols) if cols else np.empty(0, dtype=np.int64)
        incidence = sparse.csr_matrix(
            (np.ones(row_idx.size), (row_idx, col_idx)),
            shape=(len(genes), matrix.n_features),
        )
        activity = incidence @ matrix.X.astype(np.float64)

        multiplicity = pd.Series(
            np.asarray(incidence.sum(axis=0)).ravel().astype(np.int64),
            index=matrix.feature_ids,
            name="n_windows",
        )
        result = AggregationResult(
            matrix=CountMatrix(activity, gene_ids, matrix.cell_ids, MatrixKind.ACTIVITY),
            windows=pd.DataFrame(window_records, columns=[
                "gene", "chrom", "start", "end", "strand", "n_peaks",
            ]),
            peak_multiplicity=multiplicity,
            report=report,
        )
        self.logger.info(
            "Gene activity: %d genes x %d cells from %d peaks (%d genes without overlaps)",
            len(genes),
            matrix.n_cells,
            int((multiplicity > 0).sum()),
            len(result.empty_genes),
        )
        return result


def annotate_closest_genes(
    feature_ids: Sequence[str],
    annotation: FeatureAnnotation,
) -> pd.DataFrame:
    """Closest gene body to each peak.

    Returns
    -------
    pd.DataFrame
        Indexed by feature id with ``gene_name`` and ``distance`` columns.
        Peaks on chromosomes without genes get an empty name and NaN
        distance.
    """
    genes = list(annotation)
    index = IntervalIndex(genes)
    records = []
    for fid, peak in zip(feature_ids, peak_intervals(feature_ids)):
        hit = index.closest(peak)
        if hit is None:
            records.append({"feature_id": fid, "gene_name": "", "distance": np.nan})
        else:
            pos, distance = hit
            records.append(
                {"feature_id": fid, "gene_name": genes[pos].gene_name, "distance": distance}
            )
    frame = pd.DataFrame(records, columns=["feature_id", "gene_name", "distance"])
    return frame.set_index("feature_id")
