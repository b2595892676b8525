"""TF-IDF normalization for peak-by-cell count matrices.

TF(f, c) = x / total_counts(c)
IDF(f)   = n_cells / (1 + n_cells_with_f)
out      = log(1 + TF * IDF * scale_factor)

Only stored non-zeros are transformed, so the cost is O(nnz) and the
output keeps the sparsity pattern of the input.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

import numpy as np
import pandas as pd
from scipy import sparse

from ..errors import AnomalyReport, DegenerateCellError, MatrixValidationError
from ..matrix.store import CountMatrix, MatrixKind
from .config import NormalizationConfig


@dataclass
class NormalizationResult:
    """Result from TF-IDF normalization.

    Attributes
    ----------
    matrix : CountMatrix
        Normalized matrix (kind NORMALIZED)
    idf : pd.Series
        Inverse document frequency per feature
    dropped_cells : list
        Zero-total cells removed before normalization
    report : AnomalyReport
        Degenerate cells, when dropped instead of raised
    """

    matrix: CountMatrix
    idf: pd.Series
    dropped_cells: list = field(default_factory=list)
    report: AnomalyReport = field(
        default_factory=lambda: AnomalyReport(stage="normalize")
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "n_features": self.matrix.n_features,
            "n_cells": self.matrix.n_cells,
            "n_dropped_cells": len(self.dropped_cells),
        }


def _row_of_entries(csr: sparse.csr_matrix) -> np.ndarray:
    """Row index of every stored entry of a CSR matrix."""
    return np.repeat(np.arange(csr.shape[0]), np.diff(csr.indptr))


def inverse_document_frequency(matrix: CountMatrix) -> pd.Series:
    """IDF per feature: n_cells / (1 + number of cells containing it)."""
    df = matrix.cells_per_feature().to_numpy().astype(float)
    return pd.Series(matrix.n_cells / (1.0 + df), index=matrix.feature_ids, name="idf")


class TfidfNormalizer:
    """TF-IDF normalizer for sparse count matrices.

    Parameters
    ----------
    config : NormalizationConfig, optional
        Normalization configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> normalizer = TfidfNormalizer()
    >>> result = normalizer.normalize(peaks)
    >>> result.matrix.kind
    <MatrixKind.NORMALIZED: 'normalized'>
    """

    def __init__(
        self,
        config: Optional[NormalizationConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or NormalizationConfig()
        self.logger = logger or logging.getLogger(__name__)

    def normalize(
        self,
        matrix: CountMatrix,
        scale_factor: Optional[float] = None,
        drop_degenerate_cells: Optional[bool] = None,
    ) -> NormalizationResult:
        """Apply TF-IDF to a count matrix.

        Parameters
        ----------
        matrix : CountMatrix
            Peak-by-cell counts
        scale_factor : float, optional
            Multiplier of TF*IDF. Defaults to config value.
        drop_degenerate_cells : bool, optional
            Drop zero-total cells instead of raising. Defaults to config value.

        Returns
        -------
        NormalizationResult
            Normalized matrix and IDF weights

        Raises
        ------
        MatrixValidationError
            If the matrix does not hold counts
        DegenerateCellError
            If a cell has zero total counts and dropping is disabled
        """
        cfg = self.config
        scale_factor = scale_factor if scale_factor is not None else cfg.scale_factor
        drop_degenerate_cells = (
            drop_degenerate_cells
            if drop_degenerate_cells is not None
            else cfg.drop_degenerate_cells
        )
        if matrix.kind != MatrixKind.COUNTS:
            raise MatrixValidationError(
                f"TF-IDF expects a counts matrix, got '{matrix.kind.value}'"
            )
        if scale_factor <= 0:
            raise ValueError(f"scale_factor must be positive, got {scale_factor}")

        report = AnomalyReport(stage="normalize")
        totals = matrix.total_counts()
        degenerate = totals.index[totals.to_numpy() == 0].tolist()
        if degenerate:
            error = DegenerateCellError(degenerate)
            if not drop_degenerate_cells:
                raise error
            self.logger.warning("Dropping %d zero-total cell(s)", len(degenerate))
            report.add(error)
            matrix = matrix.subset_cells(totals.to_numpy() > 0)
            totals = matrix.total_counts()

        idf = inverse_document_frequency(matrix)
        csr = matrix.X
        cell_totals = totals.to_numpy().astype(float)

        tf = csr.data / cell_totals[csr.indices] if csr.nnz else csr.data.astype(float)
        weights = idf.to_numpy()[_row_of_entries(csr)]
        values = np.log1p(tf * weights * scale_factor)

        normalized = sparse.csr_matrix(
            (values, csr.indices.copy(), csr.indptr.copy()), shape=csr.shape
        )
        self.logger.info(
            "TF-IDF normalized %d features x %d cells (nnz=%d)",
            matrix.n_features,
            matrix.n_cells,
            csr.nnz,
        )
        return NormalizationResult(
            matrix=matrix.with_values(normalized, MatrixKind.NORMALIZED),
            idf=idf,
            dropped_cells=degenerate,
            report=report,
        )

    def log_normalize(
        self,
        matrix: CountMatrix,
        scale_factor: Optional[float] = None,
    ) -> CountMatrix:
        """Per-cell total normalization followed by log1p.

        out = log(1 + x / total(c) * scale_factor). Zero-total cells stay
        zero. The scale factor defaults to the config value or, when unset,
        the median of the positive cell totals.
        """
        if matrix.kind not in (MatrixKind.COUNTS, MatrixKind.ACTIVITY):
            raise MatrixValidationError(
                f"Log-normalization expects counts or activity, got '{matrix.kind.value}'"
            )
        if scale_factor is None:
            scale_factor = self.config.activity_scale_factor
        totals = matrix.total_counts().to_numpy().astype(float)
        if scale_factor is None:
            positive = totals[totals > 0]
            scale_factor = float(np.median(positive)) if positive.size else 1.0

        csr = matrix.X
        values = csr.data / totals[csr.indices] * scale_factor
        normalized = sparse.csr_matrix(
            (np.log1p(values), csr.indices.copy(), csr.indptr.copy()), shape=csr.shape
        )
        self.logger.info(
            "Log-normalized %s matrix (scale_factor=%.1f)",
            matrix.kind.value,
            scale_factor,
        )
        return matrix.with_values(normalized, MatrixKind.NORMALIZED)
