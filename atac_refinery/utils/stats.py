"""Statistical utilities for ATAC-Refinery.

Provides multiple-testing correction, column-wise correlation and
sparse matrix summaries shared by the analysis engines.
"""

from __future__ import annotations

from typing import Iterable, Union

import numpy as np
from scipy import sparse

ArrayLike = Union[Iterable[float], np.ndarray]

CORRECTION_METHODS = ("fdr_bh", "bonferroni", "holm", "none")


def apply_fdr_correction(
    p_values: ArrayLike,
    method: str = "fdr_bh",
) -> np.ndarray:
    """Apply multiple testing correction to p-values.

    Non-finite p-values are ignored and returned as NaN; the number of
    tests is the number of finite p-values.

    Parameters
    ----------
    p_values : ArrayLike
        Raw p-values
    method : str
        Correction method: "fdr_bh", "bonferroni", "holm", "none"

    Returns
    -------
    np.ndarray
        Corrected p-values with the input's shape
    """
    if method not in CORRECTION_METHODS:
        raise ValueError(f"Unknown correction method: {method}")

    arr = np.asarray(p_values, dtype=float)
    original_shape = arr.shape
    flat = arr.ravel()
    mask = np.isfinite(flat)
    result = np.full(flat.shape, np.nan)
    pvals = flat[mask]
    n_tests = len(pvals)

    if n_tests == 0:
        return result.reshape(original_shape)

    if method == "none":
        adjusted = pvals.copy()

    elif method == "bonferroni":
        adjusted = np.clip(pvals * n_tests, 0, 1)

    elif method == "fdr_bh":
        sorted_idx = np.argsort(pvals, kind="stable")
        ranks = np.arange(1, n_tests + 1)
        adjusted_sorted = pvals[sorted_idx] * n_tests / ranks
        adjusted_sorted = np.minimum.accumulate(adjusted_sorted[::-1])[::-1]
        adjusted = np.empty(n_tests)
        adjusted[sorted_idx] = np.clip(adjusted_sorted, 0, 1)

    else:  # holm
        sorted_idx = np.argsort(pvals, kind="stable")
        adjusted_sorted = pvals[sorted_idx] * (n_tests - np.arange(n_tests))
        adjusted_sorted = np.maximum.accumulate(adjusted_sorted)
        adjusted = np.empty(n_tests)
        adjusted[sorted_idx] = np.clip(adjusted_sorted, 0, 1)

    result[mask] = adjusted
    return result.reshape(original_shape)


def column_correlation(values: np.ndarray, reference: ArrayLike) -> np.ndarray:
    """Pearson correlation of every column of ``values`` with ``reference``.

    Columns (or a reference) without variance get a correlation of 0.

    Parameters
    ----------
    values : np.ndarray
        Array of shape (n, k)
    reference : ArrayLike
        Vector of length n

    Returns
    -------
    np.ndarray
        Correlations of length k
    """
    values = np.asarray(values, dtype=float)
    ref = np.asarray(reference, dtype=float).ravel()
    if values.shape[0] != ref.shape[0]:
        raise ValueError(
            f"Length mismatch: {values.shape[0]} rows vs {ref.shape[0]} reference values"
        )
    centered = values - values.mean(axis=0)
    ref_centered = ref - ref.mean()
    denom = np.sqrt((centered ** 2).sum(axis=0) * (ref_centered ** 2).sum())
    numer = centered.T @ ref_centered
    with np.errstate(invalid="ignore", divide="ignore"):
        corr = np.where(denom > 0, numer / np.where(denom > 0, denom, 1.0), 0.0)
    return np.clip(corr, -1.0, 1.0)


def sparse_row_stats(matrix: sparse.spmatrix, columns: np.ndarray) -> tuple:
    """Per-row mean, variance and non-zero fraction over selected columns.

    Parameters
    ----------
    matrix : scipy.sparse matrix
        Array of shape (n_rows, n_cols)
    columns : np.ndarray
        Boolean mask over columns

    Returns
    -------
    tuple of np.ndarray
        (mean, variance, fraction_nonzero), each of length n_rows. Variance
        uses ddof=0.
    """
    sub = sparse.csr_matrix(matrix)[:, np.flatnonzero(columns)]
    sub.eliminate_zeros()
    n = sub.shape[1]
    if n == 0:
        empty = np.full(sub.shape[0], np.nan)
        return empty, empty.copy(), empty.copy()
    mean = np.asarray(sub.sum(axis=1)).ravel() / n
    sq = np.asarray(sub.multiply(sub).sum(axis=1)).ravel() / n
    var = np.maximum(sq - mean ** 2, 0.0)
    frac = np.diff(sub.indptr) / n
    return mean, var, frac
