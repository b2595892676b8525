"""Sparse feature-by-cell matrix store and per-cell metadata.

CountMatrix is the foundation every other component consumes. Rows are
features (peaks, genes or motifs), columns are cells. Matrices are never
edited in place: filtering produces a new matrix.
"""

from __future__ import annotations

import hashlib
from enum import Enum
from typing import Any, Iterable, Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy import sparse

from ..errors import MatrixValidationError


class MatrixKind(str, Enum):
    """Explicit tag for the kind of values a matrix holds."""

    COUNTS = "counts"
    NORMALIZED = "normalized"
    ACTIVITY = "activity"
    DEVIATION = "deviation"


# Kinds whose entries must be non-negative
NON_NEGATIVE_KINDS = {MatrixKind.COUNTS, MatrixKind.ACTIVITY, MatrixKind.NORMALIZED}


def _as_index(ids: Iterable[Any], what: str) -> pd.Index:
    index = pd.Index([str(i) for i in ids], dtype=object)
    if not index.is_unique:
        dupes = index[index.duplicated()].unique().tolist()
        raise MatrixValidationError(
            f"{what} ids are not unique ({len(dupes)} duplicated, e.g. {dupes[:3]})",
            {"duplicated": dupes[:20]},
        )
    return index


class CountMatrix:
    """Immutable sparse matrix with ordered feature and cell identifiers.

    Parameters
    ----------
    data : scipy.sparse matrix or np.ndarray
        Feature-by-cell values (n_features, n_cells)
    feature_ids : Sequence[str]
        Unique feature identifiers in row order
    cell_ids : Sequence[str]
        Unique cell identifiers in column order
    kind : MatrixKind
        What the values represent. COUNTS must be non-negative integers.

    Raises
    ------
    MatrixValidationError
        If dimensions do not match the ids, ids are duplicated, or values
        violate the invariants of ``kind``

    Example
    -------
    >>> m = CountMatrix(counts, peaks, barcodes)
    >>> m.shape
    (120000, 5000)
    >>> kept = m.subset_cells(m.total_counts() > 500)
    """

    def __init__(
        self,
        data: Union[sparse.spmatrix, np.ndarray],
        feature_ids: Sequence[str],
        cell_ids: Sequence[str],
        kind: Union[MatrixKind, str] = MatrixKind.COUNTS,
    ):
        self.kind = MatrixKind(kind)
        if sparse.issparse(data):
            matrix = sparse.csr_matrix(data, copy=True)
        else:
            arr = np.asarray(data)
            if arr.ndim != 2:
                raise MatrixValidationError(
                    f"Matrix must be 2-D, got {arr.ndim} dimension(s)"
                )
            matrix = sparse.csr_matrix(arr)
        matrix.sum_duplicates()
        matrix.eliminate_zeros()
        matrix.sort_indices()

        self.feature_ids = _as_index(feature_ids, "Feature")
        self.cell_ids = _as_index(cell_ids, "Cell")

        if matrix.shape != (len(self.feature_ids), len(self.cell_ids)):
            raise MatrixValidationError(
                f"Matrix shape {matrix.shape} does not match "
                f"{len(self.feature_ids)} feature ids x {len(self.cell_ids)} cell ids",
                {"shape": list(matrix.shape)},
            )

        if self.kind == MatrixKind.COUNTS:
            if matrix.dtype.kind == "f":
                if not np.all(np.isfinite(matrix.data)) or not np.all(
                    np.mod(matrix.data, 1) == 0
                ):
                    raise MatrixValidationError("Count matrix values must be integers")
            matrix = matrix.astype(np.int64)
        else:
            matrix = matrix.astype(np.float64)
            if not np.all(np.isfinite(matrix.data)):
                raise MatrixValidationError("Matrix contains non-finite values")

        if self.kind in NON_NEGATIVE_KINDS and matrix.nnz and matrix.data.min() < 0:
            raise MatrixValidationError(
                f"{self.kind.value} matrix contains negative entries"
            )

        for buf in (matrix.data, matrix.indices, matrix.indptr):
            buf.setflags(write=False)
        self._matrix = matrix
        self._fingerprint: Optional[str] = None

    # ------------------------------------------------------------------
    # Basic properties
    # ------------------------------------------------------------------

    @property
    def X(self) -> sparse.csr_matrix:
        """Read-only CSR view (features x cells)."""
        return self._matrix

    @property
    def shape(self):
        return self._matrix.shape

    @property
    def n_features(self) -> int:
        return self._matrix.shape[0]

    @property
    def n_cells(self) -> int:
        return self._matrix.shape[1]

    @property
    def nnz(self) -> int:
        return self._matrix.nnz

    @property
    def fingerprint(self) -> str:
        """Stable content hash used to detect stale derived results."""
        if self._fingerprint is None:
            h = hashlib.sha1()
            h.update(self.kind.value.encode())
            h.update(np.asarray(self.shape, dtype=np.int64).tobytes())
            h.update("\x1f".join(self.feature_ids).encode())
            h.update("\x1e".join(self.cell_ids).encode())
            h.update(np.ascontiguousarray(self._matrix.indptr).tobytes())
            h.update(np.ascontiguousarray(self._matrix.indices).tobytes())
            h.update(np.ascontiguousarray(self._matrix.data).tobytes())
            self._fingerprint = h.hexdigest()
        return self._fingerprint

    def __repr__(self) -> str:
        return (
            f"CountMatrix(kind={self.kind.value}, features={self.n_features}, "
            f"cells={self.n_cells}, nnz={self.nnz})"
        )

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    def total_counts(self) -> pd.Series:
        """Per-cell column sums."""
        totals = np.asarray(self._matrix.sum(axis=0)).ravel()
        return pd.Series(totals, index=self.cell_ids, name="total_counts")

    def feature_totals(self) -> pd.Series:
        """Per-feature row sums."""
        totals = np.asarray(self._matrix.sum(axis=1)).ravel()
        return pd.Series(totals, index=self.feature_ids, name="feature_totals")

    def cells_per_feature(self) -> pd.Series:
        """Number of cells with a non-zero entry, per feature."""
        counts = np.diff(self._matrix.indptr)
        return pd.Series(counts, index=self.feature_ids, name="n_cells")

    def to_dataframe(self) -> pd.DataFrame:
        """Dense DataFrame copy (features x cells). Intended for small matrices."""
        return pd.DataFrame(
            self._matrix.toarray(), index=self.feature_ids, columns=self.cell_ids
        )

    # ------------------------------------------------------------------
    # Copy-on-filter operations
    # ------------------------------------------------------------------

    def _resolve(self, selector, ids: pd.Index) -> np.ndarray:
        sel = np.asarray(selector)
        if sel.dtype == bool:
            if sel.shape[0] != len(ids):
                raise MatrixValidationError(
                    f"Boolean mask length {sel.shape[0]} != {len(ids)}"
                )
            return np.flatnonzero(sel)
        if sel.dtype.kind in "iu":
            return sel.astype(np.int64)
        positions = ids.get_indexer([str(s) for s in sel])
        if (positions < 0).any():
            missing = [str(s) for s, p in zip(sel, positions) if p < 0]
            raise MatrixValidationError(
                f"{len(missing)} unknown id(s), e.g. {missing[:3]}"
            )
        return positions

    def subset_cells(self, selector) -> "CountMatrix":
        """New matrix restricted to the selected cells (mask, positions or ids)."""
        idx = self._resolve(selector, self.cell_ids)
        return CountMatrix(
            self._matrix[:, idx], self.feature_ids, self.cell_ids[idx], self.kind
        )

    def subset_features(self, selector) -> "CountMatrix":
        """New matrix restricted to the selected features (mask, positions or ids)."""
        idx = self._resolve(selector, self.feature_ids)
        return CountMatrix(
            self._matrix[idx, :], self.feature_ids[idx], self.cell_ids, self.kind
        )

    def with_values(
        self, data: sparse.spmatrix, kind: Union[MatrixKind, str]
    ) -> "CountMatrix":
        """New matrix with the same ids but different values and kind."""
        return CountMatrix(data, self.feature_ids, self.cell_ids, kind)

    def with_kind(self, kind: Union[MatrixKind, str]) -> "CountMatrix":
        """New matrix with the same values re-tagged as ``kind``."""
        return CountMatrix(self._matrix, self.feature_ids, self.cell_ids, kind)

    @classmethod
    def from_dataframe(
        cls,
        frame: pd.DataFrame,
        kind: Union[MatrixKind, str] = MatrixKind.COUNTS,
    ) -> "CountMatrix":
        """Build from a dense features x cells DataFrame."""
        return cls(
            sparse.csr_matrix(frame.to_numpy()),
            frame.index.astype(str),
            frame.columns.astype(str),
            kind,
        )


class CellMetadata:
    """Per-cell scalar records aligned with a matrix's cell order.

    Columns may be added at any time. Rows are only removed through
    :meth:`subset`, which is called together with matrix cell filtering.

    Parameters
    ----------
    cell_ids : Sequence[str]
        Cell identifiers in matrix column order
    frame : pd.DataFrame, optional
        Initial columns, indexed by cell id (reindexed to ``cell_ids``)
    """

    def __init__(self, cell_ids: Sequence[str], frame: Optional[pd.DataFrame] = None):
        index = _as_index(cell_ids, "Cell")
        if frame is None:
            self._frame = pd.DataFrame(index=index)
        else:
            frame = frame.copy()
            frame.index = frame.index.astype(str)
            missing = index.difference(frame.index)
            if len(missing):
                raise MatrixValidationError(
                    f"Metadata is missing {len(missing)} cell(s), e.g. {list(missing[:3])}"
                )
            self._frame = frame.reindex(index)
        self._frame.index.name = "cell_id"

    @property
    def frame(self) -> pd.DataFrame:
        """Copy of the underlying table."""
        return self._frame.copy()

    @property
    def cell_ids(self) -> pd.Index:
        return self._frame.index

    @property
    def columns(self) -> list:
        return list(self._frame.columns)

    def __len__(self) -> int:
        return len(self._frame)

    def __contains__(self, column: str) -> bool:
        return column in self._frame.columns

    def __getitem__(self, column: str) -> pd.Series:
        return self._frame[column].copy()

    def add_column(self, name: str, values: Union[pd.Series, Sequence[Any]]) -> None:
        """Add or replace a column.

        A Series must be indexed by exactly the metadata's cell ids; a plain
        sequence must have one value per cell in matrix order.
        """
        if isinstance(values, pd.Series):
            index = values.index.astype(str)
            if len(index) != len(self._frame) or not index.isin(self._frame.index).all():
                raise MatrixValidationError(
                    f"Column '{name}' is not indexed by the metadata's cell ids"
                )
            series = pd.Series(values.to_numpy(), index=index).reindex(self._frame.index)
            self._frame[name] = series.to_numpy()
        else:
            values = list(values)
            if len(values) != len(self._frame):
                raise MatrixValidationError(
                    f"Column '{name}' has {len(values)} values for {len(self._frame)} cells"
                )
            self._frame[name] = values

    def subset(self, cell_ids: Sequence[str]) -> "CellMetadata":
        """New metadata restricted to (and ordered by) ``cell_ids``."""
        ids = [str(c) for c in cell_ids]
        return CellMetadata(ids, self._frame.loc[ids])

    def aligned_with(self, matrix: CountMatrix) -> bool:
        """True if the row order matches the matrix's cell order."""
        return self._frame.index.equals(matrix.cell_ids)
