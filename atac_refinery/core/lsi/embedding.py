"""Truncated SVD (latent semantic indexing) of normalized matrices.

The matrix is decomposed with rows = features and columns = cells, so the
cell embedding is V_k * s_k and feature loadings are U_k. Components are
sorted by descending singular value and oriented so that the
largest-magnitude entry of each right singular vector is positive.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import logging

import numpy as np
import pandas as pd
from scipy.sparse.linalg import svds

from ..errors import AnomalyReport, RankDeficiencyError
from ..matrix.store import CountMatrix
from ...utils.stats import column_correlation
from .config import LSIConfig


SVD_SOLVERS = ("arpack", "lobpcg", "propack")


@dataclass
class Embedding:
    """Cells x k embedding with its decomposition metadata.

    Attributes
    ----------
    cell_ids : pd.Index
        Cell identifiers in row order
    values : np.ndarray
        Cell coordinates, shape (n_cells, k)
    singular_values : np.ndarray
        Singular values in descending order
    feature_ids : pd.Index
        Feature identifiers in loading row order
    feature_loadings : np.ndarray
        Left singular vectors, shape (n_features, k)
    depth_correlation : np.ndarray
        Pearson r of each component with per-cell total counts
    flagged : List[int]
        Zero-based indices of depth-associated components
    source_fingerprint : str
        Fingerprint of the matrix the embedding was computed from
    """

    cell_ids: pd.Index
    values: np.ndarray
    singular_values: np.ndarray
    feature_ids: pd.Index
    feature_loadings: np.ndarray
    depth_correlation: np.ndarray
    flagged: List[int] = field(default_factory=list)
    source_fingerprint: str = ""

    @property
    def n_cells(self) -> int:
        return self.values.shape[0]

    @property
    def n_components(self) -> int:
        return self.values.shape[1]

    @property
    def component_names(self) -> List[str]:
        return [f"LSI_{i + 1}" for i in range(self.n_components)]

    def default_dims(self) -> List[int]:
        """Zero-based indices of components that are not flagged."""
        flagged = set(self.flagged)
        return [i for i in range(self.n_components) if i not in flagged]

    def select(self, dims: Optional[Sequence[int]] = None) -> np.ndarray:
        """Cell coordinates restricted to ``dims`` (all components if None)."""
        if dims is None:
            return self.values
        dims = list(dims)
        bad = [d for d in dims if d < 0 or d >= self.n_components]
        if bad:
            raise ValueError(
                f"Invalid component indices {bad} for {self.n_components} components"
            )
        return self.values[:, dims]

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self.values, index=self.cell_ids, columns=self.component_names)

    def component_table(self) -> pd.DataFrame:
        """Per-component singular value, depth correlation and flag."""
        flagged = set(self.flagged)
        return pd.DataFrame(
            {
                "component": self.component_names,
                "singular_value": self.singular_values,
                "depth_correlation": self.depth_correlation,
                "flagged": [i in flagged for i in range(self.n_components)],
            }
        )


@dataclass
class EmbeddingResult:
    """Result from LSI embedding.

    Attributes
    ----------
    embedding : Embedding
        Cell embedding
    report : AnomalyReport
        Non-fatal anomalies (none are currently produced by the embedder)
    """

    embedding: Embedding
    report: AnomalyReport = field(default_factory=lambda: AnomalyReport(stage="embed"))

    def to_dict(self) -> Dict[str, Any]:
        emb = self.embedding
        return {
            "n_components": emb.n_components,
            "flagged": list(emb.flagged),
            "singular_values": [float(s) for s in emb.singular_values],
        }


class LSIEmbedder:
    """Truncated SVD embedder for sparse normalized matrices.

    Parameters
    ----------
    config : LSIConfig, optional
        Embedding configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> embedder = LSIEmbedder(LSIConfig(n_components=30))
    >>> result = embedder.embed(normalized, depth=counts.total_counts())
    >>> dims = result.embedding.default_dims()
    """

    def __init__(
        self,
        config: Optional[LSIConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or LSIConfig()
        self.logger = logger or logging.getLogger(__name__)

    def _start_vector(self, shape, solver: str, seed: int) -> np.ndarray:
        length = shape[0] if solver == "propack" else min(shape)
        rng = np.random.default_rng(seed)
        return rng.uniform(-1.0, 1.0, size=length)

    def embed(
        self,
        matrix: CountMatrix,
        k: Optional[int] = None,
        depth: Optional[pd.Series] = None,
    ) -> EmbeddingResult:
        """Compute the top-k singular triplets of a normalized matrix.

        Parameters
        ----------
        matrix : CountMatrix
            Normalized feature-by-cell matrix
        k : int, optional
            Number of components. Defaults to config value.
        depth : pd.Series, optional
            Per-cell sequencing depth used for the depth correlation check.
            Defaults to the column totals of ``matrix``.

        Returns
        -------
        EmbeddingResult
            Embedding with singular values, loadings and flagged components

        Raises
        ------
        ValueError
            If k < 1 or the solver is unknown
        RankDeficiencyError
            If k exceeds min(n_features, n_cells) - 1 or the effective rank
        """
        cfg = self.config
        k = k if k is not None else cfg.n_components
        if int(k) != k or k < 1:
            raise ValueError(f"Number of components must be a positive integer, got {k}")
        k = int(k)
        if cfg.solver not in SVD_SOLVERS:
            raise ValueError(f"Unknown SVD solver '{cfg.solver}'; use one of {SVD_SOLVERS}")

        max_rank = min(matrix.shape) - 1
        if k > max_rank:
            raise RankDeficiencyError(
                f"Requested {k} components but at most {max(max_rank, 0)} can be "
                f"computed for a {matrix.n_features} x {matrix.n_cells} matrix",
                {"k": k, "shape": list(matrix.shape)},
            )

        X = matrix.X.astype(np.float64)
        v0 = self._start_vector(X.shape, cfg.solver, cfg.random_seed)
        self.logger.info(
            "Computing %d singular triplets (%s) of %d x %d matrix",
            k,
            cfg.solver,
            matrix.n_features,
            matrix.n_cells,
        )
        u, s, vt = svds(X, k=k, v0=v0, solver=cfg.solver)

        order = np.argsort(-s, kind="stable")
        u, s, vt = u[:, order], s[order], vt[order, :]

        s_max = float(s[0]) if s.size else 0.0
        deficient = np.flatnonzero(s <= cfg.rank_tolerance * s_max) if s_max > 0 else np.arange(k)
        if deficient.size:
            raise RankDeficiencyError(
                f"Requested {k} components but the matrix has effective rank "
                f"{int(deficient[0])}",
                {"k": k, "effective_rank": int(deficient[0])},
            )

        # Orient each component: largest |entry| of the cell vector positive
        pivots = np.argmax(np.abs(vt), axis=1)
        signs = np.sign(vt[np.arange(k), pivots])
        signs[signs == 0] = 1.0
        vt = vt * signs[:, None]
        u = u * signs[None, :]

        values = vt.T * s[None, :]

        if depth is None:
            depth = matrix.total_counts()
        if isinstance(depth, pd.Series):
            depth = depth.reindex(matrix.cell_ids)
        else:
            depth = pd.Series(np.asarray(depth, dtype=float), index=matrix.cell_ids)
        depth_corr = column_correlation(values, depth.to_numpy(dtype=float))

        flagged = set(
            np.flatnonzero(np.abs(depth_corr) >= cfg.depth_correlation_threshold).tolist()
        )
        if cfg.flag_first_component:
            flagged.add(0)
        flagged = sorted(int(i) for i in flagged)
        if flagged:
            self.logger.info(
                "Flagged depth-associated components: %s",
                ", ".join(f"LSI_{i + 1} (r={depth_corr[i]:.2f})" for i in flagged),
            )

        embedding = Embedding(
            cell_ids=matrix.cell_ids,
            values=values,
            singular_values=s.copy(),
            feature_ids=matrix.feature_ids,
            feature_loadings=u,
            depth_correlation=depth_corr,
            flagged=flagged,
            source_fingerprint=matrix.fingerprint,
        )
        for arr in (embedding.values, embedding.singular_values, embedding.feature_loadings):
            arr.setflags(write=False)
        return EmbeddingResult(embedding=embedding)
