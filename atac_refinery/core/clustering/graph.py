"""Shared-nearest-neighbor graph construction.

Exact k-nearest neighbors are computed in row chunks. Within a row,
distances are sorted stably so that ties resolve by cell order, and the
cell itself is always placed first. Edge weights are the Jaccard index of
the two cells' neighbor sets.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging

import numpy as np
import pandas as pd
from scipy import sparse
from scipy.sparse.csgraph import connected_components
from sklearn.metrics import pairwise_distances_chunked


METRICS = ("euclidean", "cosine")
EDGE_MODES = ("mutual", "union")


@dataclass
class NeighborGraph:
    """Symmetric weighted SNN graph over cells.

    Attributes
    ----------
    cell_ids : pd.Index
        Cell identifiers in node order
    adjacency : sparse.csr_matrix
        Symmetric Jaccard weights, no self-loops
    knn_indices : np.ndarray
        Neighbor positions per cell, shape (n_cells, n_neighbors)
    component_labels : np.ndarray
        Connected-component label per cell
    source_fingerprint : str
        Fingerprint of the embedding source matrix
    params : Dict[str, Any]
        Parameters the graph was built with
    """

    cell_ids: pd.Index
    adjacency: sparse.csr_matrix
    knn_indices: np.ndarray
    component_labels: np.ndarray
    source_fingerprint: str = ""
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_cells(self) -> int:
        return self.adjacency.shape[0]

    @property
    def n_edges(self) -> int:
        """Number of undirected edges."""
        return self.adjacency.nnz // 2

    @property
    def n_components(self) -> int:
        return int(self.component_labels.max()) + 1 if self.n_cells else 0

    def isolated_cells(self) -> List[str]:
        """Cells without any edge."""
        degree = np.diff(self.adjacency.indptr)
        return self.cell_ids[degree == 0].tolist()


def knn_indices(
    coords: np.ndarray,
    n_neighbors: int,
    metric: str = "euclidean",
    include_self: bool = True,
    n_jobs: int = 1,
    working_memory: Optional[int] = None,
) -> np.ndarray:
    """Exact nearest neighbors with deterministic tie-breaking.

    Parameters
    ----------
    coords : np.ndarray
        Cell coordinates, shape (n_cells, d)
    n_neighbors : int
        Neighbors per cell; counts the cell itself when include_self
    metric : str
        "euclidean" or "cosine"
    include_self : bool
        Place the cell itself first in its own neighbor list
    n_jobs : int
        Parallel jobs for distance computation
    working_memory : int, optional
        Chunk size hint in MiB

    Returns
    -------
    np.ndarray
        Neighbor positions, shape (n_cells, n_neighbors)
    """
    if metric not in METRICS:
        raise ValueError(f"Unknown metric '{metric}'; use one of {METRICS}")
    n_cells = coords.shape[0]
    available = n_cells if include_self else n_cells - 1
    if n_neighbors < 1 or n_neighbors > available:
        raise ValueError(
            f"n_neighbors={n_neighbors} out of range for {n_cells} cells "
            f"(include_self={include_self})"
        )

    def _reduce(dist_chunk: np.ndarray, start: int) -> np.ndarray:
        rows = np.arange(dist_chunk.shape[0])
        dist_chunk = np.array(dist_chunk, dtype=float)
        # Self sorts first; dropped afterwards when not included
        dist_chunk[rows, start + rows] = -np.inf
        order = np.argsort(dist_chunk, axis=1, kind="stable")
        if include_self:
            return order[:, :n_neighbors]
        return order[:, 1 : n_neighbors + 1]

    chunks = pairwise_distances_chunked(
        coords,
        reduce_func=_reduce,
        metric=metric,
        n_jobs=n_jobs,
        working_memory=working_memory,
    )
    return np.vstack(list(chunks)).astype(np.int64)


def jaccard_graph(
    neighbors: np.ndarray,
    edge_mode: str = "mutual",
    prune: float = 1.0 / 15.0,
) -> sparse.csr_matrix:
    """Jaccard-weighted SNN adjacency from neighbor lists.

    Parameters
    ----------
    neighbors : np.ndarray
        Neighbor positions per cell, shape (n_cells, n_neighbors)
    edge_mode : str
        "mutual" or "union"
    prune : float
        Edges with weight below this value are dropped

    Returns
    -------
    sparse.csr_matrix
        Symmetric adjacency without self-loops
    """
    if edge_mode not in EDGE_MODES:
        raise ValueError(f"Unknown edge_mode '{edge_mode}'; use one of {EDGE_MODES}")
    n_cells, n_neighbors = neighbors.shape
    rows = np.repeat(np.arange(n_cells), n_neighbors)
    membership = sparse.csr_matrix(
        (np.ones(rows.size), (rows, neighbors.ravel())), shape=(n_cells, n_cells)
    )
    membership.data[:] = 1.0
    set_sizes = np.asarray(membership.sum(axis=1)).ravel()

    if edge_mode == "mutual":
        candidates = membership.multiply(membership.T)
    else:
        candidates = ((membership + membership.T) > 0).astype(float)
    candidates = sparse.coo_matrix(candidates)
    off_diag = candidates.row != candidates.col
    r, c = candidates.row[off_diag], candidates.col[off_diag]
    if r.size == 0:
        return sparse.csr_matrix((n_cells, n_cells))

    shared = membership @ membership.T
    inter = np.asarray(shared[r, c]).ravel()
    union = set_sizes[r] + set_sizes[c] - inter
    with np.errstate(invalid="ignore", divide="ignore"):
        weights = np.where(union > 0, inter / np.where(union > 0, union, 1.0), 0.0)

    keep = (weights >= prune) & (weights > 0)
    adjacency = sparse.csr_matrix(
        (weights[keep], (r[keep], c[keep])), shape=(n_cells, n_cells)
    )
    adjacency.sort_indices()
    return adjacency


def build_snn_graph(
    coords: np.ndarray,
    cell_ids: pd.Index,
    k_neighbors: int = 20,
    metric: str = "euclidean",
    include_self: bool = True,
    edge_mode: str = "mutual",
    prune: float = 1.0 / 15.0,
    n_jobs: int = 1,
    working_memory: Optional[int] = None,
    source_fingerprint: str = "",
    logger: Optional[logging.Logger] = None,
) -> NeighborGraph:
    """Build a shared-nearest-neighbor graph from cell coordinates.

    ``k_neighbors`` larger than the number of available cells is clipped
    with a warning.
    """
    logger = logger or logging.getLogger(__name__)
    coords = np.asarray(coords, dtype=float)
    n_cells = coords.shape[0]
    available = n_cells if include_self else n_cells - 1
    if n_cells == 0:
        raise ValueError("Cannot build a neighbor graph without cells")
    if k_neighbors < 1:
        raise ValueError(f"k_neighbors must be >= 1, got {k_neighbors}")
    if k_neighbors > available:
        logger.warning(
            "k_neighbors=%d exceeds available cells; clipping to %d",
            k_neighbors,
            available,
        )
        k_neighbors = available

    if k_neighbors >= 1:
        neighbors = knn_indices(
            coords,
            k_neighbors,
            metric=metric,
            include_self=include_self,
            n_jobs=n_jobs,
            working_memory=working_memory,
        )
    else:
        neighbors = np.empty((n_cells, 0), dtype=np.int64)
    adjacency = jaccard_graph(neighbors, edge_mode=edge_mode, prune=prune)
    _, labels = connected_components(adjacency, directed=False)

    graph = NeighborGraph(
        cell_ids=pd.Index(cell_ids),
        adjacency=adjacency,
        knn_indices=neighbors,
        component_labels=labels,
        source_fingerprint=source_fingerprint,
        params={
            "k_neighbors": k_neighbors,
            "metric": metric,
            "include_self": include_self,
            "edge_mode": edge_mode,
            "prune": prune,
        },
    )
    logger.info(
        "SNN graph: %d cells, %d edges, %d component(s)",
        graph.n_cells,
        graph.n_edges,
        graph.n_components,
    )
    return graph
