"""Greedy modularity optimization (Louvain) on weighted undirected graphs.

Each level runs local moving passes over nodes in index order, then
aggregates communities into super-nodes. Levels repeat until no node
moves. The resolution parameter gamma scales the null-model term:

    Q = 1/2m * sum_ij [A_ij - gamma * k_i * k_j / 2m] * delta(c_i, c_j)

The procedure is fully deterministic: no random node order is used.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import numpy as np
from scipy import sparse


@dataclass
class LouvainResult:
    """Community labels and the modularity they reach.

    Attributes
    ----------
    labels : np.ndarray
        Community per node, renumbered by descending size (ties broken by
        the smallest member index)
    modularity : float
        Modularity of the final partition at the given resolution
    n_levels : int
        Aggregation levels that moved at least one node
    """

    labels: np.ndarray
    modularity: float
    n_levels: int = 0


def modularity(
    adjacency: sparse.spmatrix,
    labels: np.ndarray,
    resolution: float = 1.0,
) -> float:
    """Modularity of a partition of a symmetric weighted graph."""
    A = sparse.csr_matrix(adjacency, dtype=float)
    m2 = A.sum()
    if m2 == 0:
        return 0.0
    labels = np.asarray(labels)
    n_comm = int(labels.max()) + 1
    S = sparse.csr_matrix(
        (np.ones(labels.size), (np.arange(labels.size), labels)),
        shape=(labels.size, n_comm),
    )
    internal = (S.T @ A @ S).diagonal()
    totals = np.asarray(S.T @ A.sum(axis=1)).ravel()
    return float(np.sum(internal / m2 - resolution * (totals / m2) ** 2))


def relabel_by_size(labels: np.ndarray) -> np.ndarray:
    """Renumber labels by descending community size.

    Ties are broken by the smallest member index, so the result does not
    depend on the incoming label values.
    """
    labels = np.asarray(labels)
    if labels.size == 0:
        return labels.astype(np.int64)
    uniq, first, inverse, counts = np.unique(
        labels, return_index=True, return_inverse=True, return_counts=True
    )
    order = np.lexsort((first, -counts))
    mapping = np.empty(len(uniq), dtype=np.int64)
    mapping[order] = np.arange(len(uniq))
    return mapping[inverse.ravel()]


def _local_moving(
    A: sparse.csr_matrix,
    resolution: float,
    m2: float,
    max_iterations: int,
    epsilon: float,
) -> Tuple[np.ndarray, bool]:
    """One level of local moving. Returns community per node and whether any moved."""
    n = A.shape[0]
    degree = np.asarray(A.sum(axis=1)).ravel()
    community = np.arange(n)
    totals = degree.copy()
    sizes = np.ones(n, dtype=np.int64)
    indptr, indices, data = A.indptr, A.indices, A.data
    moved_any = False

    for _ in range(max_iterations):
        improved = False
        for i in range(n):
            current = community[i]
            k_i = degree[i]

            weights: Dict[int, float] = {}
            for pos in range(indptr[i], indptr[i + 1]):
                j = indices[pos]
                if j == i:
                    continue
                c = community[j]
                weights[c] = weights.get(c, 0.0) + data[pos]

            # Remove i from its community
            totals[current] -= k_i
            sizes[current] -= 1

            scale = resolution * k_i / m2
            best = current
            best_gain = weights.get(current, 0.0) - scale * totals[current]
            current_gain = best_gain
            for c in sorted(weights):
                gain = weights[c] - scale * totals[c]
                if gain > best_gain:
                    best, best_gain = c, gain

            if best_gain < 0 and sizes[current] > 0:
                # Every candidate loses modularity: isolate i
                best = int(np.flatnonzero(sizes == 0)[0])
                best_gain = 0.0

            if best != current and 2.0 * (best_gain - current_gain) / m2 > epsilon:
                community[i] = best
                improved = True
                moved_any = True
            else:
                best = current

            totals[best] += k_i
            sizes[best] += 1

        if not improved:
            break

    return community, moved_any


def _aggregate(A: sparse.csr_matrix, community: np.ndarray) -> Tuple[sparse.csr_matrix, np.ndarray]:
    """Collapse communities into super-nodes, labels renumbered 0..K-1."""
    _, dense = np.unique(community, return_inverse=True)
    dense = dense.ravel()
    n_comm = int(dense.max()) + 1
    S = sparse.csr_matrix(
        (np.ones(dense.size), (np.arange(dense.size), dense)),
        shape=(dense.size, n_comm),
    )
    return sparse.csr_matrix(S.T @ A @ S), dense


def louvain(
    adjacency: sparse.spmatrix,
    resolution: float = 1.0,
    max_iterations: int = 100,
    max_levels: int = 50,
    epsilon: float = 1e-10,
) -> LouvainResult:
    """Deterministic Louvain community detection.

    Parameters
    ----------
    adjacency : sparse matrix
        Symmetric non-negative weights
    resolution : float
        Gamma; 0 yields one community per connected component
    max_iterations : int
        Maximum local moving passes per level
    max_levels : int
        Maximum aggregation levels
    epsilon : float
        Minimum modularity gain for a move

    Returns
    -------
    LouvainResult
        Labels renumbered by descending size and final modularity
    """
    if resolution < 0:
        raise ValueError(f"Resolution must be >= 0, got {resolution}")
    A = sparse.csr_matrix(adjacency, dtype=float)
    if A.shape[0] != A.shape[1]:
        raise ValueError(f"Adjacency must be square, got {A.shape}")
    n = A.shape[0]
    m2 = float(A.sum())
    if n == 0:
        return LouvainResult(labels=np.empty(0, dtype=np.int64), modularity=0.0)
    if m2 == 0:
        return LouvainResult(labels=np.arange(n, dtype=np.int64), modularity=0.0)

    membership = np.arange(n)
    graph = A
    n_levels = 0
    for _ in range(max_levels):
        community, moved = _local_moving(graph, resolution, m2, max_iterations, epsilon)
        if not moved:
            break
        n_levels += 1
        graph, dense = _aggregate(graph, community)
        membership = dense[membership]

    labels = relabel_by_size(membership)
    return LouvainResult(
        labels=labels,
        modularity=modularity(A, labels, resolution),
        n_levels=n_levels,
    )
