"""Configuration classes for graph-based clustering."""

from dataclasses import dataclass
from typing import List, Optional


@dataclass
class ClusteringConfig:
    """Configuration for SNN graph construction and modularity clustering.

    Attributes
    ----------
    k_neighbors : int
        Neighborhood size (including the cell itself when include_self)
    metric : str
        Distance metric: "euclidean" or "cosine"
    include_self : bool
        Count each cell as a member of its own neighbor set
    edge_mode : str
        "mutual" keeps pairs that are neighbors of each other,
        "union" keeps pairs where either is a neighbor of the other
    prune : float
        Drop edges with Jaccard weight below this value
    resolution : float
        Modularity resolution (gamma)
    max_iterations : int
        Maximum local-moving passes per aggregation level
    max_levels : int
        Maximum aggregation levels
    epsilon : float
        Minimum modularity improvement for a node move
    dims : List[int], optional
        Zero-based embedding components. None uses unflagged components.
    n_jobs : int
        Parallel jobs for the neighbor search
    working_memory : int, optional
        Chunk size hint in MiB for the neighbor search
    """

    k_neighbors: int = 20
    metric: str = "euclidean"
    include_self: bool = True
    edge_mode: str = "mutual"
    prune: float = 1.0 / 15.0
    resolution: float = 0.8
    max_iterations: int = 100
    max_levels: int = 50
    epsilon: float = 1e-10
    dims: Optional[List[int]] = None
    n_jobs: int = 1
    working_memory: Optional[int] = None
