"""Graph clustering engine.

Builds a shared-nearest-neighbor graph over selected embedding
components and partitions it by modularity optimization.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import logging

import numpy as np
import pandas as pd

from ..errors import AnomalyReport, DisconnectedGraphError
from ..lsi.embedding import Embedding
from ..matrix.store import CellMetadata
from .config import ClusteringConfig
from .graph import NeighborGraph, build_snn_graph
from .modularity import louvain


@dataclass
class ClusterAssignment:
    """Cluster label per cell.

    Attributes
    ----------
    labels : pd.Series
        Integer labels indexed by cell id; 0 is the largest cluster
    resolution : float
        Resolution the partition was computed at
    modularity : float
        Modularity of the partition
    cluster_key : str
        Metadata column the labels are stored under
    """

    labels: pd.Series
    resolution: float
    modularity: float = 0.0
    cluster_key: str = ""

    @property
    def n_clusters(self) -> int:
        return int(self.labels.nunique())

    @property
    def sizes(self) -> Dict[int, int]:
        """Map of cluster label to cell count."""
        counts = self.labels.value_counts()
        return {int(k): int(v) for k, v in sorted(counts.items())}

    def members(self, label: int) -> List[str]:
        return self.labels.index[self.labels.to_numpy() == label].tolist()


@dataclass
class ClusteringResult:
    """Result from graph clustering.

    Attributes
    ----------
    assignment : ClusterAssignment
        Cluster labels
    graph : NeighborGraph
        SNN graph the partition was computed on
    dims : List[int]
        Embedding components used
    report : AnomalyReport
        Disconnected-graph records
    """

    assignment: ClusterAssignment
    graph: NeighborGraph
    dims: List[int] = field(default_factory=list)
    report: AnomalyReport = field(
        default_factory=lambda: AnomalyReport(stage="cluster")
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster_key": self.assignment.cluster_key,
            "resolution": self.assignment.resolution,
            "n_clusters": self.assignment.n_clusters,
            "modularity": round(self.assignment.modularity, 6),
            "cluster_sizes": self.assignment.sizes,
            "n_components": self.graph.n_components,
            "dims": list(self.dims),
        }


def default_cluster_key(resolution: float) -> str:
    return f"clusters_res{resolution}"


class GraphClusterer:
    """SNN graph construction and modularity clustering.

    Parameters
    ----------
    config : ClusteringConfig, optional
        Clustering configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> clusterer = GraphClusterer(ClusteringConfig(k_neighbors=20))
    >>> result = clusterer.cluster(embedding, resolution=0.8)
    >>> result.assignment.sizes
    """

    def __init__(
        self,
        config: Optional[ClusteringConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or ClusteringConfig()
        self.logger = logger or logging.getLogger(__name__)

    def build_graph(
        self,
        embedding: Embedding,
        dims: Optional[Sequence[int]] = None,
        k_neighbors: Optional[int] = None,
    ) -> NeighborGraph:
        """Build the SNN graph over the selected components."""
        cfg = self.config
        k_neighbors = k_neighbors if k_neighbors is not None else cfg.k_neighbors
        dims = self.resolve_dims(embedding, dims)
        return build_snn_graph(
            embedding.select(dims),
            embedding.cell_ids,
            k_neighbors=k_neighbors,
            metric=cfg.metric,
            include_self=cfg.include_self,
            edge_mode=cfg.edge_mode,
            prune=cfg.prune,
            n_jobs=cfg.n_jobs,
            working_memory=cfg.working_memory,
            source_fingerprint=embedding.source_fingerprint,
            logger=self.logger,
        )

    def resolve_dims(
        self, embedding: Embedding, dims: Optional[Sequence[int]] = None
    ) -> List[int]:
        """Explicit dims, else configured dims, else unflagged components."""
        if dims is None:
            dims = self.config.dims
        if dims is None:
            dims = embedding.default_dims()
        dims = [int(d) for d in dims]
        if not dims:
            raise ValueError("No embedding components selected for clustering")
        return dims

    def partition(
        self,
        graph: NeighborGraph,
        resolution: Optional[float] = None,
        cluster_key: Optional[str] = None,
        metadata: Optional[CellMetadata] = None,
    ) -> ClusteringResult:
        """Partition an existing graph at one resolution."""
        cfg = self.config
        resolution = resolution if resolution is not None else cfg.resolution
        cluster_key = cluster_key or default_cluster_key(resolution)

        report = AnomalyReport(stage="cluster")
        if graph.n_components > 1:
            record = DisconnectedGraphError(graph.n_components, graph.isolated_cells())
            report.add(record)
            self.logger.warning("%s", record.message)

        outcome = louvain(
            graph.adjacency,
            resolution=resolution,
            max_iterations=cfg.max_iterations,
            max_levels=cfg.max_levels,
            epsilon=cfg.epsilon,
        )
        labels = pd.Series(
            outcome.labels.astype(np.int64), index=graph.cell_ids, name=cluster_key
        )
        assignment = ClusterAssignment(
            labels=labels,
            resolution=resolution,
            modularity=outcome.modularity,
            cluster_key=cluster_key,
        )
        if metadata is not None:
            metadata.add_column(cluster_key, labels)

        self.logger.info(
            "Resolution %.3g: %d clusters (modularity=%.4f)",
            resolution,
            assignment.n_clusters,
            assignment.modularity,
        )
        return ClusteringResult(
            assignment=assignment,
            graph=graph,
            dims=list(graph.params.get("dims", [])),
            report=report,
        )

    def cluster(
        self,
        embedding: Embedding,
        dims: Optional[Sequence[int]] = None,
        k_neighbors: Optional[int] = None,
        resolution: Optional[float] = None,
        metadata: Optional[CellMetadata] = None,
        cluster_key: Optional[str] = None,
    ) -> ClusteringResult:
        """Cluster cells of an embedding.

        Parameters
        ----------
        embedding : Embedding
            Cell embedding
        dims : Sequence[int], optional
            Zero-based components. Defaults to unflagged components.
        k_neighbors : int, optional
            Neighborhood size. Defaults to config value.
        resolution : float, optional
            Modularity resolution. Defaults to config value.
        metadata : CellMetadata, optional
            When given, labels are stored under ``cluster_key``
        cluster_key : str, optional
            Column name, default ``clusters_res{resolution}``

        Returns
        -------
        ClusteringResult
            Assignment, graph and anomaly report
        """
        dims = self.resolve_dims(embedding, dims)
        graph = self.build_graph(embedding, dims, k_neighbors)
        graph.params["dims"] = dims
        return self.partition(graph, resolution, cluster_key, metadata)

    def cluster_resolutions(
        self,
        embedding: Embedding,
        resolutions: Sequence[float],
        dims: Optional[Sequence[int]] = None,
        k_neighbors: Optional[int] = None,
        metadata: Optional[CellMetadata] = None,
    ) -> Dict[float, ClusteringResult]:
        """Cluster at several resolutions over one shared graph."""
        dims = self.resolve_dims(embedding, dims)
        graph = self.build_graph(embedding, dims, k_neighbors)
        graph.params["dims"] = dims
        return {
            res: self.partition(graph, res, metadata=metadata) for res in resolutions
        }
