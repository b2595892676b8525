"""Graph-based clustering of cell embeddings.

Provides exact kNN search, Jaccard-weighted shared-nearest-neighbor
graphs and deterministic Louvain modularity optimization.

Example Usage
-------------
>>> from atac_refinery.core.clustering import GraphClusterer, ClusteringConfig
>>> clusterer = GraphClusterer(ClusteringConfig(k_neighbors=20))
>>> result = clusterer.cluster(embedding, resolution=0.8, metadata=metadata)
>>> metadata["clusters_res0.8"].value_counts()
"""

__version__ = "1.0.0"

# Configuration classes
from .config import ClusteringConfig

# Graph construction
from .graph import (
    EDGE_MODES,
    METRICS,
    NeighborGraph,
    build_snn_graph,
    jaccard_graph,
    knn_indices,
)

# Modularity optimization
from .modularity import (
    LouvainResult,
    louvain,
    modularity,
    relabel_by_size,
)

# Clustering engine
from .engine import (
    ClusterAssignment,
    ClusteringResult,
    GraphClusterer,
    default_cluster_key,
)

__all__ = [
    # Version
    "__version__",
    # Config
    "ClusteringConfig",
    # Graph
    "EDGE_MODES",
    "METRICS",
    "NeighborGraph",
    "build_snn_graph",
    "jaccard_graph",
    "knn_indices",
    # Modularity
    "LouvainResult",
    "louvain",
    "modularity",
    "relabel_by_size",
    # Engine
    "ClusterAssignment",
    "ClusteringResult",
    "GraphClusterer",
    "default_cluster_key",
]
