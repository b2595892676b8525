"""Unit tests for SNN graph construction and modularity clustering."""

import logging

import pytest
import numpy as np
import pandas as pd
from scipy import sparse

from atac_refinery.core.clustering import (
    ClusteringConfig,
    GraphClusterer,
    build_snn_graph,
    default_cluster_key,
    jaccard_graph,
    knn_indices,
    louvain,
    modularity,
    relabel_by_size,
)
from atac_refinery.core.errors import DisconnectedGraphError
from atac_refinery.core.lsi import Embedding
from atac_refinery.core.matrix import CellMetadata
from tests.fixtures import create_block_embedding_coords, create_cell_ids


def _embedding(coords: np.ndarray) -> Embedding:
    n, k = coords.shape
    return Embedding(
        cell_ids=pd.Index(create_cell_ids(n)),
        values=coords,
        singular_values=np.linspace(2.0, 1.0, k),
        feature_ids=pd.Index([f"f{i}" for i in range(3)]),
        feature_loadings=np.zeros((3, k)),
        depth_correlation=np.zeros(k),
        flagged=[],
        source_fingerprint="test",
    )


@pytest.fixture
def block_embedding():
    """Two well-separated blocks of 10 cells each."""
    return _embedding(create_block_embedding_coords(n_per_block=10, n_blocks=2))


class TestClusteringConfig:
    """Tests for ClusteringConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = ClusteringConfig()
        assert config.k_neighbors == 20
        assert config.metric == "euclidean"
        assert config.edge_mode == "mutual"
        assert config.prune == pytest.approx(1 / 15)
        assert config.resolution == 0.8
        assert config.dims is None

    def test_default_cluster_key(self):
        """Test cluster column naming."""
        assert default_cluster_key(0.8) == "clusters_res0.8"


class TestKnnIndices:
    """Tests for exact nearest neighbors."""

    def test_simple_line(self):
        """Test neighbors of points on a line."""
        coords = np.array([[0.0], [1.0], [3.0], [6.0]])
        nn = knn_indices(coords, 2)
        np.testing.assert_array_equal(nn, [[0, 1], [1, 0], [2, 1], [3, 2]])

    def test_ties_break_by_index(self):
        """Test that self comes first and equal distances resolve by index."""
        coords = np.zeros((3, 2))
        nn = knn_indices(coords, 2)
        np.testing.assert_array_equal(nn, [[0, 1], [1, 0], [2, 0]])

    def test_exclude_self(self):
        """Test neighbors without the cell itself."""
        coords = np.array([[0.0], [1.0], [3.0]])
        nn = knn_indices(coords, 1, include_self=False)
        np.testing.assert_array_equal(nn.ravel(), [1, 0, 1])

    def test_small_chunks_match(self):
        """Test that chunked computation gives the same result."""
        rng = np.random.default_rng(1)
        coords = rng.normal(size=(50, 3))
        full = knn_indices(coords, 5)
        chunked = knn_indices(coords, 5, working_memory=0)
        np.testing.assert_array_equal(full, chunked)

    def test_out_of_range(self):
        """Test that too many neighbors are rejected."""
        with pytest.raises(ValueError):
            knn_indices(np.zeros((3, 1)), 4)

    def test_unknown_metric(self):
        """Test that unknown metrics are rejected."""
        with pytest.raises(ValueError, match="metric"):
            knn_indices(np.zeros((3, 1)), 2, metric="manhattan")


class TestJaccardGraph:
    """Tests for Jaccard SNN weights."""

    def test_symmetric_without_self_loops(self):
        """Test symmetry and empty diagonal."""
        rng = np.random.default_rng(2)
        nn = knn_indices(rng.normal(size=(30, 2)), 6)
        A = jaccard_graph(nn, prune=0.0)
        assert abs(A - A.T).max() < 1e-12
        assert A.diagonal().sum() == 0
        assert A.data.min() > 0 and A.data.max() <= 1.0

    def test_known_weights(self):
        """Test Jaccard index of neighbor sets."""
        nn = np.array([[0, 1], [1, 0], [2, 1]])
        A = jaccard_graph(nn, edge_mode="mutual", prune=0.0).toarray()
        # Only 0 and 1 list each other; their sets are identical
        assert A[0, 1] == pytest.approx(1.0)
        assert A[1, 2] == 0.0

    def test_union_mode_adds_edges(self):
        """Test that union mode keeps one-sided neighbor pairs."""
        nn = np.array([[0, 1], [1, 0], [2, 1]])
        A = jaccard_graph(nn, edge_mode="union", prune=0.0).toarray()
        # {2, 1} vs {1, 0}: one shared out of three
        assert A[1, 2] == pytest.approx(1 / 3)
        assert A[2, 1] == pytest.approx(1 / 3)

    def test_prune(self):
        """Test that weak edges are removed."""
        nn = np.array([[0, 1], [1, 0], [2, 1]])
        A = jaccard_graph(nn, edge_mode="union", prune=0.5).toarray()
        assert A[1, 2] == 0.0
        assert A[0, 1] == pytest.approx(1.0)

    def test_invalid_mode(self):
        """Test that unknown edge modes are rejected."""
        with pytest.raises(ValueError):
            jaccard_graph(np.zeros((2, 1), dtype=int), edge_mode="max")


class TestBuildSnnGraph:
    """Tests for build_snn_graph."""

    def test_blocks_form_components(self, block_embedding):
        """Test that separated blocks give separate components."""
        graph = build_snn_graph(block_embedding.values, block_embedding.cell_ids, k_neighbors=10)
        assert graph.n_cells == 20
        assert graph.n_components == 2
        assert graph.isolated_cells() == []
        assert graph.adjacency[0, 1] == pytest.approx(1.0)
        assert graph.adjacency[0, 15] == 0.0

    def test_k_clipped_with_warning(self, block_embedding, caplog):
        """Test that k larger than the cell count is clipped."""
        with caplog.at_level(logging.WARNING):
            graph = build_snn_graph(
                block_embedding.values, block_embedding.cell_ids, k_neighbors=50
            )
        assert graph.params["k_neighbors"] == 20
        assert "clipping" in caplog.text

    def test_invalid_k(self, block_embedding):
        """Test that k must be positive."""
        with pytest.raises(ValueError):
            build_snn_graph(block_embedding.values, block_embedding.cell_ids, k_neighbors=0)


class TestLouvain:
    """Tests for deterministic Louvain."""

    def test_ring_of_cliques(self, clique_ring):
        """Test that each clique becomes a community at resolution 1."""
        result = louvain(clique_ring, resolution=1.0)
        np.testing.assert_array_equal(result.labels, np.repeat(np.arange(4), 5))
        assert result.modularity > 0.5

    def test_resolution_zero_gives_minimal_clusters(self, clique_ring):
        """Test one community per connected component at resolution 0."""
        result = louvain(clique_ring, resolution=0.0)
        assert set(result.labels) == {0}

    def test_resolution_zero_disconnected(self):
        """Test that disconnected parts stay apart at resolution 0."""
        A = sparse.block_diag([np.ones((3, 3)) - np.eye(3)] * 2).tocsr()
        result = louvain(A, resolution=0.0)
        np.testing.assert_array_equal(result.labels, [0, 0, 0, 1, 1, 1])

    def test_monotone_cluster_counts(self, clique_ring):
        """Test that higher resolution never yields fewer clusters."""
        counts = [len(set(louvain(clique_ring, resolution=r).labels)) for r in (0.0, 1.0, 10.0)]
        assert counts == sorted(counts)
        assert counts[0] == 1
        assert counts[-1] == 20

    def test_contiguous_labels(self, clique_ring):
        """Test labels are 0..K-1 with one label per node."""
        labels = louvain(clique_ring, resolution=1.0).labels
        assert labels.shape == (20,)
        assert sorted(set(labels)) == list(range(len(set(labels))))

    def test_deterministic(self, clique_ring):
        """Test repeated runs give identical labels."""
        a = louvain(clique_ring, resolution=1.5).labels
        b = louvain(clique_ring, resolution=1.5).labels
        np.testing.assert_array_equal(a, b)

    def test_empty_graph(self):
        """Test that a graph without edges gives singletons."""
        result = louvain(sparse.csr_matrix((3, 3)))
        np.testing.assert_array_equal(result.labels, [0, 1, 2])

    def test_negative_resolution(self, clique_ring):
        """Test that negative resolution is rejected."""
        with pytest.raises(ValueError):
            louvain(clique_ring, resolution=-1.0)

    def test_modularity_of_cliques(self, clique_ring):
        """Test modularity of the clique partition against a direct computation."""
        labels = np.repeat(np.arange(4), 5)
        A = clique_ring.toarray()
        m2 = A.sum()
        k = A.sum(axis=1)
        expected = sum(
            (A[np.ix_(labels == c, labels == c)].sum() - k[labels == c].sum() ** 2 / m2) / m2
            for c in range(4)
        )
        assert modularity(clique_ring, labels) == pytest.approx(expected)

    def test_relabel_by_size(self):
        """Test renumbering by size then first member."""
        labels = np.array([5, 5, 2, 7, 7, 7, 2])
        np.testing.assert_array_equal(relabel_by_size(labels), [1, 1, 2, 0, 0, 0, 2])


class TestGraphClusterer:
    """Tests for GraphClusterer."""

    def test_two_blocks(self, block_embedding):
        """Test clustering of separated blocks."""
        clusterer = GraphClusterer(ClusteringConfig(k_neighbors=10))
        result = clusterer.cluster(block_embedding, resolution=0.8)
        labels = result.assignment.labels
        assert result.assignment.n_clusters == 2
        assert labels.iloc[:10].nunique() == 1
        assert labels.iloc[0] == 0
        assert labels.iloc[10] == 1
        assert result.assignment.sizes == {0: 10, 1: 10}
        assert result.dims == [0, 1]

    def test_disconnected_graph_recorded(self, block_embedding):
        """Test that disconnection is reported, not raised."""
        clusterer = GraphClusterer(ClusteringConfig(k_neighbors=10))
        result = clusterer.cluster(block_embedding)
        records = result.report.by_type(DisconnectedGraphError)
        assert len(records) == 1
        assert records[0].n_components == 2

    def test_labels_written_to_metadata(self, block_embedding):
        """Test that labels are stored under the cluster key."""
        metadata = CellMetadata(block_embedding.cell_ids)
        clusterer = GraphClusterer(ClusteringConfig(k_neighbors=10))
        clusterer.cluster(block_embedding, resolution=0.5, metadata=metadata)
        assert "clusters_res0.5" in metadata
        assert metadata["clusters_res0.5"].nunique() == 2

    def test_multiple_resolutions(self, block_embedding):
        """Test several named cluster columns over one graph."""
        metadata = CellMetadata(block_embedding.cell_ids)
        clusterer = GraphClusterer(ClusteringConfig(k_neighbors=10))
        results = clusterer.cluster_resolutions(block_embedding, [0.0, 1.0], metadata=metadata)
        assert set(results) == {0.0, 1.0}
        assert results[0.0].graph is results[1.0].graph
        assert {"clusters_res0.0", "clusters_res1.0"} <= set(metadata.columns)

    def test_flagged_components_excluded(self, block_embedding):
        """Test that default dims skip flagged components."""
        block_embedding.flagged = [0]
        clusterer = GraphClusterer()
        assert clusterer.resolve_dims(block_embedding) == [1]
        assert clusterer.resolve_dims(block_embedding, [0, 1]) == [0, 1]

    def test_to_dict(self, block_embedding):
        """Test summary dictionary."""
        clusterer = GraphClusterer(ClusteringConfig(k_neighbors=10))
        summary = clusterer.cluster(block_embedding).to_dict()
        assert summary["n_clusters"] == 2
        assert summary["n_components"] == 2
