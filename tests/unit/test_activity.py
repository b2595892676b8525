"""Unit tests for gene activity aggregation and interval queries."""

import pytest
import numpy as np

from atac_refinery.core.activity import (
    ActivityConfig,
    FeatureAggregator,
    IntervalIndex,
    annotate_closest_genes,
)
from atac_refinery.core.errors import EmptyOverlapWarning, MatrixValidationError
from atac_refinery.core.matrix import (
    CountMatrix,
    FeatureAnnotation,
    GenomicInterval,
    MatrixKind,
)
from tests.fixtures import create_annotation


class TestIntervalIndex:
    """Tests for IntervalIndex overlap and nearest queries."""

    @pytest.fixture
    def index(self):
        return IntervalIndex(
            [
                GenomicInterval("chr1", 100, 200),
                GenomicInterval("chr1", 500, 600),
                GenomicInterval("chr2", 0, 10),
            ]
        )

    def test_overlapping(self, index):
        """Test half-open overlap queries."""
        np.testing.assert_array_equal(index.overlapping(GenomicInterval("chr1", 150, 550)), [0, 1])
        # Touching ends do not overlap
        assert index.overlapping(GenomicInterval("chr1", 200, 500)).size == 0
        assert index.overlapping(GenomicInterval("chr3", 0, 1000)).size == 0

    def test_long_interval_found(self):
        """Test that a long interval starting far to the left is found."""
        index = IntervalIndex(
            [GenomicInterval("chr1", 0, 10000), GenomicInterval("chr1", 100, 200)]
        )
        np.testing.assert_array_equal(index.overlapping(GenomicInterval("chr1", 5000, 5100)), [0])

    def test_closest(self, index):
        """Test nearest-interval distances."""
        assert index.closest(GenomicInterval("chr1", 250, 260)) == (0, 50)
        assert index.closest(GenomicInterval("chr1", 450, 460)) == (1, 40)
        assert index.closest(GenomicInterval("chr1", 120, 130)) == (0, 0)
        assert index.closest(GenomicInterval("chr3", 0, 10)) is None

    def test_closest_tie_goes_to_lower_position(self, index):
        """Test equidistant neighbors."""
        assert index.closest(GenomicInterval("chr1", 340, 360)) == (0, 140)

    def test_len_and_chromosomes(self, index):
        """Test basic properties."""
        assert len(index) == 3
        assert sorted(index.chromosomes) == ["chr1", "chr2"]


class TestFeatureAggregator:
    """Tests for FeatureAggregator."""

    def test_known_activity(self, two_block_counts, small_annotation):
        """Test per-gene sums over extended windows."""
        result = FeatureAggregator().aggregate(two_block_counts, small_annotation)
        activity = result.matrix.to_dataframe()
        assert result.matrix.kind == MatrixKind.ACTIVITY
        assert list(activity.index) == ["GeneA", "GeneB", "GeneC"]
        # GeneA covers peaks 0-1; GeneB covers peaks 4-6
        assert (activity.loc["GeneA"].iloc[:10] == 10).all()
        assert (activity.loc["GeneA"].iloc[10:] == 0).all()
        assert (activity.loc["GeneB"].iloc[:10] == 5).all()
        assert (activity.loc["GeneB"].iloc[10:] == 10).all()
        assert (activity.loc["GeneC"] == 0).all()

    def test_empty_overlap_recorded(self, two_block_counts, small_annotation):
        """Test that genes without peaks keep a zero row and are reported."""
        result = FeatureAggregator().aggregate(two_block_counts, small_annotation)
        assert result.empty_genes == ["GeneC"]
        records = result.report.by_type(EmptyOverlapWarning)
        assert records[0].error_code == "W001_EMPTY_OVERLAP"
        assert result.windows.set_index("gene").loc["GeneC", "n_peaks"] == 0

    def test_strand_aware_windows(self, two_block_counts, small_annotation):
        """Test that upstream extends to higher coordinates on '-'."""
        result = FeatureAggregator().aggregate(two_block_counts, small_annotation, 2000, 0)
        windows = result.windows.set_index("gene")
        assert (windows.loc["GeneA", "start"], windows.loc["GeneA", "end"]) == (8000, 11600)
        assert (windows.loc["GeneB", "start"], windows.loc["GeneB", "end"]) == (14200, 16300)
        assert windows.loc["GeneB", "n_peaks"] == 3

    def test_no_extension(self, two_block_counts, small_annotation):
        """Test raw gene bodies."""
        result = FeatureAggregator().aggregate(two_block_counts, small_annotation, 0, 0)
        windows = result.windows.set_index("gene")
        assert windows.loc["GeneA", "n_peaks"] == 2
        assert windows.loc["GeneB", "n_peaks"] == 1

    def test_conservation_with_multiplicity(self, random_counts):
        """Test that total activity equals peak totals weighted by window count."""
        matrix, _ = random_counts
        # Overlapping genes so some peaks count twice
        annotation = create_annotation(
            [
                ("G1", 10000, 30000, "+"),
                ("G2", 25000, 40000, "-"),
                ("G3", 60000, 61000, "+"),
            ]
        )
        result = FeatureAggregator().aggregate(matrix, annotation)
        expected = float((matrix.feature_totals() * result.peak_multiplicity).sum())
        assert result.matrix.X.sum() == pytest.approx(expected)
        assert result.peak_multiplicity.max() == 2

    def test_collapse_transcripts(self, two_block_counts):
        """Test that only the longest interval per gene is kept."""
        annotation = create_annotation(
            [("GeneA", 10000, 10100, "+"), ("GeneA", 10000, 12600, "+")]
        )
        collapsed = FeatureAggregator().aggregate(two_block_counts, annotation, 0, 0)
        assert collapsed.matrix.feature_ids.tolist() == ["GeneA"]
        assert collapsed.windows.loc[0, "n_peaks"] == 3

        kept = FeatureAggregator(ActivityConfig(collapse_transcripts=False)).aggregate(
            two_block_counts, annotation, 0, 0
        )
        assert kept.matrix.feature_ids.tolist() == ["GeneA", "GeneA.1"]

    def test_rejects_normalized_matrix(self, two_block_counts, small_annotation):
        """Test that only counts matrices are aggregated."""
        tfidf = two_block_counts.with_kind(MatrixKind.NORMALIZED)
        with pytest.raises(MatrixValidationError):
            FeatureAggregator().aggregate(tfidf, small_annotation)

    def test_rejects_uncoordinated_ids(self, small_annotation):
        """Test that feature ids must encode coordinates."""
        matrix = CountMatrix(np.ones((2, 3)), ["peakA", "peakB"], ["c1", "c2", "c3"])
        with pytest.raises(MatrixValidationError, match="coordinates"):
            FeatureAggregator().aggregate(matrix, small_annotation)

    def test_negative_extension(self, two_block_counts, small_annotation):
        """Test that negative extensions are rejected."""
        with pytest.raises(ValueError):
            FeatureAggregator().aggregate(two_block_counts, small_annotation, -1, 0)

    def test_to_dict(self, two_block_counts, small_annotation):
        """Test summary dictionary."""
        summary = FeatureAggregator().aggregate(two_block_counts, small_annotation).to_dict()
        assert summary == {"n_genes": 3, "n_cells": 20, "n_empty_genes": 1, "n_peaks_used": 5}


class TestAnnotateClosestGenes:
    """Tests for annotate_closest_genes."""

    def test_closest(self, small_annotation):
        """Test nearest gene per peak."""
        ids = ["chr1-10000-10500", "chr1-19000-19500", "chr2-100-200"]
        frame = annotate_closest_genes(ids, small_annotation)
        assert frame.loc["chr1-10000-10500", "gene_name"] == "GeneA"
        assert frame.loc["chr1-10000-10500", "distance"] == 0
        assert frame.loc["chr1-19000-19500", "gene_name"] == "GeneB"
        assert frame.loc["chr1-19000-19500", "distance"] == 4700
        assert frame.loc["chr2-100-200", "gene_name"] == ""
        assert np.isnan(frame.loc["chr2-100-200", "distance"])

    def test_empty_annotation(self):
        """Test that an empty annotation gives empty names."""
        frame = annotate_closest_genes(["chr1-1-2"], FeatureAnnotation([]))
        assert frame["gene_name"].tolist() == [""]
