"""Unit tests for logistic-regression differential testing."""

import logging

import pytest
import numpy as np
import pandas as pd
from scipy.stats import chi2

from atac_refinery.core.cancellation import CancellationToken
from atac_refinery.core.differential import (
    DifferentialConfig,
    DifferentialTester,
    RESULT_COLUMNS,
)
from atac_refinery.core.errors import (
    CancelledError,
    MatrixValidationError,
    ModelFitError,
    ZeroVarianceFeatureError,
)
from atac_refinery.core.matrix import CountMatrix


@pytest.fixture
def block_labels(two_block_counts):
    """Cells 0-9 in group A, cells 10-19 in group B."""
    return pd.Series(["A"] * 10 + ["B"] * 10, index=two_block_counts.cell_ids)


class TestDifferentialConfig:
    """Tests for DifferentialConfig dataclass."""

    def test_default_values(self):
        """Test default configuration values."""
        config = DifferentialConfig()
        assert config.fold_change_mode == "log2"
        assert config.min_log_fold_change == 0.25
        assert config.only_positive is False
        assert config.correction == "bonferroni"


class TestDifferentialTester:
    """Tests for DifferentialTester."""

    def test_perfect_separators(self, two_block_counts, block_labels):
        """Test that block features are highly significant."""
        result = DifferentialTester().test(two_block_counts, block_labels, "A")
        table = result.table
        assert list(table.columns) == RESULT_COLUMNS
        assert len(table) == 10
        assert (table["p_value"] < 1e-5).all()
        assert len(result.significant()) == 10
        up = table.set_index("feature_id").loc[two_block_counts.feature_ids[0]]
        assert up["log_fold_change"] == pytest.approx(np.log2(6.0))
        assert up["pct_target"] == 1.0
        assert up["pct_rest"] == 0.0

    def test_only_positive(self, two_block_counts, block_labels):
        """Test that features higher in the rest are filtered out."""
        result = DifferentialTester().test(
            two_block_counts, block_labels, "A", only_positive=True
        )
        assert set(result.table["feature_id"]) == set(two_block_counts.feature_ids[:5])
        assert result.n_filtered == 5
        assert (result.table["log_fold_change"] > 0).all()

    def test_fold_change_filter(self, two_block_counts, block_labels):
        """Test that a high threshold removes every feature before fitting."""
        result = DifferentialTester().test(
            two_block_counts, block_labels, "A", min_log_fold_change=5.0
        )
        assert result.table.empty
        assert result.n_filtered == 10

    def test_zero_variance_skipped(self):
        """Test that constant features are reported, not tested."""
        X = np.array([[5] * 5 + [0] * 5, [3] * 10, [0] * 10])
        matrix = CountMatrix(X, ["f0", "f1", "f2"], [f"c{i}" for i in range(10)])
        labels = pd.Series(["A"] * 5 + ["B"] * 5, index=matrix.cell_ids)
        result = DifferentialTester().test(matrix, labels, "A", min_log_fold_change=0.0)
        assert result.skipped == ["f1"]
        assert result.n_filtered == 1
        assert result.table["feature_id"].tolist() == ["f0"]
        records = result.report.by_type(ZeroVarianceFeatureError)
        assert records[0].feature_id == "f1"

    def test_quasi_separated_feature_tested(self):
        """Test that a peak open only in part of the target group is scored."""
        X = np.array([[3, 3, 3, 3, 0] + [0] * 15])
        matrix = CountMatrix(X, ["f0"], [f"c{i}" for i in range(20)])
        labels = pd.Series(["A"] * 5 + ["B"] * 15, index=matrix.cell_ids)
        tester = DifferentialTester(DifferentialConfig(min_fraction=0.0))
        result = tester.test(matrix, labels, "A", min_log_fold_change=0.1)

        assert result.skipped == []
        assert result.report.is_clean
        assert result.table["feature_id"].tolist() == ["f0"]
        # Cells above zero are fit exactly; the 16 cells at zero keep their own rate
        llf_full = np.log(1 / 16) + 15 * np.log(15 / 16)
        llf_null = 5 * np.log(0.25) + 15 * np.log(0.75)
        expected = chi2.sf(2 * (llf_full - llf_null), 1)
        assert result.table["p_value"].iloc[0] == pytest.approx(expected)
        assert result.table["p_value"].iloc[0] < 1e-3
        assert result.table["pct_target"].iloc[0] == pytest.approx(0.8)

    def test_absent_in_target_not_called_separated(self):
        """Test that a peak closed in the target and rare elsewhere stays insignificant."""
        X = np.zeros((1, 20), dtype=int)
        X[0, [12, 17]] = 1
        matrix = CountMatrix(X, ["f0"], [f"c{i}" for i in range(20)])
        labels = pd.Series(["A"] * 5 + ["B"] * 15, index=matrix.cell_ids)
        tester = DifferentialTester(DifferentialConfig(min_fraction=0.0))
        result = tester.test(matrix, labels, "A", min_log_fold_change=0.1)
        assert result.table["p_value"].iloc[0] > 0.05

    def test_fit_failure_recorded(self, monkeypatch):
        """Test that a failed fit is reported separately from constant features."""
        from atac_refinery.core.differential import engine

        def _no_convergence(y, design, max_iter):
            return np.nan, "logistic fit did not converge"

        monkeypatch.setattr(engine, "_logit_llf", _no_convergence)
        X = np.array([[1, 2, 0, 1, 3, 0, 1, 2, 0, 1], [3] * 10])
        matrix = CountMatrix(X, ["f0", "f1"], [f"c{i}" for i in range(10)])
        labels = pd.Series(["A"] * 5 + ["B"] * 5, index=matrix.cell_ids)
        result = DifferentialTester().test(matrix, labels, "A", min_log_fold_change=0.0)

        assert result.skipped == ["f1", "f0"]
        assert result.table.empty
        fit_errors = result.report.by_type(ModelFitError)
        assert [e.feature_id for e in fit_errors] == ["f0"]
        assert fit_errors[0].error_code == "E008_MODEL_FIT"
        assert fit_errors[0].context["reason"] == "logistic fit did not converge"
        assert [e.feature_id for e in result.report.by_type(ZeroVarianceFeatureError)] == ["f1"]

    def test_constant_covariate_ignored(self, two_block_counts, block_labels, caplog):
        """Test that a constant covariate does not change the test."""
        tester = DifferentialTester()
        plain = tester.test(two_block_counts, block_labels, "A")
        with caplog.at_level(logging.INFO):
            adjusted = tester.test(
                two_block_counts, block_labels, "A",
                covariate=two_block_counts.total_counts(),
            )
        assert "constant" in caplog.text
        pd.testing.assert_frame_equal(plain.table, adjusted.table)

    def test_noisy_groups(self, random_counts):
        """Test ordering and ranges on Poisson data with a depth covariate."""
        matrix, groups = random_counts
        result = DifferentialTester().test(
            matrix, groups, 0, covariate=matrix.total_counts()
        )
        table = result.table
        assert table["p_value"].between(0, 1).all()
        assert table["adjusted_p_value"].is_monotonic_increasing
        top = table.iloc[0]
        assert top["feature_id"] in set(matrix.feature_ids[:40])
        assert top["log_fold_change"] > 0

    def test_correction_methods(self, two_block_counts, block_labels):
        """Test that the configured correction is applied."""
        none = DifferentialTester(DifferentialConfig(correction="none")).test(
            two_block_counts, block_labels, "A"
        )
        np.testing.assert_allclose(none.table["adjusted_p_value"], none.table["p_value"])

        bonf = DifferentialTester().test(two_block_counts, block_labels, "A")
        np.testing.assert_allclose(
            bonf.table["adjusted_p_value"], np.minimum(bonf.table["p_value"] * 10, 1.0)
        )

        with pytest.raises(ValueError, match="correction"):
            DifferentialTester(DifferentialConfig(correction="sidak")).test(
                two_block_counts, block_labels, "A"
            )

    def test_reference_group(self, random_counts):
        """Test comparison against a single other group."""
        matrix, groups = random_counts
        result = DifferentialTester().test(matrix, groups, 0, reference_group=1)
        assert result.target_group == "0"
        assert not result.table.empty

    def test_missing_labels_excluded(self, two_block_counts, block_labels):
        """Test that unlabeled cells belong to neither group."""
        labels = block_labels.copy()
        labels.iloc[0] = None
        result = DifferentialTester().test(two_block_counts, labels, "A")
        row = result.table.set_index("feature_id").loc[two_block_counts.feature_ids[0]]
        assert row["pct_target"] == 1.0

    def test_empty_group(self, two_block_counts, block_labels):
        """Test that an absent target group raises."""
        with pytest.raises(ValueError, match="no cells"):
            DifferentialTester().test(two_block_counts, block_labels, "C")

    def test_unaligned_labels(self, two_block_counts):
        """Test that labels must cover every cell."""
        labels = pd.Series(["A", "B"], index=two_block_counts.cell_ids[:2])
        with pytest.raises(MatrixValidationError):
            DifferentialTester().test(two_block_counts, labels, "A")

    def test_cancellation(self, two_block_counts, block_labels):
        """Test that a cancelled token stops testing."""
        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancelledError):
            DifferentialTester().test(two_block_counts, block_labels, "A", token=token)

    def test_batches_in_parallel(self, random_counts):
        """Test that batching and threads leave results unchanged."""
        matrix, groups = random_counts
        a = DifferentialTester().test(matrix, groups, 1)
        b = DifferentialTester(DifferentialConfig(batch_size=7, n_jobs=2)).test(matrix, groups, 1)
        pd.testing.assert_frame_equal(a.table, b.table)

    def test_fold_change_modes(self):
        """Test log2 and average-difference fold changes."""
        tester = DifferentialTester()
        np.testing.assert_allclose(
            tester.fold_change(np.array([3.0]), np.array([1.0])), [1.0]
        )
        np.testing.assert_allclose(
            tester.fold_change(np.array([0.5]), np.array([-0.5]), mode="avg_diff"), [1.0]
        )
        with pytest.raises(ValueError):
            tester.fold_change(np.array([1.0]), np.array([1.0]), mode="ratio")


class TestFindAllMarkers:
    """Tests for one-vs-rest marker tables."""

    def test_every_group(self, two_block_counts, block_labels):
        """Test combined table over all groups."""
        combined, results = DifferentialTester().find_all_markers(
            two_block_counts, block_labels, only_positive=True
        )
        assert set(results) == {"A", "B"}
        assert list(combined.columns) == ["group"] + RESULT_COLUMNS
        markers_b = combined.loc[combined["group"] == "B", "feature_id"]
        assert set(markers_b) == set(two_block_counts.feature_ids[5:])
