"""Unit tests for the master analysis configuration."""

import pytest

from atac_refinery.core.config import AnalysisConfig
from atac_refinery.core.clustering import ClusteringConfig
from atac_refinery.core.matrix import QCConfig


class TestAnalysisConfig:
    """Tests for AnalysisConfig."""

    def test_defaults(self):
        """Test default sections."""
        config = AnalysisConfig.default()
        assert config.qc.min_peak_fragments == 3000
        assert config.lsi.n_components == 30
        assert config.lsi.flag_first_component is True
        assert config.clustering.resolution == 0.8
        assert config.activity.upstream_extension == 2000
        assert config.differential.correction == "bonferroni"
        assert config.resolutions == []
        assert config.covariate == "total_counts"

    def test_from_yaml(self, sample_analysis_config):
        """Test loading a nested analysis section."""
        config = AnalysisConfig.from_yaml(sample_analysis_config)
        assert config.qc.min_peak_fragments == 100
        assert config.qc.max_peak_fragments is None
        assert config.qc.min_tss_enrichment == 2.0
        assert config.lsi.n_components == 5
        assert config.lsi.random_seed == 7
        assert config.clustering.k_neighbors == 10
        assert config.differential.correction == "fdr_bh"
        assert config.resolutions == [0.2, 1.0]

    def test_from_dict_flat(self):
        """Test a dictionary without the analysis wrapper."""
        config = AnalysisConfig.from_dict({"motifs": {"n_background_sets": 20}})
        assert config.motifs.n_background_sets == 20
        assert config.clustering == ClusteringConfig()

    def test_from_dict_empty(self):
        """Test that an empty mapping gives defaults."""
        assert AnalysisConfig.from_dict({}) == AnalysisConfig()
        assert AnalysisConfig.from_dict(None) == AnalysisConfig()

    def test_unknown_key(self):
        """Test that typos in a section are rejected."""
        with pytest.raises(TypeError):
            AnalysisConfig.from_dict({"lsi": {"n_componentz": 5}})

    def test_unknown_section(self, tmp_path):
        """Test that a misspelled section name is rejected."""
        with pytest.raises(TypeError, match="clustring"):
            AnalysisConfig.from_dict({"clustring": {"resolution": 0.3}})

        path = tmp_path / "typo.yaml"
        path.write_text("analysis:\n  clustring:\n    resolution: 0.3\n")
        with pytest.raises(TypeError, match="clustring"):
            AnalysisConfig.from_yaml(path)

    def test_empty_sections(self):
        """Test that sections left blank in YAML fall back to defaults."""
        config = AnalysisConfig.from_dict({"qc": None, "resolutions": None})
        assert config.qc == AnalysisConfig().qc
        assert config.resolutions == []

    def test_yaml_round_trip(self, tmp_path):
        """Test writing and reading back a configuration."""
        config = AnalysisConfig.default()
        config.qc = QCConfig(min_peak_fragments=None, n_top_features=500)
        config.clustering.dims = [1, 2, 3]
        config.resolutions = [0.5]
        path = tmp_path / "config.yaml"
        config.to_yaml(path)
        assert AnalysisConfig.from_yaml(path) == config
