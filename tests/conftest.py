"""Pytest configuration and shared fixtures for ATAC-Refinery tests."""

import sys
from pathlib import Path

import pytest
import numpy as np
import pandas as pd

# Add package to path
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Import synthetic data generators
from tests.fixtures import (
    create_annotation,
    create_cell_qc,
    create_random_counts,
    create_two_block_counts,
    ring_of_cliques,
)


# ============================================================================
# Matrix Fixtures
# ============================================================================


@pytest.fixture
def two_block_counts():
    """10 peaks x 20 cells, cells 0-9 on peaks 0-4 and cells 10-19 on peaks 5-9."""
    return create_two_block_counts(n_features=10, n_cells=20, high=5, low=0)


@pytest.fixture
def noisy_two_block_counts():
    """Two-block counts with a background of one count everywhere."""
    return create_two_block_counts(n_features=10, n_cells=20, high=6, low=1)


@pytest.fixture
def random_counts():
    """Poisson counts with three groups of 20 cells."""
    return create_random_counts(n_features=120, n_cells=60, n_groups=3, seed=0)


@pytest.fixture
def cell_qc(random_counts):
    """Vendor-style QC metadata for ``random_counts``."""
    matrix, _ = random_counts
    return create_cell_qc(matrix)


# ============================================================================
# Annotation Fixtures
# ============================================================================


@pytest.fixture
def small_annotation():
    """Three genes on chr1 around the synthetic peaks.

    Peaks are chr1-(10000 + 1000 i)-(10500 + 1000 i).
    With the default 2 kb upstream extension GeneA (+) overlaps peaks 0-1,
    GeneB (-) extends to the right and overlaps peaks 4-6, and GeneC (+)
    lies beyond all peaks.
    """
    return create_annotation(
        [
            ("GeneA", 10000, 11600, "+"),
            ("GeneB", 14200, 14300, "-"),
            ("GeneC", 500000, 501000, "+"),
        ]
    )


# ============================================================================
# Graph Fixtures
# ============================================================================


@pytest.fixture
def clique_ring():
    """Four 5-cliques joined in a ring."""
    return ring_of_cliques(n_cliques=4, clique_size=5)


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def permissive_config():
    """AnalysisConfig without QC thresholds, suited to tiny matrices."""
    from atac_refinery.core.config import AnalysisConfig

    config = AnalysisConfig.default()
    for name in (
        "min_peak_fragments",
        "max_peak_fragments",
        "min_fraction_in_peaks",
        "max_blacklist_ratio",
        "max_nucleosome_signal",
        "min_tss_enrichment",
    ):
        setattr(config.qc, name, None)
    return config


@pytest.fixture
def sample_analysis_config(tmp_path) -> Path:
    """Create sample analysis configuration file."""
    import yaml

    config = {
        "analysis": {
            "qc": {"min_peak_fragments": 100, "max_peak_fragments": None},
            "lsi": {"n_components": 5, "random_seed": 7},
            "clustering": {"k_neighbors": 10, "resolution": 0.5},
            "differential": {"correction": "fdr_bh"},
            "resolutions": [0.2, 1.0],
        }
    }

    path = tmp_path / "analysis.yaml"
    with open(path, "w") as f:
        yaml.dump(config, f)

    return path


@pytest.fixture
def tmp_output_dir(tmp_path: Path) -> Path:
    """Create a temporary output directory for tests."""
    output_dir = tmp_path / "output"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir
