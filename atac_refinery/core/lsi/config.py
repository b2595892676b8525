"""Configuration classes for TF-IDF normalization and LSI embedding."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class NormalizationConfig:
    """Configuration for TF-IDF normalization.

    Attributes
    ----------
    scale_factor : float
        Multiplier applied to TF*IDF before log1p
    drop_degenerate_cells : bool
        Remove zero-total cells (and report them) instead of raising
        DegenerateCellError
    activity_scale_factor : float, optional
        Scale factor for log-normalizing activity matrices. None uses the
        median cell total.
    """

    scale_factor: float = 1.0
    drop_degenerate_cells: bool = False
    activity_scale_factor: Optional[float] = None


@dataclass
class LSIConfig:
    """Configuration for truncated SVD (latent semantic indexing).

    Attributes
    ----------
    n_components : int
        Number of singular triplets to compute
    solver : str
        svds solver: "arpack", "lobpcg" or "propack"
    random_seed : int
        Seed for the deterministic solver start vector
    rank_tolerance : float
        Singular values at or below this fraction of the largest one mean
        the requested rank exceeds the matrix rank
    flag_first_component : bool
        Flag the first component as depth-associated
    depth_correlation_threshold : float
        Flag components whose |Pearson r| with per-cell total counts
        reaches this value
    """

    n_components: int = 30
    solver: str = "arpack"
    random_seed: int = 1337
    rank_tolerance: float = 1e-10
    flag_first_component: bool = True
    depth_correlation_threshold: float = 0.75
