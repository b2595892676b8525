"""Configuration classes for motif deviation scoring."""

from dataclasses import dataclass


@dataclass
class MotifConfig:
    """Configuration for chromVAR-style deviation scoring.

    Attributes
    ----------
    n_background_sets : int
        Background iterations per motif (at least 2)
    n_gc_bins : int
        Quantile bins on peak GC content
    n_abundance_bins : int
        Quantile bins on log peak accessibility
    min_bin_peaks : int
        Bins with fewer peaks are merged into the nearest adequate bin
    min_expected : float
        Motifs whose expected fraction of reads is at or below this value
        are skipped
    chunk_size : int
        Motifs scored per vectorized chunk
    n_jobs : int
        Parallel threads over chunks
    random_seed : int
        Seed for background permutations
    """

    n_background_sets: int = 50
    n_gc_bins: int = 10
    n_abundance_bins: int = 10
    min_bin_peaks: int = 10
    min_expected: float = 1e-12
    chunk_size: int = 8
    n_jobs: int = 1
    random_seed: int = 1337
