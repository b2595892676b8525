"""Configuration classes for gene activity aggregation."""

from dataclasses import dataclass


@dataclass
class ActivityConfig:
    """Configuration for summing peak counts into gene windows.

    Attributes
    ----------
    upstream_extension : int
        Bases added on the 5' side of each gene body
    downstream_extension : int
        Bases added on the 3' side of each gene body
    collapse_transcripts : bool
        Keep only the longest interval per gene symbol
    log_normalize : bool
        Also produce a log-normalized activity matrix
    """

    upstream_extension: int = 2000
    downstream_extension: int = 0
    collapse_transcripts: bool = True
    log_normalize: bool = True
