"""Configuration classes for differential accessibility testing."""

from dataclasses import dataclass


@dataclass
class DifferentialConfig:
    """Configuration for logistic-regression likelihood-ratio tests.

    Attributes
    ----------
    fold_change_mode : str
        "log2" for log2((mean_target + pseudocount) / (mean_rest + pseudocount)),
        "avg_diff" for mean_target - mean_rest (deviation matrices)
    pseudocount : float
        Added to group means in log2 mode
    min_log_fold_change : float
        Features with smaller |fold change| are not tested
    only_positive : bool
        Only test features with fold change >= min_log_fold_change
    min_fraction : float
        Minimum fraction of non-zero cells in either group
    correction : str
        Multiple testing correction: "bonferroni", "fdr_bh", "holm", "none"
    batch_size : int
        Features per parallel batch
    n_jobs : int
        Parallel threads over batches
    max_iter : int
        Maximum Newton iterations per logistic fit
    """

    fold_change_mode: str = "log2"
    pseudocount: float = 1.0
    min_log_fold_change: float = 0.25
    only_positive: bool = False
    min_fraction: float = 0.05
    correction: str = "bonferroni"
    batch_size: int = 100
    n_jobs: int = 1
    max_iter: int = 100
