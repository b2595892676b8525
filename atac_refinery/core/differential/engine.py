"""Differential accessibility by logistic-regression likelihood ratio.

For each feature, group membership (target vs rest) is regressed on the
feature and an optional covariate such as sequencing depth:

    full:  y ~ 1 + feature + covariate
    null:  y ~ 1 + covariate

The likelihood-ratio statistic 2 * (llf_full - llf_null) is compared to a
chi-square distribution with one degree of freedom. Features are
pre-filtered on fold change and detection rate before any model is fit.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import logging
import warnings

import numpy as np
import pandas as pd
import statsmodels.api as sm
from joblib import Parallel, delayed
from scipy import sparse
from scipy.stats import chi2

from ..cancellation import CancellationToken
from ..errors import (
    AnomalyReport,
    MatrixValidationError,
    ModelFitError,
    ZeroVarianceFeatureError,
)
from ..matrix.store import CountMatrix
from ...utils.stats import CORRECTION_METHODS, apply_fdr_correction, sparse_row_stats
from .config import DifferentialConfig


FOLD_CHANGE_MODES = ("log2", "avg_diff")

# A fit this close to a perfect likelihood is treated as separated
SEPARATION_LLF_TOLERANCE = 1e-6

RESULT_COLUMNS = [
    "feature_id",
    "log_fold_change",
    "p_value",
    "adjusted_p_value",
    "pct_target",
    "pct_rest",
]


@dataclass
class DifferentialResult:
    """Result from a differential test of one group against the rest.

    Attributes
    ----------
    table : pd.DataFrame
        One row per tested feature, sorted by adjusted p-value then id
    skipped : List[str]
        Features that passed the pre-filters but could not be tested
    n_filtered : int
        Features removed by the fold-change and detection pre-filters
    target_group : str
        Group tested against the rest
    report : AnomalyReport
        ZeroVarianceFeatureError per constant feature and ModelFitError
        per feature whose model could not be fit
    """

    table: pd.DataFrame
    skipped: List[str] = field(default_factory=list)
    n_filtered: int = 0
    target_group: str = ""
    report: AnomalyReport = field(
        default_factory=lambda: AnomalyReport(stage="differential")
    )

    def significant(self, alpha: float = 0.05) -> pd.DataFrame:
        return self.table.loc[self.table["adjusted_p_value"] < alpha]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_group": self.target_group,
            "n_tested": len(self.table),
            "n_skipped": len(self.skipped),
            "n_filtered": self.n_filtered,
            "n_significant": len(self.significant()),
        }


def _standardize(values: np.ndarray) -> np.ndarray:
    sd = values.std()
    return (values - values.mean()) / sd if sd > 0 else values - values.mean()


def _separation_boundary(x: np.ndarray, y: np.ndarray) -> Optional[float]:
    """Threshold on ``x`` that separates the two classes, if any.

    Ties at the threshold are allowed (quasi-complete separation), so a
    feature that is zero in every reference cell and non-zero in some
    target cells separates at 0. Constant ``x`` never separates.
    """
    if x.min() == x.max():
        return None
    x1, x0 = x[y == 1], x[y == 0]
    if x0.max() <= x1.min():
        return float(x0.max())
    if x1.max() <= x0.min():
        return float(x1.max())
    return None


def _bernoulli_llf(y: np.ndarray) -> float:
    """Log-likelihood of the intercept-only logistic model."""
    n1 = float(y.sum())
    n0 = float(y.size - n1)
    if n1 == 0 or n0 == 0:
        return 0.0
    p = n1 / y.size
    return n1 * np.log(p) + n0 * np.log(1.0 - p)


def _logit_llf(y: np.ndarray, design: np.ndarray, max_iter: int) -> Tuple[float, str]:
    """Fit a logistic model; returns (llf, failure reason or "").

    A fit whose log-likelihood has run up to 0 is separated and scores the
    supremum 0 whether or not the optimizer reports convergence.
    """
    try:
        fit = sm.Logit(y, design).fit(disp=0, maxiter=max_iter)
    except (np.linalg.LinAlgError, ValueError) as exc:
        return np.nan, f"fit failed: {exc}"
    llf = float(fit.llf)
    if np.isfinite(llf) and llf > -SEPARATION_LLF_TOLERANCE:
        return 0.0, ""
    if not fit.mle_retvals.get("converged", True):
        return np.nan, "logistic fit did not converge"
    if not np.isfinite(llf):
        return np.nan, "non-finite log-likelihood"
    return min(llf, 0.0), ""


def _separated_llf(
    x: np.ndarray,
    y: np.ndarray,
    z: Optional[np.ndarray],
    max_iter: int,
) -> Optional[Tuple[float, str]]:
    """Supremum log-likelihood when ``x`` separates ``y``, else None.

    Cells strictly on either side of the threshold are fit exactly in the
    limit and contribute 0. Cells tied at the threshold keep their own
    intercept (and covariate) model, so perfect separation scores 0.
    """
    boundary = _separation_boundary(x, y)
    if boundary is None:
        return None
    tied = x == boundary
    y_tied = y[tied]
    if z is None or y_tied.min() == y_tied.max():
        return _bernoulli_llf(y_tied), ""
    z_tied = z[tied]
    if z_tied.min() == z_tied.max():
        return _bernoulli_llf(y_tied), ""
    inner = _separated_llf(z_tied, y_tied, None, max_iter)
    if inner is not None:
        return inner
    return _logit_llf(y_tied, sm.add_constant(z_tied, has_constant="add"), max_iter)


class DifferentialTester:
    """Covariate-adjusted differential accessibility tests.

    Parameters
    ----------
    config : DifferentialConfig, optional
        Test configuration
    logger : logging.Logger, optional
        Logger instance

    Example
    -------
    >>> tester = DifferentialTester(DifferentialConfig(min_log_fold_change=0.25))
    >>> result = tester.test(peaks, clusters, target_group=0,
    ...                      covariate=peaks.total_counts())
    >>> result.significant().head()
    """

    def __init__(
        self,
        config: Optional[DifferentialConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or DifferentialConfig()
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _align(series: pd.Series, matrix: CountMatrix, what: str) -> pd.Series:
        series = series.copy()
        series.index = series.index.astype(str)
        missing = matrix.cell_ids.difference(series.index)
        if len(missing):
            raise MatrixValidationError(
                f"{what} missing for {len(missing)} cell(s), e.g. {list(missing[:3])}"
            )
        return series.reindex(matrix.cell_ids)

    def fold_change(
        self, mean_target: np.ndarray, mean_rest: np.ndarray, mode: Optional[str] = None
    ) -> np.ndarray:
        """Fold change per feature in the configured mode."""
        mode = mode or self.config.fold_change_mode
        if mode == "log2":
            pc = self.config.pseudocount
            return np.log2((mean_target + pc) / (mean_rest + pc))
        if mode == "avg_diff":
            return mean_target - mean_rest
        raise ValueError(f"Unknown fold_change_mode '{mode}'; use one of {FOLD_CHANGE_MODES}")

    def test(
        self,
        matrix: CountMatrix,
        group_labels: pd.Series,
        target_group: Any,
        covariate: Optional[pd.Series] = None,
        min_log_fold_change: Optional[float] = None,
        only_positive: Optional[bool] = None,
        reference_group: Optional[Any] = None,
        token: Optional[CancellationToken] = None,
    ) -> DifferentialResult:
        """Test every feature for differential signal in ``target_group``.

        Parameters
        ----------
        matrix : CountMatrix
            Feature-by-cell matrix of any kind
        group_labels : pd.Series
            Group per cell, indexed by cell id
        target_group : Any
            Label of the group of interest
        covariate : pd.Series, optional
            Per-cell covariate included in both models
        min_log_fold_change : float, optional
            Pre-filter threshold. Defaults to config value.
        only_positive : bool, optional
            Keep only features higher in the target. Defaults to config value.
        reference_group : Any, optional
            Compare against this group instead of all other cells
        token : CancellationToken, optional
            Checked between batches

        Returns
        -------
        DifferentialResult
            Table of tested features and skip records

        Raises
        ------
        ValueError
            If either group is empty or the correction method is unknown
        CancelledError
            If cancellation is observed between batches
        """
        cfg = self.config
        min_lfc = (
            min_log_fold_change if min_log_fold_change is not None else cfg.min_log_fold_change
        )
        only_positive = only_positive if only_positive is not None else cfg.only_positive
        if cfg.correction not in CORRECTION_METHODS:
            raise ValueError(f"Unknown correction method: {cfg.correction}")

        labels = self._align(pd.Series(group_labels), matrix, "Group label")
        label_str = labels.astype(object).where(labels.notna(), None)
        target_key = str(target_group)
        is_target = np.array([v is not None and str(v) == target_key for v in label_str])
        if reference_group is None:
            is_rest = np.array([v is not None for v in label_str]) & ~is_target
        else:
            ref_key = str(reference_group)
            is_rest = np.array([v is not None and str(v) == ref_key for v in label_str])
        if not is_target.any():
            raise ValueError(f"Target group '{target_group}' has no cells")
        if not is_rest.any():
            raise ValueError("Reference group has no cells")

        analyzed = is_target | is_rest
        X = matrix.X.astype(np.float64)
        mean_t, _, pct_t = sparse_row_stats(X, is_target)
        mean_r, _, pct_r = sparse_row_stats(X, is_rest)
        _, var_all, _ = sparse_row_stats(X, analyzed)
        fc = self.fold_change(mean_t, mean_r)

        passes_fc = fc >= min_lfc if only_positive else np.abs(fc) >= min_lfc
        passes_frac = np.maximum(pct_t, pct_r) >= cfg.min_fraction
        candidates = np.flatnonzero(passes_fc & passes_frac)
        n_filtered = matrix.n_features - candidates.size

        report = AnomalyReport(stage="differential")
        zero_var = candidates[var_all[candidates] <= 0]
        for pos in zero_var:
            report.add(ZeroVarianceFeatureError(matrix.feature_ids[pos]))
        candidates = candidates[var_all[candidates] > 0]

        y = is_target[analyzed].astype(float)
        z = None
        if covariate is not None:
            cov = self._align(pd.Series(covariate), matrix, "Covariate").to_numpy(dtype=float)
            cov = cov[analyzed]
            if not np.all(np.isfinite(cov)):
                raise MatrixValidationError("Covariate contains non-finite values")
            z = _standardize(cov)
            if not np.any(z):
                self.logger.info("Covariate is constant over analyzed cells; ignoring it")
                z = None
        llf_null = self._null_llf(y, z)

        rows = X[candidates][:, np.flatnonzero(analyzed)].tocsr()
        llf_full = np.full(candidates.size, np.nan)
        reasons: List[str] = [""] * candidates.size

        def _run_batch(start: int, stop: int) -> None:
            if token is not None:
                token.raise_if_cancelled("differential")
            for i in range(start, stop):
                x = np.asarray(rows[i].todense()).ravel()
                llf_full[i], reasons[i] = self._full_llf(x, y, z)

        batch = max(int(cfg.batch_size), 1)
        bounds = [(s, min(s + batch, candidates.size)) for s in range(0, candidates.size, batch)]
        self.logger.info(
            "Testing %d feature(s) for group '%s' (%d target vs %d rest cells; %d filtered)",
            candidates.size,
            target_key,
            int(is_target.sum()),
            int(is_rest.sum()),
            n_filtered,
        )
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            Parallel(n_jobs=cfg.n_jobs, prefer="threads")(
                delayed(_run_batch)(s, e) for s, e in bounds
            )

        failed = np.array([bool(r) for r in reasons], dtype=bool)
        for i in np.flatnonzero(failed):
            report.add(ModelFitError(matrix.feature_ids[candidates[i]], reasons[i]))
        tested = candidates[~failed]
        stat = np.maximum(2.0 * (llf_full[~failed] - llf_null), 0.0)
        p_values = chi2.sf(stat, 1)

        table = pd.DataFrame(
            {
                "feature_id": matrix.feature_ids[tested].astype(str),
                "log_fold_change": fc[tested],
                "p_value": p_values,
                "adjusted_p_value": apply_fdr_correction(p_values, cfg.correction),
                "pct_target": pct_t[tested],
                "pct_rest": pct_r[tested],
            },
            columns=RESULT_COLUMNS,
        )
        table = table.sort_values(
            ["adjusted_p_value", "feature_id"], kind="mergesort"
        ).reset_index(drop=True)

        skipped = [str(matrix.feature_ids[p]) for p in zero_var] + [
            str(matrix.feature_ids[candidates[i]]) for i in np.flatnonzero(failed)
        ]
        if skipped:
            self.logger.warning("Skipped %d untestable feature(s)", len(skipped))
        return DifferentialResult(
            table=table,
            skipped=skipped,
            n_filtered=int(n_filtered),
            target_group=target_key,
            report=report,
        )

    def _null_llf(self, y: np.ndarray, z: Optional[np.ndarray]) -> float:
        if z is None:
            return _bernoulli_llf(y)
        separated = _separated_llf(z, y, None, self.config.max_iter)
        if separated is not None:
            self.logger.warning("Covariate alone separates the groups")
            return separated[0]
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            llf, reason = _logit_llf(y, sm.add_constant(z, has_constant="add"), self.config.max_iter)
        if reason:
            raise ValueError(f"Covariate-only model could not be fit: {reason}")
        return llf

    def _full_llf(
        self, x: np.ndarray, y: np.ndarray, z: Optional[np.ndarray]
    ) -> Tuple[float, str]:
        separated = _separated_llf(x, y, z, self.config.max_iter)
        if separated is not None:
            return separated
        columns = [np.ones_like(y), _standardize(x)]
        if z is not None:
            columns.append(z)
        return _logit_llf(y, np.column_stack(columns), self.config.max_iter)

    def find_all_markers(
        self,
        matrix: CountMatrix,
        group_labels: pd.Series,
        covariate: Optional[pd.Series] = None,
        groups: Optional[Sequence[Any]] = None,
        token: Optional[CancellationToken] = None,
        **kwargs,
    ) -> Tuple[pd.DataFrame, Dict[str, DifferentialResult]]:
        """Test every group against all other cells.

        Returns
        -------
        tuple
            (combined table with a leading ``group`` column, results per group)
        """
        labels = pd.Series(group_labels).dropna()
        if groups is None:
            groups = sorted(pd.unique(labels), key=lambda g: (str(type(g)), g))
        results: Dict[str, DifferentialResult] = {}
        tables = []
        for group in groups:
            result = self.test(
                matrix, group_labels, group, covariate=covariate, token=token, **kwargs
            )
            results[str(group)] = result
            frame = result.table.copy()
            frame.insert(0, "group", str(group))
            tables.append(frame)
        combined = (
            pd.concat(tables, ignore_index=True)
            if tables
            else pd.DataFrame(columns=["group"] + RESULT_COLUMNS)
        )
        return combined, results
