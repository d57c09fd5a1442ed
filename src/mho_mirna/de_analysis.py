"""
Differential expression engine for two-group microarray comparisons.

Fits one linear model per feature against a group-means design matrix and
moderates the residual variances with an empirical Bayes prior estimated
across all features (the limma ``lmFit`` + ``eBayes`` approach). The prior is
fitted by matching the moments of the log residual variances to a scaled F
distribution; features with few samples borrow strength from the rest.

Raw p-values are used by default. Any ``statsmodels`` multiple-testing method
may be configured instead, in which case the threshold applies to the
adjusted values.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import digamma, polygamma
from statsmodels.stats.multitest import multipletests

from .dataset import ExpressionDataset
from .de_result import RESULT_COLUMNS, DEProvenance, DEResult
from .errors import DegenerateDesignError, InsufficientGroupsError

logger = logging.getLogger(__name__)

LOG_TRANSFORM_MODES = ("auto", "always", "never")


@dataclass
class DEConfig:
    """Configuration for differential expression analysis.

    The contrast is ``test_group - reference_group``: a positive log2 fold
    change means higher expression in the test group. Which group is the
    reference is set here explicitly, never inferred from label order.
    """

    group_field: str = "group"
    reference_group: str = "MHO"
    test_group: str = "MUO"

    pvalue_threshold: float = 0.05
    # "none" or any statsmodels multipletests method ("fdr_bh", "bonferroni", ...)
    adjust_method: str = "none"

    # "auto" applies the GEO2R rule for detecting unlogged intensities
    log_transform: str = "auto"
    eb_moderation: bool = True

    def __post_init__(self):
        if not 0 < self.pvalue_threshold <= 1:
            raise ValueError(f"pvalue_threshold must be in (0, 1], got {self.pvalue_threshold}")
        if self.log_transform not in LOG_TRANSFORM_MODES:
            raise ValueError(
                f"log_transform must be one of {LOG_TRANSFORM_MODES}, got {self.log_transform!r}"
            )
        if _same_label(self.reference_group, self.test_group):
            raise ValueError("reference_group and test_group must differ")

    @property
    def contrast_label(self) -> str:
        return f"{self.test_group} - {self.reference_group}"


# =============================================================================
# Design and contrast
# =============================================================================


def _same_label(a: str, b: str) -> bool:
    return str(a).strip().casefold() == str(b).strip().casefold()


def build_design_matrix(labels: Sequence[str], groups: Sequence[str]) -> pd.DataFrame:
    """
    Build a 0/1 group indicator matrix (samples x groups).

    Every sample must carry exactly one of ``groups`` (matched
    case-insensitively), so each row sums to 1.

    Args:
        labels: Group label per sample, in column order
        groups: Design column order

    Returns:
        DataFrame with one column per group

    Raises:
        InsufficientGroupsError: If a label matches none of the groups
    """
    rows = []
    for label in labels:
        row = [1 if _same_label(label, g) else 0 for g in groups]
        if sum(row) != 1:
            raise InsufficientGroupsError(
                f"Sample label {label!r} does not match exactly one of {list(groups)}"
            )
        rows.append(row)
    index = labels.index if isinstance(labels, pd.Series) else None
    return pd.DataFrame(rows, columns=list(groups), index=index, dtype=int)


def build_contrast(design: pd.DataFrame, reference: str, test: str) -> np.ndarray:
    """Contrast vector selecting ``test - reference`` from the design columns."""
    contrast = np.zeros(design.shape[1])
    contrast[list(design.columns).index(test)] = 1.0
    contrast[list(design.columns).index(reference)] = -1.0
    return contrast


def needs_log_transform(values: np.ndarray) -> bool:
    """
    Decide whether intensities still need a log2 transform.

    Uses the GEO2R heuristic: the data are unlogged when the 99th percentile
    exceeds 100, or when the range exceeds 50 with a positive lower quartile.
    """
    finite = values[np.isfinite(values)]
    if finite.size == 0:
        return False
    qx = np.quantile(finite, [0.0, 0.25, 0.5, 0.75, 0.99, 1.0])
    return bool(qx[4] > 100 or (qx[5] - qx[0] > 50 and qx[1] > 0))


# =============================================================================
# Empirical Bayes
# =============================================================================


def trigamma_inverse(x: float) -> float:
    """Solve ``trigamma(y) = x`` for y by Newton iteration."""
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x
    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = polygamma(1, y)
        dif = tri * (1.0 - tri / x) / polygamma(2, y)
        y += dif
        if -dif / y < 1e-8:
            break
    return float(y)


def fit_f_dist(sigma2: np.ndarray, df1: float) -> Tuple[float, float]:
    """
    Moment estimation of the scaled-F prior for residual variances.

    Args:
        sigma2: Residual variances (one per feature)
        df1: Residual degrees of freedom

    Returns:
        Tuple of (prior degrees of freedom d0, prior variance s0^2).
        d0 is infinite when the observed variances are no more dispersed
        than sampling noise alone would produce.
    """
    s2 = np.asarray(sigma2, dtype=float)
    s2 = s2[np.isfinite(s2)]
    median = np.median(s2) if s2.size else 0.0
    if median <= 0:
        median = 1.0
    s2 = np.maximum(s2, 1e-5 * median)

    z = np.log(s2)
    e = z - digamma(df1 / 2) + np.log(df1 / 2)
    emean = float(np.mean(e))
    evar = float(np.var(e, ddof=1)) - float(polygamma(1, df1 / 2))

    if evar > 0:
        d0 = 2.0 * trigamma_inverse(evar)
        s0_sq = float(np.exp(emean + digamma(d0 / 2) - np.log(d0 / 2)))
    else:
        d0 = np.inf
        s0_sq = float(np.exp(emean))
    return d0, s0_sq


def squeeze_var(
    sigma2: np.ndarray,
    df1: float,
    d0: float,
    s0_sq: float,
) -> Tuple[np.ndarray, float]:
    """Posterior variances and total degrees of freedom under the fitted prior."""
    if np.isinf(d0):
        return np.full_like(sigma2, s0_sq, dtype=float), np.inf
    posterior = (df1 * sigma2 + d0 * s0_sq) / (df1 + d0)
    return posterior, df1 + d0


def analysed_dataset(dataset: ExpressionDataset, result: DEResult) -> ExpressionDataset:
    """
    Narrow ``dataset`` to the samples of ``result`` and swap in the fitted values.

    Returns the dataset unchanged when the result carries no matrix.
    """
    if result.expression is None:
        return dataset
    narrowed = dataset.subset_samples(result.expression.columns)
    return narrowed.with_expression(
        result.expression.loc[narrowed.feature_ids, narrowed.sample_ids]
    )


# =============================================================================
# Analyzer
# =============================================================================


class DifferentialExpressionAnalyzer:
    """
    Two-group moderated t-test over every feature of a dataset.

    Example:
        analyzer = DifferentialExpressionAnalyzer(DEConfig(reference_group="MHO", test_group="MUO"))
        result = analyzer.analyze(dataset)
        print(f"Found {result.n_upregulated} upregulated miRNAs")
    """

    def __init__(self, config: Optional[DEConfig] = None):
        self.config = config or DEConfig()

    def analyze(self, dataset: ExpressionDataset) -> DEResult:
        """
        Fit, moderate, rank and threshold.

        Args:
            dataset: Dataset whose sample table carries ``group_field``

        Returns:
            DEResult sorted by ascending p-value

        Raises:
            InsufficientGroupsError: Fewer than two groups present
            DegenerateDesignError: No residual degrees of freedom
        """
        cfg = self.config
        dataset, groups = self._select_samples(dataset)
        labels = dataset.group_labels(cfg.group_field)

        values = dataset.expression.to_numpy(dtype=float)
        log_transformed = self._should_log(values)
        if log_transformed:
            logger.info("Applying log2 transform to intensities")
            values = np.where(values > 0, values, np.nan)
            values = np.log2(values)
        analysed = pd.DataFrame(values, index=dataset.feature_ids, columns=dataset.sample_ids)

        complete = np.all(np.isfinite(values), axis=1)
        n_excluded = int((~complete).sum())
        if n_excluded:
            logger.info("Excluding %d features with missing values", n_excluded)
        feature_ids = [f for f, ok in zip(dataset.feature_ids, complete) if ok]
        Y = values[complete]

        design = build_design_matrix(labels, groups)
        X = design.to_numpy(dtype=float)
        rank = np.linalg.matrix_rank(X)
        df_residual = X.shape[0] - rank
        if rank < X.shape[1] or df_residual < 1:
            raise DegenerateDesignError(
                f"Design with {X.shape[0]} samples and {X.shape[1]} groups has "
                f"rank {rank} and {df_residual} residual df; replicate samples are required"
            )
        contrast = build_contrast(design, cfg.reference_group, cfg.test_group)

        XtX_inv = np.linalg.inv(X.T @ X)
        beta = Y @ X @ XtX_inv.T
        residuals = Y - beta @ X.T
        sigma2 = np.sum(residuals ** 2, axis=1) / df_residual
        log2fc = beta @ contrast
        c_var_factor = float(contrast @ XtX_inv @ contrast)

        d0, s0_sq = np.inf, np.nan
        eb = cfg.eb_moderation
        if eb and len(sigma2) < 3:
            logger.warning("Fewer than 3 features; disabling empirical Bayes moderation")
            eb = False
        if eb:
            d0, s0_sq = fit_f_dist(sigma2, df_residual)
            sigma2_post, df_total = squeeze_var(sigma2, df_residual, d0, s0_sq)
            logger.info("EB prior: d0=%s, s0^2=%.4g", f"{d0:.2f}" if np.isfinite(d0) else "Inf", s0_sq)
        else:
            sigma2_post, df_total = sigma2, float(df_residual)

        se = np.maximum(np.sqrt(sigma2_post * c_var_factor), 1e-10)
        t_stat = log2fc / se
        if np.isinf(df_total):
            pvalues = 2 * stats.norm.sf(np.abs(t_stat))
        else:
            pvalues = 2 * stats.t.sf(np.abs(t_stat), df_total)

        adjusted = self._adjust(pvalues)

        table = pd.DataFrame({
            "feature_id": feature_ids,
            "mirna_id": dataset.features.loc[feature_ids, "mirna_id"].astype(str).to_numpy(),
            "log2_fold_change": log2fc,
            "ave_expr": Y.mean(axis=1),
            "t": t_stat,
            "pvalue": pvalues,
            "pvalue_adjusted": adjusted,
        })
        table = table.sort_values(["pvalue", "feature_id"], kind="mergesort").reset_index(drop=True)
        table["rank"] = np.arange(1, len(table) + 1)
        table = table[RESULT_COLUMNS]

        significant = table[table["pvalue_adjusted"] <= cfg.pvalue_threshold].reset_index(drop=True)

        n_ref = int(design[cfg.reference_group].sum())
        provenance = DEProvenance(
            accession=dataset.accession,
            group_field=cfg.group_field,
            reference_group=cfg.reference_group,
            test_group=cfg.test_group,
            n_reference=n_ref,
            n_test=int(design.shape[0] - n_ref),
            pvalue_threshold=cfg.pvalue_threshold,
            adjust_method=cfg.adjust_method,
            log_transformed=log_transformed,
            eb_moderation=eb,
            prior_df=float(d0) if eb and np.isfinite(d0) else None,
            prior_var=float(s0_sq) if eb else None,
            residual_df=int(df_residual),
            n_excluded_features=n_excluded,
        )
        result = DEResult(provenance=provenance, table=significant, all_features=table, expression=analysed)
        logger.info(
            "DE complete: %d tested, %d significant (%d up, %d down)",
            result.features_tested,
            result.features_significant,
            result.n_upregulated,
            result.n_downregulated,
        )
        return result

    def _select_samples(self, dataset: ExpressionDataset) -> Tuple[ExpressionDataset, List[str]]:
        """Keep samples of the two configured groups, in dataset column order."""
        cfg = self.config
        labels = dataset.group_labels(cfg.group_field)
        distinct = {label.casefold() for label in labels}
        if len(distinct) < 2:
            raise InsufficientGroupsError(
                f"Need two groups in '{cfg.group_field}', found {sorted(set(labels))}"
            )
        groups = [cfg.reference_group, cfg.test_group]
        missing = [g for g in groups if g.strip().casefold() not in distinct]
        if missing:
            raise InsufficientGroupsError(
                f"Group(s) {missing} not present in '{cfg.group_field}' "
                f"(found {sorted(set(labels))})"
            )

        keep = [sid for sid, label in labels.items() if any(_same_label(label, g) for g in groups)]
        if len(keep) < len(labels):
            logger.info("Dropping %d samples outside %s", len(labels) - len(keep), groups)
        return dataset.subset_samples(keep), groups

    def _should_log(self, values: np.ndarray) -> bool:
        mode = self.config.log_transform
        if mode == "always":
            return True
        if mode == "never":
            return False
        return needs_log_transform(values)

    def _adjust(self, pvalues: np.ndarray) -> np.ndarray:
        method = self.config.adjust_method
        if method == "none" or len(pvalues) == 0:
            return np.array(pvalues, dtype=float)
        _, adjusted, _, _ = multipletests(pvalues, method=method)
        return adjusted
