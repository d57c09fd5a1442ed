"""
Directional gene-set analysis (GAGE-style).

For every gene a two-sample t statistic compares the "sample" columns with
the "reference" columns. A gene set is then scored by how far the mean
statistic of its members lies from the mean over all genes:

    t_set = (mean(stats[set]) - mean(stats)) / (sd(stats) / sqrt(n))

tested against a t distribution with n - 1 degrees of freedom, once for a
shift upwards ("greater") and once downwards ("less"). The two one-sided
tests are merged into a two-sided p-value with the direction of the
stronger side. Gene sets without enough genes in the matrix are skipped.

Example:
    analyzer = GeneSetAnalyzer(EnrichmentConfig(reference_prefix="MHO", sample_prefix="MUO"))
    run = analyzer.analyze(target_matrix, {"kegg": kegg_sets})
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .dataset import ExpressionDataset
from .de_result import ENRICHMENT_COLUMNS, EnrichmentRun, GeneSetTestResult
from .errors import EmptyGroupError, EmptyResultSetError
from .gene_sets import DEFAULT_COLLECTIONS

logger = logging.getLogger(__name__)


@dataclass
class EnrichmentConfig:
    """
    Configuration for gene-set analysis.

    Attributes:
        reference_prefix: Column-label prefix of reference samples
        sample_prefix: Column-label prefix of test samples
        min_size: Minimum matched genes for a set to be tested
        max_size: Maximum matched genes for a set to be tested
        equal_var: Pooled-variance t statistic per gene (Welch when False)
        significance_threshold: P-value cut used in summaries
        collections: Collection name -> Enrichr library name or GMT path
        target_source: Annotation used to map miRNAs onto genes
            ("validated" or "predicted")
    """

    reference_prefix: str = "MHO"
    sample_prefix: str = "MUO"
    min_size: int = 1
    max_size: int = 500
    equal_var: bool = False
    significance_threshold: float = 0.05
    collections: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_COLLECTIONS))
    target_source: str = "validated"

    def __post_init__(self):
        if self.min_size < 1 or self.max_size < self.min_size:
            raise ValueError("Require 1 <= min_size <= max_size")
        if self.target_source not in ("validated", "predicted"):
            raise ValueError(f"target_source must be 'validated' or 'predicted', got {self.target_source!r}")


def partition_columns(
    columns: Sequence[str],
    reference_prefix: str,
    sample_prefix: str,
) -> Tuple[List[str], List[str]]:
    """
    Split column labels into reference and sample groups by prefix.

    Prefixes match case-insensitively, as group labels do in the DE model.

    Raises:
        EmptyGroupError: If either group has no columns
    """
    ref_key = reference_prefix.strip().casefold()
    sample_key = sample_prefix.strip().casefold()
    reference = [c for c in columns if str(c).casefold().startswith(ref_key)]
    sample = [c for c in columns if str(c).casefold().startswith(sample_key) and c not in reference]
    if not reference:
        raise EmptyGroupError(f"No columns start with reference prefix {reference_prefix!r}")
    if not sample:
        raise EmptyGroupError(f"No columns start with sample prefix {sample_prefix!r}")
    return reference, sample


def gene_statistics(
    matrix: pd.DataFrame,
    reference: Sequence[str],
    sample: Sequence[str],
    equal_var: bool = False,
) -> pd.Series:
    """Per-gene two-sample t statistic (sample vs reference); undefined genes are dropped."""
    with np.errstate(divide="ignore", invalid="ignore"):
        result = stats.ttest_ind(
            matrix[list(sample)].to_numpy(dtype=float),
            matrix[list(reference)].to_numpy(dtype=float),
            axis=1,
            equal_var=equal_var,
        )
    gene_stats = pd.Series(np.asarray(result.statistic, dtype=float), index=matrix.index, name="stat")
    return gene_stats[np.isfinite(gene_stats)]


def _bh(pvalues: pd.Series) -> np.ndarray:
    if pvalues.empty:
        return np.array([], dtype=float)
    return multipletests(pvalues.to_numpy(), method="fdr_bh")[1]


def score_gene_sets(
    gene_stats: pd.Series,
    gene_sets: Mapping[str, Sequence[str]],
    collection: str = "",
    min_size: int = 1,
    max_size: int = 500,
) -> GeneSetTestResult:
    """
    Score every gene set against the distribution of all gene statistics.

    Args:
        gene_stats: Per-gene statistics indexed by gene symbol
        gene_sets: Set name -> member symbols
        collection: Collection name recorded on the result
        min_size: Minimum matched members
        max_size: Maximum matched members

    Returns:
        GeneSetTestResult with greater/less/combined tables

    Raises:
        EmptyResultSetError: If fewer than two gene statistics are available
    """
    if len(gene_stats) < 2:
        raise EmptyResultSetError(
            f"Need at least two gene statistics for set testing, have {len(gene_stats)}"
        )
    overall_mean = float(gene_stats.mean())
    overall_sd = float(gene_stats.std(ddof=1))
    if overall_sd == 0:
        overall_sd = np.finfo(float).eps

    rows = []
    skipped = 0
    available = set(gene_stats.index)
    for name, members in gene_sets.items():
        matched = [g for g in dict.fromkeys(members) if g in available]
        n = len(matched)
        if n < min_size or n > max_size:
            skipped += 1
            continue
        stat_mean = float(gene_stats.loc[matched].mean())
        t_set = (stat_mean - overall_mean) / (overall_sd / np.sqrt(n))
        if n > 1:
            p_greater = float(stats.t.sf(t_set, df=n - 1))
            p_less = float(stats.t.cdf(t_set, df=n - 1))
        else:
            p_greater = float(stats.norm.sf(t_set))
            p_less = float(stats.norm.cdf(t_set))
        rows.append((name, stat_mean, t_set, p_greater, p_less, n))

    if skipped:
        logger.info("%s: skipped %d gene sets outside size range", collection or "gene sets", skipped)

    frame = pd.DataFrame(rows, columns=["set", "stat_mean", "t", "p_greater", "p_less", "set_size"])
    frame = frame.set_index("set")

    greater = _direction_table(frame, "p_greater")
    less = _direction_table(frame, "p_less")

    p_two = np.minimum(1.0, 2.0 * np.minimum(frame["p_greater"], frame["p_less"]))
    up = frame["p_greater"] <= frame["p_less"]
    combined = pd.DataFrame({
        "stat_mean": frame["stat_mean"],
        "p_val": p_two,
        "set_size": frame["set_size"],
        "direction": np.where(up, "greater", "less"),
    }, index=frame.index)
    combined["score"] = -np.log10(np.clip(combined["p_val"].to_numpy(dtype=float), 1e-300, 1.0)) * np.where(up, 1.0, -1.0)
    combined = combined.sort_values("p_val", kind="mergesort")
    combined.insert(2, "q_val", _bh(combined["p_val"]))

    return GeneSetTestResult(
        collection=collection,
        greater=greater,
        less=less,
        combined=combined,
        gene_stats=gene_stats,
        n_sets=len(gene_sets),
        n_skipped=skipped,
    )


def _direction_table(frame: pd.DataFrame, p_column: str) -> pd.DataFrame:
    table = pd.DataFrame({
        "stat_mean": frame["stat_mean"],
        "p_val": frame[p_column],
        "set_size": frame["set_size"],
    }, index=frame.index)
    table = table.sort_values("p_val", kind="mergesort")
    table.insert(2, "q_val", _bh(table["p_val"]))
    return table[ENRICHMENT_COLUMNS]


def build_target_matrix(
    dataset: ExpressionDataset,
    feature_targets: Mapping[str, Optional[str]],
    sample_labels: Optional[pd.Series] = None,
) -> pd.DataFrame:
    """
    Re-index expression rows by target gene symbol.

    Each feature contributes one row per target symbol (``;``-separated
    values are split); features without a target are dropped and only the
    first row per symbol is kept.

    Args:
        dataset: Expression dataset
        feature_targets: Feature ID -> target symbol(s)
        sample_labels: Column relabelling (e.g. group-coded titles)

    Returns:
        DataFrame genes x samples
    """
    rows = []
    symbols = []
    for feature_id in dataset.feature_ids:
        value = feature_targets.get(feature_id)
        if value is None or (isinstance(value, float) and np.isnan(value)):
            continue
        for symbol in str(value).split(";"):
            symbol = symbol.strip()
            if symbol:
                rows.append(feature_id)
                symbols.append(symbol)

    matrix = dataset.expression.loc[rows].copy()
    matrix.index = pd.Index(symbols, name="gene_symbol")
    matrix = matrix[~matrix.index.duplicated(keep="first")]
    if sample_labels is not None:
        matrix.columns = [str(sample_labels.get(c, c)) for c in matrix.columns]
    return matrix


class GeneSetAnalyzer:
    """Runs the directional gene-set test over several collections."""

    def __init__(self, config: Optional[EnrichmentConfig] = None):
        self.config = config or EnrichmentConfig()

    def analyze(
        self,
        matrix: pd.DataFrame,
        collections: Mapping[str, Mapping[str, Sequence[str]]],
    ) -> EnrichmentRun:
        """
        Test every collection against one target-gene matrix.

        Args:
            matrix: Genes x samples, columns labelled so the configured
                prefixes identify reference and sample groups
            collections: Collection name -> gene sets

        Raises:
            EmptyGroupError: If either column partition is empty
        """
        cfg = self.config
        reference, sample = partition_columns(list(matrix.columns), cfg.reference_prefix, cfg.sample_prefix)
        gene_stats = gene_statistics(matrix, reference, sample, equal_var=cfg.equal_var)
        logger.info(
            "Gene-set analysis: %d genes, %d reference vs %d sample columns",
            len(gene_stats), len(reference), len(sample),
        )

        run = EnrichmentRun(
            reference_prefix=cfg.reference_prefix,
            sample_prefix=cfg.sample_prefix,
            n_reference=len(reference),
            n_sample=len(sample),
            n_genes=len(gene_stats),
        )
        for name, gene_sets in collections.items():
            result = score_gene_sets(
                gene_stats,
                gene_sets,
                collection=name,
                min_size=cfg.min_size,
                max_size=cfg.max_size,
            )
            logger.info(
                "  %s: %d tested, %d skipped, %d greater / %d less at p<=%.2g",
                name,
                result.n_tested,
                result.n_skipped,
                len(result.significant("greater", cfg.significance_threshold)),
                len(result.significant("less", cfg.significance_threshold)),
                cfg.significance_threshold,
            )
            run.results[name] = result
        return run
