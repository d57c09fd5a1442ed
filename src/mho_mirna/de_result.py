"""
Result dataclasses for differential expression and gene-set analysis.

These dataclasses capture the tables each stage produces together with the
parameters needed to reproduce them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import pandas as pd

RESULT_COLUMNS = [
    "feature_id",
    "mirna_id",
    "log2_fold_change",
    "ave_expr",
    "t",
    "pvalue",
    "pvalue_adjusted",
    "rank",
]

ENRICHMENT_COLUMNS = ["stat_mean", "p_val", "q_val", "set_size"]


@dataclass
class DEProvenance:
    """
    Parameters and fitted hyperparameters of a differential expression run.
    """

    accession: str
    group_field: str
    reference_group: str
    test_group: str
    n_reference: int
    n_test: int
    pvalue_threshold: float
    adjust_method: str
    log_transformed: bool
    eb_moderation: bool
    prior_df: Optional[float] = None
    prior_var: Optional[float] = None
    residual_df: Optional[int] = None
    n_excluded_features: int = 0
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def contrast(self) -> str:
        return f"{self.test_group} - {self.reference_group}"

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "timestamp": self.timestamp,
            "accession": self.accession,
            "groups": {
                "field": self.group_field,
                "reference": self.reference_group,
                "test": self.test_group,
                "n_reference": self.n_reference,
                "n_test": self.n_test,
                "contrast": self.contrast,
            },
            "methods": {
                "model": "lm_group_means",
                "eb_moderation": self.eb_moderation,
                "adjust_method": self.adjust_method,
                "log_transformed": self.log_transformed,
            },
            "empirical_bayes": {
                "prior_df": self.prior_df,
                "prior_var": self.prior_var,
                "residual_df": self.residual_df,
            },
            "n_excluded_features": self.n_excluded_features,
            "thresholds": {"pvalue": self.pvalue_threshold},
        }


@dataclass(frozen=True)
class DEResult:
    """
    Complete differential expression result.

    ``table`` holds the features that pass the threshold, sorted by
    ascending p-value; ``all_features`` holds every tested feature in the
    same order (used by the volcano plot). ``expression`` is the matrix the
    model was fitted on: the two compared groups only, on log2 scale when
    the intensities were transformed. Later stages read values from it so
    they share the scale of the fold changes.
    """

    provenance: DEProvenance
    table: pd.DataFrame
    all_features: pd.DataFrame
    expression: Optional[pd.DataFrame] = field(default=None, repr=False)

    @property
    def upregulated(self) -> pd.DataFrame:
        """Significant features with log2FC > 0, p-value order preserved."""
        return self.table[self.table["log2_fold_change"] > 0]

    @property
    def downregulated(self) -> pd.DataFrame:
        """Significant features with log2FC < 0, p-value order preserved."""
        return self.table[self.table["log2_fold_change"] < 0]

    @property
    def features_tested(self) -> int:
        return len(self.all_features)

    @property
    def features_significant(self) -> int:
        return len(self.table)

    @property
    def n_upregulated(self) -> int:
        return len(self.upregulated)

    @property
    def n_downregulated(self) -> int:
        return len(self.downregulated)

    @property
    def significant_ids(self) -> List[str]:
        return list(self.table["feature_id"])

    def top(self, n: int = 5, direction: str = "both") -> pd.DataFrame:
        """
        First ``n`` significant features of a partition, in p-value order.

        Args:
            n: Number of rows
            direction: "up", "down", or "both"
        """
        if direction == "up":
            return self.upregulated.head(n)
        if direction == "down":
            return self.downregulated.head(n)
        return self.table.head(n)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "provenance": self.provenance.to_dict(),
            "summary": {
                "features_tested": self.features_tested,
                "features_significant": self.features_significant,
                "n_upregulated": self.n_upregulated,
                "n_downregulated": self.n_downregulated,
            },
            "significant": self.table.to_dict(orient="records"),
        }

    def __repr__(self) -> str:
        return (
            f"DEResult(tested={self.features_tested}, "
            f"significant={self.features_significant}, "
            f"up={self.n_upregulated}, down={self.n_downregulated})"
        )


# =============================================================================
# Gene-set analysis
# =============================================================================


@dataclass(frozen=True)
class GeneSetTestResult:
    """
    Directional gene-set test results for one collection.

    Attributes:
        collection: Collection name (kegg, go, biocarta)
        greater: Per gene set, test for a shift towards higher statistics
        less: Per gene set, test for a shift towards lower statistics
        combined: Per gene set, merged two-sided significance and signed score
        gene_stats: Per-gene two-sample statistics used as set members' scores
        n_sets: Gene sets in the collection
        n_skipped: Gene sets omitted for having too few/many matching genes
    """

    collection: str
    greater: pd.DataFrame
    less: pd.DataFrame
    combined: pd.DataFrame
    gene_stats: pd.Series
    n_sets: int
    n_skipped: int

    @property
    def n_tested(self) -> int:
        return len(self.combined)

    def significant(self, direction: str = "greater", threshold: float = 0.05,
                    column: str = "p_val") -> pd.DataFrame:
        """Rows of one table with ``column`` at or below ``threshold``."""
        table = {"greater": self.greater, "less": self.less, "combined": self.combined}[direction]
        return table[table[column] <= threshold]

    def to_dict(self, threshold: float = 0.05) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "collection": self.collection,
            "n_sets": self.n_sets,
            "n_tested": self.n_tested,
            "n_skipped": self.n_skipped,
            "significant_greater": self.significant("greater", threshold).reset_index().to_dict(orient="records"),
            "significant_less": self.significant("less", threshold).reset_index().to_dict(orient="records"),
        }

    def __repr__(self) -> str:
        return (
            f"GeneSetTestResult({self.collection}, tested={self.n_tested}, "
            f"skipped={self.n_skipped})"
        )


@dataclass
class EnrichmentRun:
    """Gene-set results for every collection plus the comparison that produced them."""

    reference_prefix: str
    sample_prefix: str
    n_reference: int
    n_sample: int
    n_genes: int
    results: Dict[str, GeneSetTestResult] = field(default_factory=dict)

    def to_dict(self, threshold: float = 0.05) -> dict:
        return {
            "reference_prefix": self.reference_prefix,
            "sample_prefix": self.sample_prefix,
            "n_reference": self.n_reference,
            "n_sample": self.n_sample,
            "n_genes": self.n_genes,
            "collections": {
                name: result.to_dict(threshold) for name, result in self.results.items()
            },
        }
