"""
Report generation for miRNA differential expression and gene-set results.

Supports multiple output formats:
- Console: top up/down-regulated miRNAs with target gene, fold change and
  p-value, plus enrichment counts per collection
- TSV: full DE table and per-collection gene-set tables
- JSON: summary with provenance for programmatic use
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np
import pandas as pd

from .de_result import DEResult, EnrichmentRun
from .targets import TargetAnnotation

JOIN_STRATEGY_NOTES = {
    "first": (
        "Target genes show the first matching interaction in source-table order; "
        "a miRNA with several targets is represented by whichever row the "
        "database returned first."
    ),
    "best_score": "Target genes show the best-scoring interaction per miRNA.",
    "all": "Target genes list every distinct interaction per miRNA.",
}


@dataclass
class ReportConfig:
    """Configuration for report assembly."""

    top_n: int = 5
    output_dir: Path = Path("results")
    write_tsv: bool = True
    write_json: bool = True
    write_plots: bool = True
    volcano_labels: int = 10

    def __post_init__(self):
        self.output_dir = Path(self.output_dir)


def _json_default(value):
    if isinstance(value, (np.integer,)):
        return int(value)
    if isinstance(value, (np.floating,)):
        return float(value)
    if isinstance(value, (np.bool_,)):
        return bool(value)
    if isinstance(value, Path):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class ReportGenerator:
    """
    Builds summary tables and writes report files.

    Example:
        generator = ReportGenerator()
        generator.print_summary(de_result, targets=validated, enrichment=run)
    """

    def __init__(self, config: Optional[ReportConfig] = None, join_strategy: str = "first"):
        self.config = config or ReportConfig()
        self.join_strategy = join_strategy

    def top_table(
        self,
        de_result: DEResult,
        direction: str,
        targets: Optional[TargetAnnotation] = None,
        n: Optional[int] = None,
    ) -> pd.DataFrame:
        """
        Top-N features of one direction with their target gene.

        Args:
            de_result: DE result
            direction: "up" or "down"
            targets: Annotation supplying the target gene per miRNA
            n: Rows to return (defaults to ``top_n``)

        Returns:
            DataFrame with mirna_id, target_gene, log2_fold_change, pvalue
        """
        n = n or self.config.top_n
        top = de_result.top(n, direction)
        if targets is not None:
            genes = targets.first_target_per_mirna(top["mirna_id"], strategy=self.join_strategy)
            target_column = list(genes.to_numpy())
        else:
            target_column = [None] * len(top)
        return pd.DataFrame({
            "mirna_id": top["mirna_id"].to_numpy(),
            "target_gene": target_column,
            "log2_fold_change": top["log2_fold_change"].to_numpy(),
            "pvalue": top["pvalue"].to_numpy(),
        })

    def enrichment_summary(self, run: EnrichmentRun, threshold: Optional[float] = None) -> pd.DataFrame:
        """Per collection: sets in library, tested, skipped, significant greater/less."""
        threshold = 0.05 if threshold is None else threshold
        rows = []
        for name, result in run.results.items():
            rows.append({
                "collection": name,
                "n_sets": result.n_sets,
                "n_tested": result.n_tested,
                "n_skipped": result.n_skipped,
                "n_greater": len(result.significant("greater", threshold)),
                "n_less": len(result.significant("less", threshold)),
            })
        return pd.DataFrame(rows, columns=["collection", "n_sets", "n_tested", "n_skipped", "n_greater", "n_less"])

    def to_console_summary(
        self,
        de_result: DEResult,
        targets: Optional[TargetAnnotation] = None,
        enrichment: Optional[EnrichmentRun] = None,
        enrichment_threshold: float = 0.05,
    ) -> str:
        """
        Generate human-readable console summary.

        Returns:
            Formatted string report
        """
        prov = de_result.provenance
        lines: List[str] = []
        lines.append("=" * 70)
        lines.append("miRNA DIFFERENTIAL EXPRESSION RESULTS")
        lines.append("=" * 70)
        lines.append(f"  Dataset: {prov.accession or 'n/a'}")
        lines.append(f"  Contrast: {prov.contrast} ({prov.n_test} vs {prov.n_reference} samples)")
        lines.append(f"  P-value threshold: {prov.pvalue_threshold} (adjustment: {prov.adjust_method})")
        lines.append("")
        lines.append("-" * 70)
        lines.append("SUMMARY")
        lines.append("-" * 70)
        lines.append(f"  Features tested: {de_result.features_tested:,}")
        lines.append(f"  Features significant: {de_result.features_significant:,}")
        lines.append(f"  Upregulated: {de_result.n_upregulated:,}")
        lines.append(f"  Downregulated: {de_result.n_downregulated:,}")

        for direction, heading in (("up", "UPREGULATED"), ("down", "DOWNREGULATED")):
            table = self.top_table(de_result, direction, targets)
            if table.empty:
                continue
            lines.append("")
            lines.append("-" * 70)
            lines.append(f"TOP {len(table)} {heading}")
            lines.append("-" * 70)
            lines.append(f"  {'miRNA':<22} {'Target':<12} {'Log2FC':>10} {'P-value':>12}")
            lines.append("  " + "-" * 58)
            for row in table.itertuples(index=False):
                target = row.target_gene or "-"
                lines.append(
                    f"  {row.mirna_id:<22} {target:<12} {row.log2_fold_change:>10.2f} {row.pvalue:>12.2e}"
                )

        if targets is not None:
            lines.append("")
            lines.append(f"  Note: {JOIN_STRATEGY_NOTES[self.join_strategy]}")

        if enrichment is not None and enrichment.results:
            summary = self.enrichment_summary(enrichment, enrichment_threshold)
            lines.append("")
            lines.append("-" * 70)
            lines.append(
                f"GENE-SET ANALYSIS ({enrichment.sample_prefix} vs {enrichment.reference_prefix}, "
                f"{enrichment.n_genes} genes, p <= {enrichment_threshold})"
            )
            lines.append("-" * 70)
            lines.append(f"  {'Collection':<12} {'Sets':>8} {'Tested':>8} {'Skipped':>8} {'Greater':>8} {'Less':>8}")
            for row in summary.itertuples(index=False):
                lines.append(
                    f"  {row.collection:<12} {row.n_sets:>8} {row.n_tested:>8} "
                    f"{row.n_skipped:>8} {row.n_greater:>8} {row.n_less:>8}"
                )

        lines.append("")
        lines.append("=" * 70)
        return "\n".join(lines)

    def print_summary(
        self,
        de_result: DEResult,
        targets: Optional[TargetAnnotation] = None,
        enrichment: Optional[EnrichmentRun] = None,
        enrichment_threshold: float = 0.05,
    ) -> None:
        """Print human-readable summary to stdout."""
        print(self.to_console_summary(de_result, targets, enrichment, enrichment_threshold))

    def to_tsv(self, de_result: DEResult, path: Union[str, Path], include_all: bool = False) -> Path:
        """Write the DE table (significant rows, or every tested feature) to TSV."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        table = de_result.all_features if include_all else de_result.table
        table.to_csv(path, sep="\t", index=False, float_format="%.6g")
        return path

    def enrichment_to_tsv(self, run: EnrichmentRun, directory: Union[str, Path]) -> Dict[str, Path]:
        """Write greater/less/combined tables per collection into ``directory``."""
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        written: Dict[str, Path] = {}
        for name, result in run.results.items():
            for kind in ("greater", "less", "combined"):
                path = directory / f"enrichment_{name}_{kind}.tsv"
                getattr(result, kind).to_csv(path, sep="\t", index_label="gene_set", float_format="%.6g")
                written[f"{name}_{kind}"] = path
        return written

    def to_json(self, payload: dict, path: Union[str, Path], indent: int = 2) -> Path:
        """Write a JSON document (numpy scalars are converted)."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(payload, f, indent=indent, default=_json_default)
        return path
