"""
MHO vs MUO miRNA pipeline orchestrator.

Runs the stages in order, each taking explicit inputs and returning a new
object:

    load -> filter -> differential_expression -> visualize
         -> annotate_targets -> enrich -> report

Every collaborator is passed in at construction (or built from
:class:`PipelineConfig`), so stages can be exercised in isolation with
synthetic fixtures.
"""

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import plotly.graph_objects as go

from .config import PipelineConfig
from .dataset import ExpressionDataset, filter_features, group_coded_labels
from .de_analysis import DifferentialExpressionAnalyzer, analysed_dataset
from .de_result import DEResult, EnrichmentRun
from .enrichment import GeneSetAnalyzer, build_target_matrix
from .errors import EmptyResultSetError
from .gene_sets import GeneSetLibrary, sources_from_mapping
from .geo_loader import GEODatasetLoader
from .report import ReportGenerator
from .targets import TargetAnnotation, TargetAnnotator
from .visualization import ResultVisualizer

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Container for pipeline outputs."""

    accession: str
    dataset: ExpressionDataset
    de_result: DEResult
    validated: Optional[TargetAnnotation] = None
    predicted: Optional[TargetAnnotation] = None
    enrichment: Optional[EnrichmentRun] = None
    figures: Dict[str, go.Figure] = field(default_factory=dict)
    artifacts: Dict[str, Path] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    def to_dict(self, enrichment_threshold: float = 0.05) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "accession": self.accession,
            "dataset": {
                "platform": self.dataset.platform,
                "n_features": self.dataset.n_features,
                "n_samples": self.dataset.n_samples,
            },
            "differential_expression": self.de_result.to_dict(),
            "targets": {
                "validated": self.validated.to_dict() if self.validated is not None else None,
                "predicted": self.predicted.to_dict() if self.predicted is not None else None,
            },
            "enrichment": self.enrichment.to_dict(enrichment_threshold) if self.enrichment else None,
            "artifacts": {name: str(path) for name, path in self.artifacts.items()},
            "elapsed_seconds": round(self.elapsed_seconds, 2),
        }


class MirnaPipeline:
    """
    Explicit staged pipeline.

    Example:
        pipeline = MirnaPipeline(PipelineConfig())
        result = pipeline.run("GSE169290")
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        loader: Optional[GEODatasetLoader] = None,
        analyzer: Optional[DifferentialExpressionAnalyzer] = None,
        visualizer: Optional[ResultVisualizer] = None,
        annotator: Optional[TargetAnnotator] = None,
        gene_set_library: Optional[GeneSetLibrary] = None,
        gene_set_analyzer: Optional[GeneSetAnalyzer] = None,
        reporter: Optional[ReportGenerator] = None,
        skip_enrichment: bool = False,
    ):
        self.config = config or PipelineConfig()
        cfg = self.config
        self.loader = loader or GEODatasetLoader(cfg.loader)
        self.analyzer = analyzer or DifferentialExpressionAnalyzer(cfg.de)
        self.visualizer = visualizer or ResultVisualizer()
        self._annotator = annotator
        self._gene_set_library = gene_set_library
        self.gene_set_analyzer = gene_set_analyzer or GeneSetAnalyzer(cfg.enrichment)
        self.reporter = reporter or ReportGenerator(cfg.report, join_strategy=cfg.annotation.join_strategy)
        self.skip_enrichment = skip_enrichment

    # Network-backed collaborators are built on first use
    @property
    def annotator(self) -> TargetAnnotator:
        if self._annotator is None:
            self._annotator = TargetAnnotator(self.config.annotation)
        return self._annotator

    @property
    def gene_set_library(self) -> GeneSetLibrary:
        if self._gene_set_library is None:
            self._gene_set_library = GeneSetLibrary(sources_from_mapping(self.config.enrichment.collections))
        return self._gene_set_library

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def load(self, accession: str) -> ExpressionDataset:
        logger.info("[load] %s", accession)
        dataset = self.loader.load(accession)
        logger.info("[load] %r", dataset)
        return dataset

    def filter(self, dataset: ExpressionDataset) -> ExpressionDataset:
        cfg = self.config.filter
        if not cfg.enabled:
            logger.info("[filter] disabled, keeping all %d features", dataset.n_features)
            return dataset
        logger.info("[filter] keeping accessions starting with %s", cfg.prefix)
        return filter_features(dataset, cfg.predicate())

    def differential_expression(self, dataset: ExpressionDataset) -> DEResult:
        """
        Run the moderated t-test.

        Raises:
            EmptyResultSetError: If no feature passes the threshold
        """
        logger.info("[differential_expression] %s", self.analyzer.config.contrast_label)
        de_result = self.analyzer.analyze(dataset)
        if de_result.features_significant == 0:
            raise EmptyResultSetError(
                f"No features pass p <= {de_result.provenance.pvalue_threshold} "
                f"({de_result.features_tested} tested, adjustment: {de_result.provenance.adjust_method})"
            )
        return de_result

    def visualize(self, dataset: ExpressionDataset, de_result: DEResult) -> Dict[str, go.Figure]:
        """Volcano plot and clustered heatmap, on the scale the model was fitted on."""
        dataset = analysed_dataset(dataset, de_result)
        logger.info("[visualize] %d significant features", de_result.features_significant)
        labels = group_coded_labels(dataset, self.config.de.group_field)
        contrast = de_result.provenance.contrast
        return {
            "volcano": self.visualizer.volcano_plot(
                de_result,
                label_top=self.config.report.volcano_labels,
                title=f"{dataset.accession}: {contrast}",
            ),
            "heatmap": self.visualizer.clustered_heatmap(
                dataset,
                de_result.significant_ids,
                sample_labels=labels,
                title=f"{dataset.accession}: significant miRNAs ({contrast})",
            ),
        }

    def annotate_targets(self, de_result: DEResult) -> Dict[str, TargetAnnotation]:
        """Validated and predicted targets of the significant miRNAs."""
        mirnas = list(de_result.table["mirna_id"])
        logger.info("[annotate_targets] %d miRNAs", len(mirnas))
        return {
            "validated": self.annotator.validated(mirnas),
            "predicted": self.annotator.predicted(mirnas),
        }

    def enrich(
        self,
        dataset: ExpressionDataset,
        de_result: DEResult,
        annotation: TargetAnnotation,
    ) -> EnrichmentRun:
        """
        Gene-set test on the target-gene matrix of the significant features.

        Raises:
            EmptyGroupError: If the relabelled columns lack either group
            EmptyResultSetError: If fewer than two target genes are mapped
        """
        logger.info("[enrich] targets from %s", annotation.database)
        significant = analysed_dataset(dataset, de_result).subset_features(de_result.significant_ids)
        mirna_ids = significant.features["mirna_id"].astype(str)
        genes = annotation.first_target_per_mirna(
            mirna_ids.tolist(),
            strategy=self.config.annotation.join_strategy,
        )
        feature_targets = {fid: genes.get(mirna) for fid, mirna in mirna_ids.items()}
        labels = group_coded_labels(significant, self.config.de.group_field)
        matrix = build_target_matrix(significant, feature_targets, sample_labels=labels)
        logger.info("[enrich] %d target genes from %d features", matrix.shape[0], significant.n_features)
        if matrix.shape[0] < 2:
            raise EmptyResultSetError(
                f"Only {matrix.shape[0]} target gene(s) mapped from {annotation.database}; "
                "gene-set testing needs at least two"
            )
        collections = {name: self.gene_set_library.get(name) for name in self.gene_set_library.names}
        return self.gene_set_analyzer.analyze(matrix, collections)

    def report(self, result: PipelineResult) -> Dict[str, Path]:
        """Print the summary and write the configured report files."""
        cfg = self.config.report
        threshold = self.config.enrichment.significance_threshold
        targets = result.validated if self.config.enrichment.target_source == "validated" else result.predicted
        self.reporter.print_summary(result.de_result, targets, result.enrichment, threshold)

        out = cfg.output_dir / result.accession
        written: Dict[str, Path] = {}
        if cfg.write_tsv:
            written["de_significant"] = self.reporter.to_tsv(result.de_result, out / "de_significant.tsv")
            written["de_all"] = self.reporter.to_tsv(result.de_result, out / "de_all.tsv", include_all=True)
            for kind in ("validated", "predicted"):
                annotation = getattr(result, kind)
                if annotation is not None:
                    path = out / f"targets_{kind}.tsv"
                    path.parent.mkdir(parents=True, exist_ok=True)
                    annotation.table.to_csv(path, sep="\t", index=False)
                    written[f"targets_{kind}"] = path
            if result.enrichment is not None:
                written.update(self.reporter.enrichment_to_tsv(result.enrichment, out))
        if cfg.write_plots:
            for name, fig in result.figures.items():
                written[name] = self.visualizer.save_html(fig, out / f"{name}.html")
        if cfg.write_json:
            result.artifacts.update(written)
            written["summary"] = self.reporter.to_json(result.to_dict(threshold), out / "summary.json")
        logger.info("[report] %d files written to %s", len(written), out)
        return written

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------

    def run(self, accession: str) -> PipelineResult:
        """
        Run every stage for one accession.

        Raises:
            MirnaPipelineError: Any stage failure aborts the run
        """
        start = time.time()
        dataset = self.filter(self.load(accession))
        de_result = self.differential_expression(dataset)
        figures = self.visualize(dataset, de_result)
        annotations = self.annotate_targets(de_result)

        enrichment = None
        if self.skip_enrichment:
            logger.info("[enrich] skipped")
        else:
            source = annotations[self.config.enrichment.target_source]
            enrichment = self.enrich(dataset, de_result, source)

        result = PipelineResult(
            accession=dataset.accession or accession,
            dataset=dataset,
            de_result=de_result,
            validated=annotations["validated"],
            predicted=annotations["predicted"],
            enrichment=enrichment,
            figures=figures,
        )
        result.elapsed_seconds = time.time() - start
        result.artifacts.update(self.report(result))
        return result
