"""
mho_mirna - circulating miRNA differential expression in MHO vs MUO subjects.

Loads a GEO miRNA array series, runs a moderated two-group t-test, looks up
target genes of the significant miRNAs and tests KEGG/GO/BioCarta gene sets
on the resulting target-gene matrix.
"""

from .config import PipelineConfig
from .dataset import ExpressionDataset, FilterConfig, filter_features, group_coded_labels, is_mature_mirna
from .de_analysis import DEConfig, DifferentialExpressionAnalyzer, analysed_dataset, build_contrast, build_design_matrix
from .de_result import DEProvenance, DEResult, EnrichmentRun, GeneSetTestResult
from .enrichment import EnrichmentConfig, GeneSetAnalyzer, build_target_matrix
from .errors import (
    AnnotationQueryError,
    DatasetFormatError,
    DatasetNotFoundError,
    DegenerateDesignError,
    EmptyGroupError,
    EmptyResultSetError,
    GeneSetLoadError,
    InsufficientGroupsError,
    MirnaPipelineError,
)
from .gene_sets import GeneSetLibrary, GeneSetSource
from .geo_loader import GEODatasetLoader, LoaderConfig
from .pipeline import MirnaPipeline, PipelineResult
from .report import ReportConfig, ReportGenerator
from .targets import AnnotationConfig, MultiMiRBackend, TargetAnnotation, TargetAnnotator, deduplicate_targets
from .visualization import ResultVisualizer

__version__ = "0.1.0"

__all__ = [
    "AnnotationConfig",
    "AnnotationQueryError",
    "DEConfig",
    "DEProvenance",
    "DEResult",
    "DatasetFormatError",
    "DatasetNotFoundError",
    "DegenerateDesignError",
    "DifferentialExpressionAnalyzer",
    "EmptyGroupError",
    "EmptyResultSetError",
    "EnrichmentConfig",
    "EnrichmentRun",
    "ExpressionDataset",
    "FilterConfig",
    "GEODatasetLoader",
    "GeneSetAnalyzer",
    "GeneSetLibrary",
    "GeneSetLoadError",
    "GeneSetSource",
    "GeneSetTestResult",
    "InsufficientGroupsError",
    "LoaderConfig",
    "MirnaPipeline",
    "MirnaPipelineError",
    "MultiMiRBackend",
    "PipelineConfig",
    "PipelineResult",
    "ReportConfig",
    "ReportGenerator",
    "ResultVisualizer",
    "TargetAnnotation",
    "TargetAnnotator",
    "analysed_dataset",
    "build_contrast",
    "build_design_matrix",
    "build_target_matrix",
    "deduplicate_targets",
    "filter_features",
    "group_coded_labels",
    "is_mature_mirna",
]
