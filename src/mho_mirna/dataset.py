"""
Expression dataset container and feature filtering.

An :class:`ExpressionDataset` bundles the numeric matrix (features x samples)
with its per-sample and per-feature attribute tables. Datasets are created
once by the loader and only ever narrowed afterwards: every operation here
returns a new dataset and leaves its input untouched.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

import pandas as pd

from .errors import DatasetFormatError, EmptyResultSetError

logger = logging.getLogger(__name__)

# miRBase accessions of mature miRNAs (precursors use MI0...)
MATURE_MIRNA_PREFIX = "MIMAT"

FEATURE_COLUMNS = ["accession", "mirna_id", "target_genes"]


@dataclass
class FilterConfig:
    """Feature filter toggle.

    Running with and without the filter gives different significant-feature
    totals, so it is configuration rather than a fixed step.
    """

    enabled: bool = True
    prefix: str = MATURE_MIRNA_PREFIX

    def predicate(self) -> Callable[[str], bool]:
        prefix = self.prefix
        return lambda accession: is_mature_mirna(accession, prefix)


@dataclass(frozen=True)
class ExpressionDataset:
    """
    In-memory expression dataset.

    Attributes:
        expression: Signal intensities, features (rows) x samples (columns)
        samples: Per-sample attributes indexed by sample accession (GSM)
        features: Per-feature attributes indexed by feature ID; carries the
            ``accession``, ``mirna_id`` and ``target_genes`` columns
        accession: Source accession (GSE)
        platform: Platform accession (GPL)
    """

    expression: pd.DataFrame
    samples: pd.DataFrame
    features: pd.DataFrame
    accession: str = ""
    platform: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        if list(self.expression.index) != list(self.features.index):
            raise DatasetFormatError(
                f"Expression rows ({self.expression.shape[0]}) do not match "
                f"feature table rows ({self.features.shape[0]})"
            )
        if list(self.expression.columns) != list(self.samples.index):
            raise DatasetFormatError(
                f"Expression columns ({self.expression.shape[1]}) do not match "
                f"sample table rows ({self.samples.shape[0]})"
            )

    @property
    def n_features(self) -> int:
        return self.expression.shape[0]

    @property
    def n_samples(self) -> int:
        return self.expression.shape[1]

    @property
    def feature_ids(self) -> List[str]:
        return list(self.expression.index)

    @property
    def sample_ids(self) -> List[str]:
        return list(self.expression.columns)

    def group_labels(self, group_field: str) -> pd.Series:
        """Return the group label of every sample, in column order."""
        if group_field not in self.samples.columns:
            raise DatasetFormatError(
                f"Sample table has no '{group_field}' field "
                f"(available: {', '.join(map(str, self.samples.columns))})"
            )
        return self.samples[group_field].astype(str).str.strip()

    def subset_features(self, feature_ids: Iterable[str]) -> "ExpressionDataset":
        """Narrow to the given features, keeping their relative input order."""
        wanted = set(feature_ids)
        keep = [f for f in self.expression.index if f in wanted]
        return ExpressionDataset(
            expression=self.expression.loc[keep],
            samples=self.samples,
            features=self.features.loc[keep],
            accession=self.accession,
            platform=self.platform,
            metadata=self.metadata,
        )

    def subset_samples(self, sample_ids: Iterable[str]) -> "ExpressionDataset":
        """Narrow to the given samples, keeping their relative input order."""
        wanted = set(sample_ids)
        keep = [s for s in self.expression.columns if s in wanted]
        return ExpressionDataset(
            expression=self.expression[keep],
            samples=self.samples.loc[keep],
            features=self.features,
            accession=self.accession,
            platform=self.platform,
            metadata=self.metadata,
        )

    def with_expression(self, expression: pd.DataFrame) -> "ExpressionDataset":
        """Replace the matrix values (same shape and labels), e.g. after log2."""
        return ExpressionDataset(
            expression=expression,
            samples=self.samples,
            features=self.features,
            accession=self.accession,
            platform=self.platform,
            metadata=self.metadata,
        )

    def with_sample_labels(self, labels: pd.Series) -> "ExpressionDataset":
        """Rename samples (matrix columns and sample index) via ``labels``."""
        mapping = {s: str(labels.get(s, s)) for s in self.sample_ids}
        if len(set(mapping.values())) != len(mapping):
            raise DatasetFormatError("Sample labels must be unique")
        return ExpressionDataset(
            expression=self.expression.rename(columns=mapping),
            samples=self.samples.rename(index=mapping),
            features=self.features,
            accession=self.accession,
            platform=self.platform,
            metadata=self.metadata,
        )

    def __repr__(self) -> str:
        return (
            f"ExpressionDataset({self.accession or '?'}/{self.platform or '?'}, "
            f"features={self.n_features}, samples={self.n_samples})"
        )


def is_mature_mirna(accession: str, prefix: str = MATURE_MIRNA_PREFIX) -> bool:
    """True when a feature accession marks a mature miRNA entry."""
    return str(accession).startswith(prefix)


def filter_features(
    dataset: ExpressionDataset,
    predicate: Optional[Callable[[str], bool]] = None,
) -> ExpressionDataset:
    """
    Keep only features whose accession satisfies ``predicate``.

    The sample set is unchanged. Applying the same predicate to an already
    filtered dataset returns an identical dataset.

    Args:
        dataset: Dataset to narrow
        predicate: Test on the feature accession string
            (default: :func:`is_mature_mirna`)

    Returns:
        Narrowed ExpressionDataset

    Raises:
        EmptyResultSetError: If no feature matches
    """
    predicate = predicate or is_mature_mirna
    accessions = dataset.features["accession"].astype(str)
    keep = [fid for fid, acc in accessions.items() if predicate(acc)]
    if not keep:
        raise EmptyResultSetError(
            f"Feature filter removed all {dataset.n_features} features"
        )
    logger.info("Feature filter: %d -> %d features", dataset.n_features, len(keep))
    return dataset.subset_features(keep)


def group_coded_labels(
    dataset: ExpressionDataset,
    group_field: str,
    separator: str = "_",
) -> pd.Series:
    """
    Build human-readable sample labels that show group membership.

    Samples are numbered within their group in column order, so a dataset
    with groups ``MHO, MUO, MHO`` becomes ``MHO_1, MUO_1, MHO_2``.

    Returns:
        Series indexed by sample ID with the new labels
    """
    labels = dataset.group_labels(group_field)
    counters: Dict[str, int] = {}
    coded = []
    for label in labels:
        group = _label_token(label)
        counters[group] = counters.get(group, 0) + 1
        coded.append(f"{group}{separator}{counters[group]}")
    return pd.Series(coded, index=labels.index, name="label")


def _label_token(label: str) -> str:
    token = re.sub(r"[^A-Za-z0-9]+", "-", label.strip()).strip("-")
    return token or "NA"
