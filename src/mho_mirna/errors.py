"""Exception hierarchy for the miRNA analysis pipeline.

Every stage raises a subclass of :class:`MirnaPipelineError` so the CLI can
report failures uniformly. Errors are never recovered inside the pipeline:
each stage depends on the full output of the previous one.
"""


class MirnaPipelineError(Exception):
    """Base class for all pipeline errors."""


class DatasetNotFoundError(MirnaPipelineError):
    """The accession does not resolve to a downloadable dataset."""


class DatasetFormatError(MirnaPipelineError):
    """A downloaded dataset is missing required structure (e.g. the group field)."""


class InsufficientGroupsError(MirnaPipelineError):
    """Fewer than two of the configured sample groups are present."""


class DegenerateDesignError(MirnaPipelineError):
    """The design matrix is rank-deficient or leaves no residual degrees of freedom."""


class EmptyGroupError(MirnaPipelineError):
    """A reference or sample column partition matched no columns."""


class AnnotationQueryError(MirnaPipelineError):
    """The target annotation service failed or returned an unreadable response."""


class EmptyResultSetError(MirnaPipelineError):
    """A stage produced no rows where the next stage requires at least one."""


class GeneSetLoadError(MirnaPipelineError):
    """A gene-set collection could not be fetched or parsed."""
