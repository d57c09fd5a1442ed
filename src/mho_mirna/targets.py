"""
miRNA target gene lookup against the multiMiR database.

The multiMiR web service accepts a SQL query over its integrated tables
(validated: miRTarBase, TarBase, miRecords; predicted: TargetScan, miRDB,
DIANA-microT, ...) and answers with an HTML table. Queries are batched and
sent through a retrying session; any failure surfaces as
:class:`AnnotationQueryError`.

Predicted interactions are filtered by score (top percentage or top number
of rows, following multiMiR's ``predicted.cutoff`` / ``predicted.cutoff.type``)
and deduplicated by target symbol.

Joining miRNAs to a single target
---------------------------------
Summary tables show one target gene per miRNA. When several rows match a
miRNA the choice is a policy, not a fact about the biology. The default
``first`` strategy takes the first row in source-table order, which depends
on the order the service returns rows in; ``best_score`` and ``all`` are
available when that is not acceptable.
"""

import io
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

import pandas as pd
import requests

from .errors import AnnotationQueryError
from .http_utils import create_session

logger = logging.getLogger(__name__)

MULTIMIR_URL = "http://multimir.org/cgi-bin/multimir_univ.pl"

ANNOTATION_COLUMNS = [
    "mature_mirna_acc",
    "mature_mirna_id",
    "target_symbol",
    "target_entrez",
    "target_ensembl",
    "score",
    "database",
    "interaction_type",
]

# Evidence column reported as the score of validated interactions
VALIDATED_TABLES: Dict[str, str] = {
    "mirtarbase": "support_type",
    "tarbase": "support_type",
    "mirecords": "experiment",
}

# (score column, higher score is better)
PREDICTED_TABLES: Dict[str, tuple] = {
    "targetscan": ("score", False),
    "mirdb": ("score", True),
    "diana_microt": ("score", True),
    "elmmo": ("p", True),
    "microcosm": ("score", True),
    "miranda": ("mirsvr_score", False),
    "pita": ("ddG", False),
    "pictar": ("score", True),
}

JOIN_STRATEGIES = ("first", "best_score", "all")
CUTOFF_TYPES = ("p", "n")

_MIRNA_ID_RE = re.compile(r"^[A-Za-z0-9._*\-]+$")
_ORGANISM_RE = re.compile(r"^[a-z]{3}$")


@dataclass
class AnnotationConfig:
    """
    Configuration for target lookups.

    Attributes:
        organism: miRBase three-letter organism code
        validated_table: Validated-interaction table to query
        predicted_table: Predicted-interaction table to query
        cutoff: Predicted score cutoff (percent for "p", row count for "n")
        cutoff_type: "p" (top percentage) or "n" (top number)
        join_strategy: How one target is chosen per miRNA in summary tables
        batch_size: miRNA identifiers per service request
        url: Service endpoint
        timeout: Per-request timeout in seconds
        max_retries: Retry attempts for transient network failures
    """

    organism: str = "hsa"
    validated_table: str = "mirtarbase"
    predicted_table: str = "targetscan"
    cutoff: float = 20.0
    cutoff_type: str = "p"
    join_strategy: str = "first"
    batch_size: int = 50
    url: str = MULTIMIR_URL
    timeout: float = 120.0
    max_retries: int = 3

    def __post_init__(self):
        if not _ORGANISM_RE.match(self.organism):
            raise ValueError(f"organism must be a three-letter code, got {self.organism!r}")
        if self.validated_table not in VALIDATED_TABLES:
            raise ValueError(f"Unknown validated table {self.validated_table!r}")
        if self.predicted_table not in PREDICTED_TABLES:
            raise ValueError(f"Unknown predicted table {self.predicted_table!r}")
        if self.cutoff_type not in CUTOFF_TYPES:
            raise ValueError(f"cutoff_type must be one of {CUTOFF_TYPES}")
        if self.cutoff_type == "p" and not 0 < self.cutoff <= 100:
            raise ValueError("Percentage cutoff must be in (0, 100]")
        if self.join_strategy not in JOIN_STRATEGIES:
            raise ValueError(f"join_strategy must be one of {JOIN_STRATEGIES}")


class TargetBackend(Protocol):
    """Protocol for target annotation sources."""

    def query(self, mirnas: List[str], organism: str, table: str) -> pd.DataFrame:
        """
        Return interaction rows for the given miRNAs.

        The frame must carry ``mature_mirna_id``, ``target_symbol`` and
        ``score`` columns, in the source's own row order.
        """
        ...


class MultiMiRBackend:
    """Queries the multiMiR web service."""

    def __init__(
        self,
        url: str = MULTIMIR_URL,
        session: Optional[requests.Session] = None,
        timeout: float = 120.0,
        max_retries: int = 3,
    ):
        self.url = url
        self.session = session or create_session(max_retries=max_retries, timeout=timeout)

    def query(self, mirnas: List[str], organism: str, table: str) -> pd.DataFrame:
        sql = build_query(mirnas, organism, table)
        logger.debug("multiMiR query: %s", sql)
        try:
            response = self.session.post(self.url, data={"query": sql})
            response.raise_for_status()
        except requests.RequestException as exc:
            raise AnnotationQueryError(f"multiMiR query on {table} failed: {exc}") from exc
        return parse_response(response.text, table)


def build_query(mirnas: Sequence[str], organism: str, table: str) -> str:
    """
    Build the multiMiR SQL query for one table.

    Raises:
        ValueError: For unknown tables or identifiers that are not plain miRNA names
    """
    if table in VALIDATED_TABLES:
        score_expr = f"i.{VALIDATED_TABLES[table]}"
    elif table in PREDICTED_TABLES:
        score_expr = f"i.{PREDICTED_TABLES[table][0]}"
    else:
        raise ValueError(f"Unknown multiMiR table {table!r}")
    if not _ORGANISM_RE.match(organism):
        raise ValueError(f"Invalid organism code {organism!r}")
    bad = [m for m in mirnas if not _MIRNA_ID_RE.match(m)]
    if bad:
        raise ValueError(f"Invalid miRNA identifiers: {bad}")

    id_list = ",".join(f"'{m}'" for m in mirnas)
    return (
        "SELECT m.mature_mirna_acc, m.mature_mirna_id, t.target_symbol, "
        f"t.target_entrez, t.target_ensembl, {score_expr} AS score "
        f"FROM mirna AS m INNER JOIN {table} AS i INNER JOIN target AS t "
        "ON (m.mature_mirna_uid=i.mature_mirna_uid AND i.target_uid=t.target_uid) "
        f"WHERE m.org='{organism}' AND t.org='{organism}' "
        f"AND m.mature_mirna_id IN ({id_list})"
    )


def parse_response(text: str, table: str) -> pd.DataFrame:
    """Parse the HTML table returned by the service into annotation columns."""
    if "<table" not in text.lower():
        if "error" in text.lower():
            raise AnnotationQueryError(f"multiMiR returned an error for {table}: {text[:200]}")
        return _empty_annotation()
    try:
        frames = pd.read_html(io.StringIO(text))
    except ValueError as exc:
        raise AnnotationQueryError(f"Unreadable multiMiR response for {table}: {exc}") from exc
    if not frames:
        return _empty_annotation()

    frame = frames[0]
    frame.columns = [str(c).strip() for c in frame.columns]
    missing = {"mature_mirna_id", "target_symbol"} - set(frame.columns)
    if missing:
        raise AnnotationQueryError(f"multiMiR response for {table} lacks columns {sorted(missing)}")
    for column in ANNOTATION_COLUMNS:
        if column not in frame.columns:
            frame[column] = None
    return frame[ANNOTATION_COLUMNS[:6]]


def _empty_annotation() -> pd.DataFrame:
    return pd.DataFrame(columns=ANNOTATION_COLUMNS[:6])


# =============================================================================
# Table operations
# =============================================================================


def deduplicate_targets(frame: pd.DataFrame, column: str = "target_symbol") -> pd.DataFrame:
    """Keep the first row for each target symbol. Idempotent."""
    symbols = frame[column].astype(str).str.strip()
    keep = (symbols != "") & (symbols.str.lower() != "nan") & ~symbols.duplicated(keep="first")
    return frame[keep].reset_index(drop=True)


def rank_by_score(frame: pd.DataFrame, table: str) -> pd.DataFrame:
    """
    Rows of a predicted table ordered best score first.

    Ties keep source order; rows without a numeric score are dropped. The
    original index is kept so callers can restore source order.
    """
    _, higher_is_better = PREDICTED_TABLES[table]
    scores = pd.to_numeric(frame["score"], errors="coerce")
    ranked = frame.assign(_score=scores).dropna(subset=["_score"])
    ranked = ranked.sort_values("_score", ascending=not higher_is_better, kind="mergesort")
    return ranked.drop(columns="_score")


def apply_score_cutoff(
    frame: pd.DataFrame,
    table: str,
    cutoff: float,
    cutoff_type: str = "p",
) -> pd.DataFrame:
    """
    Keep the best-scoring predicted interactions.

    Args:
        frame: Rows of one predicted table
        table: Table name (sets the score direction)
        cutoff: Percentage of rows ("p") or number of rows ("n") to keep
        cutoff_type: "p" or "n"

    Returns:
        The kept rows in source order
    """
    if frame.empty:
        return frame
    ranked = rank_by_score(frame.reset_index(drop=True), table)
    if cutoff_type == "p":
        n_keep = int(math.ceil(len(ranked) * cutoff / 100.0))
    else:
        n_keep = int(cutoff)
    return ranked.head(n_keep).sort_index().reset_index(drop=True)


@dataclass(frozen=True)
class TargetAnnotation:
    """
    miRNA -> target gene interactions from one source table.

    Attributes:
        table: Long table with one row per interaction, in source order
        database: Source table name (e.g. mirtarbase, targetscan)
        interaction_type: "validated" or "predicted"
    """

    table: pd.DataFrame
    database: str
    interaction_type: str
    query: List[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.table)

    @property
    def n_mirnas_matched(self) -> int:
        return self.table["mature_mirna_id"].nunique() if not self.table.empty else 0

    def mapping(self) -> Dict[str, List[str]]:
        """miRNA ID -> distinct target symbols, in source order."""
        result: Dict[str, List[str]] = {}
        for mirna, symbol in zip(self.table["mature_mirna_id"], self.table["target_symbol"]):
            targets = result.setdefault(str(mirna), [])
            if symbol not in targets:
                targets.append(symbol)
        return result

    def target_symbols(self) -> List[str]:
        """All distinct target symbols, in source order."""
        return list(dict.fromkeys(self.table["target_symbol"].astype(str)))

    def first_target_per_mirna(
        self,
        mirnas: Iterable[str],
        strategy: str = "first",
    ) -> pd.Series:
        """
        One target per miRNA, aligned with the input order.

        Args:
            mirnas: miRNA identifiers (order is preserved)
            strategy: "first" (first row in source order), "best_score"
                (best score for predicted tables, first row otherwise) or
                "all" (every distinct target, ``;``-joined)

        Returns:
            Series indexed by miRNA; unmatched miRNAs map to None
        """
        if strategy not in JOIN_STRATEGIES:
            raise ValueError(f"Unknown join strategy {strategy!r}")
        mirnas = list(mirnas)
        table = self.table
        if strategy == "best_score" and self.database in PREDICTED_TABLES and not table.empty:
            table = rank_by_score(table, self.database)

        grouped: Dict[str, List[str]] = {}
        for mirna, symbol in zip(table["mature_mirna_id"], table["target_symbol"]):
            grouped.setdefault(str(mirna), []).append(str(symbol))

        values = []
        for mirna in mirnas:
            hits = grouped.get(str(mirna))
            if not hits:
                values.append(None)
            elif strategy == "all":
                values.append(";".join(dict.fromkeys(hits)))
            else:
                values.append(hits[0])
        return pd.Series(values, index=mirnas, name="target_gene", dtype=object)

    def to_dict(self) -> dict:
        return {
            "database": self.database,
            "interaction_type": self.interaction_type,
            "n_queried": len(self.query),
            "n_interactions": len(self.table),
            "n_mirnas_matched": self.n_mirnas_matched,
        }


class TargetAnnotator:
    """
    Looks up validated and predicted targets for lists of miRNAs.

    Example:
        annotator = TargetAnnotator(AnnotationConfig(organism="hsa"))
        validated = annotator.validated(["hsa-miR-122-5p"])
        predicted = annotator.predicted(["hsa-miR-122-5p"])
    """

    def __init__(
        self,
        config: Optional[AnnotationConfig] = None,
        backend: Optional[TargetBackend] = None,
    ):
        self.config = config or AnnotationConfig()
        self.backend = backend or MultiMiRBackend(
            url=self.config.url,
            timeout=self.config.timeout,
            max_retries=self.config.max_retries,
        )

    def validated(self, mirnas: Iterable[str], table: Optional[str] = None) -> TargetAnnotation:
        """Experimentally validated interactions."""
        table = table or self.config.validated_table
        if table not in VALIDATED_TABLES:
            raise ValueError(f"{table!r} is not a validated-interaction table")
        mirnas = _queryable(_unique(mirnas))
        frame = self._query(mirnas, table)
        logger.info(
            "%s: %d interactions for %d/%d miRNAs",
            table, len(frame), frame["mature_mirna_id"].nunique(), len(mirnas),
        )
        return TargetAnnotation(
            table=self._tag(frame, table, "validated"),
            database=table,
            interaction_type="validated",
            query=mirnas,
        )

    def predicted(
        self,
        mirnas: Iterable[str],
        table: Optional[str] = None,
        cutoff: Optional[float] = None,
        cutoff_type: Optional[str] = None,
    ) -> TargetAnnotation:
        """Predicted interactions, score-filtered and deduplicated by target symbol."""
        table = table or self.config.predicted_table
        if table not in PREDICTED_TABLES:
            raise ValueError(f"{table!r} is not a predicted-interaction table")
        cutoff = self.config.cutoff if cutoff is None else cutoff
        cutoff_type = cutoff_type or self.config.cutoff_type
        mirnas = _queryable(_unique(mirnas))

        frame = self._query(mirnas, table)
        n_raw = len(frame)
        frame = apply_score_cutoff(frame, table, cutoff, cutoff_type)
        frame = deduplicate_targets(frame)
        logger.info(
            "%s: %d interactions, %d after cutoff %s=%s and dedup",
            table, n_raw, len(frame), cutoff_type, cutoff,
        )
        return TargetAnnotation(
            table=self._tag(frame, table, "predicted"),
            database=table,
            interaction_type="predicted",
            query=mirnas,
        )

    def _query(self, mirnas: List[str], table: str) -> pd.DataFrame:
        if not mirnas:
            return _empty_annotation()
        size = max(1, self.config.batch_size)
        frames = []
        for start in range(0, len(mirnas), size):
            batch = mirnas[start:start + size]
            frames.append(self.backend.query(batch, self.config.organism, table))
        frames = [f for f in frames if not f.empty]
        if not frames:
            return _empty_annotation()
        return pd.concat(frames, ignore_index=True)

    @staticmethod
    def _tag(frame: pd.DataFrame, table: str, interaction_type: str) -> pd.DataFrame:
        frame = frame.copy()
        frame["database"] = table
        frame["interaction_type"] = interaction_type
        for column in ANNOTATION_COLUMNS:
            if column not in frame.columns:
                frame[column] = None
        return frame[ANNOTATION_COLUMNS].reset_index(drop=True)


def _unique(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(str(v) for v in values if v is not None and str(v) != ""))


def _queryable(mirnas: List[str]) -> List[str]:
    """Drop identifiers that cannot be miRNA names (e.g. control or snoRNA probes)."""
    bad = [m for m in mirnas if not _MIRNA_ID_RE.match(m)]
    if bad:
        logger.warning("Skipping %d identifier(s) that are not miRNA names: %s", len(bad), bad)
    return [m for m in mirnas if _MIRNA_ID_RE.match(m)]
