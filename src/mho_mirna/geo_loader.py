"""
GEO dataset loader with a local download cache.

Fetches series-matrix files and the matching platform annotation table for a
GEO series accession and parses them into :class:`ExpressionDataset` objects.
Downloads are keyed by accession under the cache directory; a second call
with the same accession and cache directory reads from disk only.

A series measured on several platforms has one matrix per platform
(``GSE1234-GPL5678_series_matrix.txt.gz``). ``matrix_pattern`` selects the
one to analyse.
"""

import gzip
import io
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pandas as pd
import requests

from .dataset import ExpressionDataset
from .errors import DatasetFormatError, DatasetNotFoundError
from .http_utils import create_session

logger = logging.getLogger(__name__)

GEO_SERIES_URL = "https://ftp.ncbi.nlm.nih.gov/geo/series"
GEO_QUERY_URL = "https://www.ncbi.nlm.nih.gov/geo/query/acc.cgi"

ACCESSION_RE = re.compile(r"^GSE\d+$")
MATRIX_LINK_RE = re.compile(r'href="([^"]*_series_matrix\.txt\.gz)"')
CHARACTERISTIC_RE = re.compile(r"^\s*(?P<key>[^:]+):\s*(?P<value>.*)$")

# Platform table columns that may hold each canonical feature field, in
# order of preference. Affymetrix miRNA arrays use the "Accession" /
# "Transcript ID(Array Design)" pair; Agilent and custom arrays vary.
DEFAULT_FEATURE_COLUMNS: Dict[str, List[str]] = {
    "accession": ["Accession", "ACCESSION", "MIMAT", "miRBase_Accession", "Sequence Source"],
    "mirna_id": [
        "Transcript ID(Array Design)",
        "miRNA_ID",
        "miRNA_ID_LIST",
        "MIRNA_ID",
        "Name",
        "SPOT_ID",
    ],
    "target_genes": ["Target Genes", "target_genes", "Gene Symbol", "GENE_SYMBOL"],
}


@dataclass
class LoaderConfig:
    """Configuration for dataset retrieval.

    Attributes:
        cache_dir: Directory for downloaded files (one subdirectory per accession)
        matrix_pattern: Regex selecting one series-matrix file when the
            series bundles several
        group_field: Sample attribute holding the experimental group
        timeout: Per-request timeout in seconds
        max_retries: Retry attempts for transient network failures
        backoff_factor: Exponential backoff multiplier between retries
        feature_columns: Platform column candidates per canonical feature field
    """

    cache_dir: Path = Path("data/geo")
    matrix_pattern: Optional[str] = None
    group_field: str = "group"
    timeout: float = 120.0
    max_retries: int = 3
    backoff_factor: float = 1.0
    feature_columns: Dict[str, List[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_FEATURE_COLUMNS.items()}
    )

    def __post_init__(self):
        self.cache_dir = Path(self.cache_dir)


def series_directory(accession: str) -> str:
    """GEO groups series in directories by stem: GSE169290 -> GSE169nnn."""
    stem = accession[:-3] if len(accession) > 6 else "GSE"
    return f"{stem}nnn"


class GEODatasetLoader:
    """
    Downloads and parses GEO series matrices.

    Example:
        loader = GEODatasetLoader(LoaderConfig(cache_dir=Path("cache")))
        dataset = loader.load("GSE169290")
    """

    def __init__(
        self,
        config: Optional[LoaderConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or LoaderConfig()
        self.session = session or create_session(
            max_retries=self.config.max_retries,
            backoff_factor=self.config.backoff_factor,
            timeout=self.config.timeout,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def load(self, accession: str) -> ExpressionDataset:
        """
        Load the single series matrix selected by the configuration.

        Raises:
            DatasetNotFoundError: Accession does not resolve
            DatasetFormatError: No unique matrix matches, or the group
                field is absent
        """
        accession = self._normalize_accession(accession)
        names = self._select_matrices(accession)
        if len(names) > 1:
            raise DatasetFormatError(
                f"{accession} bundles {len(names)} series matrices "
                f"({', '.join(names)}); set matrix_pattern to choose one"
            )
        return self._load_matrix(accession, names[0])

    def load_all(self, accession: str) -> List[ExpressionDataset]:
        """Load every series matrix bundled under ``accession``."""
        accession = self._normalize_accession(accession)
        return [self._load_matrix(accession, name) for name in self._select_matrices(accession)]

    def list_matrices(self, accession: str) -> List[str]:
        """List series-matrix file names for an accession (cached after first call)."""
        accession = self._normalize_accession(accession)
        index_path = self._accession_dir(accession) / "matrix_index.txt"
        if index_path.exists() and index_path.stat().st_size > 0:
            logger.info(f"Cache hit: matrix index for {accession}")
            return index_path.read_text().split()

        url = f"{GEO_SERIES_URL}/{series_directory(accession)}/{accession}/matrix/"
        response = self._get(url, accession)
        names = sorted(set(MATRIX_LINK_RE.findall(response.text)))
        names = [Path(n).name for n in names]
        if not names:
            raise DatasetNotFoundError(f"No series matrix files listed for {accession}")

        index_path.parent.mkdir(parents=True, exist_ok=True)
        index_path.write_text("\n".join(names) + "\n")
        return names

    # ------------------------------------------------------------------
    # Download + cache
    # ------------------------------------------------------------------

    def _select_matrices(self, accession: str) -> List[str]:
        names = self.list_matrices(accession)
        pattern = self.config.matrix_pattern
        if pattern:
            regex = re.compile(pattern)
            names = [n for n in names if regex.search(n)]
            if not names:
                raise DatasetFormatError(
                    f"No series matrix of {accession} matches pattern {pattern!r}"
                )
        return names

    def _load_matrix(self, accession: str, filename: str) -> ExpressionDataset:
        url = f"{GEO_SERIES_URL}/{series_directory(accession)}/{accession}/matrix/{filename}"
        matrix_path = self._fetch(url, self._accession_dir(accession) / filename, accession)
        with gzip.open(matrix_path, "rt", encoding="utf-8", errors="replace") as fh:
            header, expression, samples = parse_series_matrix(fh.read())

        platform = header.get("platform_id", "")
        if not platform:
            match = re.search(r"(GPL\d+)", filename)
            platform = match.group(1) if match else ""
        platform_table = self._load_platform(accession, platform) if platform else pd.DataFrame()
        features = build_feature_table(expression.index, platform_table, self.config.feature_columns)

        group_field = self.config.group_field
        if group_field not in samples.columns:
            raise DatasetFormatError(
                f"{filename}: sample field '{group_field}' not found "
                f"(available: {', '.join(samples.columns)})"
            )

        dataset = ExpressionDataset(
            expression=expression,
            samples=samples,
            features=features,
            accession=accession,
            platform=platform,
            metadata=header,
        )
        logger.info(f"Loaded {dataset!r} from {filename}")
        return dataset

    def _load_platform(self, accession: str, platform: str) -> pd.DataFrame:
        path = self._accession_dir(accession) / f"{platform}.annot.txt.gz"
        params = {"acc": platform, "targ": "self", "form": "text", "view": "data"}
        path = self._fetch(GEO_QUERY_URL, path, accession, params=params)
        with gzip.open(path, "rt", encoding="utf-8", errors="replace") as fh:
            return parse_platform_table(fh.read())

    def _fetch(
        self,
        url: str,
        dest: Path,
        accession: str,
        params: Optional[dict] = None,
    ) -> Path:
        """Download ``url`` to ``dest`` unless a complete copy is already cached."""
        if dest.exists() and dest.stat().st_size > 0:
            logger.info(f"Cache hit: {dest}")
            return dest

        logger.info(f"Downloading {url}")
        response = self._get(url, accession, params=params)
        content = response.content
        if not dest.name.endswith(".gz") or content[:2] == b"\x1f\x8b":
            payload = content
        else:
            payload = gzip.compress(content)

        dest.parent.mkdir(parents=True, exist_ok=True)
        partial = dest.with_name(dest.name + ".part")
        partial.write_bytes(payload)
        partial.replace(dest)
        return dest

    def _get(self, url: str, accession: str, params: Optional[dict] = None) -> requests.Response:
        try:
            response = self.session.get(url, params=params)
        except requests.RequestException as exc:
            raise DatasetNotFoundError(f"Could not retrieve {accession} from {url}: {exc}") from exc
        if response.status_code == 404:
            raise DatasetNotFoundError(f"{accession} not found at {url}")
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise DatasetNotFoundError(f"Could not retrieve {accession}: {exc}") from exc
        return response

    def _accession_dir(self, accession: str) -> Path:
        return self.config.cache_dir / accession

    @staticmethod
    def _normalize_accession(accession: str) -> str:
        accession = (accession or "").strip().upper()
        if not ACCESSION_RE.match(accession):
            raise DatasetNotFoundError(
                f"Invalid GEO series accession {accession!r}. Expected format: GSE12345"
            )
        return accession


# =============================================================================
# Parsers
# =============================================================================


def _split_values(line: str) -> Tuple[str, List[str]]:
    key, _, rest = line.partition("\t")
    values = [v.strip().strip('"') for v in rest.split("\t")] if rest else []
    return key.strip(), values


def parse_series_matrix(text: str) -> Tuple[Dict[str, str], pd.DataFrame, pd.DataFrame]:
    """
    Parse a GEO series-matrix document.

    Args:
        text: Decompressed file contents

    Returns:
        Tuple of (series header dict, expression DataFrame features x samples,
        sample table indexed by GSM accession)

    Raises:
        DatasetFormatError: If the table markers are missing
    """
    begin = "!series_matrix_table_begin"
    end = "!series_matrix_table_end"
    if begin not in text or end not in text:
        raise DatasetFormatError("Series matrix table markers not found")

    head, _, rest = text.partition(begin)
    table_text = rest.split(end, 1)[0].strip("\n")

    expression = pd.read_csv(io.StringIO(table_text), sep="\t", index_col=0, quotechar='"')
    expression.index = expression.index.astype(str)
    expression.index.name = "ID_REF"
    expression = expression.apply(pd.to_numeric, errors="coerce")

    header: Dict[str, str] = {}
    sample_fields: Dict[str, List[str]] = {}
    characteristics: List[List[str]] = []
    for line in head.splitlines():
        if line.startswith("!Series_"):
            key, values = _split_values(line)
            name = key[len("!Series_"):]
            # Keep the first occurrence of repeated series keys
            header.setdefault(name, " ".join(values))
        elif line.startswith("!Sample_characteristics_ch1"):
            characteristics.append(_split_values(line)[1])
        elif line.startswith("!Sample_"):
            key, values = _split_values(line)
            sample_fields.setdefault(key[len("!Sample_"):], values)

    sample_ids = list(expression.columns)
    samples = pd.DataFrame(index=pd.Index(sample_ids, name="sample_id"))
    for name, values in sample_fields.items():
        if len(values) == len(sample_ids):
            samples[name] = values
    for values in characteristics:
        if len(values) != len(sample_ids):
            continue
        for sample_id, raw in zip(sample_ids, values):
            match = CHARACTERISTIC_RE.match(raw)
            if not match:
                continue
            key = match.group("key").strip().lower().replace(" ", "_")
            samples.loc[sample_id, key] = match.group("value").strip()

    if "platform_id" not in header and "platform_id" in samples.columns:
        header["platform_id"] = str(samples["platform_id"].iloc[0])
    return header, expression, samples


def parse_platform_table(text: str) -> pd.DataFrame:
    """Parse the ``!platform_table_begin`` block of a GEO platform SOFT document."""
    begin = "!platform_table_begin"
    end = "!platform_table_end"
    if begin not in text:
        raise DatasetFormatError("Platform table marker not found")
    table_text = text.split(begin, 1)[1].split(end, 1)[0].strip("\n")
    table = pd.read_csv(
        io.StringIO(table_text),
        sep="\t",
        dtype=str,
        comment=None,
        keep_default_na=False,
    )
    if "ID" not in table.columns:
        raise DatasetFormatError("Platform table has no ID column")
    return table.drop_duplicates(subset="ID").set_index("ID")


def build_feature_table(
    feature_ids: pd.Index,
    platform_table: pd.DataFrame,
    column_candidates: Dict[str, List[str]],
) -> pd.DataFrame:
    """
    Align platform annotation to the matrix rows.

    Each canonical field takes the first candidate column present in the
    platform table. ``accession`` and ``mirna_id`` fall back to the probe ID
    itself; ``target_genes`` falls back to an empty string.
    """
    index = pd.Index([str(f) for f in feature_ids], name="ID_REF")
    aligned = platform_table.reindex(index) if not platform_table.empty else pd.DataFrame(index=index)

    features = pd.DataFrame(index=index)
    for name, candidates in column_candidates.items():
        column = next((c for c in candidates if c in aligned.columns), None)
        if column is not None:
            values = aligned[column].fillna("").astype(str)
        else:
            values = pd.Series("", index=index)
        if name in ("accession", "mirna_id"):
            values = values.where(values != "", pd.Series(index, index=index))
        features[name] = values
    for name in ("accession", "mirna_id", "target_genes"):
        if name not in features.columns:
            features[name] = pd.Series(index, index=index) if name != "target_genes" else ""
    return features
