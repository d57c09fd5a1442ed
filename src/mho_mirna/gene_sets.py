"""
Curated gene-set collections (KEGG, GO, BioCarta).

Each collection is either an Enrichr library fetched with
``gseapy.get_library`` or a local GMT file read with ``gseapy.read_gmt``.
Collections are loaded once per library instance and treated as read-only
lookup tables of pathway name -> gene symbols.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

import gseapy
import requests

from .errors import GeneSetLoadError

logger = logging.getLogger(__name__)

GeneSets = Dict[str, List[str]]

DEFAULT_COLLECTIONS: Dict[str, str] = {
    "kegg": "KEGG_2021_Human",
    "go": "GO_Biological_Process_2023",
    "biocarta": "BioCarta_2016",
}


@dataclass
class GeneSetSource:
    """Where a collection comes from: an Enrichr library name or a GMT path."""

    name: str
    library: Optional[str] = None
    gmt_path: Optional[Path] = None
    organism: str = "Human"

    def __post_init__(self):
        if bool(self.library) == bool(self.gmt_path):
            raise ValueError(f"Collection {self.name!r} needs exactly one of library or gmt_path")
        if self.gmt_path is not None:
            self.gmt_path = Path(self.gmt_path)

    def describe(self) -> str:
        return str(self.gmt_path) if self.gmt_path else f"enrichr:{self.library}"


def sources_from_mapping(
    collections: Mapping[str, Union[str, Path]],
    organism: str = "Human",
) -> List[GeneSetSource]:
    """
    Build sources from ``{name: library-or-path}``.

    Values ending in ``.gmt`` (or pointing at an existing file) are read
    locally; anything else is an Enrichr library name.
    """
    sources = []
    for name, value in collections.items():
        text = str(value)
        if text.endswith(".gmt") or Path(text).is_file():
            sources.append(GeneSetSource(name=name, gmt_path=Path(text), organism=organism))
        else:
            sources.append(GeneSetSource(name=name, library=text, organism=organism))
    return sources


class GeneSetLibrary:
    """
    Loads and memoizes named gene-set collections.

    Example:
        library = GeneSetLibrary()
        kegg = library.get("kegg")
    """

    def __init__(self, sources: Optional[List[GeneSetSource]] = None):
        if sources is None:
            sources = sources_from_mapping(DEFAULT_COLLECTIONS)
        self.sources: Dict[str, GeneSetSource] = {s.name: s for s in sources}
        self._cache: Dict[str, GeneSets] = {}

    @property
    def names(self) -> List[str]:
        return list(self.sources)

    def get(self, name: str) -> GeneSets:
        """Return one collection, loading it on first use."""
        if name not in self.sources:
            raise KeyError(f"Unknown gene-set collection {name!r} (known: {self.names})")
        if name not in self._cache:
            self._cache[name] = self._load(self.sources[name])
        return self._cache[name]

    def load_all(self) -> Dict[str, GeneSets]:
        return {name: self.get(name) for name in self.sources}

    def _load(self, source: GeneSetSource) -> GeneSets:
        logger.info("Loading gene sets '%s' from %s", source.name, source.describe())
        try:
            if source.gmt_path is not None:
                raw = gseapy.read_gmt(str(source.gmt_path))
            else:
                raw = gseapy.get_library(name=source.library, organism=source.organism)
        except (requests.RequestException, OSError, ValueError) as exc:
            raise GeneSetLoadError(
                f"Could not load gene sets '{source.name}' from {source.describe()}: {exc}"
            ) from exc

        gene_sets = clean_gene_sets(raw)
        if not gene_sets:
            raise GeneSetLoadError(f"Gene-set collection '{source.name}' is empty")
        logger.info("  %d gene sets in '%s'", len(gene_sets), source.name)
        return gene_sets


def clean_gene_sets(raw: Mapping[str, List[str]]) -> GeneSets:
    """Strip blanks and duplicate symbols; drop sets left empty."""
    cleaned: GeneSets = {}
    for name, genes in raw.items():
        symbols = list(dict.fromkeys(str(g).strip() for g in genes if str(g).strip()))
        if symbols:
            cleaned[str(name)] = symbols
    return cleaned
