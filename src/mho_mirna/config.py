"""
Run configuration.

One dataclass per stage, bundled in :class:`PipelineConfig`. A JSON config
file carries one object per stage; keys are the dataclass field names.

Usage:
    from mho_mirna.config import PipelineConfig

    cfg = PipelineConfig.from_json("run.json")
    cfg.de.pvalue_threshold
"""

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Union

from .dataset import FilterConfig
from .de_analysis import DEConfig
from .enrichment import EnrichmentConfig
from .geo_loader import LoaderConfig
from .report import ReportConfig
from .targets import AnnotationConfig

SECTIONS = {
    "loader": LoaderConfig,
    "filter": FilterConfig,
    "de": DEConfig,
    "annotation": AnnotationConfig,
    "enrichment": EnrichmentConfig,
    "report": ReportConfig,
}


@dataclass
class PipelineConfig:
    """Configuration for every pipeline stage."""

    loader: LoaderConfig = field(default_factory=LoaderConfig)
    filter: FilterConfig = field(default_factory=FilterConfig)
    de: DEConfig = field(default_factory=DEConfig)
    annotation: AnnotationConfig = field(default_factory=AnnotationConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)
    report: ReportConfig = field(default_factory=ReportConfig)

    def __post_init__(self):
        # The loader checks the same sample field the DE engine groups on
        if self.loader.group_field != self.de.group_field:
            self.loader.group_field = self.de.group_field

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        """
        Build a config from ``{section: {field: value}}``.

        Raises:
            ValueError: For unknown sections or fields, or invalid values
        """
        unknown = set(data) - set(SECTIONS)
        if unknown:
            raise ValueError(f"Unknown config section(s): {sorted(unknown)}")

        kwargs = {}
        for section, section_cls in SECTIONS.items():
            values = data.get(section) or {}
            if not isinstance(values, dict):
                raise ValueError(f"Config section '{section}' must be an object")
            allowed = {f.name for f in fields(section_cls)}
            bad = set(values) - allowed
            if bad:
                raise ValueError(f"Unknown key(s) in '{section}': {sorted(bad)}")
            kwargs[section] = section_cls(**values)
        return cls(**kwargs)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "PipelineConfig":
        with open(path) as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"{path}: top level must be an object")
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        result = {}
        for section in SECTIONS:
            obj = getattr(self, section)
            result[section] = {
                f.name: str(v) if isinstance(v, Path) else v
                for f in fields(obj)
                for v in [getattr(obj, f.name)]
            }
        return result
