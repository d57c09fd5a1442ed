"""Unit tests for mho_mirna.config."""

import json
from pathlib import Path

import pytest

from mho_mirna.config import SECTIONS, PipelineConfig
from mho_mirna.de_analysis import DEConfig
from mho_mirna.geo_loader import LoaderConfig


class TestPipelineConfig:

    def test_defaults(self):
        cfg = PipelineConfig()
        assert cfg.de.reference_group == "MHO"
        assert cfg.de.test_group == "MUO"
        assert cfg.de.pvalue_threshold == 0.05
        assert cfg.de.adjust_method == "none"
        assert cfg.filter.enabled is True
        assert cfg.annotation.join_strategy == "first"

    def test_from_dict(self):
        cfg = PipelineConfig.from_dict({
            "de": {"pvalue_threshold": 0.01, "adjust_method": "fdr_bh"},
            "filter": {"enabled": False},
            "report": {"output_dir": "out", "top_n": 10},
        })
        assert cfg.de.pvalue_threshold == 0.01
        assert cfg.de.adjust_method == "fdr_bh"
        assert cfg.filter.enabled is False
        assert cfg.report.output_dir == Path("out")
        assert cfg.report.top_n == 10
        assert cfg.enrichment.target_source == "validated"

    def test_group_field_synced_to_loader(self):
        cfg = PipelineConfig(loader=LoaderConfig(group_field="group"), de=DEConfig(group_field="phenotype"))
        assert cfg.loader.group_field == "phenotype"

    def test_unknown_section(self):
        with pytest.raises(ValueError, match="section"):
            PipelineConfig.from_dict({"plots": {}})

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="pvalue"):
            PipelineConfig.from_dict({"de": {"pvalue": 0.01}})

    def test_section_must_be_object(self):
        with pytest.raises(ValueError):
            PipelineConfig.from_dict({"de": [0.01]})

    def test_invalid_values(self):
        with pytest.raises(ValueError):
            PipelineConfig.from_dict({"de": {"pvalue_threshold": 0}})
        with pytest.raises(ValueError):
            PipelineConfig.from_dict({"de": {"reference_group": "MUO", "test_group": "muo"}})
        with pytest.raises(ValueError):
            PipelineConfig.from_dict({"annotation": {"join_strategy": "random"}})

    def test_from_json(self, tmp_path):
        path = tmp_path / "run.json"
        path.write_text(json.dumps({"loader": {"cache_dir": str(tmp_path / "cache")},
                                    "annotation": {"cutoff": 10}}))
        cfg = PipelineConfig.from_json(path)
        assert cfg.loader.cache_dir == tmp_path / "cache"
        assert cfg.annotation.cutoff == 10

    def test_from_json_requires_object(self, tmp_path):
        path = tmp_path / "run.json"
        path.write_text("[1, 2]")
        with pytest.raises(ValueError, match="object"):
            PipelineConfig.from_json(path)

    def test_to_dict_round_trip(self):
        cfg = PipelineConfig.from_dict({"report": {"output_dir": "out"}})
        data = cfg.to_dict()
        assert set(data) == set(SECTIONS)
        assert data["report"]["output_dir"] == "out"
        json.dumps(data)
        assert PipelineConfig.from_dict(data) == cfg
