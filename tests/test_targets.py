"""Unit tests for mho_mirna.targets — multiMiR queries, cutoffs, dedup, join strategies."""

from dataclasses import FrozenInstanceError
from unittest.mock import MagicMock

import pandas as pd
import pytest
import requests

from mho_mirna.errors import AnnotationQueryError
from mho_mirna.targets import (
    ANNOTATION_COLUMNS,
    AnnotationConfig,
    MultiMiRBackend,
    TargetAnnotation,
    TargetAnnotator,
    apply_score_cutoff,
    build_query,
    deduplicate_targets,
    parse_response,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _rows(*triples):
    """Build a service-shaped frame from (mirna, symbol, score) triples."""
    return pd.DataFrame(
        {
            "mature_mirna_acc": [f"MIMAT{i:07d}" for i in range(len(triples))],
            "mature_mirna_id": [t[0] for t in triples],
            "target_symbol": [t[1] for t in triples],
            "target_entrez": [str(1000 + i) for i in range(len(triples))],
            "target_ensembl": [f"ENSG{i:011d}" for i in range(len(triples))],
            "score": [t[2] for t in triples],
        }
    )


class FakeBackend:
    """Returns preset rows per table, filtered to the queried miRNAs."""

    def __init__(self, rows_by_table):
        self.rows_by_table = rows_by_table
        self.calls = []

    def query(self, mirnas, organism, table):
        self.calls.append((list(mirnas), organism, table))
        frame = self.rows_by_table.get(table, _rows())
        return frame[frame["mature_mirna_id"].isin(mirnas)].reset_index(drop=True)


VALIDATED = _rows(
    ("hsa-miR-122-5p", "SLC7A1", "Functional MTI"),
    ("hsa-miR-122-5p", "CCNG1", "Functional MTI"),
    ("hsa-miR-34a-5p", "SIRT1", "Functional MTI"),
    ("hsa-miR-122-5p", "SLC7A1", "Functional MTI (Weak)"),
)

PREDICTED = _rows(
    ("hsa-miR-122-5p", "ALDOA", -0.10),
    ("hsa-miR-122-5p", "P4HA1", -0.80),
    ("hsa-miR-34a-5p", "SIRT1", -0.60),
    ("hsa-miR-34a-5p", "P4HA1", -0.70),
    ("hsa-miR-34a-5p", "NOTCH1", -0.20),
)

HTML_RESPONSE = """
<html><body><table border="1">
<tr><th>mature_mirna_acc</th><th>mature_mirna_id</th><th>target_symbol</th>
<th>target_entrez</th><th>target_ensembl</th><th>score</th></tr>
<tr><td>MIMAT0000421</td><td>hsa-miR-122-5p</td><td>SLC7A1</td>
<td>6541</td><td>ENSG00000139514</td><td>Functional MTI</td></tr>
<tr><td>MIMAT0000421</td><td>hsa-miR-122-5p</td><td>CCNG1</td>
<td>900</td><td>ENSG00000113328</td><td>Functional MTI</td></tr>
</table></body></html>
"""


def _annotator(**config):
    backend = FakeBackend({"mirtarbase": VALIDATED, "targetscan": PREDICTED})
    return TargetAnnotator(AnnotationConfig(**config), backend=backend), backend


# ---------------------------------------------------------------------------
# Table operations
# ---------------------------------------------------------------------------

class TestDeduplicateTargets:

    def test_keeps_first_occurrence(self):
        result = deduplicate_targets(VALIDATED)
        assert list(result["target_symbol"]) == ["SLC7A1", "CCNG1", "SIRT1"]
        assert result.loc[0, "score"] == "Functional MTI"

    def test_idempotent(self):
        once = deduplicate_targets(PREDICTED)
        twice = deduplicate_targets(once)
        pd.testing.assert_frame_equal(once, twice)

    def test_blank_symbols_dropped(self):
        frame = _rows(("m1", "", 1), ("m1", "nan", 1), ("m1", "TP53", 1))
        assert list(deduplicate_targets(frame)["target_symbol"]) == ["TP53"]


class TestScoreCutoff:

    def test_percentage_lower_is_better(self):
        kept = apply_score_cutoff(PREDICTED, "targetscan", 40, "p")
        assert list(kept["target_symbol"]) == ["P4HA1", "P4HA1"]
        assert list(kept["score"]) == [-0.80, -0.70]

    def test_percentage_rounds_up(self):
        assert len(apply_score_cutoff(PREDICTED, "targetscan", 1, "p")) == 1

    def test_count_higher_is_better(self):
        frame = _rows(("m1", "A", 50), ("m1", "B", 95), ("m1", "C", 80))
        kept = apply_score_cutoff(frame, "mirdb", 2, "n")
        assert list(kept["target_symbol"]) == ["B", "C"]

    def test_ties_keep_source_order(self):
        frame = _rows(("m1", "A", 0.5), ("m1", "B", 0.5), ("m1", "C", 0.5))
        kept = apply_score_cutoff(frame, "mirdb", 2, "n")
        assert list(kept["target_symbol"]) == ["A", "B"]

    def test_non_numeric_scores_dropped(self):
        frame = _rows(("m1", "A", "n/a"), ("m1", "B", 0.9))
        assert list(apply_score_cutoff(frame, "mirdb", 100, "p")["target_symbol"]) == ["B"]

    def test_empty(self):
        assert apply_score_cutoff(_rows(), "targetscan", 20, "p").empty


# ---------------------------------------------------------------------------
# TargetAnnotation
# ---------------------------------------------------------------------------

class TestTargetAnnotation:

    def _validated(self):
        annotator, _ = _annotator()
        return annotator.validated(["hsa-miR-122-5p", "hsa-miR-34a-5p"])

    def test_mapping(self):
        mapping = self._validated().mapping()
        assert mapping == {"hsa-miR-122-5p": ["SLC7A1", "CCNG1"], "hsa-miR-34a-5p": ["SIRT1"]}

    def test_first_strategy_preserves_input_order(self):
        first = self._validated().first_target_per_mirna(
            ["hsa-miR-34a-5p", "hsa-miR-999", "hsa-miR-122-5p"]
        )
        assert list(first.index) == ["hsa-miR-34a-5p", "hsa-miR-999", "hsa-miR-122-5p"]
        assert list(first) == ["SIRT1", None, "SLC7A1"]

    def test_all_strategy(self):
        result = self._validated().first_target_per_mirna(["hsa-miR-122-5p"], strategy="all")
        assert result["hsa-miR-122-5p"] == "SLC7A1;CCNG1"

    def test_first_and_best_score_differ_on_predicted(self):
        annotator, _ = _annotator(cutoff=100)
        predicted = annotator.predicted(["hsa-miR-122-5p", "hsa-miR-34a-5p"])
        # source order lists ALDOA (-0.10) before P4HA1 (-0.80)
        first = predicted.first_target_per_mirna(["hsa-miR-122-5p"], strategy="first")
        best = predicted.first_target_per_mirna(["hsa-miR-122-5p"], strategy="best_score")
        assert first["hsa-miR-122-5p"] == "ALDOA"
        assert best["hsa-miR-122-5p"] == "P4HA1"

    def test_predicted_rows_keep_source_order(self):
        annotator, _ = _annotator(cutoff=100)
        predicted = annotator.predicted(["hsa-miR-122-5p", "hsa-miR-34a-5p"])
        assert list(predicted.table["target_symbol"]) == ["ALDOA", "P4HA1", "SIRT1", "NOTCH1"]

    def test_frozen(self):
        annotation = self._validated()
        with pytest.raises(FrozenInstanceError):
            annotation.table = annotation.table.iloc[:1]

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            self._validated().first_target_per_mirna(["x"], strategy="random")

    def test_target_symbols(self):
        assert self._validated().target_symbols() == ["SLC7A1", "CCNG1", "SIRT1"]


# ---------------------------------------------------------------------------
# Annotator
# ---------------------------------------------------------------------------

class TestTargetAnnotator:

    def test_validated(self):
        annotator, backend = _annotator()
        annotation = annotator.validated(["hsa-miR-122-5p", "hsa-miR-34a-5p"])
        assert list(annotation.table.columns) == ANNOTATION_COLUMNS
        assert annotation.database == "mirtarbase"
        assert annotation.interaction_type == "validated"
        assert set(annotation.table["interaction_type"]) == {"validated"}
        assert len(annotation) == 4
        assert backend.calls[0][1:] == ("hsa", "mirtarbase")

    def test_batches_requests(self):
        annotator, backend = _annotator(batch_size=1)
        annotator.validated(["hsa-miR-122-5p", "hsa-miR-34a-5p", "hsa-miR-122-5p"])
        assert [c[0] for c in backend.calls] == [["hsa-miR-122-5p"], ["hsa-miR-34a-5p"]]

    def test_no_mirnas_means_no_requests(self):
        annotator, backend = _annotator()
        annotation = annotator.validated([])
        assert len(annotation) == 0
        assert backend.calls == []

    def test_non_mirna_identifiers_skipped(self):
        annotator, backend = _annotator()
        annotation = annotator.validated(["hsa-miR-122-5p", "HBII-52 (snoRNA)", "hsa-miR-34a-5p"])
        assert backend.calls[0][0] == ["hsa-miR-122-5p", "hsa-miR-34a-5p"]
        assert annotation.query == ["hsa-miR-122-5p", "hsa-miR-34a-5p"]
        assert annotation.n_mirnas_matched == 2

    def test_only_non_mirna_identifiers(self):
        annotator, backend = _annotator()
        annotation = annotator.predicted(["HBII-52 (snoRNA)"])
        assert len(annotation) == 0
        assert backend.calls == []

    def test_predicted_cutoff_then_dedup(self):
        annotator, _ = _annotator(cutoff=60, cutoff_type="p")
        annotation = annotator.predicted(["hsa-miR-122-5p", "hsa-miR-34a-5p"])
        # best three of five by ascending score: P4HA1 (-0.8), P4HA1 (-0.7), SIRT1 (-0.6)
        assert list(annotation.table["target_symbol"]) == ["P4HA1", "SIRT1"]
        assert annotation.interaction_type == "predicted"
        assert annotation.database == "targetscan"

    def test_predicted_count_cutoff_override(self):
        annotator, _ = _annotator()
        annotation = annotator.predicted(["hsa-miR-34a-5p"], cutoff=1, cutoff_type="n")
        assert list(annotation.table["target_symbol"]) == ["P4HA1"]

    def test_wrong_table_kind(self):
        annotator, _ = _annotator()
        with pytest.raises(ValueError):
            annotator.validated(["hsa-miR-122-5p"], table="targetscan")
        with pytest.raises(ValueError):
            annotator.predicted(["hsa-miR-122-5p"], table="mirtarbase")

    def test_backend_error_propagates(self):
        backend = MagicMock()
        backend.query.side_effect = AnnotationQueryError("service down")
        annotator = TargetAnnotator(AnnotationConfig(), backend=backend)
        with pytest.raises(AnnotationQueryError):
            annotator.validated(["hsa-miR-122-5p"])

    @pytest.mark.parametrize("kwargs", [
        {"organism": "human"},
        {"validated_table": "mirwalk"},
        {"predicted_table": "mirtarbase"},
        {"cutoff_type": "q"},
        {"cutoff": 0, "cutoff_type": "p"},
        {"join_strategy": "random"},
    ])
    def test_invalid_config(self, kwargs):
        with pytest.raises(ValueError):
            AnnotationConfig(**kwargs)


# ---------------------------------------------------------------------------
# multiMiR service
# ---------------------------------------------------------------------------

class TestBuildQuery:

    def test_validated_query(self):
        sql = build_query(["hsa-miR-122-5p", "hsa-let-7a-5p"], "hsa", "mirtarbase")
        assert "INNER JOIN mirtarbase AS i" in sql
        assert "i.support_type AS score" in sql
        assert "IN ('hsa-miR-122-5p','hsa-let-7a-5p')" in sql
        assert "m.org='hsa'" in sql

    def test_predicted_score_column(self):
        assert "i.mirsvr_score AS score" in build_query(["hsa-miR-1"], "hsa", "miranda")

    def test_rejects_unsafe_identifiers(self):
        with pytest.raises(ValueError):
            build_query(["hsa-miR-1'); DROP TABLE mirna; --"], "hsa", "mirtarbase")

    def test_rejects_unknown_table(self):
        with pytest.raises(ValueError):
            build_query(["hsa-miR-1"], "hsa", "mirna")


class TestParseResponse:

    def test_html_table(self):
        frame = parse_response(HTML_RESPONSE, "mirtarbase")
        assert list(frame.columns) == ANNOTATION_COLUMNS[:6]
        assert list(frame["target_symbol"]) == ["SLC7A1", "CCNG1"]

    def test_no_rows(self):
        assert parse_response("<html><body>No results</body></html>", "mirtarbase").empty

    def test_service_error_text(self):
        with pytest.raises(AnnotationQueryError):
            parse_response("Error: You have an error in your SQL syntax", "mirtarbase")

    def test_missing_columns(self):
        html = "<table><tr><th>a</th><th>b</th></tr><tr><td>1</td><td>2</td></tr></table>"
        with pytest.raises(AnnotationQueryError):
            parse_response(html, "mirtarbase")


class TestMultiMiRBackend:

    def test_posts_query(self):
        session = MagicMock()
        response = MagicMock()
        response.text = HTML_RESPONSE
        session.post.return_value = response
        backend = MultiMiRBackend(url="http://example.org/multimir", session=session)

        frame = backend.query(["hsa-miR-122-5p"], "hsa", "mirtarbase")

        assert len(frame) == 2
        args, kwargs = session.post.call_args
        assert args[0] == "http://example.org/multimir"
        assert "FROM mirna AS m" in kwargs["data"]["query"]

    def test_network_error(self):
        session = MagicMock()
        session.post.side_effect = requests.Timeout("timed out")
        backend = MultiMiRBackend(session=session)
        with pytest.raises(AnnotationQueryError, match="timed out"):
            backend.query(["hsa-miR-122-5p"], "hsa", "mirtarbase")

    def test_http_error(self):
        session = MagicMock()
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("503 Server Error")
        session.post.return_value = response
        with pytest.raises(AnnotationQueryError):
            MultiMiRBackend(session=session).query(["hsa-miR-122-5p"], "hsa", "mirtarbase")


def test_annotation_to_dict():
    annotation = TargetAnnotation(table=VALIDATED, database="mirtarbase", interaction_type="validated",
                                  query=["hsa-miR-122-5p", "hsa-miR-34a-5p"])
    summary = annotation.to_dict()
    assert summary["n_interactions"] == 4
    assert summary["n_mirnas_matched"] == 2
    assert summary["n_queried"] == 2
