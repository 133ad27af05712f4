import json
from pathlib import Path

import pytest

from cpa.database import SQLiteArtifactStore
from cpa.model import AnalysisRecord, PassResult
from cpa.registry import PassRegistry
from cpa.scoring import MalformedScoreError, ScoreAggregator, parse_score_payload

FIELDS = ("documentation_score", "functionality_score", "style_score", "overall_score")


def _registry(scoring: dict[str, object] | None = None) -> PassRegistry:
    return PassRegistry.from_mapping(
        {
            "pass_order": ["doc", "score"],
            "passes": {
                name: {"kind": "ai", "prompt_sections": {"base_prompt": "Go."}}
                for name in ("doc", "score")
            },
            "scoring": scoring if scoring is not None else {"pass": "score"},
        }
    )


def _record_with_score_output(
    store: SQLiteArtifactStore, output: str
) -> AnalysisRecord:
    record = store.upsert_record("a.py", "python", None)
    record = store.complete_pass(
        record,
        PassResult(record_id=record.record_id, pass_name="doc", input_text="p", output="docs"),
    )
    return store.complete_pass(
        record,
        PassResult(record_id=record.record_id, pass_name="score", input_text="p", output=output),
    )


def test_score_001_parse_accepts_complete_payload() -> None:
    payload = json.dumps(
        {
            "documentation_score": 85,
            "functionality_score": 90.5,
            "style_score": 80,
            "overall_score": 86,
            "summary": "Good.",
        }
    )

    assert parse_score_payload(payload, FIELDS) == {
        "documentation_score": 85.0,
        "functionality_score": 90.5,
        "style_score": 80.0,
        "overall_score": 86.0,
    }


def test_score_002_parse_unwraps_fenced_json_block() -> None:
    payload = '```json\n{"overall_score": 7}\n```'

    assert parse_score_payload(payload, ("overall_score",)) == {"overall_score": 7.0}


def test_score_003_parse_reports_missing_fields() -> None:
    payload = json.dumps(
        {"documentation_score": 85, "functionality_score": 90, "style_score": 80}
    )

    with pytest.raises(MalformedScoreError, match="missing fields: overall_score"):
        parse_score_payload(payload, FIELDS)


@pytest.mark.parametrize(
    "payload",
    [
        "not json at all",
        "[1, 2, 3]",
        json.dumps({"overall_score": "high"}),
        json.dumps({"overall_score": True}),
        {"overall_score": None},
    ],
)
def test_score_004_parse_rejects_malformed_payloads(payload: object) -> None:
    with pytest.raises(MalformedScoreError):
        parse_score_payload(payload, ("overall_score",))


def test_score_005_aggregator_stores_scores_from_latest_result(tmp_path: Path) -> None:
    store = SQLiteArtifactStore(db_path=tmp_path / "cpa.sqlite")
    registry = _registry()
    record = _record_with_score_output(
        store,
        json.dumps(
            {
                "documentation_score": 85,
                "functionality_score": 90,
                "style_score": 80,
                "overall_score": 86,
            }
        ),
    )

    scores = ScoreAggregator(store=store, registry=registry).compute_scores(record)

    assert [score.metric for score in scores] == list(FIELDS)
    stored = {score.metric: score.value for score in store.list_scores(record)}
    assert stored["overall_score"] == 86.0


def test_score_006_missing_field_fails_but_results_remain(tmp_path: Path) -> None:
    store = SQLiteArtifactStore(db_path=tmp_path / "cpa.sqlite")
    registry = _registry()
    record = _record_with_score_output(
        store,
        json.dumps({"documentation_score": 85, "functionality_score": 90, "style_score": 80}),
    )

    with pytest.raises(MalformedScoreError):
        ScoreAggregator(store=store, registry=registry).compute_scores(record)

    assert [result.pass_name for result in store.list_results(record)] == ["doc", "score"]
    assert store.list_scores(record) == []


def test_score_007_aggregator_requires_scoring_configuration(tmp_path: Path) -> None:
    store = SQLiteArtifactStore(db_path=tmp_path / "cpa.sqlite")
    record = store.upsert_record("a.py", "python", None)

    with pytest.raises(MalformedScoreError, match="No scoring pass"):
        ScoreAggregator(store=store, registry=_registry(scoring={})).compute_scores(record)
    with pytest.raises(MalformedScoreError, match="No 'score' result"):
        ScoreAggregator(store=store, registry=_registry()).compute_scores(record)
