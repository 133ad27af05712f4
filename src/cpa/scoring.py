# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Derived score computation from the scoring pass."""

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any

from cpa.model import AnalysisRecord, Score
from cpa.registry import PassRegistry
from cpa.store import ArtifactStore

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"^```(?:json)?\s*\n(?P<body>.*)\n```$", re.DOTALL)


class MalformedScoreError(RuntimeError):
    """Represent a scoring payload without the required numeric fields."""


class ScoreAggregator:
    """Compute and store scores from the designated scoring pass."""

    def __init__(self, store: ArtifactStore, registry: PassRegistry) -> None:
        """Initialize the aggregator.

        Args:
            store: Store holding pass results and scores.
            registry: Registry naming the scoring pass and its fields.
        """
        self._store = store
        self._registry = registry

    def compute_scores(self, record: AnalysisRecord) -> list[Score]:
        """Parse the latest scoring-pass result and store its scores.

        Args:
            record: Record whose scoring pass completed.

        Returns:
            Stored scores in field order.

        Raises:
            MalformedScoreError: If no scoring result exists, the payload is
                not a JSON object, or a required field is absent or non-numeric.
        """
        scoring_pass = self._registry.scoring_pass
        if scoring_pass is None:
            raise MalformedScoreError("No scoring pass is configured.")
        result = self._store.latest_result(record, scoring_pass)
        if result is None:
            raise MalformedScoreError(
                f"No '{scoring_pass}' result for record {record.artifact_path}."
            )

        values = parse_score_payload(result.output, self._registry.score_fields)
        created_at = datetime.now(tz=timezone.utc).isoformat()
        scores = [
            Score(record_id=record.record_id, metric=metric, value=value, created_at=created_at)
            for metric, value in values.items()
        ]
        self._store.save_scores(record, scores)
        logger.info(
            f"Scores stored (artifact={record.artifact_path} "
            + " ".join(f"{score.metric}={score.value:g}" for score in scores)
            + ")"
        )
        return scores


def parse_score_payload(payload: Any, fields: tuple[str, ...]) -> dict[str, float]:
    """Extract required numeric fields from a scoring payload.

    A payload wrapped in a single fenced code block is unwrapped first.

    Args:
        payload: JSON text or an already decoded mapping.
        fields: Required numeric field names.

    Returns:
        Field values in ``fields`` order.

    Raises:
        MalformedScoreError: If the payload or any field is invalid.
    """
    data = payload
    if isinstance(payload, str):
        text = payload.strip()
        fenced = _FENCED_JSON.match(text)
        if fenced:
            text = fenced.group("body").strip()
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedScoreError(f"Scoring payload is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise MalformedScoreError("Scoring payload must be a JSON object.")

    missing = [name for name in fields if name not in data]
    if missing:
        raise MalformedScoreError(f"Scoring payload is missing fields: {', '.join(missing)}")
    invalid = [
        name
        for name in fields
        if isinstance(data[name], bool) or not isinstance(data[name], (int, float))
    ]
    if invalid:
        raise MalformedScoreError(f"Scoring payload has non-numeric fields: {', '.join(invalid)}")
    return {name: float(data[name]) for name in fields}
