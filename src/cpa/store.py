# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Artifact store contracts."""

import logging
from collections.abc import Sequence
from typing import Any, Protocol

from cpa.model import AnalysisRecord, PassResult, Score

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """Represent a fatal persistence operation failure."""


class DuplicatePassError(RuntimeError):
    """Represent an attempt to record a pass that already completed."""


class RecordNotFoundError(PersistenceError):
    """Represent a lookup for a record that does not exist."""


def missing_passes(record: AnalysisRecord, pass_order: Sequence[str]) -> list[str]:
    """Return passes from the order that the record has not completed.

    Args:
        record: Analysis record to inspect.
        pass_order: Global pass order.

    Returns:
        Missing pass names in pass order.
    """
    completed = set(record.completed_passes)
    return [name for name in pass_order if name not in completed]


def is_pending(
    record: AnalysisRecord, pass_order: Sequence[str], strict: bool = False
) -> bool:
    """Decide whether a record still needs work.

    The default comparison is count based: a record is pending when it has
    completed fewer passes than the order holds, regardless of which ones.

    Args:
        record: Analysis record to inspect.
        pass_order: Global pass order.
        strict: Use set difference against the order instead of counts.

    Returns:
        True when the record should be scheduled.
    """
    if strict:
        return bool(missing_passes(record, pass_order))
    return len(record.completed_passes) < len(pass_order)


class ArtifactStore(Protocol):
    """Define persistence of analysis records, pass results and scores."""

    def upsert_record(
        self,
        artifact_path: str,
        language: str | None,
        parsed_representation: Any,
    ) -> AnalysisRecord:
        """Create a record or refresh the parsed representation of an existing one."""

    def get_record(self, record_id: int) -> AnalysisRecord:
        """Load one record by id."""

    def list_records(self) -> list[AnalysisRecord]:
        """Load all records ordered by id."""

    def find_pending(self, pass_order: Sequence[str]) -> list[AnalysisRecord]:
        """Load records that completed fewer passes than ``pass_order`` holds."""

    def record_pass_result(self, record: AnalysisRecord, result: PassResult) -> None:
        """Store a pass result; raise ``DuplicatePassError`` if one exists."""

    def advance(self, record: AnalysisRecord, pass_name: str) -> AnalysisRecord:
        """Mark a pass completed and increment the pass index."""

    def complete_pass(self, record: AnalysisRecord, result: PassResult) -> AnalysisRecord:
        """Store a result and advance the record in one transaction."""

    def list_results(self, record: AnalysisRecord) -> list[PassResult]:
        """Load the record's pass results in completion order."""

    def latest_result(self, record: AnalysisRecord, pass_name: str) -> PassResult | None:
        """Load the most recent result of one pass."""

    def save_scores(self, record: AnalysisRecord, scores: Sequence[Score]) -> None:
        """Replace the record's scores for the given metrics."""

    def list_scores(self, record: AnalysisRecord) -> list[Score]:
        """Load the record's scores ordered by metric."""

    def delete_record(self, record_id: int) -> None:
        """Delete a record with its results and scores."""
