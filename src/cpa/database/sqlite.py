# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Artifact store SQLite implementation."""

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from cpa.model import AnalysisRecord, PassResult, Score
from cpa.store import DuplicatePassError, PersistenceError, RecordNotFoundError

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = (
    "id, artifact_path, language, parsed_representation, "
    "current_pass_index, completed_passes, total_cost_usd"
)
_RESULT_COLUMNS = (
    "record_id, pass_name, input_text, output, content_type, usage, "
    "cost_estimate_usd, created_at"
)


class SQLiteArtifactStore:
    """Persist analysis records, pass results and scores to SQLite."""

    def __init__(self, db_path: Path, busy_timeout_seconds: float = 30.0) -> None:
        """Initialize the store.

        Args:
            db_path: SQLite database file path.
            busy_timeout_seconds: Seconds to wait for a competing writer.
        """
        self._db_path = db_path
        self._busy_timeout_seconds = busy_timeout_seconds
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def upsert_record(
        self,
        artifact_path: str,
        language: str | None,
        parsed_representation: Any,
    ) -> AnalysisRecord:
        """Create a record or refresh its language and parsed representation.

        Pass completion state of an existing record is left untouched.

        Args:
            artifact_path: Unique artifact path.
            language: Language tag.
            parsed_representation: JSON-serializable parse output.

        Returns:
            The stored record.

        Raises:
            PersistenceError: If the write fails.
        """
        parsed_json = _dump_json(parsed_representation)
        with self._transaction() as connection:
            connection.execute(
                "INSERT INTO analysis_records ("
                "artifact_path, language, parsed_representation, current_pass_index, "
                "completed_passes, total_cost_usd, created_at"
                ") VALUES (?, ?, ?, 0, '[]', 0.0, ?) "
                "ON CONFLICT(artifact_path) DO UPDATE SET "
                "language = excluded.language, "
                "parsed_representation = excluded.parsed_representation",
                (artifact_path, language, parsed_json, _now()),
            )
            row = connection.execute(
                f"SELECT {_RECORD_COLUMNS} FROM analysis_records WHERE artifact_path = ?",
                (artifact_path,),
            ).fetchone()
        return _record_from_row(row)

    def get_record(self, record_id: int) -> AnalysisRecord:
        """Load one record by id.

        Raises:
            RecordNotFoundError: If no record has this id.
            PersistenceError: If the read fails.
        """
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT {_RECORD_COLUMNS} FROM analysis_records WHERE id = ?",
                (record_id,),
            ).fetchone()
        if row is None:
            raise RecordNotFoundError(f"Analysis record {record_id} does not exist.")
        return _record_from_row(row)

    def list_records(self) -> list[AnalysisRecord]:
        """Load all records ordered by id."""
        with self._connection() as connection:
            rows = connection.execute(
                f"SELECT {_RECORD_COLUMNS} FROM analysis_records ORDER BY id"
            ).fetchall()
        return [_record_from_row(row) for row in rows]

    def find_pending(self, pass_order: Sequence[str]) -> list[AnalysisRecord]:
        """Load records with fewer completed passes than the pass order holds.

        Args:
            pass_order: Global pass order.

        Returns:
            Pending records ordered by id.
        """
        with self._connection() as connection:
            rows = connection.execute(
                f"SELECT {_RECORD_COLUMNS} FROM analysis_records "
                "WHERE json_array_length(completed_passes) < ? ORDER BY id",
                (len(pass_order),),
            ).fetchall()
        return [_record_from_row(row) for row in rows]

    def record_pass_result(self, record: AnalysisRecord, result: PassResult) -> None:
        """Store a pass result for a record.

        Raises:
            DuplicatePassError: If the pass already completed or has a result.
            PersistenceError: If the write fails.
        """
        with self._transaction() as connection:
            self._insert_result(connection, record.record_id, result)

    def advance(self, record: AnalysisRecord, pass_name: str) -> AnalysisRecord:
        """Append a pass to the completed list and increment the pass index.

        Raises:
            DuplicatePassError: If the pass is already completed.
            PersistenceError: If the write fails.
        """
        with self._transaction() as connection:
            return self._advance(connection, record.record_id, pass_name)

    def complete_pass(self, record: AnalysisRecord, result: PassResult) -> AnalysisRecord:
        """Store a pass result and advance the record atomically.

        Args:
            record: Record the result belongs to.
            result: Successful pass result.

        Returns:
            The advanced record with a refreshed total cost.

        Raises:
            DuplicatePassError: If the pass already completed; nothing is written.
            PersistenceError: If any write fails; nothing is written.
        """
        with self._transaction() as connection:
            self._insert_result(connection, record.record_id, result)
            advanced = self._advance(connection, record.record_id, result.pass_name)
            total_cost = connection.execute(
                "SELECT COALESCE(SUM(cost_estimate_usd), 0.0) FROM pass_results "
                "WHERE record_id = ?",
                (record.record_id,),
            ).fetchone()[0]
            connection.execute(
                "UPDATE analysis_records SET total_cost_usd = ? WHERE id = ?",
                (float(total_cost), record.record_id),
            )
        return replace(advanced, total_cost_usd=float(total_cost))

    def list_results(self, record: AnalysisRecord) -> list[PassResult]:
        """Load all pass results of a record in completion order."""
        with self._connection() as connection:
            rows = connection.execute(
                f"SELECT {_RESULT_COLUMNS} FROM pass_results WHERE record_id = ? ORDER BY id",
                (record.record_id,),
            ).fetchall()
        return [_result_from_row(row) for row in rows]

    def latest_result(self, record: AnalysisRecord, pass_name: str) -> PassResult | None:
        """Load the most recent result of one pass, if any."""
        with self._connection() as connection:
            row = connection.execute(
                f"SELECT {_RESULT_COLUMNS} FROM pass_results "
                "WHERE record_id = ? AND pass_name = ? ORDER BY id DESC LIMIT 1",
                (record.record_id, pass_name),
            ).fetchone()
        return None if row is None else _result_from_row(row)

    def save_scores(self, record: AnalysisRecord, scores: Sequence[Score]) -> None:
        """Insert or replace scores keyed by record and metric."""
        with self._transaction() as connection:
            connection.executemany(
                "INSERT INTO scores (record_id, metric, value, created_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(record_id, metric) DO UPDATE SET "
                "value = excluded.value, created_at = excluded.created_at",
                [
                    (record.record_id, score.metric, score.value, score.created_at or _now())
                    for score in scores
                ],
            )

    def list_scores(self, record: AnalysisRecord) -> list[Score]:
        """Load the scores of a record ordered by metric."""
        with self._connection() as connection:
            rows = connection.execute(
                "SELECT record_id, metric, value, created_at FROM scores "
                "WHERE record_id = ? ORDER BY metric",
                (record.record_id,),
            ).fetchall()
        return [
            Score(record_id=int(row[0]), metric=row[1], value=float(row[2]), created_at=row[3])
            for row in rows
        ]

    def delete_record(self, record_id: int) -> None:
        """Delete a record; results and scores cascade."""
        with self._transaction() as connection:
            connection.execute("DELETE FROM analysis_records WHERE id = ?", (record_id,))

    def _insert_result(
        self, connection: sqlite3.Connection, record_id: int, result: PassResult
    ) -> None:
        completed = self._load_completed(connection, record_id)
        if result.pass_name in completed:
            raise DuplicatePassError(
                f"Pass '{result.pass_name}' already completed for record {record_id}."
            )
        try:
            connection.execute(
                f"INSERT INTO pass_results ({_RESULT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record_id,
                    result.pass_name,
                    result.input_text,
                    _dump_output(result.output, result.content_type),
                    result.content_type,
                    _dump_json(result.usage),
                    result.cost_estimate_usd,
                    result.created_at or _now(),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicatePassError(
                f"Pass '{result.pass_name}' already has a result for record {record_id}."
            ) from exc

    def _advance(
        self, connection: sqlite3.Connection, record_id: int, pass_name: str
    ) -> AnalysisRecord:
        completed = self._load_completed(connection, record_id)
        if pass_name in completed:
            raise DuplicatePassError(
                f"Pass '{pass_name}' already completed for record {record_id}."
            )
        completed.append(pass_name)
        connection.execute(
            "UPDATE analysis_records SET completed_passes = ?, "
            "current_pass_index = current_pass_index + 1 WHERE id = ?",
            (json.dumps(completed), record_id),
        )
        row = connection.execute(
            f"SELECT {_RECORD_COLUMNS} FROM analysis_records WHERE id = ?",
            (record_id,),
        ).fetchone()
        return _record_from_row(row)

    def _load_completed(self, connection: sqlite3.Connection, record_id: int) -> list[str]:
        row = connection.execute(
            "SELECT completed_passes FROM analysis_records WHERE id = ?",
            (record_id,),
        ).fetchone()
        if row is None:
            raise RecordNotFoundError(f"Analysis record {record_id} does not exist.")
        return list(json.loads(row[0] or "[]"))

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection with foreign keys enabled and the schema in place.

        Raises:
            PersistenceError: If SQLite reports an error.
        """
        try:
            connection = sqlite3.connect(self._db_path, timeout=self._busy_timeout_seconds)
        except sqlite3.Error as exc:
            logger.warning(f"SQLite connection failed (db_path={self._db_path} error={exc})")
            raise PersistenceError(str(exc)) from exc
        try:
            connection.execute("PRAGMA foreign_keys = ON")
            self._ensure_schema(connection=connection)
            yield connection
        except sqlite3.DatabaseError as exc:
            logger.warning(f"SQLite operation failed (db_path={self._db_path} error={exc})")
            raise PersistenceError(str(exc)) from exc
        finally:
            connection.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed writes in one immediate transaction.

        Any exception rolls the transaction back before propagating.
        """
        with self._connection() as connection:
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield connection
            except BaseException:
                connection.rollback()
                raise
            connection.commit()

    def _ensure_schema(self, connection: sqlite3.Connection) -> None:
        """Create required tables and indexes when missing.

        Args:
            connection: Open SQLite connection.
        """
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            connection.execute(
                "CREATE TABLE IF NOT EXISTS analysis_records ("
                "id INTEGER PRIMARY KEY, "
                "artifact_path TEXT NOT NULL UNIQUE, "
                "language TEXT, "
                "parsed_representation TEXT, "
                "current_pass_index INTEGER NOT NULL DEFAULT 0, "
                "completed_passes TEXT NOT NULL DEFAULT '[]', "
                "total_cost_usd REAL NOT NULL DEFAULT 0.0, "
                "created_at TEXT NOT NULL"
                ")"
            )
            connection.execute(
                "CREATE TABLE IF NOT EXISTS pass_results ("
                "id INTEGER PRIMARY KEY, "
                "record_id INTEGER NOT NULL REFERENCES analysis_records(id) ON DELETE CASCADE, "
                "pass_name TEXT NOT NULL, "
                "input_text TEXT NOT NULL, "
                "output TEXT, "
                "content_type TEXT NOT NULL, "
                "usage TEXT, "
                "cost_estimate_usd REAL, "
                "created_at TEXT NOT NULL, "
                "UNIQUE(record_id, pass_name)"
                ")"
            )
            connection.execute(
                "CREATE TABLE IF NOT EXISTS scores ("
                "id INTEGER PRIMARY KEY, "
                "record_id INTEGER NOT NULL REFERENCES analysis_records(id) ON DELETE CASCADE, "
                "metric TEXT NOT NULL, "
                "value REAL NOT NULL, "
                "created_at TEXT NOT NULL, "
                "UNIQUE(record_id, metric)"
                ")"
            )
            connection.execute(
                "CREATE INDEX IF NOT EXISTS idx_pass_results_record_id ON pass_results(record_id)"
            )
            connection.commit()
            self._schema_ready = True


def _now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _dump_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True)


def _dump_output(output: Any, content_type: str) -> str | None:
    if content_type == "json":
        return _dump_json(output)
    return None if output is None else str(output)


def _record_from_row(row: tuple[Any, ...]) -> AnalysisRecord:
    return AnalysisRecord(
        record_id=int(row[0]),
        artifact_path=row[1],
        language=row[2],
        parsed_representation=None if row[3] is None else json.loads(row[3]),
        current_pass_index=int(row[4]),
        completed_passes=tuple(json.loads(row[5] or "[]")),
        total_cost_usd=float(row[6] or 0.0),
    )


def _result_from_row(row: tuple[Any, ...]) -> PassResult:
    content_type = row[4]
    output = row[3]
    if content_type == "json" and output is not None:
        output = json.loads(output)
    return PassResult(
        record_id=int(row[0]),
        pass_name=row[1],
        input_text=row[2],
        output=output,
        content_type=content_type,
        usage=None if row[5] is None else json.loads(row[5]),
        cost_estimate_usd=None if row[6] is None else float(row[6]),
        created_at=row[7],
    )
