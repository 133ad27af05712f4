# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Batch orchestration of pending analysis records."""

import concurrent.futures
import logging
import time
import uuid
from dataclasses import dataclass, field

from cpa.backend import RunContext
from cpa.executor import PassExecutor, PassOutcome, RecordOutcome
from cpa.model import AnalysisRecord
from cpa.registry import EmptyPassOrderError, PassRegistry
from cpa.store import ArtifactStore, is_pending, missing_passes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordReport:
    """Summarize one record after a batch run.

    Attributes:
        record_id: Analysis record id.
        artifact_path: Artifact path.
        completed_passes: Final completed pass list.
        outcomes: Per-pass outcomes of this run.
        fully_completed: Whether no pass of the order is missing anymore.
        error: Record-level failure detail, if processing aborted.
    """

    record_id: int
    artifact_path: str
    completed_passes: tuple[str, ...]
    outcomes: list[PassOutcome]
    fully_completed: bool
    error: str | None = None

    @property
    def progressed(self) -> bool:
        """Whether at least one pass completed during this run."""
        return any(outcome.status == "completed" for outcome in self.outcomes)


@dataclass(frozen=True)
class BatchReport:
    """Summarize one batch run.

    Attributes:
        run_id: Run identifier used in log lines.
        dry_run: Whether the run was a dry run.
        pass_order: Pass order fixed for the run.
        records: Per-record reports ordered by record id.
    """

    run_id: str
    dry_run: bool
    pass_order: tuple[str, ...]
    records: list[RecordReport] = field(default_factory=list)

    @property
    def completed_records(self) -> int:
        """Records with no missing pass after the run."""
        return sum(1 for report in self.records if report.fully_completed)

    @property
    def progressed_records(self) -> int:
        """Records that completed at least one pass during the run."""
        return sum(1 for report in self.records if report.progressed)

    @property
    def stalled_records(self) -> int:
        """Records that made no progress during the run."""
        return sum(1 for report in self.records if not report.progressed)

    @property
    def failed_passes(self) -> int:
        """Pass failures across all records."""
        return sum(
            1
            for report in self.records
            for outcome in report.outcomes
            if outcome.status == "failed"
        )


class BatchRunner:
    """Run every pending record through the pass executor."""

    def __init__(
        self,
        store: ArtifactStore,
        registry: PassRegistry,
        executor: PassExecutor,
        progress_batch_size: int = 10,
        max_workers: int = 4,
    ) -> None:
        """Initialize the runner.

        Args:
            store: Store holding records.
            registry: Registry providing the pass order.
            executor: Executor processing one record.
            progress_batch_size: Emit a progress log line every N finished records.
            max_workers: Default number of records processed concurrently.

        Raises:
            ValueError: If ``progress_batch_size`` or ``max_workers`` is not greater
                than zero.
        """
        if progress_batch_size <= 0:
            raise ValueError("progress_batch_size must be > 0")
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        self._store = store
        self._registry = registry
        self._executor = executor
        self._progress_batch_size = progress_batch_size
        self._max_workers = max_workers

    def run_all(
        self,
        dry_run: bool = False,
        max_workers: int | None = None,
        strict_pending: bool = False,
    ) -> BatchReport:
        """Process all pending records.

        The pass order is read once and fixed for the whole run. Records are
        independent; a failure in one never affects another.

        Args:
            dry_run: Log intended passes without calling backends or writing.
            max_workers: Per-run concurrency limit; defaults to the runner's.
            strict_pending: Select records by missing pass names instead of
                by completed pass count.

        Returns:
            Batch report with per-record outcomes.

        Raises:
            ConfigurationError: If the registry itself is invalid.
            PersistenceError: If pending records cannot be loaded.
            ValueError: If ``max_workers`` is not greater than zero.
        """
        workers = self._max_workers if max_workers is None else max_workers
        if workers <= 0:
            raise ValueError("max_workers must be > 0")
        run = RunContext(run_id=uuid.uuid4().hex[:12], dry_run=dry_run)

        try:
            pass_order = tuple(self._registry.get_pass_order())
        except EmptyPassOrderError:
            logger.info(f"Pass order is empty; nothing to do (run_id={run.run_id})")
            return BatchReport(run_id=run.run_id, dry_run=dry_run, pass_order=())

        if strict_pending:
            pending = [
                record
                for record in self._store.list_records()
                if is_pending(record, pass_order, strict=True)
            ]
        else:
            pending = self._store.find_pending(pass_order)
        total = len(pending)
        logger.info(
            f"Batch started (run_id={run.run_id} pending={total} passes={len(pass_order)} "
            f"dry_run={dry_run} max_workers={workers})"
        )
        if total == 0:
            self._log_progress(run_id=run.run_id, completed=0, total=0, failed=0, eta_seconds=0)
            return BatchReport(run_id=run.run_id, dry_run=dry_run, pass_order=pass_order)

        reports: list[RecordReport] = []
        completed = 0
        failed = 0
        last_emitted_completed = 0
        cumulative_batch_seconds = 0.0
        cumulative_batch_calls = 0
        batch_started_at = time.monotonic()

        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as pool:
            future_to_record = {
                pool.submit(self._executor.run_missing_passes, record, pass_order, run): record
                for record in pending
            }
            for future in concurrent.futures.as_completed(future_to_record):
                record = future_to_record[future]
                report = self._collect(future=future, record=record, pass_order=pass_order, run=run)
                reports.append(report)
                if report.error is not None or any(
                    outcome.status == "failed" for outcome in report.outcomes
                ):
                    failed += 1

                completed += 1
                should_emit = completed % self._progress_batch_size == 0 or completed == total
                if should_emit:
                    now = time.monotonic()
                    elapsed_batch = now - batch_started_at
                    batch_calls = completed - last_emitted_completed
                    if batch_calls > 0:
                        cumulative_batch_seconds += elapsed_batch
                        cumulative_batch_calls += batch_calls
                    avg_seconds_per_call = (
                        cumulative_batch_seconds / cumulative_batch_calls
                        if cumulative_batch_calls > 0
                        else 0.0
                    )
                    remaining = total - completed
                    eta_seconds = int(round(remaining * avg_seconds_per_call))
                    self._log_progress(
                        run_id=run.run_id,
                        completed=completed,
                        total=total,
                        failed=failed,
                        eta_seconds=eta_seconds,
                    )
                    last_emitted_completed = completed
                    if completed != total:
                        batch_started_at = time.monotonic()

        reports.sort(key=lambda item: item.record_id)
        report = BatchReport(
            run_id=run.run_id, dry_run=dry_run, pass_order=pass_order, records=reports
        )
        logger.info(
            f"Batch finished (run_id={run.run_id} records={len(reports)} "
            f"completed_records={report.completed_records} "
            f"progressed_records={report.progressed_records} "
            f"stalled_records={report.stalled_records} failed_passes={report.failed_passes})"
        )
        return report

    def _collect(
        self,
        future: "concurrent.futures.Future[RecordOutcome]",
        record: AnalysisRecord,
        pass_order: tuple[str, ...],
        run: RunContext,
    ) -> RecordReport:
        try:
            outcome = future.result()
        except Exception as exc:
            logger.warning(
                f"Record processing aborted (run_id={run.run_id} "
                f"artifact={record.artifact_path} error={exc})"
            )
            return RecordReport(
                record_id=record.record_id,
                artifact_path=record.artifact_path,
                completed_passes=record.completed_passes,
                outcomes=[],
                fully_completed=not missing_passes(record, pass_order),
                error=str(exc),
            )
        final = outcome.record
        return RecordReport(
            record_id=final.record_id,
            artifact_path=final.artifact_path,
            completed_passes=final.completed_passes,
            outcomes=outcome.outcomes,
            fully_completed=not missing_passes(final, pass_order),
        )

    def _log_progress(
        self, run_id: str, completed: int, total: int, failed: int, eta_seconds: int
    ) -> None:
        """Emit structured progress log line.

        Args:
            run_id: Run identifier.
            completed: Number of records processed.
            total: Total records in the run.
            failed: Number of records with at least one failure.
            eta_seconds: Estimated seconds remaining.
        """
        percent = 100.0 if total == 0 else (completed / total) * 100.0
        logger.info(
            "pass_batch_progress run_id=%s completed=%s total=%s failed=%s percent=%.2f eta_seconds=%s",
            run_id,
            completed,
            total,
            failed,
            percent,
            eta_seconds,
        )
