# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Per-record pass execution."""

import json
import logging
import threading
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from cpa.backend import (
    Backend,
    BackendInvocationError,
    BackendUnavailableError,
    InvocationContext,
    RunContext,
)
from cpa.model import AnalysisRecord, PassResult
from cpa.registry import PassDefinition, PassKind, PassRegistry
from cpa.scoring import MalformedScoreError, ScoreAggregator
from cpa.store import ArtifactStore, DuplicatePassError, missing_passes

logger = logging.getLogger(__name__)

PassStatus = Literal["completed", "failed", "skipped"]
PREVIOUS_RESULTS_SEPARATOR = "\n\n---\n\n"


@dataclass(frozen=True)
class PassOutcome:
    """Represent what happened to one pass during a run."""

    pass_name: str
    status: PassStatus
    detail: str | None = None


@dataclass(frozen=True)
class RecordOutcome:
    """Represent the result of running a record's missing passes.

    Attributes:
        record: Record state after the run.
        outcomes: Per-pass outcomes in execution order.
    """

    record: AnalysisRecord
    outcomes: list[PassOutcome] = field(default_factory=list)

    @property
    def completed_count(self) -> int:
        """Number of passes completed during this run."""
        return sum(1 for outcome in self.outcomes if outcome.status == "completed")

    @property
    def failed_count(self) -> int:
        """Number of passes that failed during this run."""
        return sum(1 for outcome in self.outcomes if outcome.status == "failed")


@dataclass(frozen=True)
class BackendSet:
    """Map backend kinds to backend instances."""

    ai: Backend | None = None
    static_tool: Backend | None = None

    def for_kind(self, kind: PassKind) -> Backend:
        """Return the backend serving a pass kind.

        Raises:
            BackendUnavailableError: If no backend is configured for the kind.
        """
        backend = {"ai": self.ai, "static_tool": self.static_tool}.get(kind)
        if backend is None:
            raise BackendUnavailableError(f"No backend configured for pass kind '{kind}'.")
        return backend


class _RecordLocks:
    """Hand out one lock per record id; entries are dropped once unused."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[int, threading.Lock] = {}
        self._holders: dict[int, int] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, record_id: int) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(record_id, threading.Lock())
            self._holders[record_id] = self._holders.get(record_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._holders[record_id] -= 1
                if self._holders[record_id] == 0:
                    del self._holders[record_id]
                    del self._locks[record_id]


class PassExecutor:
    """Run the missing passes of one record in global pass order."""

    def __init__(
        self,
        store: ArtifactStore,
        registry: PassRegistry,
        backends: BackendSet,
        scorer: ScoreAggregator | None = None,
        source_root: Path | None = None,
    ) -> None:
        """Initialize the executor.

        Args:
            store: Store holding records and results.
            registry: Pass catalog and order.
            backends: Backends per pass kind.
            scorer: Score aggregator triggered after the scoring pass.
            source_root: Directory relative artifact paths are resolved against.
        """
        self._store = store
        self._registry = registry
        self._backends = backends
        self._scorer = scorer
        self._source_root = source_root
        self._locks = _RecordLocks()

    def run_missing_passes(
        self,
        record: AnalysisRecord,
        pass_order: Sequence[str] | None = None,
        run: RunContext | None = None,
    ) -> RecordOutcome:
        """Run every pass the record has not completed.

        Backend failures, including unexpected exceptions, are logged and
        reported per pass; the remaining passes still run. Completion is
        persisted pass by pass, so an interrupted run resumes where it
        stopped. In dry-run mode no backend is called and nothing is written.

        Args:
            record: Record to process; its state is reloaded before running.
            pass_order: Pass order fixed for the current batch; read from the
                registry when omitted.
            run: Run identity and dry-run flag.

        Returns:
            Updated record and per-pass outcomes.

        Raises:
            ConfigurationError: If the registry cannot provide the order or a definition.
            PersistenceError: If the store fails.
        """
        run = run or RunContext(run_id=uuid.uuid4().hex)
        order = list(pass_order) if pass_order is not None else self._registry.get_pass_order()

        with self._locks.hold(record.record_id):
            current = self._store.get_record(record.record_id)
            missing = missing_passes(current, order)
            if not missing:
                logger.debug(
                    f"No missing passes (run_id={run.run_id} artifact={current.artifact_path})"
                )
                return RecordOutcome(record=current)

            outcomes: list[PassOutcome] = []
            source_cache: dict[str, str] = {}
            for pass_name in missing:
                definition = self._registry.get_definition(pass_name)
                if definition.kind == "none":
                    logger.debug(
                        f"Skipping pass without backend (run_id={run.run_id} "
                        f"artifact={current.artifact_path} pass={pass_name})"
                    )
                    outcomes.append(PassOutcome(pass_name, "skipped", "no backend"))
                    continue

                context = self._build_context(current, definition, run, source_cache)
                if run.dry_run:
                    logger.info(
                        f"[DRY-RUN] would run pass (run_id={run.run_id} "
                        f"artifact={current.artifact_path} pass={pass_name} kind={definition.kind})"
                    )
                    outcomes.append(PassOutcome(pass_name, "skipped", "dry run"))
                    continue

                current, outcome = self._run_pass(current, definition, context)
                outcomes.append(outcome)

        logger.info(
            f"Record processed (run_id={run.run_id} artifact={current.artifact_path} "
            f"completed={sum(1 for o in outcomes if o.status == 'completed')} "
            f"failed={sum(1 for o in outcomes if o.status == 'failed')} "
            f"skipped={sum(1 for o in outcomes if o.status == 'skipped')})"
        )
        return RecordOutcome(record=current, outcomes=outcomes)

    def _run_pass(
        self,
        record: AnalysisRecord,
        definition: PassDefinition,
        context: InvocationContext,
    ) -> tuple[AnalysisRecord, PassOutcome]:
        run_id = context.run.run_id
        try:
            output = self._backends.for_kind(definition.kind).invoke(definition, context)
        except (BackendUnavailableError, BackendInvocationError) as exc:
            logger.warning(
                f"Pass failed (run_id={run_id} artifact={record.artifact_path} "
                f"pass={definition.name} error={exc})"
            )
            return record, PassOutcome(definition.name, "failed", str(exc))
        except Exception as exc:
            logger.exception(
                f"Pass crashed (run_id={run_id} artifact={record.artifact_path} "
                f"pass={definition.name} error={exc})"
            )
            return record, PassOutcome(definition.name, "failed", str(exc))

        result = PassResult(
            record_id=record.record_id,
            pass_name=definition.name,
            input_text=output.input_text,
            output=output.payload,
            content_type=output.content_type,
            usage=output.usage,
            cost_estimate_usd=output.cost_estimate_usd,
        )
        try:
            advanced = self._store.complete_pass(record, result)
        except DuplicatePassError as exc:
            logger.info(
                f"Pass already recorded; skipping (run_id={run_id} "
                f"artifact={record.artifact_path} pass={definition.name} detail={exc})"
            )
            return record, PassOutcome(definition.name, "skipped", "already completed")

        logger.info(
            f"Pass completed (run_id={run_id} artifact={record.artifact_path} "
            f"pass={definition.name} pass_index={advanced.current_pass_index} "
            f"cost_usd={output.cost_estimate_usd})"
        )
        if definition.name == self._registry.scoring_pass and self._scorer is not None:
            try:
                self._scorer.compute_scores(advanced)
            except MalformedScoreError as exc:
                logger.warning(
                    f"Scores not computed (run_id={run_id} artifact={record.artifact_path} "
                    f"pass={definition.name} error={exc})"
                )
        return advanced, PassOutcome(definition.name, "completed")

    def _build_context(
        self,
        record: AnalysisRecord,
        definition: PassDefinition,
        run: RunContext,
        source_cache: dict[str, str],
    ) -> InvocationContext:
        file_path = self._resolve_path(record.artifact_path)
        requires = definition.requires
        raw_source = None
        parsed_representation = None
        previous_results = None
        if requires in {"raw", "both"}:
            if file_path not in source_cache:
                source_cache[file_path] = self._read_source(file_path)
            raw_source = source_cache[file_path]
        if requires in {"parsed", "both"}:
            parsed_representation = record.parsed_representation
        if requires == "previous_results":
            previous_results = PREVIOUS_RESULTS_SEPARATOR.join(
                _render_result(result) for result in self._store.list_results(record)
            )
        return InvocationContext(
            run=run,
            record_id=record.record_id,
            artifact_path=record.artifact_path,
            file_path=file_path,
            language=record.language,
            raw_source=raw_source,
            parsed_representation=parsed_representation,
            previous_results=previous_results,
        )

    def _resolve_path(self, artifact_path: str) -> str:
        path = Path(artifact_path)
        if self._source_root is not None and not path.is_absolute():
            path = self._source_root / path
        return str(path)

    def _read_source(self, file_path: str) -> str:
        try:
            return Path(file_path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning(f"Raw source unavailable (file_path={file_path} error={exc})")
            return ""


def _render_result(result: PassResult) -> str:
    if result.content_type == "json":
        body = json.dumps(result.output, indent=2, sort_keys=True)
    else:
        body = str(result.output)
    return f"[{result.pass_name}]\n{body}"
