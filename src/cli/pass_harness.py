# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""CLI harness for ingesting artifacts and running analysis passes."""

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Literal, TextIO

from rich.console import Console
from rich.logging import RichHandler
from rich.style import Style
from rich.table import Table

from cpa.backends import AIBackend, StaticToolBackend
from cpa.batch import BatchReport, BatchRunner
from cpa.database import SQLiteArtifactStore
from cpa.executor import BackendSet, PassExecutor, PassOutcome
from cpa.ingest import ArtifactIngestor, IngestSummary
from cpa.llm import OPENAI_DEFAULT_BASE_URL, OllamaClient, OpenAIClient
from cpa.llm_client import CompletionClient
from cpa.registry import ConfigurationError, EmptyPassOrderError, PassRegistry
from cpa.scoring import ScoreAggregator
from cpa.store import PersistenceError, missing_passes

logger = logging.getLogger(__name__)

Provider = Literal["openai", "ollama"]

DEFAULT_PROVIDER_URLS: dict[str, str] = {
    "openai": OPENAI_DEFAULT_BASE_URL,
    "ollama": "http://localhost:11434",
}


def configure_logging(level: int = logging.INFO) -> None:
    """Configure application logging with Rich handler.

    Args:
        level: Logging severity threshold.
    """
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the top-level CLI parser.

    Returns:
        Configured argument parser instance.
    """
    parser = argparse.ArgumentParser(prog="cpa")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    passes_parser = subparsers.add_parser("passes", help="Show the configured pass order.")
    passes_parser.add_argument("--config", required=True, help="Pass configuration YAML file.")
    _add_format_arguments(passes_parser)

    ingest_parser = subparsers.add_parser("ingest", help="Register source files as records.")
    ingest_parser.add_argument("--db", required=True, help="SQLite database path.")
    ingest_parser.add_argument("--path", required=True, help="Root path to ingest.")
    _add_format_arguments(ingest_parser)

    process_parser = subparsers.add_parser("process", help="Run pending passes.")
    process_parser.add_argument("--db", required=True, help="SQLite database path.")
    process_parser.add_argument("--config", required=True, help="Pass configuration YAML file.")
    process_parser.add_argument(
        "--source-root",
        required=False,
        help="Directory relative artifact paths are resolved against.",
    )
    process_parser.add_argument(
        "--provider",
        choices=("openai", "ollama"),
        default="openai",
        help="Completion provider for AI passes.",
    )
    process_parser.add_argument(
        "--provider-url", required=False, help="Provider API endpoint URL."
    )
    process_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Log the passes that would run without calling backends or writing.",
    )
    process_parser.add_argument(
        "--max-workers", type=int, default=4, help="Records processed concurrently."
    )
    process_parser.add_argument(
        "--strict-pending",
        action="store_true",
        help="Select records by missing pass names instead of completed pass count.",
    )
    process_parser.add_argument(
        "--progress-batch-size",
        type=int,
        default=10,
        help="Emit progress line every N finished records.",
    )
    _add_format_arguments(process_parser)

    status_parser = subparsers.add_parser("status", help="Show per-record progress.")
    status_parser.add_argument("--db", required=True, help="SQLite database path.")
    status_parser.add_argument("--config", required=True, help="Pass configuration YAML file.")
    _add_format_arguments(status_parser)
    return parser


def _add_format_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--format",
        choices=("table", "json"),
        default="table",
        help="Output format.",
    )
    parser.add_argument(
        "--output",
        required=False,
        help="Optional output file path for raw JSON when --format json is used.",
    )


def run(argv: list[str], stdout: TextIO, stderr: TextIO) -> int:
    """Run CLI command.

    Args:
        argv: CLI arguments.
        stdout: Standard output stream.
        stderr: Standard error stream.

    Returns:
        Exit code.
    """
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit:
        logger.warning(f"Argument parsing failed (argv={argv})")
        return 2
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        if args.command == "passes":
            return _run_passes(args=args, stdout=stdout, stderr=stderr)
        if args.command == "ingest":
            return _run_ingest(args=args, stdout=stdout, stderr=stderr)
        if args.command == "process":
            return _run_process(args=args, stdout=stdout, stderr=stderr)
        if args.command == "status":
            return _run_status(args=args, stdout=stdout, stderr=stderr)
    except ConfigurationError as exc:
        logger.warning(f"Invalid pass configuration (command={args.command} error={exc})")
        stderr.write(f"Configuration error: {exc}\n")
        return 2
    except PersistenceError as exc:
        logger.warning(f"Store failure (command={args.command} error={exc})")
        stderr.write(f"Persistence error: {exc}\n")
        return 2

    logger.warning(f"Unsupported command (command={args.command})")
    stderr.write(f"Unsupported command: {args.command}\n")
    return 2


def _run_passes(args: argparse.Namespace, stdout: TextIO, stderr: TextIO) -> int:
    """Run passes command.

    Args:
        args: Parsed CLI arguments.
        stdout: Standard output stream.
        stderr: Standard error stream.

    Returns:
        Exit code.
    """
    registry = PassRegistry.from_yaml(Path(args.config))
    try:
        pass_order = registry.get_pass_order()
    except EmptyPassOrderError:
        pass_order = []
    rows: list[dict[str, Any]] = []
    for position, name in enumerate(pass_order):
        definition = registry.get_definition(name)
        rows.append(
            {
                "position": position,
                "name": name,
                "kind": definition.kind,
                "requires": definition.requires,
                "model": registry.get_model(definition.model).model_name
                if definition.kind == "ai"
                else None,
                "tool": definition.tool.name if definition.tool else None,
                "scoring": name == registry.scoring_pass,
            }
        )
    payload = {"passes": rows}
    if args.format == "json":
        return _emit_json(payload=payload, args=args, stdout=stdout, stderr=stderr)
    _write_rows_table(
        title="pass order",
        columns=["position", "name", "kind", "requires", "model", "tool", "scoring"],
        rows=rows,
        stdout=stdout,
    )
    return 0


def _run_ingest(args: argparse.Namespace, stdout: TextIO, stderr: TextIO) -> int:
    """Run ingest command.

    Args:
        args: Parsed CLI arguments.
        stdout: Standard output stream.
        stderr: Standard error stream.

    Returns:
        Exit code.
    """
    root_path = Path(args.path)
    if not root_path.is_dir():
        logger.warning(f"Path is not a directory (path={root_path})")
        stderr.write(f"Path is not a directory: {root_path}\n")
        return 2

    store = SQLiteArtifactStore(Path(args.db))
    try:
        summary = ArtifactIngestor(store=store).ingest(root_path)
    except OSError as exc:
        logger.warning(f"Ingest failed (path={root_path} error={exc})")
        stderr.write(f"Ingest failed: {exc}\n")
        return 2
    _write_ingest_errors(summary=summary, stderr=stderr)
    if args.format == "json":
        return _emit_json(payload=asdict(summary), args=args, stdout=stdout, stderr=stderr)
    _write_rows_table(
        title=str(root_path.resolve()),
        columns=["records_upserted", "files_parsed", "paths_skipped_by_gitignore", "errors"],
        rows=[
            {
                "records_upserted": summary.records_upserted,
                "files_parsed": summary.files_parsed,
                "paths_skipped_by_gitignore": summary.paths_skipped_by_gitignore,
                "errors": len(summary.errors),
            }
        ],
        stdout=stdout,
    )
    return 0


def _run_process(args: argparse.Namespace, stdout: TextIO, stderr: TextIO) -> int:
    """Run process command.

    Args:
        args: Parsed CLI arguments.
        stdout: Standard output stream.
        stderr: Standard error stream.

    Returns:
        Exit code.
    """
    if args.max_workers <= 0:
        logger.warning(f"Invalid worker count (max_workers={args.max_workers})")
        stderr.write("max-workers must be > 0\n")
        return 2
    if args.progress_batch_size <= 0:
        logger.warning(
            f"Invalid progress batch size (progress_batch_size={args.progress_batch_size})"
        )
        stderr.write("progress-batch-size must be > 0\n")
        return 2
    source_root = Path(args.source_root).resolve() if args.source_root else None
    if source_root is not None and not source_root.is_dir():
        logger.warning(f"Source root is not a directory (path={source_root})")
        stderr.write(f"Source root is not a directory: {source_root}\n")
        return 2

    registry = PassRegistry.from_yaml(Path(args.config))
    store = SQLiteArtifactStore(Path(args.db))
    provider_url = args.provider_url or DEFAULT_PROVIDER_URLS[args.provider]
    llm_client = build_llm_client(provider=args.provider, provider_url=provider_url)
    backends = BackendSet(
        ai=AIBackend(client=llm_client, registry=registry),
        static_tool=StaticToolBackend(working_dir=source_root),
    )
    executor = PassExecutor(
        store=store,
        registry=registry,
        backends=backends,
        scorer=ScoreAggregator(store=store, registry=registry),
        source_root=source_root,
    )
    report = BatchRunner(
        store=store,
        registry=registry,
        executor=executor,
        progress_batch_size=args.progress_batch_size,
        max_workers=args.max_workers,
    ).run_all(dry_run=args.dry_run, strict_pending=args.strict_pending)

    if args.format == "json":
        return _emit_json(
            payload=_batch_payload(report), args=args, stdout=stdout, stderr=stderr
        )
    _write_rows_table(
        title=f"run {report.run_id}" + (" (dry run)" if report.dry_run else ""),
        columns=["artifact_path", "completed", "failed", "skipped", "done", "error"],
        rows=[
            {
                "artifact_path": record.artifact_path,
                "completed": _names(record.outcomes, "completed"),
                "failed": _names(record.outcomes, "failed"),
                "skipped": _names(record.outcomes, "skipped"),
                "done": record.fully_completed,
                "error": record.error or "",
            }
            for record in report.records
        ],
        stdout=stdout,
    )
    Console(file=stdout, force_terminal=False).print(
        f"completed_records={report.completed_records} "
        f"progressed_records={report.progressed_records} "
        f"stalled_records={report.stalled_records}",
        markup=False,
        highlight=False,
    )
    return 0


def _run_status(args: argparse.Namespace, stdout: TextIO, stderr: TextIO) -> int:
    """Run status command.

    Args:
        args: Parsed CLI arguments.
        stdout: Standard output stream.
        stderr: Standard error stream.

    Returns:
        Exit code.
    """
    registry = PassRegistry.from_yaml(Path(args.config))
    try:
        pass_order = registry.get_pass_order()
    except EmptyPassOrderError:
        pass_order = []
    store = SQLiteArtifactStore(Path(args.db))
    rows: list[dict[str, Any]] = []
    for record in store.list_records():
        scores = {score.metric: score.value for score in store.list_scores(record)}
        rows.append(
            {
                "artifact_path": record.artifact_path,
                "language": record.language,
                "current_pass_index": record.current_pass_index,
                "completed_passes": list(record.completed_passes),
                "missing_passes": missing_passes(record, pass_order),
                "total_cost_usd": record.total_cost_usd,
                "scores": scores,
            }
        )
    if args.format == "json":
        return _emit_json(payload={"records": rows}, args=args, stdout=stdout, stderr=stderr)
    _write_rows_table(
        title="analysis records",
        columns=[
            "artifact_path",
            "language",
            "current_pass_index",
            "completed_passes",
            "missing_passes",
            "total_cost_usd",
            "scores",
        ],
        rows=rows,
        stdout=stdout,
    )
    return 0


def build_llm_client(provider: Provider, provider_url: str) -> CompletionClient:
    """Create the configured completion client.

    Args:
        provider: Provider name.
        provider_url: Provider endpoint URL.

    Returns:
        Configured completion client.
    """
    if provider == "ollama":
        return OllamaClient(provider_url=provider_url)
    return OpenAIClient(provider_url=provider_url)


def _names(outcomes: list[PassOutcome], status: str) -> str:
    return ", ".join(outcome.pass_name for outcome in outcomes if outcome.status == status)


def _batch_payload(report: BatchReport) -> dict[str, Any]:
    payload = asdict(report)
    payload["completed_records"] = report.completed_records
    payload["progressed_records"] = report.progressed_records
    payload["stalled_records"] = report.stalled_records
    payload["failed_passes"] = report.failed_passes
    return payload


def _write_ingest_errors(summary: IngestSummary, stderr: TextIO) -> None:
    """Write recoverable ingest errors to stderr.

    Args:
        summary: Ingest summary.
        stderr: Standard error stream.
    """
    for error in summary.errors:
        stderr.write(f"ingest_error: {error}\n")


def _emit_json(
    payload: dict[str, Any], args: argparse.Namespace, stdout: TextIO, stderr: TextIO
) -> int:
    if not args.output:
        _write_json(payload=payload, stdout=stdout)
        return 0
    try:
        _write_json_file(payload=payload, output_path=Path(args.output))
    except OSError as exc:
        logger.warning(
            f"Failed to write JSON output file (output_path={args.output} error={exc})"
        )
        stderr.write(f"Failed to write JSON output file: {args.output}\n")
        return 2
    return 0


def _write_json(payload: dict[str, Any], stdout: TextIO) -> None:
    """Write a payload in JSON format.

    Args:
        payload: JSON-serializable payload.
        stdout: Standard output stream.
    """
    console = Console(file=stdout, force_terminal=False, color_system="truecolor")
    console.print(
        json.dumps(payload, indent=2, sort_keys=True),
        markup=False,
        highlight=False,
        soft_wrap=True,
    )


def _write_json_file(payload: dict[str, Any], output_path: Path) -> None:
    """Write raw JSON payload to an output file.

    Args:
        payload: JSON-serializable payload.
        output_path: Target file path.

    Raises:
        OSError: If directory creation or file writing fails.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")


def _write_rows_table(
    title: str, columns: list[str], rows: list[dict[str, Any]], stdout: TextIO
) -> None:
    """Write rows as a rich table.

    Args:
        title: Rule text printed above the table.
        columns: Column keys in display order.
        rows: Row mappings keyed by column.
        stdout: Standard output stream.
    """
    console = Console(file=stdout, force_terminal=False, color_system="truecolor")
    console.rule(title, style=Style(color="cyan"), characters="-")
    table = Table(show_header=True, show_lines=True, expand=True)
    for column in columns:
        table.add_column(column, overflow="fold")
    for row in rows:
        table.add_row(*[_cell(row.get(column)) for column in columns])
    console.print(table)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    if isinstance(value, dict):
        return ", ".join(f"{key}={item:g}" for key, item in sorted(value.items()))
    return str(value)


def main() -> None:
    """Run the CLI application and exit."""
    configure_logging()
    exit_code = run(sys.argv[1:], stdout=sys.stdout, stderr=sys.stderr)
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
