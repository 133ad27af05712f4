import io
import json
import re
from pathlib import Path
from typing import Any

import pytest

from cli.pass_harness import run
from cpa.llm_client import Completion, CompletionError, Message

SCORING_OUTPUT = json.dumps(
    {
        "documentation_score": 70,
        "functionality_score": 80,
        "style_score": 90,
        "overall_score": 80,
        "summary": "Fine.",
    }
)

CONFIG = """
pass_order: [doc, score]
scoring:
  pass: score
passes:
  doc:
    kind: ai
    requires: both
    prompt_sections:
      base_prompt: Document the code.
  score:
    kind: ai
    requires: previous_results
    prompt_sections:
      base_prompt: Score the code.
"""


def _write_file(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _strip_ansi(text: str) -> str:
    return re.sub(r"\x1b\[[0-9;]*m", "", text)


class _DeterministicClient:
    def __init__(self, fail_operations: set[str] | None = None) -> None:
        self._fail_operations = fail_operations or set()
        self.operations: list[str] = []

    def perform_operation(
        self, operation_id: str, messages: list[Message], params: dict[str, Any]
    ) -> Completion:
        self.operations.append(operation_id)
        if operation_id in self._fail_operations:
            raise CompletionError("provider error")
        text = SCORING_OUTPUT if operation_id == "score" else f"{operation_id}::{len(messages)}"
        return Completion(text=text, usage={"total_tokens": 1000})


def _project(tmp_path: Path) -> tuple[Path, Path, Path]:
    root = tmp_path / "project"
    _write_file(root / "app.py", "def run() -> int:\n    return 1\n")
    _write_file(root / "util.py", "def helper() -> int:\n    return 2\n")
    config = tmp_path / "passes.yaml"
    _write_file(config, CONFIG)
    return root, config, tmp_path / "cpa.sqlite"


def _run(argv: list[str]) -> tuple[int, str, str]:
    stdout = io.StringIO()
    stderr = io.StringIO()
    exit_code = run(argv, stdout=stdout, stderr=stderr)
    return exit_code, _strip_ansi(stdout.getvalue()), stderr.getvalue()


def _process_args(root: Path, config: Path, db: Path, *extra: str) -> list[str]:
    return [
        "process",
        "--db",
        str(db),
        "--config",
        str(config),
        "--source-root",
        str(root),
        "--format",
        "json",
        *extra,
    ]


def test_cli_001_ingest_then_process_completes_all_passes(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    root, config, db = _project(tmp_path)
    client = _DeterministicClient()
    monkeypatch.setattr(
        "cli.pass_harness.build_llm_client", lambda provider, provider_url: client
    )

    ingest_code, ingest_out, _ = _run(
        ["ingest", "--db", str(db), "--path", str(root), "--format", "json"]
    )
    process_code, process_out, _ = _run(_process_args(root, config, db))

    assert ingest_code == 0
    assert json.loads(ingest_out)["records_upserted"] == 2
    assert process_code == 0
    payload = json.loads(process_out)
    assert payload["completed_records"] == 2
    assert payload["stalled_records"] == 0
    assert all(
        record["completed_passes"] == ["doc", "score"] for record in payload["records"]
    )
    assert client.operations.count("doc") == 2


def test_cli_002_status_reports_progress_cost_and_scores(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    root, config, db = _project(tmp_path)
    monkeypatch.setattr(
        "cli.pass_harness.build_llm_client",
        lambda provider, provider_url: _DeterministicClient(fail_operations={"doc"}),
    )
    _run(["ingest", "--db", str(db), "--path", str(root)])
    _run(_process_args(root, config, db))

    exit_code, stdout, _ = _run(
        ["status", "--db", str(db), "--config", str(config), "--format", "json"]
    )

    assert exit_code == 0
    records = json.loads(stdout)["records"]
    assert [record["artifact_path"] for record in records] == ["app.py", "util.py"]
    for record in records:
        assert record["completed_passes"] == ["score"]
        assert record["missing_passes"] == ["doc"]
        assert record["total_cost_usd"] == pytest.approx(0.002)
        assert record["scores"]["overall_score"] == 80.0


def test_cli_003_dry_run_does_not_call_provider(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    root, config, db = _project(tmp_path)
    client = _DeterministicClient()
    monkeypatch.setattr(
        "cli.pass_harness.build_llm_client", lambda provider, provider_url: client
    )
    _run(["ingest", "--db", str(db), "--path", str(root)])

    exit_code, stdout, _ = _run(_process_args(root, config, db, "--dry-run"))

    assert exit_code == 0
    assert client.operations == []
    payload = json.loads(stdout)
    assert payload["dry_run"] is True
    assert payload["progressed_records"] == 0


def test_cli_004_invalid_configuration_exits_with_code_2(tmp_path: Path) -> None:
    root, _, db = _project(tmp_path)
    config = tmp_path / "broken.yaml"
    _write_file(config, "pass_order: [doc, ghost]\npasses:\n  doc:\n    kind: none\n")

    exit_code, _, stderr = _run(_process_args(root, config, db))

    assert exit_code == 2
    assert "Configuration error" in stderr
    assert "ghost" in stderr


def test_cli_005_missing_ingest_path_exits_with_code_2(tmp_path: Path) -> None:
    exit_code, _, stderr = _run(
        ["ingest", "--db", str(tmp_path / "cpa.sqlite"), "--path", str(tmp_path / "absent")]
    )

    assert exit_code == 2
    assert "Path is not a directory" in stderr


def test_cli_006_passes_command_lists_order_as_table(tmp_path: Path) -> None:
    _, config, _ = _project(tmp_path)

    exit_code, stdout, _ = _run(["passes", "--config", str(config)])

    assert exit_code == 0
    assert "pass order" in stdout
    assert "doc" in stdout
    assert "score" in stdout
    assert stdout.index("doc") < stdout.index("score")


def test_cli_007_json_output_file_is_written(tmp_path: Path) -> None:
    _, config, _ = _project(tmp_path)
    output_path = tmp_path / "out" / "passes.json"

    exit_code, stdout, _ = _run(
        ["passes", "--config", str(config), "--format", "json", "--output", str(output_path)]
    )

    assert exit_code == 0
    assert stdout == ""
    payload = json.loads(output_path.read_text(encoding="utf-8"))
    assert [item["name"] for item in payload["passes"]] == ["doc", "score"]
    assert payload["passes"][1]["scoring"] is True


def test_cli_008_invalid_arguments_exit_with_code_2(tmp_path: Path) -> None:
    root, config, db = _project(tmp_path)

    assert _run(["process", "--db", str(db)])[0] == 2
    assert _run(_process_args(root, config, db, "--max-workers", "0"))[0] == 2
    assert _run(_process_args(root, config, db, "--provider", "acme"))[0] == 2
