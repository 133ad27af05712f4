import json
import sys
from pathlib import Path
from typing import Any

import pytest

from cpa.backend import (
    BackendInvocationError,
    BackendUnavailableError,
    InvocationContext,
    RunContext,
)
from cpa.backends import AIBackend, StaticToolBackend
from cpa.backends.ai import build_request_params, estimate_cost
from cpa.backends.static_tool import which_or_raise
from cpa.llm_client import Completion, CompletionError, CompletionUnavailableError, Message
from cpa.prompt import SECTION_END, SECTION_START, PromptBuilder
from cpa.registry import PassRegistry


class _RecordingClient:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[tuple[str, list[Message], dict[str, Any]]] = []
        self._error = error

    def perform_operation(
        self, operation_id: str, messages: list[Message], params: dict[str, Any]
    ) -> Completion:
        self.calls.append((operation_id, messages, params))
        if self._error is not None:
            raise self._error
        return Completion(
            text="analysis text",
            usage={"prompt_tokens": 1200, "completion_tokens": 300, "total_tokens": 1500},
        )


def _registry(**pass_overrides: Any) -> PassRegistry:
    doc_pass: dict[str, Any] = {
        "kind": "ai",
        "requires": "both",
        "prompt_sections": {
            "base_prompt": "Document this code.",
            "guidelines": ["Be brief.", "Use Markdown."],
            "example": "## f\nReturns one.",
            "response_format": "Markdown.",
        },
    }
    doc_pass.update(pass_overrides)
    return PassRegistry.from_mapping(
        {
            "defaults": {"model": "gpt-4o-mini", "max_tokens": 500, "temperature": 0.5},
            "models": {
                "gpt-4o-mini": {"model_name": "gpt-4o-mini", "max_tokens": 1500},
                "o3-mini": {
                    "model_name": "o3-mini",
                    "supports_system_message": False,
                    "token_limit_parameter": "max_completion_tokens",
                },
            },
            "pass_order": ["doc"],
            "passes": {"doc": doc_pass},
            "cost_per_1k_tokens": 0.002,
        }
    )


def _context(**overrides: Any) -> InvocationContext:
    values: dict[str, Any] = {
        "run": RunContext(run_id="run-1"),
        "record_id": 1,
        "artifact_path": "pkg/sample.py",
        "file_path": "pkg/sample.py",
        "language": "python",
        "raw_source": "def f():\n    return 1\n",
        "parsed_representation": {"kind": "module", "children": []},
    }
    values.update(overrides)
    return InvocationContext(**values)


def test_bk_001_prompt_contains_delimited_context_and_template_sections() -> None:
    definition = _registry().get_definition("doc")

    prompt = PromptBuilder(definition).build_prompt(_context())

    assert prompt.startswith("Document this code.")
    assert f"{SECTION_START}\n[PARSED REPRESENTATION]" in prompt
    assert f"[RAW CODE]\ndef f():\n    return 1\n\n{SECTION_END}" in prompt
    assert "[GUIDELINES]\nBe brief.\nUse Markdown." in prompt
    assert "[EXAMPLE]\n## f\nReturns one." in prompt
    assert "[RESPONSE FORMAT]\nMarkdown." in prompt
    assert "[PREVIOUS ANALYSIS RESULTS]" not in prompt
    assert prompt.index("[PARSED REPRESENTATION]") < prompt.index("[RAW CODE]")


def test_bk_002_prompt_honours_requires_and_omits_empty_context() -> None:
    raw_only = _registry(requires="raw").get_definition("doc")
    previous = _registry(requires="previous_results").get_definition("doc")

    raw_prompt = PromptBuilder(raw_only).build_prompt(_context())
    empty_previous = PromptBuilder(previous).build_prompt(_context(previous_results=""))
    with_previous = PromptBuilder(previous).build_prompt(
        _context(previous_results="[doc]\nDocs here.")
    )

    assert "[RAW CODE]" in raw_prompt
    assert "[PARSED REPRESENTATION]" not in raw_prompt
    assert "[PREVIOUS ANALYSIS RESULTS]" not in empty_previous
    assert "[RAW CODE]" not in empty_previous
    assert "[PREVIOUS ANALYSIS RESULTS]\n[doc]\nDocs here." in with_previous


def test_bk_003_system_message_is_folded_when_model_lacks_support() -> None:
    definition = _registry(system_message="You are a reviewer.").get_definition("doc")

    with_system = PromptBuilder(definition).build_messages(_context())
    folded = PromptBuilder(definition, supports_system_message=False).build_messages(_context())

    assert [message["role"] for message in with_system] == ["system", "user"]
    assert with_system[0]["content"] == "You are a reviewer."
    assert len(folded) == 1
    assert folded[0]["role"] == "user"
    assert folded[0]["content"].startswith("You are a reviewer.\n\nDocument this code.")


def test_bk_004_request_params_follow_pass_model_default_precedence() -> None:
    registry = _registry(max_tokens=900)
    definition = registry.get_definition("doc")

    params = build_request_params(definition, registry.get_model(None), registry.defaults)
    reasoning = build_request_params(
        registry.get_definition("doc"), registry.get_model("o3-mini"), registry.defaults
    )

    assert params == {"model": "gpt-4o-mini", "temperature": 0.5, "max_tokens": 900}
    assert reasoning["max_completion_tokens"] == 900
    assert "max_tokens" not in reasoning


def test_bk_005_estimate_cost_uses_total_tokens() -> None:
    assert estimate_cost({"total_tokens": 1500}, 0.002) == 0.003
    assert estimate_cost(None, 0.002) is None
    assert estimate_cost({}, 0.002) is None


def test_bk_006_ai_backend_returns_text_usage_and_cost() -> None:
    registry = _registry()
    client = _RecordingClient()

    output = AIBackend(client=client, registry=registry).invoke(
        registry.get_definition("doc"), _context()
    )

    assert output.payload == "analysis text"
    assert output.content_type == "text"
    assert output.usage == {"prompt_tokens": 1200, "completion_tokens": 300, "total_tokens": 1500}
    assert output.cost_estimate_usd == pytest.approx(0.003)
    operation_id, messages, params = client.calls[0]
    assert operation_id == "doc"
    assert json.loads(output.input_text) == messages
    assert params["max_tokens"] == 1500


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (CompletionUnavailableError("no api key"), BackendUnavailableError),
        (CompletionError("rate limited"), BackendInvocationError),
    ],
)
def test_bk_007_ai_backend_maps_client_errors(
    error: Exception, expected: type[Exception]
) -> None:
    registry = _registry()
    backend = AIBackend(client=_RecordingClient(error=error), registry=registry)

    with pytest.raises(expected):
        backend.invoke(registry.get_definition("doc"), _context())


def _tool_registry(code: str, **tool_overrides: Any) -> PassRegistry:
    tool: dict[str, Any] = {
        "name": "fake-lint",
        "command": sys.executable,
        "options": ["-c", code],
        "output_format": "json",
    }
    tool.update(tool_overrides)
    return PassRegistry.from_mapping(
        {
            "pass_order": ["lint"],
            "passes": {"lint": {"kind": "static_tool", "requires": "raw", "tool": tool}},
        }
    )


def test_bk_008_static_tool_parses_json_findings(tmp_path: Path) -> None:
    target = tmp_path / "sample.py"
    target.write_text("x = 1\n", encoding="utf-8")
    code = "import json, sys; print(json.dumps([{'file': sys.argv[1], 'code': 'E1'}]))"
    registry = _tool_registry(code)

    output = StaticToolBackend().invoke(
        registry.get_definition("lint"), _context(file_path=str(target))
    )

    assert output.content_type == "json"
    assert output.payload == [{"file": str(target), "code": "E1"}]
    assert output.usage is None
    assert str(target) in output.input_text


def test_bk_009_static_tool_returns_text_output(tmp_path: Path) -> None:
    registry = _tool_registry("print('  all clean  ')", output_format="text")

    output = StaticToolBackend().invoke(
        registry.get_definition("lint"), _context(file_path=str(tmp_path / "a.py"))
    )

    assert output.payload == "all clean"
    assert output.content_type == "text"


def test_bk_010_static_tool_rejects_unaccepted_exit_code(tmp_path: Path) -> None:
    registry = _tool_registry("import sys; sys.stderr.write('boom'); sys.exit(3)")

    with pytest.raises(BackendInvocationError, match="exited with code 3: boom"):
        StaticToolBackend().invoke(
            registry.get_definition("lint"), _context(file_path=str(tmp_path / "a.py"))
        )


def test_bk_011_static_tool_accepts_configured_exit_codes(tmp_path: Path) -> None:
    registry = _tool_registry(
        "import sys; print('[]'); sys.exit(1)", ok_exit_codes=[0, 1]
    )

    output = StaticToolBackend().invoke(
        registry.get_definition("lint"), _context(file_path=str(tmp_path / "a.py"))
    )

    assert output.payload == []


def test_bk_012_static_tool_invalid_json_is_invocation_error(tmp_path: Path) -> None:
    registry = _tool_registry("print('not json')")

    with pytest.raises(BackendInvocationError, match="invalid JSON"):
        StaticToolBackend().invoke(
            registry.get_definition("lint"), _context(file_path=str(tmp_path / "a.py"))
        )


def test_bk_013_static_tool_timeout_is_invocation_error(tmp_path: Path) -> None:
    registry = _tool_registry("import time; time.sleep(5)", timeout_seconds=1)

    with pytest.raises(BackendInvocationError, match="timed out"):
        StaticToolBackend().invoke(
            registry.get_definition("lint"), _context(file_path=str(tmp_path / "a.py"))
        )


def test_bk_014_missing_tool_binary_is_unavailable(tmp_path: Path) -> None:
    registry = _tool_registry("", command="definitely-not-a-real-linter-binary")

    with pytest.raises(BackendUnavailableError):
        StaticToolBackend().invoke(
            registry.get_definition("lint"), _context(file_path=str(tmp_path / "a.py"))
        )
    with pytest.raises(BackendUnavailableError):
        which_or_raise("definitely-not-a-real-linter-binary")


def test_bk_015_static_tool_undecodable_output_is_replaced(tmp_path: Path) -> None:
    code = "import sys; sys.stdout.buffer.write(b'ok \\xff'); sys.stderr.buffer.write(b'\\xfe')"
    text_registry = _tool_registry(code, output_format="text")
    json_registry = _tool_registry(code)

    output = StaticToolBackend().invoke(
        text_registry.get_definition("lint"), _context(file_path=str(tmp_path / "a.py"))
    )

    assert output.payload == "ok \ufffd"
    with pytest.raises(BackendInvocationError, match="invalid JSON"):
        StaticToolBackend().invoke(
            json_registry.get_definition("lint"), _context(file_path=str(tmp_path / "a.py"))
        )
