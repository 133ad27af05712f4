from pathlib import Path

import pytest

from cpa.registry import (
    DEFAULT_COST_PER_1K_TOKENS,
    DEFAULT_SCORE_FIELDS,
    ConfigurationError,
    EmptyPassOrderError,
    PassRegistry,
)


def _ai_pass(**overrides: object) -> dict[str, object]:
    settings: dict[str, object] = {
        "kind": "ai",
        "requires": "both",
        "prompt_sections": {"base_prompt": "Analyze the code."},
    }
    settings.update(overrides)
    return settings


def _config(**overrides: object) -> dict[str, object]:
    config: dict[str, object] = {
        "pass_order": ["doc", "score"],
        "passes": {"doc": _ai_pass(), "score": _ai_pass(requires="previous_results")},
    }
    config.update(overrides)
    return config


def test_reg_001_pass_order_is_returned_in_configured_order() -> None:
    registry = PassRegistry.from_mapping(_config())

    assert registry.get_pass_order() == ["doc", "score"]
    assert registry.get_definition("doc").position == 0
    assert registry.get_definition("score").position == 1
    assert registry.get_definition("score").requires == "previous_results"


def test_reg_002_empty_pass_order_raises_dedicated_error() -> None:
    registry = PassRegistry.from_mapping(_config(pass_order=[]))

    with pytest.raises(EmptyPassOrderError):
        registry.get_pass_order()
    assert issubclass(EmptyPassOrderError, ConfigurationError)


def test_reg_003_pass_order_with_unknown_pass_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="unknown passes: missing"):
        PassRegistry.from_mapping(_config(pass_order=["doc", "missing"]))


def test_reg_004_pass_order_with_duplicates_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="duplicates: doc"):
        PassRegistry.from_mapping(_config(pass_order=["doc", "score", "doc"]))


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        ({"kind": "quantum"}, "unsupported kind"),
        (_ai_pass(requires="everything"), "unsupported requires"),
        ({"kind": "ai"}, "needs 'prompt_sections'"),
        ({"kind": "static_tool", "tool": {}}, "needs 'tool.command'"),
        (
            {"kind": "static_tool", "tool": {"command": "ruff", "output_format": "xml"}},
            "unsupported output_format",
        ),
        (
            {"kind": "static_tool", "tool": {"command": "ruff", "timeout_seconds": 0}},
            "timeout must be > 0",
        ),
        (_ai_pass(max_tokens="many"), "must be an integer"),
    ],
)
def test_reg_005_invalid_pass_definitions_abort_loading(
    settings: dict[str, object], message: str
) -> None:
    with pytest.raises(ConfigurationError, match=message):
        PassRegistry.from_mapping(_config(passes={"doc": settings, "score": _ai_pass()}))


def test_reg_006_static_tool_options_string_is_split() -> None:
    registry = PassRegistry.from_mapping(
        _config(
            pass_order=["lint"],
            passes={
                "lint": {
                    "kind": "static_tool",
                    "requires": "raw",
                    "tool": {
                        "name": "ruff",
                        "command": "ruff check",
                        "options": "--output-format json --exit-zero",
                        "ok_exit_codes": [0, 1],
                    },
                }
            },
        )
    )

    tool = registry.get_definition("lint").tool
    assert tool is not None
    assert tool.options == ("--output-format", "json", "--exit-zero")
    assert tool.ok_exit_codes == (0, 1)
    assert tool.output_format == "json"


def test_reg_007_unknown_definition_lookup_raises() -> None:
    registry = PassRegistry.from_mapping(_config())

    with pytest.raises(ConfigurationError):
        registry.get_definition("nope")


def test_reg_008_models_defaults_and_scoring_are_parsed() -> None:
    registry = PassRegistry.from_mapping(
        _config(
            defaults={"model": "fallback-model", "max_tokens": 800, "temperature": 0.1},
            models={
                "reasoner": {
                    "model_name": "o3-mini",
                    "supports_system_message": False,
                    "token_limit_parameter": "max_completion_tokens",
                }
            },
            scoring={"pass": "score", "fields": ["overall_score"]},
            cost_per_1k_tokens=0.01,
        )
    )

    reasoner = registry.get_model("reasoner")
    assert reasoner.model_name == "o3-mini"
    assert reasoner.supports_system_message is False
    assert reasoner.token_limit_parameter == "max_completion_tokens"
    assert registry.get_model("uncataloged").model_name == "uncataloged"
    assert registry.defaults.max_tokens == 800
    assert registry.scoring_pass == "score"
    assert registry.score_fields == ("overall_score",)
    assert registry.cost_per_1k_tokens == 0.01


def test_reg_009_registry_defaults_without_optional_sections() -> None:
    registry = PassRegistry.from_mapping(_config())

    assert registry.scoring_pass is None
    assert registry.score_fields == DEFAULT_SCORE_FIELDS
    assert registry.cost_per_1k_tokens == DEFAULT_COST_PER_1K_TOKENS


def test_reg_010_invalid_token_limit_parameter_is_rejected() -> None:
    with pytest.raises(ConfigurationError, match="token_limit_parameter"):
        PassRegistry.from_mapping(_config(models={"m": {"token_limit_parameter": "tokens"}}))


def test_reg_011_scoring_pass_must_be_defined() -> None:
    with pytest.raises(ConfigurationError, match="Scoring pass is not defined"):
        PassRegistry.from_mapping(_config(scoring={"pass": "ghost"}))


def test_reg_012_from_yaml_loads_shipped_configuration() -> None:
    config_path = Path(__file__).resolve().parents[2] / "config" / "passes.yaml"

    registry = PassRegistry.from_yaml(config_path)

    order = registry.get_pass_order()
    assert order[0] == "doc_generation"
    assert order[-1] == "scoring_pass"
    assert registry.scoring_pass == "scoring_pass"
    assert registry.get_definition("static_analysis").kind == "static_tool"


def test_reg_013_from_yaml_wraps_read_and_syntax_failures(tmp_path: Path) -> None:
    broken = tmp_path / "broken.yaml"
    broken.write_text("passes: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        PassRegistry.from_yaml(broken)
    with pytest.raises(ConfigurationError):
        PassRegistry.from_yaml(tmp_path / "absent.yaml")


def test_reg_014_from_yaml_rejects_non_mapping_document(tmp_path: Path) -> None:
    config_path = tmp_path / "list.yaml"
    config_path.write_text("- doc\n- score\n", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="must be a mapping"):
        PassRegistry.from_yaml(config_path)


@pytest.mark.parametrize(
    ("command", "message"),
    [
        ("ruff 'check", "invalid command: No closing quotation"),
        ("   ", "empty command"),
    ],
)
def test_reg_015_unparseable_tool_command_aborts_loading(command: str, message: str) -> None:
    passes = {"lint": {"kind": "static_tool", "tool": {"command": command}}}

    with pytest.raises(ConfigurationError, match=message):
        PassRegistry.from_mapping(_config(pass_order=["lint"], passes=passes))
