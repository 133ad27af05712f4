# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Pass registry loaded from configuration."""

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, cast

import yaml

logger = logging.getLogger(__name__)

PassKind = Literal["ai", "static_tool", "none"]
PassRequires = Literal["raw", "parsed", "both", "previous_results"]
OutputFormat = Literal["json", "text"]
TokenLimitParameter = Literal["max_tokens", "max_completion_tokens"]

PASS_KINDS: frozenset[str] = frozenset({"ai", "static_tool", "none"})
PASS_REQUIRES: frozenset[str] = frozenset({"raw", "parsed", "both", "previous_results"})
DEFAULT_SCORE_FIELDS: tuple[str, ...] = (
    "documentation_score",
    "functionality_score",
    "style_score",
    "overall_score",
)
DEFAULT_COST_PER_1K_TOKENS: float = 0.002


class ConfigurationError(RuntimeError):
    """Represent invalid or missing pass registry configuration."""


class EmptyPassOrderError(ConfigurationError):
    """Represent a configuration whose pass order has no entries."""


@dataclass(frozen=True)
class ModelDefaults:
    """Fallback generation parameters applied when a pass and model are silent."""

    model: str = "gpt-4o-mini"
    max_tokens: int = 500
    temperature: float = 0.5
    system_message: str = "You are a helpful AI assistant."


@dataclass(frozen=True)
class ModelDefinition:
    """Describe one configured completion model.

    Attributes:
        name: Catalog key referenced by pass definitions.
        model_name: Identifier sent to the provider.
        max_tokens: Model-level output token limit.
        temperature: Model-level sampling temperature.
        supports_system_message: Whether a system role message is accepted.
        token_limit_parameter: Request parameter carrying the token limit.
    """

    name: str
    model_name: str
    max_tokens: int | None = None
    temperature: float | None = None
    supports_system_message: bool = True
    token_limit_parameter: TokenLimitParameter = "max_tokens"


@dataclass(frozen=True)
class ToolConfig:
    """Describe an external static-analysis tool invocation."""

    name: str
    command: str
    options: tuple[str, ...] = ()
    output_format: OutputFormat = "json"
    timeout_seconds: int = 120
    ok_exit_codes: tuple[int, ...] = (0,)


@dataclass(frozen=True)
class PromptSections:
    """Hold the prompt template parts of an AI pass."""

    base_prompt: str = "Analyze the following code:"
    guidelines: tuple[str, ...] = ()
    example: tuple[str, ...] = ()
    response_format: str | None = None


@dataclass(frozen=True)
class PassDefinition:
    """Describe one configured pass.

    Attributes:
        name: Unique pass name.
        kind: Backend kind resolved at load time.
        requires: Context the pass needs from the record.
        position: Index in the global pass order; ``None`` when not ordered.
        model: Model catalog key for AI passes.
        max_tokens: Pass-level output token limit.
        temperature: Pass-level sampling temperature.
        system_message: System instruction for AI passes.
        prompt_sections: Prompt template for AI passes.
        tool: Tool invocation for static-tool passes.
    """

    name: str
    kind: PassKind
    requires: PassRequires = "both"
    position: int | None = None
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    system_message: str | None = None
    prompt_sections: PromptSections | None = None
    tool: ToolConfig | None = None


@dataclass(frozen=True)
class PassRegistry:
    """Catalog of passes, models and the global pass order."""

    definitions: dict[str, PassDefinition]
    pass_order: tuple[str, ...]
    models: dict[str, ModelDefinition] = field(default_factory=dict)
    defaults: ModelDefaults = field(default_factory=ModelDefaults)
    scoring_pass: str | None = None
    score_fields: tuple[str, ...] = DEFAULT_SCORE_FIELDS
    cost_per_1k_tokens: float = DEFAULT_COST_PER_1K_TOKENS

    def get_pass_order(self) -> list[str]:
        """Return the global pass order.

        Returns:
            Pass names in execution order.

        Raises:
            EmptyPassOrderError: If no passes are ordered.
        """
        if not self.pass_order:
            raise EmptyPassOrderError("Pass order is empty.")
        return list(self.pass_order)

    def get_definition(self, name: str) -> PassDefinition:
        """Return a pass definition by name.

        Raises:
            ConfigurationError: If the pass is not defined.
        """
        definition = self.definitions.get(name)
        if definition is None:
            raise ConfigurationError(f"Unknown pass: {name}")
        return definition

    def get_model(self, name: str | None) -> ModelDefinition:
        """Return the catalog entry for a model, falling back to defaults.

        Args:
            name: Model catalog key; ``None`` selects the default model.

        Returns:
            Model definition. Unknown keys are treated as provider model names.
        """
        key = name or self.defaults.model
        model = self.models.get(key)
        if model is not None:
            return model
        return ModelDefinition(name=key, model_name=key)

    @classmethod
    def from_yaml(cls, path: Path) -> "PassRegistry":
        """Load and validate a registry from a YAML file.

        Args:
            path: YAML configuration file.

        Returns:
            Validated registry.

        Raises:
            ConfigurationError: If the file cannot be read or is invalid.
        """
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
            logger.warning(f"Pass configuration could not be loaded (path={path} error={exc})")
            raise ConfigurationError(f"Cannot load pass configuration {path}: {exc}") from exc
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Pass configuration {path} must be a mapping.")
        return cls.from_mapping(raw)

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> "PassRegistry":
        """Build and validate a registry from a configuration mapping.

        Args:
            raw: Parsed configuration with ``passes`` and ``pass_order`` keys.

        Returns:
            Validated registry.

        Raises:
            ConfigurationError: If any section is malformed or inconsistent.
        """
        pass_order = _parse_pass_order(raw.get("pass_order") or [])
        positions = {name: index for index, name in enumerate(pass_order)}

        raw_passes = raw.get("passes") or {}
        if not isinstance(raw_passes, dict):
            raise ConfigurationError("'passes' must be a mapping of pass name to settings.")
        definitions = {
            str(name): _parse_pass(str(name), settings, positions.get(str(name)))
            for name, settings in raw_passes.items()
        }

        unknown = [name for name in pass_order if name not in definitions]
        if unknown:
            raise ConfigurationError(
                f"Pass order references unknown passes: {', '.join(unknown)}"
            )

        scoring = raw.get("scoring") or {}
        if not isinstance(scoring, dict):
            raise ConfigurationError("'scoring' must be a mapping.")
        scoring_pass = scoring.get("pass")
        if scoring_pass is not None and scoring_pass not in definitions:
            raise ConfigurationError(f"Scoring pass is not defined: {scoring_pass}")
        score_fields = tuple(str(item) for item in scoring.get("fields") or DEFAULT_SCORE_FIELDS)

        registry = cls(
            definitions=definitions,
            pass_order=pass_order,
            models=_parse_models(raw.get("models") or {}),
            defaults=_parse_defaults(raw.get("defaults") or {}),
            scoring_pass=scoring_pass,
            score_fields=score_fields,
            cost_per_1k_tokens=_as_float(
                raw.get("cost_per_1k_tokens", DEFAULT_COST_PER_1K_TOKENS),
                "cost_per_1k_tokens",
            ),
        )
        logger.debug(
            f"Pass registry loaded (passes={len(definitions)} ordered={len(pass_order)} "
            f"scoring_pass={scoring_pass})"
        )
        return registry


def _parse_pass_order(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, list):
        raise ConfigurationError("'pass_order' must be a list of pass names.")
    names = tuple(str(name) for name in raw)
    seen: set[str] = set()
    duplicates: list[str] = []
    for name in names:
        if name in seen and name not in duplicates:
            duplicates.append(name)
        seen.add(name)
    if duplicates:
        raise ConfigurationError(f"Pass order contains duplicates: {', '.join(duplicates)}")
    return names


def _parse_pass(name: str, raw: Any, position: int | None) -> PassDefinition:
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Pass '{name}' must be a mapping.")
    kind = raw.get("kind", "ai")
    if kind not in PASS_KINDS:
        raise ConfigurationError(f"Pass '{name}' has unsupported kind: {kind}")
    requires = raw.get("requires", "both")
    if requires not in PASS_REQUIRES:
        raise ConfigurationError(f"Pass '{name}' has unsupported requires value: {requires}")

    prompt_sections = None
    tool = None
    if kind == "ai":
        sections = raw.get("prompt_sections")
        if not isinstance(sections, dict) or not sections:
            raise ConfigurationError(f"AI pass '{name}' needs 'prompt_sections'.")
        prompt_sections = PromptSections(
            base_prompt=str(sections.get("base_prompt", PromptSections.base_prompt)),
            guidelines=_as_lines(sections.get("guidelines")),
            example=_as_lines(sections.get("example")),
            response_format=sections.get("response_format"),
        )
    elif kind == "static_tool":
        tool = _parse_tool(name, raw.get("tool"))

    return PassDefinition(
        name=name,
        kind=cast(PassKind, kind),
        requires=cast(PassRequires, requires),
        position=position,
        model=raw.get("model"),
        max_tokens=_as_optional_int(raw.get("max_tokens"), f"{name}.max_tokens"),
        temperature=_as_optional_float(raw.get("temperature"), f"{name}.temperature"),
        system_message=raw.get("system_message"),
        prompt_sections=prompt_sections,
        tool=tool,
    )


def _parse_tool(pass_name: str, raw: Any) -> ToolConfig:
    if not isinstance(raw, dict) or not raw.get("command"):
        raise ConfigurationError(f"Static tool pass '{pass_name}' needs 'tool.command'.")
    try:
        command_parts = shlex.split(str(raw["command"]))
    except ValueError as exc:
        raise ConfigurationError(
            f"Static tool pass '{pass_name}' has an invalid command: {exc}"
        ) from exc
    if not command_parts:
        raise ConfigurationError(f"Static tool pass '{pass_name}' has an empty command.")
    output_format = raw.get("output_format", "json")
    if output_format not in {"json", "text"}:
        raise ConfigurationError(
            f"Static tool pass '{pass_name}' has unsupported output_format: {output_format}"
        )
    options = raw.get("options") or []
    if isinstance(options, str):
        options = options.split()
    timeout_seconds = _as_optional_int(raw.get("timeout_seconds"), f"{pass_name}.timeout")
    if timeout_seconds is not None and timeout_seconds <= 0:
        raise ConfigurationError(f"Static tool pass '{pass_name}' timeout must be > 0.")
    ok_exit_codes = tuple(int(code) for code in raw.get("ok_exit_codes") or (0,))
    return ToolConfig(
        name=str(raw.get("name", pass_name)),
        command=str(raw["command"]),
        options=tuple(str(option) for option in options),
        output_format=cast(OutputFormat, output_format),
        timeout_seconds=timeout_seconds or ToolConfig.timeout_seconds,
        ok_exit_codes=ok_exit_codes,
    )


def _parse_models(raw: Any) -> dict[str, ModelDefinition]:
    if not isinstance(raw, dict):
        raise ConfigurationError("'models' must be a mapping.")
    models: dict[str, ModelDefinition] = {}
    for name, settings in raw.items():
        settings = settings or {}
        token_limit_parameter = settings.get("token_limit_parameter", "max_tokens")
        if token_limit_parameter not in {"max_tokens", "max_completion_tokens"}:
            raise ConfigurationError(
                f"Model '{name}' has unsupported token_limit_parameter: {token_limit_parameter}"
            )
        models[str(name)] = ModelDefinition(
            name=str(name),
            model_name=str(settings.get("model_name", name)),
            max_tokens=_as_optional_int(settings.get("max_tokens"), f"{name}.max_tokens"),
            temperature=_as_optional_float(settings.get("temperature"), f"{name}.temperature"),
            supports_system_message=bool(settings.get("supports_system_message", True)),
            token_limit_parameter=cast(TokenLimitParameter, token_limit_parameter),
        )
    return models


def _parse_defaults(raw: Any) -> ModelDefaults:
    if not isinstance(raw, dict):
        raise ConfigurationError("'defaults' must be a mapping.")
    fallback = ModelDefaults()
    return ModelDefaults(
        model=str(raw.get("model", fallback.model)),
        max_tokens=_as_optional_int(raw.get("max_tokens"), "defaults.max_tokens")
        or fallback.max_tokens,
        temperature=_as_float(raw.get("temperature", fallback.temperature), "defaults.temperature"),
        system_message=str(raw.get("system_message", fallback.system_message)),
    )


def _as_lines(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(value.splitlines())
    return tuple(str(line) for line in value)


def _as_optional_int(value: Any, label: str) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{label} must be an integer, got {value!r}") from exc


def _as_optional_float(value: Any, label: str) -> float | None:
    if value is None:
        return None
    return _as_float(value, label)


def _as_float(value: Any, label: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{label} must be a number, got {value!r}") from exc
