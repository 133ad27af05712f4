# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Domain models for analysis records and pass outputs."""

from dataclasses import dataclass
from typing import Any, Literal

ContentType = Literal["text", "json"]

LANGUAGE_BY_EXTENSION: dict[str, str] = {
    "php": "php",
    "js": "javascript",
    "ts": "typescript",
    "py": "python",
    "go": "go",
    "ex": "elixir",
    "exs": "elixir",
}


def detect_language(artifact_path: str) -> str:
    """Map a file extension to a language tag.

    Args:
        artifact_path: Artifact file path.

    Returns:
        Language tag, or ``unknown`` when the extension is not recognized.
    """
    _, dot, extension = artifact_path.rpartition(".")
    if not dot or "/" in extension:
        return "unknown"
    return LANGUAGE_BY_EXTENSION.get(extension.lower(), "unknown")


@dataclass(frozen=True)
class AnalysisRecord:
    """Represent one analyzed source artifact.

    Attributes:
        record_id: Store primary key.
        artifact_path: Unique artifact path.
        language: Language tag derived from the file extension.
        parsed_representation: Structured parse output; ``None`` when unavailable.
        current_pass_index: Number of passes completed so far.
        completed_passes: Completed pass names in completion order.
        total_cost_usd: Sum of cost estimates of all stored pass results.
    """

    record_id: int
    artifact_path: str
    language: str | None
    parsed_representation: Any
    current_pass_index: int = 0
    completed_passes: tuple[str, ...] = ()
    total_cost_usd: float = 0.0


@dataclass(frozen=True)
class PassResult:
    """Represent the stored output of one successful pass.

    Attributes:
        record_id: Owning analysis record id.
        pass_name: Pass that produced this result.
        input_text: Prompt or tool command line sent to the backend.
        output: Backend output; text for AI passes, parsed findings for tools.
        content_type: ``json`` for structured output, ``text`` otherwise.
        usage: Token usage counts; ``None`` for non-AI backends.
        cost_estimate_usd: Estimated cost; ``None`` when usage is unknown.
        created_at: ISO-8601 UTC timestamp.
    """

    record_id: int
    pass_name: str
    input_text: str
    output: Any
    content_type: ContentType = "text"
    usage: dict[str, int] | None = None
    cost_estimate_usd: float | None = None
    created_at: str = ""


@dataclass(frozen=True)
class Score:
    """Represent one derived numeric score for a record."""

    record_id: int
    metric: str
    value: float
    created_at: str = ""
