# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Parser contracts for producing parsed artifact representations."""

from typing import Any, Literal, Protocol, TypedDict

NodeKind = Literal["module", "class", "function", "method"]


class ParseError(RuntimeError):
    """Represent a source file that cannot be parsed."""


class ParsedNode(TypedDict):
    """Describe one node of a parsed representation."""

    kind: NodeKind
    name: str
    params: list[str]
    start_line: int
    end_line: int
    doc: str | None
    children: list["ParsedNode"]


class ArtifactParser(Protocol):
    """Define parsing behavior for one source language."""

    def parse(self, source: str, artifact_path: str) -> dict[str, Any]:
        """Parse source text into a JSON-serializable node tree.

        Args:
            source: Source text.
            artifact_path: Path used in error messages.

        Returns:
            Root node of the parsed representation.

        Raises:
            ParseError: If the source is not valid for the language.
        """
