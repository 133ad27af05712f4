# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Collect source artifacts and register them as analysis records."""

import logging
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pathspec

from cpa.model import LANGUAGE_BY_EXTENSION, detect_language
from cpa.parser import ArtifactParser, ParseError
from cpa.parsers import PythonParser
from cpa.store import ArtifactStore

logger = logging.getLogger(__name__)

DEFAULT_PARSERS: Mapping[str, ArtifactParser] = {"python": PythonParser()}


@dataclass(frozen=True)
class IngestError:
    """Represent a recoverable per-file ingest failure."""

    artifact_path: str
    message: str


@dataclass(frozen=True)
class IngestSummary:
    """Summarize one ingest run.

    Attributes:
        records_upserted: Records created or refreshed.
        files_parsed: Files that received a parsed representation.
        paths_skipped_by_gitignore: Paths excluded by ignore rules.
        errors: Recoverable per-file failures.
        elapsed_ms: Wall time of the run.
    """

    records_upserted: int
    files_parsed: int
    paths_skipped_by_gitignore: int
    errors: list[IngestError] = field(default_factory=list)
    elapsed_ms: int = 0


class IgnoreMatcher:
    """Match project paths against .gitignore patterns."""

    def __init__(self, spec: pathspec.GitIgnoreSpec) -> None:
        self._spec = spec

    @classmethod
    def from_project_root(cls, root: Path) -> "IgnoreMatcher":
        """Build a matcher from the root and nested .gitignore files.

        Args:
            root: Project root.

        Returns:
            Configured ignore matcher.

        Raises:
            OSError: If .gitignore files cannot be read.
            UnicodeDecodeError: If .gitignore files contain invalid UTF-8.
        """
        patterns: list[str] = []
        for ignore_path in sorted(root.rglob(".gitignore")):
            base = ignore_path.parent.relative_to(root).as_posix()
            if base == ".":
                base = ""
            for line in ignore_path.read_text(encoding="utf-8").splitlines():
                patterns.append(_rebase_gitignore_line(line=line, base=base))
        return cls(spec=pathspec.GitIgnoreSpec.from_lines(patterns))

    def matches(self, relative_path: str, is_dir: bool) -> bool:
        """Check whether a project-relative POSIX path is ignored."""
        normalized = relative_path.replace(os.sep, "/").strip("/")
        if not normalized:
            return False
        if self._spec.match_file(normalized):
            return True
        return is_dir and self._spec.match_file(f"{normalized}/")


class ArtifactIngestor:
    """Create or refresh analysis records for the sources under a root."""

    def __init__(
        self,
        store: ArtifactStore,
        parsers: Mapping[str, ArtifactParser] | None = None,
        extensions: set[str] | None = None,
    ) -> None:
        """Initialize the ingestor.

        Args:
            store: Store receiving the records.
            parsers: Parser per language tag; languages without one are
                stored without a parsed representation.
            extensions: File extensions to collect; defaults to every known one.
        """
        self._store = store
        self._parsers = DEFAULT_PARSERS if parsers is None else parsers
        self._extensions = extensions or set(LANGUAGE_BY_EXTENSION)

    def ingest(self, root: Path) -> IngestSummary:
        """Register every supported source file beneath ``root``.

        Artifact paths are stored relative to ``root``. Re-ingesting a file
        refreshes its language and parsed representation but keeps its pass
        progress.

        Args:
            root: Directory to scan.

        Returns:
            Ingest summary with recoverable per-file errors.

        Raises:
            NotADirectoryError: If ``root`` is not a directory.
            OSError: If .gitignore files cannot be read.
            PersistenceError: If the store fails.
        """
        if not root.is_dir():
            raise NotADirectoryError(f"{root} is not a directory")
        started = time.monotonic()
        matcher = IgnoreMatcher.from_project_root(root)
        files, skipped = self._collect_files(root, matcher)

        upserted = 0
        parsed = 0
        errors: list[IngestError] = []
        for file_path in files:
            artifact_path = file_path.relative_to(root).as_posix()
            language = detect_language(artifact_path)
            representation, error = self._parse(file_path, artifact_path, language)
            if error is not None:
                errors.append(error)
            elif representation is not None:
                parsed += 1
            self._store.upsert_record(
                artifact_path=artifact_path,
                language=language,
                parsed_representation=representation,
            )
            upserted += 1

        elapsed_ms = int(round((time.monotonic() - started) * 1000))
        logger.info(
            f"Ingest finished (root={root} records={upserted} parsed={parsed} "
            f"skipped_by_gitignore={skipped} errors={len(errors)} elapsed_ms={elapsed_ms})"
        )
        return IngestSummary(
            records_upserted=upserted,
            files_parsed=parsed,
            paths_skipped_by_gitignore=skipped,
            errors=errors,
            elapsed_ms=elapsed_ms,
        )

    def _collect_files(self, root: Path, matcher: IgnoreMatcher) -> tuple[list[Path], int]:
        files: list[Path] = []
        skipped = 0
        queue: list[Path] = [root]
        while queue:
            current = queue.pop(0)
            for child in sorted(current.iterdir(), key=lambda item: item.name):
                if child.name == ".git" and child.is_dir():
                    continue
                relative = child.relative_to(root).as_posix()
                is_dir = child.is_dir()
                if matcher.matches(relative_path=relative, is_dir=is_dir):
                    skipped += 1
                    continue
                if is_dir:
                    if not child.is_symlink():
                        queue.append(child)
                    continue
                if child.suffix.lstrip(".").lower() in self._extensions:
                    files.append(child)
        return sorted(files), skipped

    def _parse(
        self, file_path: Path, artifact_path: str, language: str
    ) -> tuple[Any, IngestError | None]:
        parser = self._parsers.get(language)
        if parser is None:
            return None, None
        try:
            source = file_path.read_text(encoding="utf-8")
            return parser.parse(source, artifact_path), None
        except (OSError, UnicodeDecodeError, ParseError) as exc:
            logger.warning(
                f"Storing record without parsed representation (artifact={artifact_path} error={exc})"
            )
            return None, IngestError(artifact_path=artifact_path, message=str(exc))


def _rebase_gitignore_line(line: str, base: str) -> str:
    """Rewrite a nested .gitignore line relative to the project root.

    Args:
        line: Original .gitignore line.
        base: Directory of the .gitignore file relative to the root.

    Returns:
        Root-relative pattern line.
    """
    if not base or not line or line.lstrip().startswith("#"):
        return line
    if line.startswith(r"\!") or line.startswith(r"\#"):
        return line
    is_negation = line.startswith("!")
    pattern = line[1:] if is_negation else line
    anchored = pattern.startswith("/")
    if anchored:
        pattern = pattern[1:]
    rebased = f"{base}/{pattern}" if pattern else base
    if anchored:
        rebased = f"/{rebased}"
    return f"!{rebased}" if is_negation else rebased
