# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Static-analysis tool backend."""

import json
import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from cpa.backend import (
    BackendInvocationError,
    BackendOutput,
    BackendUnavailableError,
    InvocationContext,
)
from cpa.registry import PassDefinition, ToolConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolRun:
    """Represent one finished tool process."""

    exit_code: int
    command_str: str
    stdout: str
    stderr: str


class StaticToolBackend:
    """Run external static-analysis tools against artifact files."""

    def __init__(self, working_dir: Path | None = None) -> None:
        """Initialize the backend.

        Args:
            working_dir: Directory tools run in; defaults to the current one.
        """
        self._working_dir = working_dir

    def invoke(self, definition: PassDefinition, context: InvocationContext) -> BackendOutput:
        """Run the pass's tool on the artifact and parse its output.

        Args:
            definition: Static-tool pass to run.
            context: Record data; only ``file_path`` is used.

        Returns:
            Parsed findings for JSON tools, stdout text for text tools.

        Raises:
            BackendUnavailableError: If the tool executable cannot be found.
            BackendInvocationError: If the tool times out, exits with a code
                outside ``ok_exit_codes`` or prints unparseable JSON.
        """
        tool = definition.tool
        if definition.kind != "static_tool" or tool is None:
            raise BackendInvocationError(
                f"Pass '{definition.name}' has no static tool configuration."
            )
        command = self._build_command(tool=tool, file_path=context.file_path)
        logger.debug(
            f"Running static tool (run_id={context.run.run_id} pass={definition.name} "
            f"tool={tool.name} command={shlex.join(command)})"
        )
        run = self._run(tool=tool, command=command)

        if run.exit_code not in tool.ok_exit_codes:
            detail = (run.stderr or run.stdout).strip()
            logger.warning(
                f"Static tool failed (tool={tool.name} artifact={context.artifact_path} "
                f"exit_code={run.exit_code} error={detail[:500]})"
            )
            raise BackendInvocationError(
                f"{tool.name} exited with code {run.exit_code}: {detail[:500]}"
            )

        if tool.output_format == "text":
            return BackendOutput(
                payload=run.stdout.strip(), input_text=run.command_str, content_type="text"
            )
        try:
            findings = json.loads(run.stdout)
        except json.JSONDecodeError as exc:
            logger.warning(
                f"Static tool output is not valid JSON (tool={tool.name} "
                f"artifact={context.artifact_path} error={exc})"
            )
            raise BackendInvocationError(f"{tool.name} produced invalid JSON: {exc}") from exc
        return BackendOutput(payload=findings, input_text=run.command_str, content_type="json")

    def _build_command(self, tool: ToolConfig, file_path: str) -> list[str]:
        try:
            parts = shlex.split(tool.command)
        except ValueError as exc:
            raise BackendInvocationError(f"{tool.name} has an invalid command: {exc}") from exc
        if not parts:
            raise BackendUnavailableError(f"{tool.name} has an empty command.")
        parts[0] = which_or_raise(parts[0])
        return [*parts, *tool.options, file_path]

    def _run(self, tool: ToolConfig, command: list[str]) -> ToolRun:
        try:
            proc = subprocess.run(
                command,
                cwd=str(self._working_dir) if self._working_dir else None,
                capture_output=True,
                timeout=tool.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            logger.warning(
                f"Static tool timed out (tool={tool.name} timeout_seconds={tool.timeout_seconds})"
            )
            raise BackendInvocationError(
                f"{tool.name} timed out after {tool.timeout_seconds}s"
            ) from exc
        except OSError as exc:
            logger.warning(f"Static tool could not start (tool={tool.name} error={exc})")
            raise BackendUnavailableError(f"{tool.name} could not start: {exc}") from exc
        return ToolRun(
            exit_code=proc.returncode,
            command_str=shlex.join(command),
            stdout=(proc.stdout or b"").decode("utf-8", errors="replace"),
            stderr=(proc.stderr or b"").decode("utf-8", errors="replace"),
        )


def which_or_raise(bin_name: str) -> str:
    """Locate an executable and return its path.

    Args:
        bin_name: Executable name or path.

    Returns:
        Resolved executable path.

    Raises:
        BackendUnavailableError: If no executable is found.
    """
    found = shutil.which(bin_name)
    if found:
        return found
    candidate = Path(bin_name)
    if candidate.is_file() and os.access(candidate, os.X_OK):
        return str(candidate)
    raise BackendUnavailableError(f"Executable '{bin_name}' not found on PATH.")
