# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Backend contracts for pass execution."""

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from cpa.model import ContentType
from cpa.registry import PassDefinition

logger = logging.getLogger(__name__)


class BackendUnavailableError(RuntimeError):
    """Represent a backend that cannot run at all, e.g. missing credentials or binary."""


class BackendInvocationError(RuntimeError):
    """Represent a failed backend call, e.g. request error or non-zero exit."""


@dataclass(frozen=True)
class RunContext:
    """Identify one batch run for log correlation.

    Attributes:
        run_id: Identifier shared by all records of the run.
        dry_run: Whether backends must not be called.
    """

    run_id: str
    dry_run: bool = False


@dataclass(frozen=True)
class InvocationContext:
    """Carry the record data a backend may use for one pass.

    Only the fields selected by the pass's ``requires`` value are populated.

    Attributes:
        run: Run the invocation belongs to.
        record_id: Analysis record id.
        artifact_path: Artifact path as stored on the record.
        file_path: Filesystem path of the artifact for tools and source reads.
        language: Artifact language tag.
        raw_source: Source text; ``None`` unless the pass needs it.
        parsed_representation: Parse output; ``None`` unless the pass needs it.
        previous_results: Prior pass outputs joined in completion order;
            ``None`` unless the pass needs it.
    """

    run: RunContext
    record_id: int
    artifact_path: str
    file_path: str
    language: str | None = None
    raw_source: str | None = None
    parsed_representation: Any = None
    previous_results: str | None = None


@dataclass(frozen=True)
class BackendOutput:
    """Represent a successful backend invocation.

    Attributes:
        payload: Output text or structured findings.
        input_text: Prompt or command line that produced the payload.
        content_type: ``json`` for structured payloads, ``text`` otherwise.
        usage: Token usage counts for AI backends.
        cost_estimate_usd: Estimated request cost for AI backends.
    """

    payload: Any
    input_text: str
    content_type: ContentType = "text"
    usage: dict[str, int] | None = None
    cost_estimate_usd: float | None = None


class Backend(Protocol):
    """Define pass execution behavior for one backend kind."""

    def invoke(self, definition: PassDefinition, context: InvocationContext) -> BackendOutput:
        """Run one pass.

        Args:
            definition: Pass to run.
            context: Record data selected for the pass.

        Returns:
            Backend output.

        Raises:
            BackendUnavailableError: If the backend cannot be used.
            BackendInvocationError: If the call fails or its output is malformed.
        """
