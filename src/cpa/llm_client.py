# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Completion client abstractions."""

import logging
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger(__name__)

Message = dict[str, str]


class CompletionError(RuntimeError):
    """Represent a failed or malformed completion request."""


class CompletionUnavailableError(CompletionError):
    """Represent a provider that cannot be used, e.g. missing credentials."""


@dataclass(frozen=True)
class Completion:
    """Represent one completion response.

    Attributes:
        text: Trimmed output text.
        usage: Token counts (``prompt_tokens``, ``completion_tokens``,
            ``total_tokens``); ``None`` when the provider reports none.
    """

    text: str
    usage: dict[str, int] | None = None


class CompletionClient(Protocol):
    """Define completion behavior for a provider client."""

    def perform_operation(
        self, operation_id: str, messages: list[Message], params: dict[str, Any]
    ) -> Completion:
        """Run one completion.

        Args:
            operation_id: Pass name used to correlate logs.
            messages: Chat messages with ``role`` and ``content`` keys.
            params: Request parameters: ``model``, ``temperature`` and one of
                ``max_tokens`` or ``max_completion_tokens``.

        Returns:
            Completion text and usage.

        Raises:
            CompletionUnavailableError: If the provider cannot be used at all.
            CompletionError: If the request fails or the response is malformed.
        """
