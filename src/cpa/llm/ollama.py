# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Completion client Ollama implementation."""

import logging
from typing import Any

import httpx
import ollama

from cpa.llm_client import Completion, CompletionError, Message

logger = logging.getLogger(__name__)


class OllamaClient:
    """Run completions through an Ollama provider endpoint."""

    def __init__(self, provider_url: str, request_timeout_seconds: float = 60.0) -> None:
        """Initialize client configuration.

        Args:
            provider_url: Ollama endpoint base URL.
            request_timeout_seconds: Per-request timeout.
        """
        self._provider_url = provider_url
        self._client = ollama.Client(host=provider_url, timeout=request_timeout_seconds)

    def perform_operation(
        self, operation_id: str, messages: list[Message], params: dict[str, Any]
    ) -> Completion:
        """Run one chat completion with the Ollama chat API.

        Args:
            operation_id: Pass name used to correlate logs.
            messages: Chat messages.
            params: Model, temperature and token limit parameters.

        Returns:
            Completion text and usage.

        Raises:
            CompletionError: If request fails or response has no content.
        """
        options: dict[str, Any] = {}
        if params.get("temperature") is not None:
            options["temperature"] = params["temperature"]
        token_limit = params.get("max_tokens", params.get("max_completion_tokens"))
        if token_limit is not None:
            options["num_predict"] = token_limit
        try:
            response = self._client.chat(
                model=params["model"],
                messages=messages,
                options=options,
                stream=False,
            )
        except (
            ollama.RequestError, ollama.ResponseError, httpx.HTTPError, OSError, ValueError
        ) as exc:
            logger.warning(
                f"Ollama request failed (operation={operation_id} "
                f"provider_url={self._provider_url} model={params.get('model')} error={exc})"
            )
            raise CompletionError(str(exc)) from exc

        content = _extract_response_content(response)
        if not content:
            logger.warning(
                f"Ollama response did not contain content (operation={operation_id} "
                f"model={params.get('model')} response={response!r})"
            )
            raise CompletionError("Ollama response does not contain completion content.")
        return Completion(text=content, usage=_extract_usage(response))


def _extract_response_content(response: object) -> str:
    """Extract message content from an Ollama chat response.

    Args:
        response: Ollama response object, typically mapping-like.

    Returns:
        Response content string, or empty string if unavailable.
    """
    if isinstance(response, dict):
        message = response.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            return content.strip()
        return ""
    message_obj = getattr(response, "message", None)
    content_obj = getattr(message_obj, "content", None)
    if isinstance(content_obj, str):
        return content_obj.strip()
    return ""


def _extract_usage(response: object) -> dict[str, int] | None:
    if isinstance(response, dict):
        prompt_tokens = response.get("prompt_eval_count")
        completion_tokens = response.get("eval_count")
    else:
        prompt_tokens = getattr(response, "prompt_eval_count", None)
        completion_tokens = getattr(response, "eval_count", None)
    if prompt_tokens is None and completion_tokens is None:
        return None
    prompt_count = int(prompt_tokens or 0)
    completion_count = int(completion_tokens or 0)
    return {
        "prompt_tokens": prompt_count,
        "completion_tokens": completion_count,
        "total_tokens": prompt_count + completion_count,
    }
