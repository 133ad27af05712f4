# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Completion client OpenAI implementation."""

import logging
from typing import Any
from urllib.parse import urlparse

from openai import (
    APIConnectionError,
    APIError,
    APITimeoutError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    NotFoundError,
    OpenAI,
    OpenAIError,
    PermissionDeniedError,
    RateLimitError,
)

from cpa.llm_client import (
    Completion,
    CompletionError,
    CompletionUnavailableError,
    Message,
)

logger = logging.getLogger(__name__)

OPENAI_DEFAULT_BASE_URL: str = "https://api.openai.com/v1"


class OpenAIClient:
    """Run completions through OpenAI's Chat Completions API."""

    def __init__(
        self,
        provider_url: str = OPENAI_DEFAULT_BASE_URL,
        request_timeout_seconds: float = 60.0,
        max_retries: int = 2,
    ) -> None:
        """Initialize client configuration.

        Args:
            provider_url: OpenAI-compatible endpoint base URL.
            request_timeout_seconds: Per-request timeout.
            max_retries: Bounded retry count handled by the SDK.
        """
        self._provider_url = provider_url
        self._request_timeout_seconds = request_timeout_seconds
        self._max_retries = max_retries
        self._client: OpenAI | None = None

    def perform_operation(
        self, operation_id: str, messages: list[Message], params: dict[str, Any]
    ) -> Completion:
        """Run one chat completion.

        Args:
            operation_id: Pass name used to correlate logs.
            messages: Chat messages.
            params: Model, temperature and token limit parameters.

        Returns:
            Completion text and usage.

        Raises:
            CompletionUnavailableError: If the client cannot be built or
                authentication is rejected.
            CompletionError: If the request fails or the response has no content.
        """
        client = self._get_client()
        logger.debug(
            f"OpenAI request (operation={operation_id} model={params.get('model')} "
            f"provider_url={self._provider_url})"
        )
        try:
            response = client.chat.completions.create(messages=messages, **params)
        except (AuthenticationError, PermissionDeniedError) as exc:
            logger.warning(
                f"OpenAI rejected credentials (operation={operation_id} "
                f"provider_url={self._provider_url} error={exc})"
            )
            raise CompletionUnavailableError(str(exc)) from exc
        except (
            APIConnectionError,
            APIError,
            APITimeoutError,
            BadRequestError,
            InternalServerError,
            NotFoundError,
            RateLimitError,
            AttributeError,
            OSError,
            ValueError,
        ) as exc:
            logger.warning(
                f"OpenAI request failed (operation={operation_id} "
                f"provider_url={self._provider_url} model={params.get('model')} error={exc})"
            )
            raise CompletionError(str(exc)) from exc

        content = _extract_response_content(response)
        if not content:
            logger.warning(
                f"OpenAI response did not contain content (operation={operation_id} "
                f"model={params.get('model')} response={response!r})"
            )
            raise CompletionError("OpenAI response does not contain completion content.")
        return Completion(text=content, usage=_extract_usage(response))

    def _get_client(self) -> OpenAI:
        """Get or initialize OpenAI SDK client.

        Returns:
            Initialized OpenAI SDK client.

        Raises:
            CompletionUnavailableError: If client initialization fails, e.g.
                when no API key is configured.
        """
        if self._client is not None:
            return self._client
        try:
            self._client = OpenAI(
                base_url=_normalize_provider_url(self._provider_url),
                timeout=self._request_timeout_seconds,
                max_retries=self._max_retries,
            )
        except (OpenAIError, OSError, ValueError) as exc:
            logger.warning(
                f"OpenAI client initialization failed (provider_url={self._provider_url} "
                f"error={exc})"
            )
            raise CompletionUnavailableError(str(exc)) from exc
        return self._client


def _normalize_provider_url(provider_url: str) -> str:
    """Normalize OpenAI provider URL to a valid base URL.

    Args:
        provider_url: User-provided provider URL or alias.

    Returns:
        Normalized base URL suitable for OpenAI Python client.

    Raises:
        ValueError: If provider URL is invalid.
    """
    normalized_raw = provider_url.strip()
    if not normalized_raw:
        raise ValueError("Invalid OpenAI provider URL: value is empty.")

    lowered_raw = normalized_raw.lower().rstrip("/")
    if lowered_raw in {"openai", "openai.com", "www.openai.com", "api.openai.com"}:
        return OPENAI_DEFAULT_BASE_URL

    candidate = normalized_raw
    if "://" not in candidate:
        candidate = f"https://{candidate}"

    parsed = urlparse(candidate)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(
            f"Invalid OpenAI provider URL: expected host URL, got '{provider_url}'."
        )

    host = parsed.netloc.lower()
    if host in {"openai.com", "www.openai.com", "api.openai.com"}:
        return OPENAI_DEFAULT_BASE_URL

    return candidate.rstrip("/")


def _extract_response_content(response: object) -> str:
    """Extract the first choice's message content from a chat response.

    Args:
        response: Chat completion object or mapping.

    Returns:
        Trimmed content string, or empty string if unavailable.
    """
    if isinstance(response, dict):
        choices = response.get("choices") or []
        if choices:
            content = (choices[0].get("message") or {}).get("content")
            if isinstance(content, str):
                return content.strip()
        return ""
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    if isinstance(content, str):
        return content.strip()
    return ""


def _extract_usage(response: object) -> dict[str, int] | None:
    """Extract token usage counts from a chat response.

    Args:
        response: Chat completion object or mapping.

    Returns:
        Usage counts, or ``None`` when the response reports none.
    """
    usage = response.get("usage") if isinstance(response, dict) else getattr(response, "usage", None)
    if not usage:
        return None
    keys = ("prompt_tokens", "completion_tokens", "total_tokens")
    if isinstance(usage, dict):
        return {key: int(usage.get(key) or 0) for key in keys}
    return {key: int(getattr(usage, key, 0) or 0) for key in keys}
