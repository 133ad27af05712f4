# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""AI completion backend."""

import json
import logging
from typing import Any

from cpa.backend import (
    BackendInvocationError,
    BackendOutput,
    BackendUnavailableError,
    InvocationContext,
)
from cpa.llm_client import CompletionClient, CompletionError, CompletionUnavailableError
from cpa.prompt import PromptBuilder
from cpa.registry import ModelDefaults, ModelDefinition, PassDefinition, PassRegistry

logger = logging.getLogger(__name__)


class AIBackend:
    """Run AI passes through a completion client."""

    def __init__(self, client: CompletionClient, registry: PassRegistry) -> None:
        """Initialize the backend.

        Args:
            client: Provider client used for completions.
            registry: Registry supplying model catalog, defaults and pricing.
        """
        self._client = client
        self._registry = registry

    def invoke(self, definition: PassDefinition, context: InvocationContext) -> BackendOutput:
        """Render the pass prompt, request a completion and price it.

        Args:
            definition: AI pass to run.
            context: Record data selected for the pass.

        Returns:
            Completion text with usage and cost estimate.

        Raises:
            BackendUnavailableError: If the provider cannot be used.
            BackendInvocationError: If the pass is not an AI pass or the request fails.
        """
        if definition.kind != "ai":
            raise BackendInvocationError(
                f"Pass '{definition.name}' has kind '{definition.kind}', expected 'ai'."
            )
        model = self._registry.get_model(definition.model)
        params = build_request_params(definition, model, self._registry.defaults)
        messages = PromptBuilder(
            definition,
            supports_system_message=model.supports_system_message,
            default_system_message=self._registry.defaults.system_message,
        ).build_messages(context)
        logger.debug(
            f"AI pass request (run_id={context.run.run_id} artifact={context.artifact_path} "
            f"pass={definition.name} params={params})"
        )

        try:
            completion = self._client.perform_operation(definition.name, messages, params)
        except CompletionUnavailableError as exc:
            raise BackendUnavailableError(str(exc)) from exc
        except CompletionError as exc:
            raise BackendInvocationError(str(exc)) from exc

        return BackendOutput(
            payload=completion.text,
            input_text=json.dumps(messages, indent=2),
            content_type="text",
            usage=completion.usage,
            cost_estimate_usd=estimate_cost(completion.usage, self._registry.cost_per_1k_tokens),
        )


def build_request_params(
    definition: PassDefinition, model: ModelDefinition, defaults: ModelDefaults
) -> dict[str, Any]:
    """Resolve request parameters with pass, then model, then default precedence.

    Args:
        definition: AI pass definition.
        model: Catalog entry of the pass's model.
        defaults: Registry-wide fallbacks.

    Returns:
        Parameters carrying ``model``, ``temperature`` and the model's token
        limit parameter.
    """
    max_tokens = definition.max_tokens or model.max_tokens or defaults.max_tokens
    temperature = definition.temperature
    if temperature is None:
        temperature = model.temperature if model.temperature is not None else defaults.temperature
    return {
        "model": model.model_name,
        "temperature": temperature,
        model.token_limit_parameter: max_tokens,
    }


def estimate_cost(usage: dict[str, int] | None, cost_per_1k_tokens: float) -> float | None:
    """Estimate request cost from total token usage.

    Args:
        usage: Token usage counts.
        cost_per_1k_tokens: Price per thousand tokens in USD.

    Returns:
        Cost rounded to six decimals, or ``None`` without usage.
    """
    if not usage:
        return None
    total_tokens = usage.get("total_tokens", 0)
    return round((total_tokens / 1000) * cost_per_1k_tokens, 6)
