# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Prompt construction for AI passes."""

import json
import logging

from cpa.backend import InvocationContext
from cpa.llm_client import Message
from cpa.registry import PassDefinition, PromptSections

logger = logging.getLogger(__name__)

SECTION_START = "<<<<<<<"
SECTION_END = ">>>>>>>"


class PromptBuilder:
    """Build chat messages from a pass template and invocation context."""

    def __init__(
        self,
        definition: PassDefinition,
        supports_system_message: bool = True,
        default_system_message: str | None = None,
    ) -> None:
        """Initialize the builder.

        Args:
            definition: AI pass whose template is rendered.
            supports_system_message: Whether the target model accepts a
                ``system`` role; otherwise the instruction is folded into the
                user message.
            default_system_message: Instruction used when the pass has none.
        """
        self._definition = definition
        self._supports_system_message = supports_system_message
        self._default_system_message = default_system_message

    def build_messages(self, context: InvocationContext) -> list[Message]:
        """Build the chat messages for one invocation.

        Args:
            context: Record data selected for the pass.

        Returns:
            Chat messages ready for a completion client.
        """
        prompt = self.build_prompt(context)
        system_message = self._definition.system_message or self._default_system_message
        if not system_message:
            return [{"role": "user", "content": prompt}]
        if self._supports_system_message:
            return [
                {"role": "system", "content": system_message},
                {"role": "user", "content": prompt},
            ]
        return [{"role": "user", "content": f"{system_message}\n\n{prompt}"}]

    def build_prompt(self, context: InvocationContext) -> str:
        """Render the user prompt text.

        Context sections follow the pass's ``requires`` value; empty context is
        omitted rather than rendered as an empty block.

        Args:
            context: Record data selected for the pass.

        Returns:
            Prompt text.
        """
        sections = self._definition.prompt_sections or PromptSections()
        requires = self._definition.requires
        parts = [sections.base_prompt]

        if requires in {"parsed", "both"} and context.parsed_representation:
            parts.append(
                _block(
                    "[PARSED REPRESENTATION]\n"
                    + json.dumps(context.parsed_representation, indent=2, sort_keys=True)
                )
            )
        if requires in {"raw", "both"} and context.raw_source:
            parts.append(_block(f"[RAW CODE]\n{context.raw_source}"))
        if requires == "previous_results" and context.previous_results:
            parts.append(_block(f"[PREVIOUS ANALYSIS RESULTS]\n{context.previous_results}"))

        if sections.guidelines:
            parts.append(_block("[GUIDELINES]\n" + "\n".join(sections.guidelines)))
        if sections.example:
            parts.append(_block("[EXAMPLE]\n" + "\n".join(sections.example)))
        if sections.response_format:
            parts.append(_block(f"[RESPONSE FORMAT]\n{sections.response_format}"))
        return "\n\n".join(parts)


def _block(content: str) -> str:
    return f"{SECTION_START}\n{content}\n{SECTION_END}"
