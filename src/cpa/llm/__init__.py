# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Completion client implementations for the code pass analyzer."""

from cpa.llm.ollama import OllamaClient
from cpa.llm.openai_client import OPENAI_DEFAULT_BASE_URL, OpenAIClient

__all__ = ["OllamaClient", "OpenAIClient", "OPENAI_DEFAULT_BASE_URL"]
