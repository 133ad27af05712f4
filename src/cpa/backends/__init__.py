# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Backend implementations for the code pass analyzer."""

from cpa.backends.ai import AIBackend
from cpa.backends.static_tool import StaticToolBackend

__all__ = ["AIBackend", "StaticToolBackend"]
