# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Language parser implementations."""

from cpa.parsers.python import PythonParser

__all__ = ["PythonParser"]
