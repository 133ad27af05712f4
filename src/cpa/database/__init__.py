# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Database backends for the code pass analyzer."""

from cpa.database.sqlite import SQLiteArtifactStore

__all__ = ["SQLiteArtifactStore"]
