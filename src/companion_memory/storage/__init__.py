"""Storage backends for companion memory.

This package provides persistent implementations of the chat history,
memory and emotion state repositories.
"""

from __future__ import annotations

from .sqlite_store import SQLiteStore

__all__ = ["SQLiteStore"]
