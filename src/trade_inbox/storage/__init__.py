"""Persistence adapters."""

from .sqlite import SqliteSyncRepository

__all__ = ["SqliteSyncRepository"]
