"""Bundled worker plugins."""

from queue_worker.plugins.clear_locks import ClearLocks

__all__ = ["ClearLocks"]
