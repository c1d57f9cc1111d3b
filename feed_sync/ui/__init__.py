"""User interaction helpers."""

from .progress import BatchProgress, BatchProgressState

__all__ = ["BatchProgress", "BatchProgressState"]
