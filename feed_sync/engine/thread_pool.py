"""Bounded worker pools for refresh batches."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from threading import Lock
from typing import Dict


class ThreadPoolManager:
    """Hand out executors sized per batch; executors are reused per worker count."""

    def __init__(self, default_workers: int = 3) -> None:
        self.default_workers = default_workers
        self._executors: Dict[int, ThreadPoolExecutor] = {}
        self._lock = Lock()

    def get(self, max_workers: int | None = None) -> ThreadPoolExecutor:
        workers = max(1, max_workers or self.default_workers)
        with self._lock:
            if workers not in self._executors:
                self._executors[workers] = ThreadPoolExecutor(
                    max_workers=workers, thread_name_prefix=f"feed-sync-{workers}"
                )
            return self._executors[workers]

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            for executor in self._executors.values():
                executor.shutdown(wait=wait)
            self._executors.clear()


__all__ = ["ThreadPoolManager"]
