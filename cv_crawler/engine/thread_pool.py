"""Thread pools: one shared pool plus a single-worker lane per source."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from threading import Lock
from typing import Dict


class ThreadPoolManager:
    """Manage the shared pool and the per-source lanes.

    A source lane defaults to one worker so requests to a single source are
    serialised while different sources run in parallel.
    """

    def __init__(self, default_workers: int = 8, source_workers: int = 1) -> None:
        self.default_workers = default_workers
        self.source_workers = source_workers
        self._default_executor = ThreadPoolExecutor(max_workers=default_workers, thread_name_prefix="pipeline")
        self._executors: Dict[str, ThreadPoolExecutor] = {}
        self._lock = Lock()

    def get(self, source_id: str | None = None, max_workers: int | None = None) -> ThreadPoolExecutor:
        if source_id is None:
            return self._default_executor
        with self._lock:
            if source_id not in self._executors:
                self._executors[source_id] = ThreadPoolExecutor(
                    max_workers=max_workers or self.source_workers,
                    thread_name_prefix=f"pipeline-{source_id}",
                )
            return self._executors[source_id]

    def shutdown(self, wait: bool = False) -> None:
        self._default_executor.shutdown(wait=wait)
        with self._lock:
            for executor in self._executors.values():
                executor.shutdown(wait=wait)
            self._executors.clear()


__all__ = ["ThreadPoolManager"]
