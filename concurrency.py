"""Admission gate bounding how many runs are active at once."""
from __future__ import annotations

import logging
from typing import Optional, Set


class ConcurrencyGate:
    """In-memory set of active run ids with a fixed capacity.

    Callers check ``has_capacity()`` before starting, ``register`` before
    the run begins and ``unregister`` on every exit path. Both are best-effort:
    registering an id twice or unregistering an unknown id is a no-op.
    """

    def __init__(self, max_concurrent: int = 1, logger: Optional[logging.Logger] = None):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.logger = logger or logging.getLogger("concurrency")
        self._active: Set[str] = set()

    def has_capacity(self) -> bool:
        return len(self._active) < self.max_concurrent

    def register(self, run_id: str) -> None:
        self._active.add(run_id)
        self.logger.debug(f"Registered run {run_id} ({len(self._active)}/{self.max_concurrent})")

    def unregister(self, run_id: str) -> None:
        self._active.discard(run_id)
        self.logger.debug(f"Unregistered run {run_id} ({len(self._active)}/{self.max_concurrent})")

    @property
    def active(self) -> int:
        return len(self._active)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active
