"""
Interactive backend - run collections inside the controller process.

Meant for debugging and tests. With ``run_immediately=False`` submitted
collections stay queued until ``run_queued()`` is called, which makes it
possible to observe the submitted/started states and lost submissions.
"""

import logging
from typing import Any, Optional

from batchgrid.driver import run_collection
from batchgrid.schemas import JobCollection

from .base import BackendHooks, BackendStatus, ClusterBackend

logger = logging.getLogger(__name__)


class InteractiveBackend(ClusterBackend):
    """In-process, sequential execution."""

    name = "interactive"

    def __init__(self, run_immediately: bool = True, hooks: Optional[BackendHooks] = None):
        super().__init__(hooks)
        self.run_immediately = run_immediately
        self._queued: dict[str, JobCollection] = {}
        self._finished: set[str] = set()

    def submit(self, reg, collection: JobCollection, resources: Optional[dict[str, Any]] = None) -> str:
        batch_id = f"interactive-{collection.job_hash}"
        self._queued[batch_id] = collection
        if self.run_immediately:
            self._run(batch_id)
        return batch_id

    def run_queued(self) -> list[str]:
        """Run every queued collection. Returns their batch ids."""
        batch_ids = list(self._queued)
        for batch_id in batch_ids:
            self._run(batch_id)
        return batch_ids

    def _run(self, batch_id: str) -> None:
        collection = self._queued.pop(batch_id)
        run_collection(collection)
        self._finished.add(batch_id)

    def forget(self, batch_id: str) -> None:
        """Drop a submission without running it, as if the substrate lost it."""
        self._queued.pop(batch_id, None)
        self._finished.discard(batch_id)

    def query_status(self, batch_id: str) -> BackendStatus:
        if batch_id in self._queued:
            return BackendStatus.QUEUED
        if batch_id in self._finished:
            return BackendStatus.DONE
        return BackendStatus.VANISHED

    def cancel(self, batch_id: str) -> None:
        if self._queued.pop(batch_id, None) is not None:
            logger.info(f"Cancelled queued submission {batch_id}")

    def list_running(self) -> list[str]:
        return sorted(self._queued)
