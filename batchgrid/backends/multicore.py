"""
Multicore backend - one local worker process per collection.

At most ``ncpus`` worker processes run at the same time. The pre-submit
hook blocks until a slot is free; the post-sync hook reaps finished
processes so their slots are released.

Batch ids are worker pids. Processes started by an earlier controller
session are still recognized by probing the pid.
"""

import logging
import os
import signal
import subprocess
import time
from typing import Any, Optional

from batchgrid.errors import SubmissionRejectedError
from batchgrid.schemas import JobCollection

from .base import BackendHooks, BackendStatus, ClusterBackend, output_path, worker_command

logger = logging.getLogger(__name__)


def _wait_for_slot(backend: "MulticoreBackend", reg, collection: JobCollection) -> None:
    while len(backend.reap()) >= backend.ncpus:
        time.sleep(backend.poll_interval)


def _reap_finished(backend: "MulticoreBackend", reg) -> None:
    backend.reap()


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class MulticoreBackend(ClusterBackend):
    """Local parallel execution bounded by ncpus."""

    name = "multicore"

    def __init__(
        self,
        ncpus: Optional[int] = None,
        python: Optional[str] = None,
        poll_interval: float = 0.5,
        hooks: Optional[BackendHooks] = None,
    ):
        super().__init__(hooks or BackendHooks(pre_submit=_wait_for_slot, post_sync=_reap_finished))
        self.ncpus = ncpus or os.cpu_count() or 1
        if self.ncpus < 1:
            raise ValueError(f"ncpus must be at least 1, got {self.ncpus}")
        self.python = python
        self.poll_interval = poll_interval
        self._procs: dict[str, subprocess.Popen] = {}
        self._exit_codes: dict[str, int] = {}

    def __repr__(self) -> str:
        return f"MulticoreBackend(ncpus={self.ncpus})"

    def submit(self, reg, collection: JobCollection, resources: Optional[dict[str, Any]] = None) -> str:
        cmd = worker_command(reg.collection_path(collection.job_hash), self.python)
        out_file = output_path(reg, collection.job_hash)
        out_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(out_file, "ab") as out:
                proc = subprocess.Popen(
                    cmd,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    cwd=collection.work_dir or None,
                    start_new_session=True,
                )
        except OSError as e:
            raise SubmissionRejectedError(
                f"Failed to start worker process: {e}", collection.job_ids
            ) from e

        batch_id = str(proc.pid)
        self._procs[batch_id] = proc
        logger.debug(f"Started worker pid {batch_id} for {collection.job_hash}")
        return batch_id

    def reap(self) -> list[str]:
        """Collect finished workers. Returns the batch ids still running."""
        for batch_id, proc in list(self._procs.items()):
            code = proc.poll()
            if code is not None:
                self._exit_codes[batch_id] = code
                del self._procs[batch_id]
                if code != 0:
                    logger.warning(f"Worker pid {batch_id} exited with code {code}")
        return sorted(self._procs)

    def query_status(self, batch_id: str) -> BackendStatus:
        self.reap()
        if batch_id in self._procs:
            return BackendStatus.RUNNING
        if batch_id in self._exit_codes:
            return BackendStatus.DONE if self._exit_codes[batch_id] == 0 else BackendStatus.FAILED
        if batch_id.isdigit() and _pid_alive(int(batch_id)):
            return BackendStatus.RUNNING
        return BackendStatus.VANISHED

    def cancel(self, batch_id: str) -> None:
        proc = self._procs.get(batch_id)
        if proc is not None:
            proc.terminate()
            return
        if batch_id.isdigit():
            try:
                os.kill(int(batch_id), signal.SIGTERM)
            except ProcessLookupError:
                logger.debug(f"Worker pid {batch_id} already gone")

    def list_running(self) -> list[str]:
        return self.reap()
