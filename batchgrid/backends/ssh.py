"""
SSH backend - detached worker processes on remote hosts.

Workers are listed as ``host`` or ``host:ncpus``. All hosts must see the
registry root under the same path. The pre-submit hook refreshes the
load of every host (number of running driver processes relative to its
ncpus); submit then picks the least loaded one.

Batch ids have the form ``host#pid``.
"""

import logging
import shlex
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from batchgrid.errors import SubmissionRejectedError
from batchgrid.schemas import JobCollection

from .base import (
    BackendHooks,
    BackendStatus,
    ClusterBackend,
    CommandResult,
    output_path,
    run_command,
    worker_command,
)

logger = logging.getLogger(__name__)

DRIVER_MODULE = "batchgrid.driver"


@dataclass(frozen=True)
class Worker:
    """A remote host and the number of collections it may run at once."""
    host: str
    ncpus: int = 1

    @classmethod
    def parse(cls, spec: str) -> "Worker":
        """Parse ``host`` or ``host:ncpus``."""
        host, _, ncpus = spec.partition(":")
        if not host:
            raise ValueError(f"Invalid worker specification: {spec!r}")
        try:
            count = int(ncpus) if ncpus else 1
        except ValueError:
            raise ValueError(f"Invalid ncpus in worker specification: {spec!r}") from None
        if count < 1:
            raise ValueError(f"ncpus must be at least 1 in worker specification: {spec!r}")
        return cls(host=host, ncpus=count)


def _refresh_load(backend: "SSHBackend", reg, collection: JobCollection) -> None:
    backend.refresh_load()


def _split_batch_id(batch_id: str) -> tuple[str, str]:
    host, sep, pid = batch_id.rpartition("#")
    if not sep or not host or not pid.isdigit():
        raise ValueError(f"Invalid ssh batch id: {batch_id!r}")
    return host, pid


class SSHBackend(ClusterBackend):
    """Run collections on a pool of hosts via ssh and nohup."""

    name = "ssh"

    def __init__(
        self,
        workers: Iterable[str | Worker],
        python: str = "python3",
        ssh_command: Iterable[str] = ("ssh", "-o", "BatchMode=yes"),
        timeout: float = 30.0,
        hooks: Optional[BackendHooks] = None,
    ):
        super().__init__(hooks or BackendHooks(pre_submit=_refresh_load))
        self.workers = [w if isinstance(w, Worker) else Worker.parse(w) for w in workers]
        if not self.workers:
            raise ValueError("SSHBackend needs at least one worker")
        self.python = python
        self.ssh_command = list(ssh_command)
        self.timeout = timeout
        self._load: dict[str, float] = {w.host: 0.0 for w in self.workers}

    def __repr__(self) -> str:
        hosts = ", ".join(w.host for w in self.workers)
        return f"SSHBackend(workers=[{hosts}])"

    def _ssh(self, host: str, remote_command: str) -> CommandResult:
        return run_command([*self.ssh_command, host, remote_command], timeout=self.timeout)

    def _driver_pids(self, host: str) -> Optional[list[str]]:
        result = self._ssh(host, "ps -u \"$USER\" -o pid=,args=")
        if not result.ok:
            logger.warning(f"Could not list processes on {host}: {result.stderr.strip()}")
            return None
        pids = []
        for line in result.stdout.splitlines():
            fields = line.split(None, 1)
            if len(fields) == 2 and DRIVER_MODULE in fields[1]:
                pids.append(fields[0])
        return pids

    def refresh_load(self) -> dict[str, float]:
        """Update the load of every host. Unreachable hosts get infinite load."""
        for worker in self.workers:
            pids = self._driver_pids(worker.host)
            self._load[worker.host] = float("inf") if pids is None else len(pids) / worker.ncpus
        return dict(self._load)

    def pick_worker(self) -> Worker:
        """Least loaded worker; ties go to the first listed."""
        worker = min(self.workers, key=lambda w: self._load[w.host])
        if self._load[worker.host] == float("inf"):
            raise SubmissionRejectedError("No reachable ssh worker")
        return worker

    def submit(self, reg, collection: JobCollection, resources: Optional[dict[str, Any]] = None) -> str:
        worker = self.pick_worker()
        cmd = " ".join(shlex.quote(part) for part in worker_command(
            reg.collection_path(collection.job_hash), self.python
        ))
        out_file = shlex.quote(str(output_path(reg, collection.job_hash)))
        cwd = shlex.quote(collection.work_dir or str(reg.root))
        remote = f"cd {cwd} && nohup {cmd} >> {out_file} 2>&1 < /dev/null & echo $!"

        result = self._ssh(worker.host, remote)
        lines = result.stdout.strip().splitlines()
        if not result.ok or not lines or not lines[-1].strip().isdigit():
            raise SubmissionRejectedError(
                f"ssh submission to {worker.host} failed (exit {result.exit_code}): "
                f"{result.stderr.strip() or result.stdout.strip()}",
                collection.job_ids,
            )

        self._load[worker.host] += 1 / worker.ncpus
        return f"{worker.host}#{lines[-1].strip()}"

    def query_status(self, batch_id: str) -> BackendStatus:
        host, pid = _split_batch_id(batch_id)
        result = self._ssh(host, f"ps -p {pid} -o pid=")
        if result.ok and result.stdout.strip():
            return BackendStatus.RUNNING
        if result.exit_code in (0, 1):
            return BackendStatus.DONE
        # ssh itself failed; nothing is known about the process
        logger.warning(f"Could not query {batch_id}: {result.stderr.strip()}")
        return BackendStatus.RUNNING

    def cancel(self, batch_id: str) -> None:
        host, pid = _split_batch_id(batch_id)
        result = self._ssh(host, f"kill {pid}")
        if not result.ok:
            logger.debug(f"kill {batch_id} returned {result.exit_code}: {result.stderr.strip()}")

    def list_running(self) -> list[str]:
        running = []
        for worker in self.workers:
            pids = self._driver_pids(worker.host) or []
            running.extend(f"{worker.host}#{pid}" for pid in pids)
        return running
