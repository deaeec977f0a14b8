"""
Container backend - one detached docker container per collection.

The registry root is bind-mounted at the same path inside the container,
so the image only needs Python and batchgrid installed. Containers carry
the label ``batchgrid.job_hash`` and are named ``batchgrid-<hash>``; the
name is the batch id.

The post-sync hook removes exited containers once none of their jobs is
pending any more.
"""

import logging
from typing import Any, Iterable, Optional

from batchgrid.errors import SubmissionRejectedError
from batchgrid.schemas import JobCollection

from .base import BackendHooks, BackendStatus, ClusterBackend, run_command, worker_command

logger = logging.getLogger(__name__)

LABEL = "batchgrid.job_hash"


def _remove_exited(backend: "ContainerBackend", reg) -> None:
    pending = {
        record.batch_id for record in reg.store.records()
        if record.status.is_pending and record.batch_id
    }
    for name in backend.list_exited():
        if name not in pending:
            backend.remove(name)


class ContainerBackend(ClusterBackend):
    """Run collections in docker containers."""

    name = "container"

    def __init__(
        self,
        image: str,
        docker: str = "docker",
        python: str = "python",
        run_args: Iterable[str] = (),
        timeout: float = 120.0,
        hooks: Optional[BackendHooks] = None,
    ):
        super().__init__(hooks or BackendHooks(post_sync=_remove_exited))
        self.image = image
        self.docker = docker
        self.python = python
        self.run_args = list(run_args)
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"ContainerBackend(image={self.image})"

    def _docker(self, *args: str):
        return run_command([self.docker, *args], timeout=self.timeout)

    def submit(self, reg, collection: JobCollection, resources: Optional[dict[str, Any]] = None) -> str:
        name = f"batchgrid-{collection.job_hash}"
        root = str(reg.root)
        args = [
            "run", "-d",
            "--name", name,
            "--label", f"{LABEL}={collection.job_hash}",
            "-v", f"{root}:{root}",
            "-w", collection.work_dir or root,
        ]
        for key, value in (resources or {}).items():
            args.append(f"--{key}={value}")
        args.extend(self.run_args)
        args.append(self.image)
        args.extend(worker_command(reg.collection_path(collection.job_hash), self.python))

        result = self._docker(*args)
        if not result.ok:
            raise SubmissionRejectedError(
                f"docker run failed (exit {result.exit_code}): {result.stderr.strip()}",
                collection.job_ids,
            )
        logger.debug(f"Started container {name} ({result.stdout.strip()[:12]})")
        return name

    def query_status(self, batch_id: str) -> BackendStatus:
        result = self._docker("inspect", "-f", "{{.State.Status}} {{.State.ExitCode}}", batch_id)
        if not result.ok:
            if "no such" in result.stderr.lower():
                return BackendStatus.VANISHED
            logger.warning(f"docker inspect {batch_id} failed: {result.stderr.strip()}")
            return BackendStatus.RUNNING
        state, _, exit_code = result.stdout.strip().partition(" ")
        if state == "created":
            return BackendStatus.QUEUED
        if state in ("running", "restarting", "paused"):
            return BackendStatus.RUNNING
        if state == "exited" and exit_code.strip() == "0":
            return BackendStatus.DONE
        return BackendStatus.FAILED

    def cancel(self, batch_id: str) -> None:
        self.remove(batch_id)

    def remove(self, name: str) -> None:
        result = self._docker("rm", "-f", name)
        if not result.ok:
            logger.debug(f"docker rm {name}: {result.stderr.strip()}")

    def _list(self, *filters: str, all: bool = False) -> list[str]:
        args = ["ps", *(["-a"] if all else []), "--filter", f"label={LABEL}", "--format", "{{.Names}}"]
        for item in filters:
            args.extend(["--filter", item])
        result = self._docker(*args)
        if not result.ok:
            logger.warning(f"docker ps failed: {result.stderr.strip()}")
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def list_running(self) -> list[str]:
        return self._list()

    def list_exited(self) -> list[str]:
        return self._list("status=exited", all=True)
