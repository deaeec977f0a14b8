"""
Cluster backend protocol and shared helpers.

A backend hands job collections to an execution substrate and answers
questions about them afterwards:

- submit(reg, collection, resources) -> batch id
- query_status(batch id) -> BackendStatus
- cancel(batch id)                   best effort
- list_running() -> batch ids

Backends may also carry hooks, plain optional callables the controller
invokes at fixed points of every cycle:

- pre_submit(backend, reg, collection): right before a collection is
  handed to the substrate
- post_sync(backend, reg): right after sync merged new state

Backends never change job status themselves; the controller does that
based on the return values and on markers.
"""

import logging
import subprocess
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional

from batchgrid.schemas import JobCollection

if TYPE_CHECKING:
    from batchgrid.registry import Registry

logger = logging.getLogger(__name__)


class BackendStatus(str, Enum):
    """State of a submission as reported by the substrate."""
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    VANISHED = "vanished"

    @property
    def is_active(self) -> bool:
        return self in (BackendStatus.QUEUED, BackendStatus.RUNNING)


PreSubmitHook = Callable[["ClusterBackend", "Registry", JobCollection], None]
PostSyncHook = Callable[["ClusterBackend", "Registry"], None]


@dataclass
class BackendHooks:
    """Optional extension points; None means no-op."""
    pre_submit: Optional[PreSubmitHook] = None
    post_sync: Optional[PostSyncHook] = None


@dataclass(frozen=True)
class CommandResult:
    """Outcome of an external command."""
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def run_command(cmd: list[str], timeout: float = 60.0, input: Optional[str] = None) -> CommandResult:
    """
    Run a command with timeout.

    Args:
        cmd: Command and arguments as list
        timeout: Timeout in seconds
        input: Text passed on stdin

    Returns:
        CommandResult; failures to start or time out are reported as exit code -1
    """
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            input=input,
        )
        return CommandResult(result.returncode, result.stdout, result.stderr)
    except subprocess.TimeoutExpired:
        return CommandResult(-1, "", f"Command timed out after {timeout}s")
    except OSError as e:
        return CommandResult(-1, "", str(e))


def worker_command(collection_path: Path | str, python: Optional[str] = None) -> list[str]:
    """Command line that runs the driver on a collection file."""
    return [python or sys.executable, "-m", "batchgrid.driver", str(collection_path)]


def output_path(reg: "Registry", job_hash: str) -> Path:
    """File receiving a worker's stdout/stderr (the driver's own log is logs/<hash>.log)."""
    return reg.root / "logs" / f"{job_hash}.out"


class ClusterBackend(ABC):
    """
    Abstract base class for execution substrates.

    Subclasses set ``name`` and implement the four capabilities. Hooks are
    passed in (or set up by the subclass) as a BackendHooks value.
    """

    name: str = ""

    def __init__(self, hooks: Optional[BackendHooks] = None):
        self.hooks = hooks or BackendHooks()

    @abstractmethod
    def submit(
        self,
        reg: "Registry",
        collection: JobCollection,
        resources: Optional[dict[str, Any]] = None,
    ) -> str:
        """
        Hand a collection to the substrate.

        Args:
            reg: Registry the collection belongs to
            collection: The collection (already written to disk)
            resources: Substrate-specific resource requests

        Returns:
            Backend identifier of the submission

        Raises:
            SubmissionRejectedError: If the substrate refuses the collection
        """
        pass

    @abstractmethod
    def query_status(self, batch_id: str) -> BackendStatus:
        """Report the state of a submission."""
        pass

    @abstractmethod
    def cancel(self, batch_id: str) -> None:
        """Ask the substrate to stop a submission (best effort)."""
        pass

    @abstractmethod
    def list_running(self) -> list[str]:
        """Batch ids the substrate currently queues or runs."""
        pass

    def run_pre_submit(self, reg: "Registry", collection: JobCollection) -> None:
        if self.hooks.pre_submit is not None:
            self.hooks.pre_submit(self, reg, collection)

    def run_post_sync(self, reg: "Registry") -> None:
        if self.hooks.post_sync is not None:
            self.hooks.post_sync(self, reg)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"
