"""
Cluster backends: interchangeable execution substrates for job collections.
"""

from batchgrid.backends.base import (
    BackendHooks,
    BackendStatus,
    ClusterBackend,
    CommandResult,
    run_command,
    worker_command,
)
from batchgrid.backends.container import ContainerBackend
from batchgrid.backends.interactive import InteractiveBackend
from batchgrid.backends.multicore import MulticoreBackend
from batchgrid.backends.registry import BackendRegistry, create_backend
from batchgrid.backends.scheduler import SGE, SLURM, SchedulerBackend, SchedulerCommands
from batchgrid.backends.ssh import SSHBackend, Worker

__all__ = [
    "BackendHooks",
    "BackendRegistry",
    "BackendStatus",
    "ClusterBackend",
    "CommandResult",
    "ContainerBackend",
    "InteractiveBackend",
    "MulticoreBackend",
    "SGE",
    "SLURM",
    "SSHBackend",
    "SchedulerBackend",
    "SchedulerCommands",
    "Worker",
    "create_backend",
    "run_command",
    "worker_command",
]
